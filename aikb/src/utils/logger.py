"""
AIKB - Logging
===============
One console handler, shared by every AIKB logger, writing pipe-separated
lines to stdout.  The handler carries a ``PIIRedactionFilter``, so
whatever a module logs is scrubbed of e-mails, phone numbers and the
like after %-formatting.

Level per ``settings.ENV``:

========  ===========
``dev``   ``DEBUG``
``test``  ``INFO``
``prod``  ``WARNING``
========  ===========

Modules still log lengths, counts and ids rather than raw query text or
chunk content; the filter is the backstop, not the policy.

Usage:
    from aikb.src.utils.logger import get_logger
    logger = get_logger(__name__)
"""

import logging
import sys

from aikb.config.settings import settings
from aikb.src.utils.redaction import redact_pii

_LEVEL_BY_ENV = {"dev": logging.DEBUG, "test": logging.INFO, "prod": logging.WARNING}
_LINE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

_shared_handler: logging.Handler | None = None


class PIIRedactionFilter(logging.Filter):
    """Rewrites the rendered message of every record with ``redact_pii``."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = redact_pii(record.getMessage())
        record.args = None
        return True


def _console_handler() -> logging.Handler:
    global _shared_handler
    if _shared_handler is None:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(_LINE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        handler.addFilter(PIIRedactionFilter())
        _shared_handler = handler
    return _shared_handler


def get_logger(name: str, level: int | None = None) -> logging.Logger:
    """
    Return the logger *name*, attached to the shared console handler.

    Parameters
    ----------
    name
        Usually the caller's ``__name__``.
    level
        Overrides the ``settings.ENV`` level for this logger only.
    """
    logger = logging.getLogger(name)
    if _console_handler() not in logger.handlers:
        logger.addHandler(_console_handler())
        logger.propagate = False
    logger.setLevel(level if level is not None else _LEVEL_BY_ENV.get(settings.ENV, logging.INFO))
    return logger
