"""
AIKB - Audit Log
=================
Append-only record of every query outcome.

``AuditSink`` implementations receive a finished ``AuditEntry`` whose
query text has already been redacted; nothing else about the request's
content is stored.

``MongoAuditSink``
    One document per entry in ``settings.AUDIT_COLLECTION``, written with
    ``motor`` over a module-level singleton client.

``LoggingAuditSink``
    Writes entries to the application log.  Used when no ``MONGO_URI``
    is configured.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

import motor.motor_asyncio

from aikb.config.settings import settings
from aikb.src.core.models import AuditEntry
from aikb.src.utils.logger import get_logger

logger = get_logger(__name__)


@runtime_checkable
class AuditSink(Protocol):
    async def log(self, entry: AuditEntry) -> None: ...


# ══════════════════════════════════════════════════════════════════════
#  MONGODB SINGLETON CLIENT
# ══════════════════════════════════════════════════════════════════════

_mongo_clients: dict[str, motor.motor_asyncio.AsyncIOMotorClient] = {}


def _get_mongo_client(uri: str) -> motor.motor_asyncio.AsyncIOMotorClient:
    """Return (or create) the module-level async MongoDB client for *uri*."""
    if uri not in _mongo_clients:
        _mongo_clients[uri] = motor.motor_asyncio.AsyncIOMotorClient(uri)
        logger.info("[AUDIT] MongoDB async client created (singleton).")
    return _mongo_clients[uri]


class MongoAuditSink:
    """
    Audit entries in MongoDB.

    Parameters
    ----------
    uri
        Connection string (unwrapped from ``settings.MONGO_URI``).
    db_name / collection_name
        Override ``settings.MONGO_DB_NAME`` / ``settings.AUDIT_COLLECTION``.
    """

    __slots__ = ("_collection",)

    def __init__(self, uri: str, db_name: str | None = None, collection_name: str | None = None) -> None:
        db = _get_mongo_client(uri)[db_name or settings.MONGO_DB_NAME]
        self._collection = db[collection_name or settings.AUDIT_COLLECTION]


    async def log(self, entry: AuditEntry) -> None:
        document = entry.model_dump()
        document["source_ids"] = list(entry.source_ids)
        await self._collection.insert_one(document)
        logger.debug("[AUDIT] Entry stored for user %s (%s).", entry.user_id, entry.outcome)


class LoggingAuditSink:
    """Audit entries as structured log lines."""

    __slots__ = ()

    async def log(self, entry: AuditEntry) -> None:
        logger.info("[AUDIT] user=%s outcome=%s kind=%s cost=%.6f sources=%d query=%r", entry.user_id, entry.outcome, entry.failure_kind or "-", entry.cost_estimate, len(entry.source_ids), entry.redacted_query)
