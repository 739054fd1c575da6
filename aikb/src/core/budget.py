"""
AIKB - Budget Controller
=========================
One request, one deadline.

A ``Budget`` is created once when a query is received and passed *by
value* to every stage.  It holds an absolute ``time.monotonic()``
deadline and the context token ceiling; it is frozen, so no stage can
extend it, and each stage derives its own remaining time from it
independently.

Timeouts
--------
``run_with_timeout`` wraps one external call.  When the call overruns,
the wrapper raises ``StageTimeoutError`` straight away and *detaches*
from the call: the task is cancelled and a done-callback consumes
whatever outcome it eventually settles with.  A call whose transport
ignores cancellation (e.g. a blocking SDK call running in a worker
thread) keeps running in the background until it finishes; its late
result or exception is dropped and never resurfaces as an
"exception was never retrieved" event, so one request cannot fail twice.

Tokens
------
Token counts are estimated as ``ceil(chars / 4)``: deterministic and
monotonic in the text length, so truncation always converges.
"""

from __future__ import annotations

import asyncio
import math
import time
from collections.abc import Awaitable
from dataclasses import dataclass
from typing import TypeVar

from aikb.config.settings import settings
from aikb.src.core.errors import StageTimeoutError
from aikb.src.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

CHARS_PER_TOKEN = 4


# ══════════════════════════════════════════════════════════════════════
#  TIME BUDGET
# ══════════════════════════════════════════════════════════════════════


def remaining_budget_ms(deadline: float) -> int:
    """
    Milliseconds left until *deadline* (a ``time.monotonic()`` timestamp).

    The result is clamped to ``[MIN_STAGE_BUDGET_MS, RAG_TIMEOUT_MS]``:
    never zero or negative (many timeout primitives read a non-positive
    value as "wait forever"), and never more than the global request
    timeout, even for a far-future deadline.
    """
    remaining = math.floor((deadline - time.monotonic()) * 1000)
    return max(settings.MIN_STAGE_BUDGET_MS, min(remaining, settings.RAG_TIMEOUT_MS))


@dataclass(frozen=True, slots=True)
class Budget:
    """Immutable per-request deadline and context token ceiling."""

    deadline: float
    token_ceiling: int

    @classmethod
    def start(cls, timeout_ms: int | None = None, token_ceiling: int | None = None) -> "Budget":
        timeout_ms = timeout_ms if timeout_ms is not None else settings.RAG_TIMEOUT_MS
        token_ceiling = token_ceiling if token_ceiling is not None else settings.RAG_MAX_CONTEXT_TOKENS
        return cls(deadline=time.monotonic() + timeout_ms / 1000, token_ceiling=token_ceiling)


    @property
    def expired(self) -> bool:
        return time.monotonic() >= self.deadline


    def remaining_ms(self) -> int:
        return remaining_budget_ms(self.deadline)


    def stage_timeout_ms(self, stage_max_ms: int) -> int:
        """Timeout for the next stage: ``min(remaining budget, stage max)``."""
        return min(self.remaining_ms(), stage_max_ms)


    def ensure_time_left(self, stage: str) -> None:
        """Short-circuit before starting *stage* once the deadline has passed."""
        if self.expired:
            logger.warning("[BUDGET] Deadline exceeded before '%s' — failing fast.", stage)
            raise StageTimeoutError(stage)


async def run_with_timeout(awaitable: Awaitable[T], timeout_ms: int, stage: str) -> T:
    """
    Await *awaitable* for at most *timeout_ms*.

    Raises
    ------
    StageTimeoutError
        The call did not settle in time.  Its eventual outcome is discarded.
    """
    task = asyncio.ensure_future(awaitable)
    try:
        done, _ = await asyncio.wait({task}, timeout=timeout_ms / 1000)
    except asyncio.CancelledError:
        _detach(task)
        raise

    if task in done:
        return task.result()

    _detach(task)
    logger.warning("[BUDGET] '%s' exceeded %dms — detached from the in-flight call.", stage, timeout_ms)
    raise StageTimeoutError(stage, timeout_ms)


def _detach(task: asyncio.Future) -> None:
    task.cancel()
    task.add_done_callback(_discard_late_outcome)


def _discard_late_outcome(task: asyncio.Future) -> None:
    if task.cancelled():
        return
    # Retrieving the exception marks it as observed.
    exc = task.exception()
    if exc is not None:
        logger.debug("[BUDGET] Discarded late failure of a timed-out call: %s", type(exc).__name__)


# ══════════════════════════════════════════════════════════════════════
#  TOKEN BUDGET
# ══════════════════════════════════════════════════════════════════════


def estimate_tokens(text: str) -> int:
    """Approximate token count: one token per four characters, rounded up."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def truncate_to_token_budget(text: str, token_ceiling: int) -> str:
    """
    Return the longest convenient prefix of *text* within *token_ceiling*.

    Cuts at the last whitespace inside the window when that keeps at least
    half of it; otherwise hard-slices at the window edge.
    """
    if token_ceiling < 1:
        return ""
    if estimate_tokens(text) <= token_ceiling:
        return text

    window = token_ceiling * CHARS_PER_TOKEN
    prefix = text[:window]
    cut = max(prefix.rfind(" "), prefix.rfind("\n"))
    if cut >= window // 2:
        prefix = prefix[:cut]
    return prefix
