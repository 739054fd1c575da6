"""
AIKB - Error Taxonomy
======================
Exceptions raised by the query pipeline.

Internal errors (``StageTimeoutError``, ``UpstreamError``,
``MalformedResponseError``) are raised by the stage that hit them and
caught by the orchestrator, which re-raises them as a single outward
``RAGPipelineError`` carrying the failing stage's ``FailureKind``.  The
outward error's message is generic: raw backend text stays on
``__cause__`` for the logs and never reaches the caller.

``ValidationError`` is the exception to that rule: malformed caller
input is surfaced directly.
"""

from __future__ import annotations

from enum import Enum


class FailureKind(str, Enum):
    """Caller-visible failure categories, one per pipeline stage."""

    EMBEDDING_FAILED = "EMBEDDING_FAILED"
    RETRIEVAL_FAILED = "RETRIEVAL_FAILED"
    GENERATION_FAILED = "GENERATION_FAILED"
    RAG_QUERY_FAILED = "RAG_QUERY_FAILED"


_PUBLIC_MESSAGES: dict[FailureKind, str] = {
    FailureKind.EMBEDDING_FAILED: "The question could not be processed right now. Please try again.",
    FailureKind.RETRIEVAL_FAILED: "The knowledge base could not be searched right now. Please try again.",
    FailureKind.GENERATION_FAILED: "An answer could not be generated right now. Please try again.",
    FailureKind.RAG_QUERY_FAILED: "The request could not be completed.",
}


class ValidationError(ValueError):
    """Caller input is malformed (empty, too long, wrong shape)."""


class StageTimeoutError(TimeoutError):
    """A stage exceeded its share of the request budget."""

    def __init__(self, stage: str, timeout_ms: int | None = None) -> None:
        self.stage = stage
        self.timeout_ms = timeout_ms
        detail = f"{stage} exceeded timeout of {timeout_ms}ms" if timeout_ms is not None else f"{stage} skipped: request deadline already exceeded"
        super().__init__(detail)


class UpstreamError(RuntimeError):
    """An embedding, retrieval or generation backend returned an error."""

    def __init__(self, stage: str, message: str) -> None:
        self.stage = stage
        super().__init__(f"{stage}: {message}")


class MalformedResponseError(UpstreamError):
    """The generator's structured output could not be parsed or validated."""

    def __init__(self, message: str) -> None:
        super().__init__("generation", message)


class RAGPipelineError(Exception):
    """
    Outward failure of one query.

    Attributes
    ----------
    kind
        Which stage failed (``FailureKind``).
    stage
        Internal stage name, for logs.
    retryable
        ``True`` for timeouts; the same request may succeed later.
    public_message
        Generic, caller-safe description.
    """

    def __init__(self, kind: FailureKind, stage: str, *, retryable: bool = False) -> None:
        self.kind = kind
        self.stage = stage
        self.retryable = retryable
        self.public_message = _PUBLIC_MESSAGES[kind]
        super().__init__(f"{kind.value}: {self.public_message}")


    def to_response(self) -> dict[str, str | bool]:
        return {"error": self.kind.value, "message": self.public_message, "retryable": self.retryable}
