"""
AIKB - RAG Engine
==================
Orchestrates one knowledge-base query from question to grounded answer.

Pipeline states::

    Received → Embedding → Retrieving → Assembling → Generating → Completed
                    ╰──────────────┴────────────┴────────────┴──────→ Failed

``Received``
    Validate the request (``ValidationError`` goes straight to the
    caller) and start the request ``Budget``.
``Embedding``
    Embed the question.  Timeout = min(remaining, ``EMBEDDING_TIMEOUT_MS``).
``Retrieving``
    Top-K similarity search with the user's department/role as access
    filters; matches under ``RAG_MIN_SIMILARITY`` are dropped.  An empty
    result is a valid outcome, and so is a retriever error: it is logged
    and the query continues with no matches.  Only a retrieval timeout
    fails the query.
``Assembling``
    Matches in descending score order become ``SOURCE:/CONTENT:`` blocks
    (document PII redacted) until the context token ceiling is reached.
    Only blocks that made it into the context are cited.
``Generating``
    The generator's structured answer is validated, then its quotes are
    checked against the assembled context.  No context → fixed answer,
    no generator call.
``Completed`` / ``Failed``
    An audit entry with the *redacted* query is written either way.  Audit
    failures are logged and absorbed.

Stage errors leave the engine as ``RAGPipelineError``: timeouts and
embedding or generation backend errors carry the stage's ``FailureKind``; anything unexpected is
``RAG_QUERY_FAILED``.  The engine holds no request state, so one
instance serves concurrent queries.

Usage:
    from aikb.src.core.container import build_container
    rag = build_container().rag
    result = await rag.query(request)
"""

from __future__ import annotations

import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum

from aikb.config.prompt_templates import NO_CONTEXT_ANSWER, TRUNCATION_MARKER
from aikb.config.settings import settings
from aikb.src.core.budget import Budget, estimate_tokens, run_with_timeout, truncate_to_token_budget
from aikb.src.core.embedder import EmbeddingGateway
from aikb.src.core.errors import FailureKind, RAGPipelineError, StageTimeoutError, UpstreamError, ValidationError
from aikb.src.core.generator import AnswerGenerator
from aikb.src.core.models import AnswerResult, AuditEntry, AuditOutcome, ChatTurn, IntegrityReport, QueryRequest, RetrievedMatch, SourceCitation, StructuredAnswer, Usage
from aikb.src.database.audit_log import AuditSink
from aikb.src.database.vector_store import SimilarityRetriever
from aikb.src.utils.logger import get_logger
from aikb.src.utils.redaction import Redactor, redact_pii

logger = get_logger(__name__)

MIN_QUOTE_CHARS = 5
TRUNCATION_WARNING = "Context window limit reached. Some documents were partially omitted."


class PipelineState(str, Enum):
    RECEIVED = "Received"
    EMBEDDING = "Embedding"
    RETRIEVING = "Retrieving"
    ASSEMBLING = "Assembling"
    GENERATING = "Generating"
    COMPLETED = "Completed"
    FAILED = "Failed"


# Stage whose typed failures (timeout / upstream) map to a specific kind.
_STAGE_FAILURE_KIND: dict[PipelineState, FailureKind] = {
    PipelineState.EMBEDDING: FailureKind.EMBEDDING_FAILED,
    PipelineState.RETRIEVING: FailureKind.RETRIEVAL_FAILED,
    PipelineState.GENERATING: FailureKind.GENERATION_FAILED,
}


# ══════════════════════════════════════════════════════════════════════
#  CONTEXT ASSEMBLY
# ══════════════════════════════════════════════════════════════════════


@dataclass(slots=True)
class AssembledContext:
    blocks: list[str] = field(default_factory=list)
    sources: list[SourceCitation] = field(default_factory=list)
    tokens: int = 0
    is_truncated: bool = False


def format_block(title: str, text: str) -> str:
    return f"SOURCE: {title}\nCONTENT: {text}"


def assemble_context(matches: Sequence[RetrievedMatch], token_ceiling: int) -> AssembledContext:
    """
    Build context blocks from *matches* without exceeding *token_ceiling*.

    Matches are taken in descending score order.  Assembly stops at the
    first block that does not fit; when that is the very first block, a
    truncated copy of it (ending in ``...[TRUNCATED]``) is used instead.
    Each block's text is PII-redacted before it can reach the generator.
    """
    ctx = AssembledContext()
    for match in sorted(matches, key=lambda m: m.score, reverse=True):
        text = redact_pii(match.text)
        block = format_block(match.title, text)
        block_tokens = estimate_tokens(block)

        if ctx.tokens + block_tokens > token_ceiling:
            ctx.is_truncated = True
            if not ctx.blocks:
                header = format_block(match.title, "")
                room = token_ceiling - estimate_tokens(header) - estimate_tokens(TRUNCATION_MARKER)
                if room >= 1:
                    block = header + truncate_to_token_budget(text, room) + TRUNCATION_MARKER
                    ctx.blocks.append(block)
                    ctx.tokens += estimate_tokens(block)
                    ctx.sources.append(_cite(match))
            break

        ctx.blocks.append(block)
        ctx.tokens += block_tokens
        ctx.sources.append(_cite(match))
    return ctx


def _cite(match: RetrievedMatch) -> SourceCitation:
    return SourceCitation(id=match.chunk_id, doc_id=match.document_id, title=match.title, score=match.score)


# ══════════════════════════════════════════════════════════════════════
#  INTEGRITY CHECK
# ══════════════════════════════════════════════════════════════════════


def verify_integrity(payload: StructuredAnswer, blocks: Sequence[str]) -> IntegrityReport:
    """
    Check every quote the model cited against the assembled context.

    A quote counts as verified only if it is at least ``MIN_QUOTE_CHARS``
    long (after trimming) and occurs verbatim in one of the blocks.
    """
    verified = 0
    hallucinated = 0
    for citation in payload.citations:
        quote = citation.quote.strip()
        if len(quote) >= MIN_QUOTE_CHARS and any(quote in block for block in blocks):
            verified += 1
        else:
            hallucinated += 1

    total = verified + hallucinated
    return IntegrityReport(
        confidence=payload.confidence,
        is_verified=hallucinated == 0,
        verified_quote_count=verified,
        hallucinated_quote_count=hallucinated,
        integrity_score=round(verified / total, 4) if total else 1.0,
    )


# ══════════════════════════════════════════════════════════════════════
#  RAG MANAGER
# ══════════════════════════════════════════════════════════════════════


class RAGManager:
    """
    Stateless query orchestrator.

    Parameters
    ----------
    embedder
        ``EmbeddingGateway`` used for the question.
    retriever
        ``SimilarityRetriever`` over the chunk store.
    generator
        ``AnswerGenerator`` producing the structured answer.
    audit_sink
        ``AuditSink`` receiving one entry per query.
    """

    __slots__ = ("_embedder", "_retriever", "_generator", "_audit")

    def __init__(self, embedder: EmbeddingGateway, retriever: SimilarityRetriever, generator: AnswerGenerator, audit_sink: AuditSink) -> None:
        self._embedder = embedder
        self._retriever = retriever
        self._generator = generator
        self._audit = audit_sink


    async def query(self, request: QueryRequest) -> AnswerResult:
        """
        Answer one question.

        Raises
        ------
        ValidationError
            The request is empty or too long.
        RAGPipelineError
            A stage failed; ``kind`` names which one.
        """
        self._validate(request)
        budget = Budget.start()
        redacted_query = Redactor.redact_for_audit(request.query_text)
        state = PipelineState.RECEIVED
        t_start = time.perf_counter()
        logger.info("[RAG] %s: user=%s query_chars=%d", state.value, request.user_id, len(request.query_text))

        try:
            # ── Embedding ──────────────────────────────────────────────
            state = self._transition(state, PipelineState.EMBEDDING)
            budget.ensure_time_left(state.value.lower())
            vector = await run_with_timeout(self._embedder.embed(request.query_text), budget.stage_timeout_ms(settings.EMBEDDING_TIMEOUT_MS), "embedding")

            # ── Retrieving ─────────────────────────────────────────────
            state = self._transition(state, PipelineState.RETRIEVING)
            budget.ensure_time_left(state.value.lower())
            matches = await self._retrieve(vector, request, budget)
            relevant = [m for m in matches if m.score >= settings.RAG_MIN_SIMILARITY]
            logger.info("[RAG] Retrieved %d match(es), %d above similarity %.2f.", len(matches), len(relevant), settings.RAG_MIN_SIMILARITY)

            # ── Assembling ─────────────────────────────────────────────
            state = self._transition(state, PipelineState.ASSEMBLING)
            context = assemble_context(relevant, budget.token_ceiling)
            if context.is_truncated:
                logger.warning("[RAG] Context truncated to %d block(s) / %d tokens.", len(context.blocks), context.tokens)

            if not context.blocks:
                result = AnswerResult(answer=NO_CONTEXT_ANSWER, confidence="Low", integrity=IntegrityReport(confidence="Low", is_verified=False, warning="No context"))
                state = self._transition(state, PipelineState.COMPLETED)
                await self._write_audit(request.user_id, redacted_query, "no_context", result.usage)
                return result

            # ── Generating ─────────────────────────────────────────────
            state = self._transition(state, PipelineState.GENERATING)
            budget.ensure_time_left(state.value.lower())
            history = self._prepare_history(request.conversation_history)
            output = await run_with_timeout(self._generator.generate(context.blocks, request.query_text, history, request.user_profile), budget.stage_timeout_ms(settings.GENERATION_TIMEOUT_MS), "generation")

            integrity = verify_integrity(output.payload, context.blocks)
            if context.is_truncated:
                integrity = integrity.model_copy(update={"warning": TRUNCATION_WARNING})
            if not integrity.is_verified:
                logger.warning("[RAG] %d cited quote(s) not found in context.", integrity.hallucinated_quote_count)

            usage = output.usage.model_copy(update={"context_tokens": context.tokens})
            result = AnswerResult(
                answer=output.payload.answer,
                sources=context.sources,
                usage=usage,
                confidence=output.payload.confidence,
                missing_information=output.payload.missing_information,
                ai_citations=output.payload.citations,
                integrity=integrity,
                is_truncated=context.is_truncated,
            )
            state = self._transition(state, PipelineState.COMPLETED)

        except Exception as exc:
            error = self._to_pipeline_error(state, exc)
            self._transition(state, PipelineState.FAILED)
            logger.error("[RAG] %s during %s: %s", error.kind.value, state.value, type(exc).__name__)
            await self._write_audit(request.user_id, redacted_query, "failed", Usage(), failure_kind=error.kind.value)
            raise error from exc

        await self._write_audit(request.user_id, redacted_query, "answered", result.usage, source_ids=[s.doc_id for s in result.sources])
        logger.info("[RAG] Pipeline total: %.1fms (%d source(s), %d tokens)", (time.perf_counter() - t_start) * 1000, len(result.sources), result.usage.total_tokens)
        return result

    # ══════════════════════════════════════════════════════════════════
    #  RETRIEVAL
    # ══════════════════════════════════════════════════════════════════

    async def _retrieve(self, vector: list[float], request: QueryRequest, budget: Budget) -> list[RetrievedMatch]:
        """Similarity search.  A timeout propagates; any other retriever error yields no matches."""
        filters = {"department": request.user_profile.department, "role": request.user_profile.role}
        try:
            return await run_with_timeout(self._retriever.search(vector, settings.RAG_TOP_K, filters), budget.stage_timeout_ms(settings.VECTOR_SEARCH_TIMEOUT_MS), "retrieval")
        except StageTimeoutError:
            raise
        except Exception as exc:
            logger.error("[RAG] Retrieval failed (%s); continuing without context.", type(exc).__name__)
            return []

    # ══════════════════════════════════════════════════════════════════
    #  STATE HANDLING
    # ══════════════════════════════════════════════════════════════════

    @staticmethod
    def _transition(current: PipelineState, target: PipelineState) -> PipelineState:
        logger.debug("[RAG] %s → %s", current.value, target.value)
        return target


    @staticmethod
    def _to_pipeline_error(state: PipelineState, exc: Exception) -> RAGPipelineError:
        kind = _STAGE_FAILURE_KIND.get(state)
        if kind is not None and isinstance(exc, StageTimeoutError):
            return RAGPipelineError(kind, state.value, retryable=True)
        if kind is not None and isinstance(exc, UpstreamError):
            return RAGPipelineError(kind, state.value)
        return RAGPipelineError(FailureKind.RAG_QUERY_FAILED, state.value)

    # ══════════════════════════════════════════════════════════════════
    #  INPUT & HISTORY
    # ══════════════════════════════════════════════════════════════════

    @staticmethod
    def _validate(request: QueryRequest) -> None:
        if not request.query_text or not request.query_text.strip():
            raise ValidationError("query_text must not be empty")
        if len(request.query_text) > settings.MAX_QUERY_CHARS:
            raise ValidationError(f"query_text exceeds {settings.MAX_QUERY_CHARS} characters")
        if not request.user_id.strip():
            raise ValidationError("user_id must not be empty")


    @staticmethod
    def _prepare_history(history: Sequence[ChatTurn]) -> list[ChatTurn]:
        """Keep the last ``HISTORY_LIMIT`` turns, PII-redacted."""
        recent = list(history)[-settings.HISTORY_LIMIT:] if settings.HISTORY_LIMIT else []
        return [ChatTurn(role=turn.role, content=redact_pii(turn.content)) for turn in recent]

    # ══════════════════════════════════════════════════════════════════
    #  AUDIT
    # ══════════════════════════════════════════════════════════════════

    async def _write_audit(self, user_id: str, redacted_query: str, outcome: AuditOutcome, usage: Usage, *, source_ids: Sequence[str] = (), failure_kind: str | None = None) -> None:
        """Write one audit entry.  Never raises."""
        try:
            entry = AuditEntry(
                user_id=user_id,
                redacted_query=redacted_query,
                outcome=outcome,
                cost_estimate=usage.total_tokens / 1000 * settings.COST_PER_1K_TOKENS,
                source_ids=tuple(dict.fromkeys(source_ids)),
                failure_kind=failure_kind,
            )
            await run_with_timeout(self._audit.log(entry), settings.AUDIT_TIMEOUT_MS, "audit")
        except Exception:
            logger.exception("[AUDIT] Failed to write audit entry (outcome=%s).", outcome)
