"""Tests for the RAG query pipeline: stages, failure kinds, budgets and audit."""

import json

import pytest

from conftest import FixedEmbedder, RecordingAuditSink, ScriptedGenerator, StaticRetriever

from aikb.config.prompt_templates import NO_CONTEXT_ANSWER, TRUNCATION_MARKER
from aikb.config.settings import settings
from aikb.src.core.budget import estimate_tokens
from aikb.src.core.chunker import build_chunks
from aikb.src.core.errors import FailureKind, MalformedResponseError, RAGPipelineError, UpstreamError, ValidationError
from aikb.src.core.models import ChatTurn, RetrievedMatch, StructuredAnswer, Usage
from aikb.src.core.rag_engine import assemble_context, verify_integrity
from aikb.src.database.vector_store import LanceVectorStore
from aikb.src.utils.redaction import Redactor


# =============================================================================
# Successful queries
# =============================================================================

class TestSuccessfulQuery:

    async def test_answer_sources_and_usage(self, build_rag, make_request, audit_sink):
        result = await build_rag().query(make_request())

        assert result.answer == "You asked: What is the travel reimbursement limit?"
        assert [s.id for s in result.sources] == ["travel_0", "expenses_2"]
        assert result.usage.total_tokens == 150
        assert result.confidence == "High"

        response = result.to_response()
        assert set(response) >= {"answer", "sources", "usage"}
        assert response["sources"][0] == {"id": "travel_0", "docId": "travel", "title": "Travel Policy", "score": 0.91}

        assert len(audit_sink.entries) == 1
        entry = audit_sink.entries[0]
        assert entry.outcome == "answered"
        assert entry.source_ids == ("travel", "expenses")

    async def test_low_similarity_matches_are_dropped(self, build_rag, make_request):
        generator = ScriptedGenerator()
        await build_rag(generator=generator).query(make_request())
        context = generator.calls[0]["context"]
        assert len(context) == 2
        assert not any("Canteen" in block for block in context)

    async def test_context_blocks_in_descending_score_order(self, build_rag, make_request, matches):
        generator = ScriptedGenerator()
        retriever = StaticRetriever(list(reversed(matches)))
        await build_rag(retriever=retriever, generator=generator).query(make_request())
        context = generator.calls[0]["context"]
        assert context[0].startswith("SOURCE: Travel Policy\nCONTENT: ")
        assert context[1].startswith("SOURCE: Expense Guide\nCONTENT: ")

    async def test_profile_forwarded_as_access_filters(self, build_rag, make_request):
        retriever = StaticRetriever([])
        await build_rag(retriever=retriever).query(make_request())
        assert retriever.filters == {"department": "Finance", "role": "EDITOR"}

    async def test_cost_estimate_from_usage(self, build_rag, make_request, audit_sink):
        generator = ScriptedGenerator(usage=Usage(prompt_tokens=1500, completion_tokens=500, total_tokens=2000))
        await build_rag(generator=generator).query(make_request())
        assert audit_sink.entries[0].cost_estimate == pytest.approx(2000 / 1000 * settings.COST_PER_1K_TOKENS)

    async def test_history_is_limited_and_redacted(self, build_rag, make_request, monkeypatch):
        monkeypatch.setattr(settings, "HISTORY_LIMIT", 2)
        generator = ScriptedGenerator()
        history = [
            ChatTurn(role="user", content="old question"),
            ChatTurn(role="model", content="old answer"),
            ChatTurn(role="user", content="mail me at dana@example.com"),
        ]
        await build_rag(generator=generator).query(make_request(conversation_history=history))
        sent = generator.calls[0]["history"]
        assert [t.content for t in sent] == ["old answer", "mail me at [EMAIL REDACTED]"]


# =============================================================================
# Empty retrieval
# =============================================================================

class TestEmptyRetrieval:

    async def test_no_matches_is_a_success(self, build_rag, make_request, audit_sink):
        generator = ScriptedGenerator()
        result = await build_rag(retriever=StaticRetriever([]), generator=generator).query(make_request())

        assert result.answer == NO_CONTEXT_ANSWER
        assert result.sources == []
        assert generator.calls == []
        assert audit_sink.entries[0].outcome == "no_context"

    async def test_all_matches_below_threshold(self, build_rag, make_request):
        weak = [RetrievedMatch(chunk_id="c_0", document_id="c", title="C", score=0.2, text="irrelevant")]
        result = await build_rag(retriever=StaticRetriever(weak)).query(make_request())
        assert result.to_response()["sources"] == []

    @pytest.mark.parametrize("error", [UpstreamError("retrieval", "table missing"), RuntimeError("store unavailable")])
    async def test_retriever_error_degrades_to_no_context(self, build_rag, make_request, audit_sink, error):
        generator = ScriptedGenerator()
        result = await build_rag(retriever=StaticRetriever(error=error), generator=generator).query(make_request())

        assert result.answer == NO_CONTEXT_ANSWER
        assert result.sources == []
        assert generator.calls == []
        assert audit_sink.entries[0].outcome == "no_context"

    async def test_lance_backend_error_degrades_to_no_context(self, build_rag, make_request, tmp_path):
        store = LanceVectorStore(db_path=str(tmp_path / "lancedb"), table_name="chunks_dim4", dimension=4)
        store.upsert([c.with_embedding([1.0, 0.0, 0.0, 0.0]) for c in build_chunks("travel", ["Travel rules."])], {"title": "Travel", "department": "Finance", "sensitivity": "INTERNAL", "roles": "", "source_file": "travel.md"})

        result = await build_rag(embedder=FixedEmbedder([1.0, 0.0, 0.0]), retriever=store).query(make_request())

        assert result.answer == NO_CONTEXT_ANSWER
        assert result.sources == []


# =============================================================================
# Failure kinds
# =============================================================================

class TestFailures:

    async def test_embedding_backend_error(self, build_rag, make_request, audit_sink):
        embedder = FixedEmbedder(error=UpstreamError("embedding", "HTTP 503 from backend at 10.0.0.7"))
        with pytest.raises(RAGPipelineError) as info:
            await build_rag(embedder=embedder).query(make_request())

        assert info.value.kind is FailureKind.EMBEDDING_FAILED
        assert info.value.retryable is False
        assert "10.0.0.7" not in str(info.value)
        assert audit_sink.entries[0].outcome == "failed"
        assert audit_sink.entries[0].failure_kind == "EMBEDDING_FAILED"

    async def test_embedding_timeout_is_retryable(self, build_rag, make_request, monkeypatch):
        monkeypatch.setattr(settings, "EMBEDDING_TIMEOUT_MS", 50)
        with pytest.raises(RAGPipelineError) as info:
            await build_rag(embedder=FixedEmbedder(delay=2)).query(make_request())
        assert info.value.kind is FailureKind.EMBEDDING_FAILED
        assert info.value.retryable is True

    async def test_request_deadline_bounds_every_stage(self, build_rag, make_request, monkeypatch):
        monkeypatch.setattr(settings, "RAG_TIMEOUT_MS", 150)
        retriever = StaticRetriever(delay=2)
        with pytest.raises(RAGPipelineError) as info:
            await build_rag(retriever=retriever).query(make_request())
        assert info.value.kind is FailureKind.RETRIEVAL_FAILED
        assert info.value.retryable is True

    async def test_generation_timeout(self, build_rag, make_request, monkeypatch):
        monkeypatch.setattr(settings, "GENERATION_TIMEOUT_MS", 50)
        with pytest.raises(RAGPipelineError) as info:
            await build_rag(generator=ScriptedGenerator(delay=2)).query(make_request())
        assert info.value.kind is FailureKind.GENERATION_FAILED

    async def test_malformed_generator_output(self, build_rag, make_request):
        with pytest.raises(RAGPipelineError) as info:
            await build_rag(generator=ScriptedGenerator(raw="Sure! Here is your answer.")).query(make_request())
        assert info.value.kind is FailureKind.GENERATION_FAILED
        assert isinstance(info.value.__cause__, MalformedResponseError)

    async def test_unexpected_generation_error_is_generic(self, build_rag, make_request):
        generator = ScriptedGenerator(error=RuntimeError("stack trace with secret details"))
        with pytest.raises(RAGPipelineError) as info:
            await build_rag(generator=generator).query(make_request())

        error = info.value
        assert error.kind is FailureKind.RAG_QUERY_FAILED
        assert "secret" not in str(error)
        assert error.to_response() == {"error": "RAG_QUERY_FAILED", "message": error.public_message, "retryable": False}


class TestValidation:

    @pytest.mark.parametrize("query_text", ["", "   ", "x" * 5000])
    async def test_invalid_query_surfaces_directly(self, build_rag, make_request, audit_sink, query_text):
        embedder = FixedEmbedder()
        with pytest.raises(ValidationError):
            await build_rag(embedder=embedder).query(make_request(query_text))
        assert embedder.calls == []
        assert audit_sink.entries == []


# =============================================================================
# Audit
# =============================================================================

class TestAudit:

    async def test_query_pii_redacted_in_audit_only(self, build_rag, make_request, audit_sink):
        query = "Can hr@example.com approve my travel to Berlin?"
        result = await build_rag().query(make_request(query))

        assert "hr@example.com" in result.answer
        stored = audit_sink.entries[0].redacted_query
        assert "hr@example.com" not in stored
        assert "[EMAIL REDACTED]" in stored

    async def test_audit_query_goes_through_redactor(self, build_rag, make_request, audit_sink, monkeypatch):
        monkeypatch.setattr(Redactor, "redact_for_audit", staticmethod(lambda text: "<scrubbed>"))
        await build_rag().query(make_request())
        assert audit_sink.entries[0].redacted_query == "<scrubbed>"

    async def test_audit_failure_is_absorbed(self, build_rag, make_request):
        sink = RecordingAuditSink(error=ConnectionError("mongo down"))
        result = await build_rag(sink=sink).query(make_request())
        assert result.sources

    async def test_hanging_audit_sink_does_not_block(self, build_rag, make_request, monkeypatch):
        monkeypatch.setattr(settings, "AUDIT_TIMEOUT_MS", 50)
        result = await build_rag(sink=RecordingAuditSink(delay=5)).query(make_request())
        assert result.answer

    async def test_audit_failure_does_not_mask_pipeline_error(self, build_rag, make_request):
        sink = RecordingAuditSink(error=ConnectionError("mongo down"))
        with pytest.raises(RAGPipelineError) as info:
            await build_rag(embedder=FixedEmbedder(error=UpstreamError("embedding", "x")), sink=sink).query(make_request())
        assert info.value.kind is FailureKind.EMBEDDING_FAILED


# =============================================================================
# Context assembly & integrity
# =============================================================================

class TestAssembleContext:

    def test_respects_token_ceiling(self, matches):
        ceiling = estimate_tokens("SOURCE: Travel Policy\nCONTENT: " + matches[0].text) + 3
        ctx = assemble_context(matches, ceiling)
        assert ctx.tokens <= ceiling
        assert [s.id for s in ctx.sources] == ["travel_0"]
        assert ctx.is_truncated

    def test_oversized_first_block_is_cut(self):
        big = RetrievedMatch(chunk_id="big_0", document_id="big", title="Handbook", score=0.9, text="policy " * 500)
        ctx = assemble_context([big], 40)
        assert len(ctx.blocks) == 1
        assert ctx.blocks[0].endswith(TRUNCATION_MARKER)
        assert estimate_tokens(ctx.blocks[0]) <= 40
        assert ctx.is_truncated
        assert [s.id for s in ctx.sources] == ["big_0"]

    def test_document_pii_redacted_before_generation(self):
        match = RetrievedMatch(chunk_id="hr_0", document_id="hr", title="HR", score=0.9, text="Contact jane@corp.com or 555-123-4567.")
        ctx = assemble_context([match], 1000)
        assert "jane@corp.com" not in ctx.blocks[0]
        assert "[EMAIL REDACTED]" in ctx.blocks[0]
        assert "[PHONE REDACTED]" in ctx.blocks[0]

    async def test_truncation_flag_reaches_result(self, build_rag, make_request, monkeypatch):
        monkeypatch.setattr(settings, "RAG_MAX_CONTEXT_TOKENS", 25)
        result = await build_rag().query(make_request())
        assert result.is_truncated
        assert result.usage.context_tokens <= 25
        assert result.integrity.warning


class TestIntegrity:

    def test_verified_and_hallucinated_quotes(self):
        blocks = ["SOURCE: Travel Policy\nCONTENT: Employees may claim up to 500 EUR per trip."]
        payload = StructuredAnswer.model_validate({
            "answer": "Up to 500 EUR.",
            "confidence": "medium",
            "citations": [
                {"source": "Travel Policy", "quote": "claim up to 500 EUR"},
                {"source": "Travel Policy", "quote": "unlimited first class flights"},
                {"source": "Travel Policy", "quote": "500"},
            ],
        })
        report = verify_integrity(payload, blocks)
        assert report.verified_quote_count == 1
        assert report.hallucinated_quote_count == 2
        assert report.is_verified is False
        assert report.integrity_score == pytest.approx(1 / 3, abs=1e-3)
        assert report.confidence == "Medium"

    def test_quote_match_is_case_sensitive(self):
        blocks = ["SOURCE: Travel Policy\nCONTENT: Employees may claim up to 500 EUR per trip."]
        payload = StructuredAnswer.model_validate({"answer": "x", "citations": [{"quote": "EMPLOYEES MAY CLAIM"}]})
        report = verify_integrity(payload, blocks)
        assert report.verified_quote_count == 0
        assert report.hallucinated_quote_count == 1

    def test_no_citations_is_verified(self):
        report = verify_integrity(StructuredAnswer(answer="ok"), ["SOURCE: a\nCONTENT: b"])
        assert report.is_verified and report.integrity_score == 1.0

    async def test_integrity_attached_to_result(self, build_rag, make_request):
        raw = json.dumps({"answer": "500 EUR", "confidence": "High", "citations": [{"source": "Travel Policy", "quote": "Receipts are required."}]})
        result = await build_rag(generator=ScriptedGenerator(raw=raw)).query(make_request())
        assert result.integrity.is_verified
        assert result.ai_citations[0].quote == "Receipts are required."
