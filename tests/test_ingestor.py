"""Tests for the ingestion pipeline and the deterministic embedder."""

import math

import pytest

from aikb.config.settings import settings
from aikb.src.core.embedder import StubEmbeddingGateway
from aikb.src.core.ingestor import IngestionPipeline, document_id_for
from aikb.src.database.vector_store import InMemoryVectorStore, cosine_similarity


TRAVEL_DOC = """---
title: Travel Policy
department: Finance
sensitivity: CONFIDENTIAL
roles: [EDITOR, VIEWER]
---
Employees may claim up to 500 EUR per trip.

Approver salary: 95000 EUR

Receipts must be uploaded within 30 days of travel.
"""

HOLIDAY_DOC = "Public holidays are listed on the intranet.\n\nOffice closes early on the 24th."


@pytest.fixture
def small_chunks(monkeypatch):
    monkeypatch.setattr(settings, "CHUNK_SIZE", 60)
    monkeypatch.setattr(settings, "CHUNK_OVERLAP", 10)


@pytest.fixture
def source_dir(tmp_path):
    raw = tmp_path / "raw"
    raw.mkdir()
    (raw / "travel_policy.md").write_text(TRAVEL_DOC, encoding="utf-8")
    (raw / "holidays.txt").write_text(HOLIDAY_DOC, encoding="utf-8")
    (raw / "image.png").write_bytes(b"\x89PNG")
    return raw


@pytest.fixture
def pipeline_factory(tmp_path, source_dir):
    store = InMemoryVectorStore()
    embedder = StubEmbeddingGateway(dimension=32)

    def _make():
        return IngestionPipeline(store, embedder, source_dir=source_dir, max_workers=2, hash_cache_path=tmp_path / "cache" / "hashes.json")
    return store, _make


# =============================================================================
# Pipeline
# =============================================================================

class TestIngestionPipeline:

    def test_run_ingests_supported_files(self, small_chunks, pipeline_factory):
        store, make = pipeline_factory
        summary = make().run()

        assert summary["total_files"] == 2
        assert summary["files_processed"] == 2
        assert summary["files_failed"] == 0
        assert summary["total_chunks"] == store.get_vector_count() > 2

        metadata = store.get_all_metadata()
        assert metadata["travel-policy"]["title"] == "Travel Policy"
        assert metadata["travel-policy"]["department"] == "Finance"
        assert metadata["travel-policy"]["roles"] == "EDITOR,VIEWER"
        assert metadata["holidays"]["title"] == "Holidays"
        assert metadata["holidays"]["sensitivity"] == settings.DEFAULT_SENSITIVITY

    def test_unchanged_files_are_skipped(self, small_chunks, pipeline_factory):
        _, make = pipeline_factory
        make().run()
        summary = make().run()
        assert summary["files_skipped"] == 2
        assert summary["files_processed"] == 0

    async def test_sensitive_fields_never_reach_the_store(self, small_chunks, pipeline_factory):
        store, make = pipeline_factory
        make().run()

        results = await store.search(await StubEmbeddingGateway(dimension=32).embed("salary"), top_k=50, filters={"department": "Finance", "role": "ADMIN"})
        travel_text = " ".join(r.text for r in results if r.document_id == "travel-policy")
        assert "95000" not in travel_text
        assert "salary: [REDACTED]" in travel_text
        assert "title: Travel Policy" not in travel_text

    def test_reingest_replaces_previous_chunks(self, small_chunks, pipeline_factory):
        store, make = pipeline_factory
        pipeline = make()
        first = pipeline.ingest_text(HOLIDAY_DOC * 3, "holidays.txt")
        second = pipeline.ingest_text("Short replacement.", "holidays.txt")

        assert first > 1
        assert second == 1
        assert store.get_all_metadata()["holidays"]["chunk_count"] == "1"

    def test_emptied_file_removes_previous_chunks(self, small_chunks, pipeline_factory, source_dir):
        store, make = pipeline_factory
        make().run()
        assert "holidays" in store.get_all_metadata()

        (source_dir / "holidays.txt").write_text("  \n", encoding="utf-8")
        summary = make().run()

        assert summary["files_processed"] == 1
        assert summary["files_skipped"] == 1
        assert "holidays" not in store.get_all_metadata()
        assert "travel-policy" in store.get_all_metadata()

    def test_front_matter_id_overrides_filename(self, pipeline_factory):
        store, make = pipeline_factory
        make().ingest_text("---\nid: HR-001\n---\nBody", "whatever.md")
        assert "HR-001" in store.get_all_metadata()

    def test_missing_source_dir(self, tmp_path):
        pipeline = IngestionPipeline(InMemoryVectorStore(), StubEmbeddingGateway(dimension=8), source_dir=tmp_path / "nope", hash_cache_path=tmp_path / "h.json")
        assert pipeline.run()["total_files"] == 0

    def test_clear_hash_cache_forces_reingest(self, small_chunks, pipeline_factory):
        _, make = pipeline_factory
        pipeline = make()
        pipeline.run()
        pipeline.clear_hash_cache()
        assert pipeline.run()["files_processed"] == 2


def test_document_id_for():
    assert document_id_for("HR Policy (v2).md") == "hr-policy-v2"
    assert document_id_for("___.txt") == "document"


# =============================================================================
# Stub embedder
# =============================================================================

class TestStubEmbeddingGateway:

    async def test_deterministic_and_normalised(self):
        gateway = StubEmbeddingGateway(dimension=64)
        first = await gateway.embed("Travel reimbursement policy")
        second = await gateway.embed("travel reimbursement POLICY")
        assert first == second
        assert len(first) == 64
        assert math.isclose(sum(v * v for v in first), 1.0, rel_tol=1e-9)

    async def test_shared_vocabulary_scores_higher(self):
        gateway = StubEmbeddingGateway()
        query = await gateway.embed("travel reimbursement limit")
        related = await gateway.embed("travel reimbursement rules")
        unrelated = await gateway.embed("canteen soup tomato")
        assert cosine_similarity(query, related) > cosine_similarity(query, unrelated)

    async def test_empty_text(self):
        assert await StubEmbeddingGateway(dimension=4).embed("") == [0.0, 0.0, 0.0, 0.0]

    def test_batch_matches_single(self):
        gateway = StubEmbeddingGateway(dimension=16)
        assert gateway.embed_documents(["a b", "c"]) == [gateway._combine("a b"), gateway._combine("c")]
