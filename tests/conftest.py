"""
Pytest configuration for the AIKB test suite.

Configures:
- pytest-asyncio for async test support (``asyncio_mode = "auto"``)
- Test doubles for the pipeline's external capabilities
"""

import asyncio
import json

import pytest

from aikb.src.core.generator import GenerationOutput, parse_structured_answer
from aikb.src.core.models import QueryRequest, RetrievedMatch, Usage, UserProfile
from aikb.src.core.rag_engine import RAGManager


# =============================================================================
# Capability doubles
# =============================================================================

class FixedEmbedder:
    """Returns the same vector for every text; optionally slow or failing."""

    def __init__(self, vector=None, delay=0.0, error=None):
        self.vector = vector or [1.0, 0.0, 0.0]
        self.delay = delay
        self.error = error
        self.calls = []

    async def embed(self, text):
        self.calls.append(text)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return list(self.vector)

    def embed_documents(self, texts):
        return [list(self.vector) for _ in texts]


class StaticRetriever:
    """Returns a fixed list of matches."""

    def __init__(self, matches=None, delay=0.0, error=None):
        self.matches = matches or []
        self.delay = delay
        self.error = error
        self.filters = None

    async def search(self, vector, top_k, filters=None):
        self.filters = filters
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return list(self.matches)[:top_k]


class ScriptedGenerator:
    """Parses a canned raw response, like a real backend would."""

    def __init__(self, raw=None, usage=None, delay=0.0, error=None):
        self.raw = raw
        self.usage = usage or Usage(prompt_tokens=100, completion_tokens=50, total_tokens=150)
        self.delay = delay
        self.error = error
        self.calls = []

    async def generate(self, context, question, history, user_profile):
        self.calls.append({"context": list(context), "question": question, "history": list(history), "user_profile": user_profile})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        raw = self.raw if self.raw is not None else json.dumps({"answer": f"You asked: {question}", "confidence": "high", "citations": []})
        return GenerationOutput(payload=parse_structured_answer(raw), usage=self.usage)


class RecordingAuditSink:
    def __init__(self, error=None, delay=0.0):
        self.entries = []
        self.error = error
        self.delay = delay

    async def log(self, entry):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        self.entries.append(entry)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def profile():
    return UserProfile(name="Dana", department="Finance", role="EDITOR")


@pytest.fixture
def make_request(profile):
    def _make(query_text="What is the travel reimbursement limit?", **kwargs):
        return QueryRequest(query_text=query_text, user_id=kwargs.pop("user_id", "user-1"), user_profile=kwargs.pop("user_profile", profile), **kwargs)
    return _make


@pytest.fixture
def matches():
    return [
        RetrievedMatch(chunk_id="travel_0", document_id="travel", title="Travel Policy", score=0.91, text="Employees may claim up to 500 EUR per trip. Receipts are required."),
        RetrievedMatch(chunk_id="expenses_2", document_id="expenses", title="Expense Guide", score=0.74, text="Expense reports are due within 30 days of travel."),
        RetrievedMatch(chunk_id="canteen_1", document_id="canteen", title="Canteen Menu", score=0.31, text="Soup of the day is tomato."),
    ]


@pytest.fixture
def audit_sink():
    return RecordingAuditSink()


@pytest.fixture
def build_rag(audit_sink, matches):
    def _build(embedder=None, retriever=None, generator=None, sink=None):
        return RAGManager(embedder or FixedEmbedder(), retriever or StaticRetriever(matches), generator or ScriptedGenerator(), sink or audit_sink)
    return _build
