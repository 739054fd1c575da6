"""
AIKB - Data Models
===================
Pydantic models shared by ingestion and the query pipeline.

``Chunk`` and ``AuditEntry`` are frozen: chunks are superseded (never
mutated) on re-ingestion and audit entries are write-once.
``StructuredAnswer`` is the schema the generator's JSON payload must
satisfy before the pipeline uses any of it.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

AuditOutcome = Literal["answered", "no_context", "failed"]


# ══════════════════════════════════════════════════════════════════════
#  INGESTION
# ══════════════════════════════════════════════════════════════════════


class Chunk(BaseModel):
    """A bounded slice of a document: the unit of embedding and retrieval."""

    model_config = ConfigDict(frozen=True)

    id: str
    document_id: str
    sequence_index: int = Field(ge=0)
    text: str
    embedding: tuple[float, ...] | None = None


    def with_embedding(self, vector: list[float]) -> "Chunk":
        return self.model_copy(update={"embedding": tuple(vector)})


# ══════════════════════════════════════════════════════════════════════
#  QUERY INPUT
# ══════════════════════════════════════════════════════════════════════


class UserProfile(BaseModel):
    name: str
    department: str
    role: str


class ChatTurn(BaseModel):
    role: Literal["user", "model"]
    content: str


class QueryRequest(BaseModel):
    """Caller-supplied query.  Content checks happen in the orchestrator."""

    query_text: str
    user_id: str
    user_profile: UserProfile
    conversation_history: list[ChatTurn] = Field(default_factory=list)


# ══════════════════════════════════════════════════════════════════════
#  RETRIEVAL
# ══════════════════════════════════════════════════════════════════════


class RetrievedMatch(BaseModel):
    """One similarity-search hit.  Ephemeral, never persisted."""

    chunk_id: str
    document_id: str
    title: str = "Untitled"
    score: float
    text: str
    department: str | None = None
    sensitivity: str | None = None


# ══════════════════════════════════════════════════════════════════════
#  GENERATION
# ══════════════════════════════════════════════════════════════════════


class AICitation(BaseModel):
    """A quote the model claims to have taken from the context."""

    model_config = ConfigDict(extra="ignore")

    source: str | None = None
    quote: str = ""


class StructuredAnswer(BaseModel):
    """Schema of the generator's JSON payload."""

    model_config = ConfigDict(extra="ignore")

    answer: str = Field(min_length=1)
    confidence: str = "Unknown"
    citations: list[AICitation] = Field(default_factory=list)
    missing_information: str | None = None

    @field_validator("confidence", mode="before")
    @classmethod
    def _normalise_confidence(cls, v: object) -> str:
        if v is None:
            return "Unknown"
        return str(v).strip().capitalize() or "Unknown"


class Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    context_tokens: int = 0


# ══════════════════════════════════════════════════════════════════════
#  QUERY OUTPUT
# ══════════════════════════════════════════════════════════════════════


class SourceCitation(BaseModel):
    """Maps an answer back to a chunk that informed it."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    doc_id: str = Field(serialization_alias="docId")
    title: str
    score: float


class IntegrityReport(BaseModel):
    """Result of checking the model's quotes against the assembled context."""

    confidence: str = "Unknown"
    is_verified: bool = True
    verified_quote_count: int = 0
    hallucinated_quote_count: int = 0
    integrity_score: float = 1.0
    warning: str | None = None


class AnswerResult(BaseModel):
    answer: str
    sources: list[SourceCitation] = Field(default_factory=list)
    usage: Usage = Field(default_factory=Usage)
    confidence: str = "Unknown"
    missing_information: str | None = None
    ai_citations: list[AICitation] = Field(default_factory=list)
    integrity: IntegrityReport = Field(default_factory=IntegrityReport)
    is_truncated: bool = False


    def to_response(self) -> dict[str, object]:
        """Caller-facing payload (``sources`` use the ``docId`` key)."""
        return self.model_dump(by_alias=True)


# ══════════════════════════════════════════════════════════════════════
#  AUDIT
# ══════════════════════════════════════════════════════════════════════


class AuditEntry(BaseModel):
    """Append-only audit record.  ``redacted_query`` is the only query text kept."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    redacted_query: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    outcome: AuditOutcome
    cost_estimate: float = 0.0
    source_ids: tuple[str, ...] = ()
    failure_kind: str | None = None
