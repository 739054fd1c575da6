"""
AIKB - Centralized Configuration
=================================
Uses ``pydantic-settings`` (``BaseSettings``) to load *all* configuration
from environment variables and the project-level ``.env`` file.

Security
--------
- ``GOOGLE_API_KEY`` and ``MONGO_URI`` are typed as ``SecretStr``.  The
  raw values are never exposed in repr, logs, or tracebacks.
- Both are **optional**: when a secret is missing, the container wires the
  deterministic stub capability instead (stub embedder / generator,
  logging audit sink) so a local checkout runs without credentials.

Budgets
-------
Every stage of a query shares one deadline of ``RAG_TIMEOUT_MS``.  The
per-stage ceilings (``EMBEDDING_TIMEOUT_MS`` …) only ever *shrink* the
time a stage may take; they never extend the shared deadline.

Concurrency
-----------
``MAX_WORKERS`` controls the ``ThreadPoolExecutor`` pool size in the
ingestion pipeline (default 4; embedding calls are I/O-bound).
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application-wide settings.

    Every field is loaded from environment variables (or ``.env``).

    Attributes
    ----------
    GOOGLE_API_KEY : SecretStr | None
        API key for Google AI Studio (Gemini).  When absent, the stub
        embedding gateway and stub answer generator are used.
    MONGO_URI : SecretStr | None
        MongoDB connection string for the audit trail.  When absent,
        audit entries are written to the log only.
    ENV : Literal["dev", "prod", "test"]
        Environment mode controlling logging verbosity.
    RAG_TIMEOUT_MS : int
        Global wall-clock budget for one query (all stages together).
    MIN_STAGE_BUDGET_MS : int
        Floor for the remaining budget handed to a stage, so a final
        attempt is never scheduled with a non-positive timeout.
    RAG_TOP_K : int
        Number of chunks requested from the similarity retriever.
    RAG_MIN_SIMILARITY : float
        Matches scoring below this are treated as noise and dropped.
    RAG_MAX_CONTEXT_TOKENS : int
        Token ceiling for the assembled context block.
    CHUNK_SIZE / CHUNK_OVERLAP : int
        Chunker parameters used during ingestion (characters).
    REDACTION_RULES : dict[str, list[str]]
        Sensitivity label → key/value fields scrubbed at ingestion.
    COST_PER_1K_TOKENS : float
        Used for the audit entry's cost estimate.
    """

    # ── Resolved Absolute Paths ────────────────────────────────────────
    BASE_DIR: Path = Path(__file__).resolve().parent.parent
    DATA_RAW_DIR: Path = BASE_DIR / "data" / "raw"
    DATA_PROCESSED_DIR: Path = BASE_DIR / "data" / "processed"
    LANCEDB_PATH: Path = BASE_DIR / "data" / "lancedb"

    # ── Environment Mode ───────────────────────────────────────────────
    ENV: Literal["dev", "prod", "test"] = "dev"

    # ── Secrets (optional; stubs are wired when missing) ──────────────
    GOOGLE_API_KEY: SecretStr | None = None
    MONGO_URI: SecretStr | None = None
    MONGO_DB_NAME: str = "aikb"
    AUDIT_COLLECTION: str = "audit_logs"

    # ── Model Configuration ────────────────────────────────────────────
    EMBEDDING_MODEL: str = "models/text-embedding-004"
    EMBEDDING_DIM: int = 768
    LLM_MODEL: str = "gemini-2.5-flash-lite"
    LLM_TEMPERATURE: float = 0.2
    LLM_MAX_OUTPUT_TOKENS: int = 8192

    # ── Time Budget (milliseconds) ─────────────────────────────────────
    RAG_TIMEOUT_MS: int = 60_000
    MIN_STAGE_BUDGET_MS: int = 100
    EMBEDDING_TIMEOUT_MS: int = 30_000
    VECTOR_SEARCH_TIMEOUT_MS: int = 15_000
    GENERATION_TIMEOUT_MS: int = 60_000
    AUDIT_TIMEOUT_MS: int = 5_000

    # ── Retrieval & Context ────────────────────────────────────────────
    RAG_TOP_K: int = 10
    RAG_MIN_SIMILARITY: float = 0.60
    RAG_MAX_CONTEXT_TOKENS: int = 25_000
    MAX_QUERY_CHARS: int = 2_000
    HISTORY_LIMIT: int = 10
    COST_PER_1K_TOKENS: float = 0.0001

    # ── Ingestion Parameters ───────────────────────────────────────────
    CHUNK_SIZE: int = 1000
    CHUNK_OVERLAP: int = 100
    DEFAULT_SENSITIVITY: str = "INTERNAL"
    REDACTION_RULES: dict[str, list[str]] = {
        "CONFIDENTIAL": ["salary", "ssn", "account number"],
        "RESTRICTED": ["salary", "ssn", "account number", "address", "date of birth"],
    }

    # ── LanceDB ────────────────────────────────────────────────────────
    LANCEDB_TABLE_NAME: str = "aikb_chunks"

    # ── Concurrency ────────────────────────────────────────────────────
    MAX_WORKERS: int = 4

    # ── Validators ─────────────────────────────────────────────────────

    @field_validator("CHUNK_SIZE")
    @classmethod
    def _chunk_size_positive(cls, v: int) -> int:
        if v < 50:
            raise ValueError(f"CHUNK_SIZE must be ≥ 50, got {v}")
        return v


    @field_validator("RAG_MIN_SIMILARITY")
    @classmethod
    def _similarity_range(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"RAG_MIN_SIMILARITY must be 0–1, got {v}")
        return v


    @field_validator("RAG_TIMEOUT_MS", "MIN_STAGE_BUDGET_MS", "EMBEDDING_TIMEOUT_MS", "VECTOR_SEARCH_TIMEOUT_MS", "GENERATION_TIMEOUT_MS", "AUDIT_TIMEOUT_MS", "RAG_TOP_K", "RAG_MAX_CONTEXT_TOKENS")
    @classmethod
    def _strictly_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"Budget values must be ≥ 1, got {v}")
        return v


    @field_validator("MAX_WORKERS")
    @classmethod
    def _workers_range(cls, v: int) -> int:
        if not 1 <= v <= 16:
            raise ValueError(f"MAX_WORKERS must be 1–16, got {v}")
        return v


    @model_validator(mode="after")
    def _overlap_below_chunk_size(self) -> "Settings":
        if not 0 <= self.CHUNK_OVERLAP < self.CHUNK_SIZE:
            raise ValueError(f"CHUNK_OVERLAP must be in [0, CHUNK_SIZE), got {self.CHUNK_OVERLAP} (CHUNK_SIZE={self.CHUNK_SIZE})")
        if self.MIN_STAGE_BUDGET_MS >= self.RAG_TIMEOUT_MS:
            raise ValueError("MIN_STAGE_BUDGET_MS must be smaller than RAG_TIMEOUT_MS")
        return self

    # ── Pydantic Settings Configuration ────────────────────────────────
    model_config = SettingsConfigDict(env_file=Path(__file__).resolve().parent.parent / ".env", env_file_encoding="utf-8", extra="ignore")


# ── Singleton Instance ─────────────────────────────────────────────────
# Import this throughout the project:
#     from aikb.config.settings import settings
settings = Settings()
