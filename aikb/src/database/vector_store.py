"""
AIKB - Vector Store
====================
Chunk storage and similarity search behind two narrow protocols:

``SimilarityRetriever``
    ``search(vector, top_k, filters)``: the only thing the query
    pipeline needs.  Scores are cosine similarities (higher = more
    relevant); an empty list is a valid answer.

``MetadataStore``
    ``get_all_metadata`` / ``delete_document`` / ``upsert`` /
    ``replace_document`` / ``get_vector_count``, owned by ingestion.

Implementations:

``LanceVectorStore``
    LanceDB table with a strict PyArrow schema.  Re-ingesting a document
    goes through ``merge_insert`` with ``when_not_matched_by_source_delete``
    scoped to that document, so the old and new chunk sets are swapped in
    one table commit and never coexist for a reader.

``InMemoryVectorStore``
    Dict-backed, brute-force cosine search.  Writes swap the record set
    under a lock; searches work on a snapshot.

Access filters
--------------
``filters = {"department": ..., "role": ...}`` hides documents the user
may not see: ``ADMIN`` sees everything; otherwise a document is visible
when its department is empty, ``General``, or the user's own, and its
``roles`` list (comma-separated, empty = everyone) contains the user's
role or ``VIEWER``.

A search without both a department and a role is rejected and returns
no matches.  Backend failures surface as ``UpstreamError("retrieval")``.
"""

from __future__ import annotations

import asyncio
import heapq
import math
import threading
from collections.abc import Mapping, Sequence
from typing import Protocol, runtime_checkable

import lancedb
import pyarrow as pa

from aikb.config.settings import settings
from aikb.src.core.errors import UpstreamError
from aikb.src.core.models import Chunk, RetrievedMatch
from aikb.src.utils.logger import get_logger

logger = get_logger(__name__)

# ── Type Aliases ──────────────────────────────────────────────────────
DocumentMetadata = dict[str, str]
AccessFilters = Mapping[str, str]
ChunkRecord = dict[str, str | int | list[float]]

_METADATA_FIELDS = ("title", "department", "sensitivity", "roles", "source_file")
_PUBLIC_DEPARTMENTS = {"", "general"}


# ── Protocols ─────────────────────────────────────────────────────────

@runtime_checkable
class SimilarityRetriever(Protocol):
    async def search(self, vector: Sequence[float], top_k: int, filters: AccessFilters | None = None) -> list[RetrievedMatch]: ...


@runtime_checkable
class MetadataStore(Protocol):
    def get_all_metadata(self) -> dict[str, DocumentMetadata]: ...

    def delete_document(self, document_id: str) -> int: ...

    def upsert(self, chunks: Sequence[Chunk], metadata: DocumentMetadata) -> int: ...

    def replace_document(self, document_id: str, chunks: Sequence[Chunk], metadata: DocumentMetadata) -> int: ...

    def get_vector_count(self) -> int: ...


# ── Shared helpers ────────────────────────────────────────────────────

def has_security_filters(filters: AccessFilters | None) -> bool:
    """A search must name both the caller's department and role."""
    return bool(filters and filters.get("department") and filters.get("role"))


def is_visible(metadata: Mapping[str, str], filters: AccessFilters | None) -> bool:
    """Apply the department / role access rules to one document's metadata.  No filters, no access."""
    if not has_security_filters(filters):
        return False
    role = filters["role"].upper()
    if role == "ADMIN":
        return True

    doc_department = (metadata.get("department") or "").strip()
    department_ok = doc_department.lower() in _PUBLIC_DEPARTMENTS or doc_department == filters.get("department")

    doc_roles = {r.strip().upper() for r in (metadata.get("roles") or "").split(",") if r.strip()}
    role_ok = not doc_roles or role in doc_roles or "VIEWER" in doc_roles

    return department_ok and role_ok


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


def _to_records(chunks: Sequence[Chunk], metadata: Mapping[str, str]) -> list[ChunkRecord]:
    records: list[ChunkRecord] = []
    for chunk in chunks:
        if chunk.embedding is None:
            raise ValueError(f"Chunk '{chunk.id}' has no embedding — embed before storing.")
        record: ChunkRecord = {"id": chunk.id, "document_id": chunk.document_id, "sequence_index": chunk.sequence_index, "text": chunk.text, "vector": list(chunk.embedding)}
        for field in _METADATA_FIELDS:
            record[field] = str(metadata.get(field) or "")
        records.append(record)
    return records


def _to_match(record: Mapping[str, object], score: float) -> RetrievedMatch:
    return RetrievedMatch(
        chunk_id=str(record["id"]),
        document_id=str(record["document_id"]),
        title=str(record.get("title") or "Untitled"),
        score=score,
        text=str(record.get("text") or ""),
        department=str(record.get("department") or "") or None,
        sensitivity=str(record.get("sensitivity") or "") or None,
    )


def _sql_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


# ══════════════════════════════════════════════════════════════════════
#  LANCEDB
# ══════════════════════════════════════════════════════════════════════


def build_schema(dimension: int) -> pa.Schema:
    """PyArrow schema of the chunk table for embeddings of *dimension*."""
    return pa.schema([
        pa.field("id", pa.utf8()),
        pa.field("document_id", pa.utf8()),
        pa.field("sequence_index", pa.int32()),
        pa.field("text", pa.utf8()),
        pa.field("vector", pa.list_(pa.float32(), dimension)),
        pa.field("title", pa.utf8()),
        pa.field("department", pa.utf8()),
        pa.field("sensitivity", pa.utf8()),
        pa.field("roles", pa.utf8()),
        pa.field("source_file", pa.utf8()),
    ])


_DB_LOCK = threading.Lock()
_db_connection_cache: dict[str, lancedb.DBConnection] = {}


def _get_connection(db_path: str) -> lancedb.DBConnection:
    """
    Return a **singleton** ``lancedb.DBConnection`` for *db_path*.

    Thread-safe via ``_DB_LOCK``; ingestion workers and the query path
    share one connection per directory.
    """
    if db_path not in _db_connection_cache:
        with _DB_LOCK:
            if db_path not in _db_connection_cache:
                logger.info("Opening new LanceDB connection: %s", db_path)
                _db_connection_cache[db_path] = lancedb.connect(db_path)
    return _db_connection_cache[db_path]


class LanceVectorStore:
    """
    Chunk table in LanceDB.

    Parameters
    ----------
    db_path
        Override the database directory.  Defaults to ``settings.LANCEDB_PATH``.
    table_name
        Override the table name.  Defaults to ``settings.LANCEDB_TABLE_NAME``.
    dimension
        Embedding dimension.  Defaults to ``settings.EMBEDDING_DIM``.
    """

    __slots__ = ("_db_path", "_table_name", "_dimension", "_write_lock", "db", "table")

    def __init__(self, db_path: str | None = None, table_name: str | None = None, dimension: int | None = None) -> None:
        self._db_path: str = str(db_path or settings.LANCEDB_PATH)
        self._table_name: str = table_name or settings.LANCEDB_TABLE_NAME
        self._dimension: int = dimension or settings.EMBEDDING_DIM
        self._write_lock = threading.Lock()
        self.db: lancedb.DBConnection | None = None
        self.table: lancedb.table.Table | None = None
        self._connect()


    def _connect(self) -> None:
        """Open (or re-use) the LanceDB connection and initialise the table."""
        try:
            self.db = _get_connection(self._db_path)
            if self._table_name in self.db.table_names():
                self.table = self.db.open_table(self._table_name)
                logger.info("Opened existing table '%s' (%d rows).", self._table_name, self.table.count_rows())
            else:
                self.table = self.db.create_table(self._table_name, schema=build_schema(self._dimension))
                logger.info("Created new table '%s' (dim=%d).", self._table_name, self._dimension)
        except OSError as exc:
            logger.error("LanceDB filesystem error at %s: %s", self._db_path, exc)
            raise


    def _require_table(self) -> "lancedb.table.Table":
        if self.table is None:
            raise RuntimeError("Vector table is not initialised. Call _connect() first.")
        return self.table

    # ── Writes ─────────────────────────────────────────────────────────

    def upsert(self, chunks: Sequence[Chunk], metadata: DocumentMetadata) -> int:
        """Insert or overwrite chunks by id.  Returns the number written."""
        if not chunks:
            return 0
        table = self._require_table()
        records = _to_records(chunks, metadata)
        with self._write_lock:
            table.merge_insert("id").when_matched_update_all().when_not_matched_insert_all().execute(records)
        logger.info("Upserted %d chunk(s) into '%s'.", len(records), self._table_name)
        return len(records)


    def replace_document(self, document_id: str, chunks: Sequence[Chunk], metadata: DocumentMetadata) -> int:
        """
        Swap every chunk of *document_id* for *chunks* in a single commit.

        Rows of the document that are not in *chunks* are deleted by the
        same ``merge_insert`` that writes the new rows.
        """
        if not chunks:
            self.delete_document(document_id)
            return 0
        if any(c.document_id != document_id for c in chunks):
            raise ValueError(f"All chunks must belong to document '{document_id}'.")

        table = self._require_table()
        records = _to_records(chunks, metadata)
        scope = f"document_id = {_sql_literal(document_id)}"
        with self._write_lock:
            (
                table.merge_insert("id")
                .when_matched_update_all()
                .when_not_matched_insert_all()
                .when_not_matched_by_source_delete(scope)
                .execute(records)
            )
        logger.info("Replaced document '%s' with %d chunk(s).", document_id, len(records))
        return len(records)


    def delete_document(self, document_id: str) -> int:
        table = self._require_table()
        with self._write_lock:
            before = table.count_rows()
            table.delete(f"document_id = {_sql_literal(document_id)}")
            removed = before - table.count_rows()
        logger.info("Deleted document '%s' (%d chunk(s)).", document_id, removed)
        return removed

    # ── Reads ──────────────────────────────────────────────────────────

    async def search(self, vector: Sequence[float], top_k: int, filters: AccessFilters | None = None) -> list[RetrievedMatch]:
        if not has_security_filters(filters):
            logger.warning("[SEARCH] Rejected search without department/role filters.")
            return []
        try:
            return await asyncio.to_thread(self._search_sync, list(vector), top_k, filters)
        except Exception as exc:
            raise UpstreamError("retrieval", f"backend call failed ({type(exc).__name__})") from exc


    def _search_sync(self, vector: list[float], top_k: int, filters: AccessFilters) -> list[RetrievedMatch]:
        table = self._require_table()
        query = table.search(vector).metric("cosine").limit(top_k)

        if filters["role"].upper() != "ADMIN":
            department = filters["department"]
            where_str = f"(department = '' OR lower(department) = 'general' OR department = {_sql_literal(department)})"
            query = query.where(where_str, prefilter=True)
            logger.debug("Searching with department filter (limit=%d).", top_k)

        rows = query.to_list()
        matches = [_to_match(row, 1.0 - float(row.get("_distance", 1.0))) for row in rows if is_visible(row, filters)]
        matches.sort(key=lambda m: m.score, reverse=True)
        logger.info("Search returned %d result(s).", len(matches))
        return matches


    def get_all_metadata(self) -> dict[str, DocumentMetadata]:
        """Per-document metadata plus a ``chunk_count`` field."""
        table = self._require_table()
        columns = ["document_id", *_METADATA_FIELDS]
        rows = table.to_arrow().select(columns).to_pylist()

        documents: dict[str, DocumentMetadata] = {}
        for row in rows:
            doc_id = row["document_id"]
            entry = documents.setdefault(doc_id, {field: row.get(field) or "" for field in _METADATA_FIELDS} | {"chunk_count": "0"})
            entry["chunk_count"] = str(int(entry["chunk_count"]) + 1)
        return documents


    def get_vector_count(self) -> int:
        if self.table is None:
            return 0
        return self.table.count_rows()


    def drop_table(self) -> None:
        """Drop the chunk table and recreate it empty (re-ingestion from scratch)."""
        if self.db is None:
            logger.warning("No database connection; nothing to drop.")
            return
        try:
            self.db.drop_table(self._table_name)
            self.table = None
            logger.info("Dropped table '%s'.", self._table_name)
        except ValueError:
            logger.warning("Table '%s' does not exist — nothing to drop.", self._table_name)
        self._connect()


    def __repr__(self) -> str:
        return f"LanceVectorStore(db='{self._db_path}', table='{self._table_name}', rows={self.get_vector_count()})"


# ══════════════════════════════════════════════════════════════════════
#  IN-MEMORY
# ══════════════════════════════════════════════════════════════════════


class InMemoryVectorStore:
    """Brute-force cosine search over records held in a dict."""

    __slots__ = ("_records", "_lock")

    def __init__(self) -> None:
        self._records: dict[str, ChunkRecord] = {}
        self._lock = threading.Lock()


    def upsert(self, chunks: Sequence[Chunk], metadata: DocumentMetadata) -> int:
        records = _to_records(chunks, metadata)
        with self._lock:
            self._records = {**self._records, **{str(r["id"]): r for r in records}}
        return len(records)


    def replace_document(self, document_id: str, chunks: Sequence[Chunk], metadata: DocumentMetadata) -> int:
        if any(c.document_id != document_id for c in chunks):
            raise ValueError(f"All chunks must belong to document '{document_id}'.")
        records = _to_records(chunks, metadata)
        with self._lock:
            kept = {k: r for k, r in self._records.items() if r["document_id"] != document_id}
            kept.update({str(r["id"]): r for r in records})
            self._records = kept
        return len(records)


    def delete_document(self, document_id: str) -> int:
        with self._lock:
            kept = {k: r for k, r in self._records.items() if r["document_id"] != document_id}
            removed = len(self._records) - len(kept)
            self._records = kept
        return removed


    async def search(self, vector: Sequence[float], top_k: int, filters: AccessFilters | None = None) -> list[RetrievedMatch]:
        if not has_security_filters(filters):
            logger.warning("[SEARCH] Rejected search without department/role filters.")
            return []
        snapshot = self._records
        scored = (
            (cosine_similarity(vector, record["vector"]), record)  # type: ignore[arg-type]
            for record in snapshot.values()
            if is_visible(record, filters)  # type: ignore[arg-type]
        )
        top = heapq.nlargest(top_k, scored, key=lambda item: item[0])
        return [_to_match(record, score) for score, record in top]


    def get_all_metadata(self) -> dict[str, DocumentMetadata]:
        documents: dict[str, DocumentMetadata] = {}
        for record in self._records.values():
            doc_id = str(record["document_id"])
            entry = documents.setdefault(doc_id, {field: str(record.get(field) or "") for field in _METADATA_FIELDS} | {"chunk_count": "0"})
            entry["chunk_count"] = str(int(entry["chunk_count"]) + 1)
        return documents


    def get_vector_count(self) -> int:
        return len(self._records)
