"""
AIKB - IngestionPipeline
=========================
Reads raw documents, splits them into overlapping chunks, and swaps
them into the vector store.

Per document::

    read → front matter → clean → chunk → sensitivity redaction
         → embed (batched) → replace_document

Key design decisions:
    • **Dependency Injection** – receives a ``MetadataStore`` + an
      ``EmbeddingGateway``.
    • **Front matter** – ``title`` / ``department`` / ``sensitivity`` /
      ``roles`` / ``id`` come from the YAML header when present, else
      from the file name and ``settings.DEFAULT_SENSITIVITY``.
    • **Redaction** – key/value fields listed in
      ``settings.REDACTION_RULES`` for the document's sensitivity are
      scrubbed before embedding; the raw values never reach the store.
    • **Atomic re-ingestion** – a changed file replaces all of its
      previous chunks in one ``replace_document`` call.
    • **Concurrency** – files are processed in parallel via
      ``ThreadPoolExecutor`` (embedding calls are I/O-bound).
    • **Caching** – MD5-based file hashing skips unchanged files.

Usage:
    from aikb.src.core.ingestor import IngestionPipeline
    pipeline = IngestionPipeline(vector_store, embedder)
    result   = pipeline.run()
"""

from __future__ import annotations

import hashlib
import json
import re
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Any

from aikb.config.settings import settings
from aikb.src.core.chunker import build_chunks, chunk
from aikb.src.core.embedder import EmbeddingGateway
from aikb.src.core.models import Chunk
from aikb.src.database.vector_store import DocumentMetadata, MetadataStore
from aikb.src.utils.logger import get_logger
from aikb.src.utils.redaction import Redactor
from aikb.src.utils.text_utils import clean_text, extract_front_matter, title_from_filename

logger = get_logger(__name__)

# File extensions the pipeline knows how to read
_SUPPORTED_EXTENSIONS = {".txt", ".md"}

# Texts per embedding request
_EMBED_BATCH_SIZE = 100

_RE_DOC_ID = re.compile(r"[^a-z0-9]+")


def document_id_for(filename: str) -> str:
    """Stable document id derived from a file name (``"HR Policy.md"`` → ``"hr-policy"``)."""
    return _RE_DOC_ID.sub("-", Path(filename).stem.lower()).strip("-") or "document"


class IngestionPipeline:
    """
    End-to-end document ingestion: read → chunk → redact → embed → store.

    Parameters
    ----------
    vector_store
        A ``MetadataStore`` (``LanceVectorStore`` / ``InMemoryVectorStore``).
    embedder
        An ``EmbeddingGateway``; only ``embed_documents`` is used.
    source_dir
        Override the source directory. Defaults to ``settings.DATA_RAW_DIR``.
    max_workers
        Number of parallel threads for file processing.
    hash_cache_path
        Override where the MD5 cache is kept.
    """

    def __init__(self, vector_store: MetadataStore, embedder: EmbeddingGateway, source_dir: Path | None = None, max_workers: int | None = None, hash_cache_path: Path | None = None) -> None:
        self._store = vector_store
        self._embedder = embedder
        self._source_dir = source_dir or settings.DATA_RAW_DIR
        self._max_workers = max_workers or settings.MAX_WORKERS
        self._redactor = Redactor(settings.REDACTION_RULES)

        self._hash_cache_path: Path = hash_cache_path or settings.DATA_PROCESSED_DIR / "ingestion_hashes.json"
        self._hash_cache: dict[str, str] = self._load_hash_cache()
        self._cache_lock = threading.Lock()

    # ══════════════════════════════════════════════════════════════════
    #  PUBLIC ENTRY POINTS
    # ══════════════════════════════════════════════════════════════════

    def run(self) -> dict[str, Any]:
        """
        Ingest every supported file in the source directory.

        Returns
        -------
        dict
            Execution summary with keys:
            ``total_files``, ``files_processed``, ``files_skipped``,
            ``files_failed``, ``total_chunks``, ``elapsed_seconds``.
        """
        t_start = time.perf_counter()
        source = Path(self._source_dir)

        if not source.exists():
            logger.warning("[INGEST] Source directory does not exist: %s", source)
            return self._summary(0, 0, 0, 0, 0, time.perf_counter() - t_start)

        files = sorted(f for f in source.iterdir() if f.is_file() and f.suffix.lower() in _SUPPORTED_EXTENSIONS)
        if not files:
            logger.warning("[INGEST] No supported files found in %s", source)
            return self._summary(0, 0, 0, 0, 0, time.perf_counter() - t_start)

        logger.info("[INGEST] Starting ingestion — %d file(s) found in %s", len(files), source)

        total_chunks = 0
        files_processed = 0
        files_skipped = 0
        files_failed = 0

        with ThreadPoolExecutor(max_workers=self._max_workers) as pool:
            future_to_path = {pool.submit(self._ingest_file, fp): fp for fp in files}

            for future in as_completed(future_to_path):
                filepath = future_to_path[future]
                try:
                    result = future.result()
                except Exception:
                    files_failed += 1
                    logger.exception("[INGEST] Failed to ingest file: %s", filepath.name)
                    continue
                if result == -1:
                    files_skipped += 1
                else:
                    total_chunks += result
                    files_processed += 1

        self._save_hash_cache()

        elapsed = time.perf_counter() - t_start
        logger.info("[INGEST] Complete — %d processed, %d skipped, %d failed, %d chunk(s) stored in %.2fs.", files_processed, files_skipped, files_failed, total_chunks, elapsed)
        return self._summary(len(files), files_processed, files_skipped, files_failed, total_chunks, elapsed)


    def ingest_text(self, raw_text: str, source_file: str, document_id: str | None = None) -> int:
        """
        Ingest one document's text, replacing any earlier version of it.

        Returns
        -------
        int
            Number of chunks now stored for the document.
        """
        metadata_raw, body = extract_front_matter(raw_text)
        metadata = self._build_metadata(metadata_raw, source_file)
        doc_id = document_id or str(metadata_raw.get("id") or "") or document_id_for(source_file)

        cleaned = clean_text(body)
        redacted = self._redactor.redact_document(cleaned, metadata["sensitivity"])

        t_chunk = time.perf_counter()
        pieces = chunk(redacted, settings.CHUNK_SIZE, settings.CHUNK_OVERLAP)
        logger.info("[INGEST] '%s' → %d chunk(s) in %.1fms.", source_file, len(pieces), (time.perf_counter() - t_chunk) * 1000)

        chunks = self._embed(build_chunks(doc_id, pieces))
        return self._store.replace_document(doc_id, chunks, metadata)

    # ══════════════════════════════════════════════════════════════════
    #  PER-FILE PROCESSING
    # ══════════════════════════════════════════════════════════════════

    def _ingest_file(self, filepath: Path) -> int:
        """
        Ingest a single file.

        Returns
        -------
        int
            Number of chunks stored, or ``-1`` if the file was skipped
            (cache hit).
        """
        file_hash = self._compute_file_hash(filepath)
        if self._hash_cache.get(filepath.name) == file_hash:
            logger.info("[INGEST] CACHE_HIT — Skipping unchanged file: %s", filepath.name)
            return -1

        t_file = time.perf_counter()
        raw_text = self._read_file(filepath)
        if not raw_text.strip():
            removed = self._store.delete_document(document_id_for(filepath.name))
            logger.warning("[INGEST] Empty file %s: removed %d stale chunk(s).", filepath.name, removed)
            with self._cache_lock:
                self._hash_cache[filepath.name] = file_hash
            return 0

        stored = self.ingest_text(raw_text, filepath.name)
        logger.info("[INGEST] File '%s' complete in %.1fms.", filepath.name, (time.perf_counter() - t_file) * 1000)

        with self._cache_lock:
            self._hash_cache[filepath.name] = file_hash
        return stored


    def _build_metadata(self, header: dict[str, Any], source_file: str) -> DocumentMetadata:
        roles = header.get("roles") or ""
        if isinstance(roles, (list, tuple)):
            roles = ",".join(str(r) for r in roles)
        return {
            "title": str(header.get("title") or title_from_filename(source_file)),
            "department": str(header.get("department") or ""),
            "sensitivity": str(header.get("sensitivity") or settings.DEFAULT_SENSITIVITY).upper(),
            "roles": str(roles),
            "source_file": source_file,
        }


    def _embed(self, chunks: list[Chunk]) -> list[Chunk]:
        """Attach embeddings, ``_EMBED_BATCH_SIZE`` texts per call."""
        embedded: list[Chunk] = []
        for start in range(0, len(chunks), _EMBED_BATCH_SIZE):
            batch = chunks[start:start + _EMBED_BATCH_SIZE]
            vectors = self._embedder.embed_documents([c.text for c in batch])
            if len(vectors) != len(batch):
                raise RuntimeError(f"Embedding backend returned {len(vectors)} vector(s) for {len(batch)} chunk(s).")
            embedded.extend(c.with_embedding(v) for c, v in zip(batch, vectors))
        return embedded


    @staticmethod
    def _read_file(filepath: Path) -> str:
        """Read a text file (UTF-8, with a Latin-1 fallback)."""
        try:
            return filepath.read_text(encoding="utf-8")
        except UnicodeDecodeError:
            return filepath.read_text(encoding="latin-1")

    # ══════════════════════════════════════════════════════════════════
    #  MD5 CACHING
    # ══════════════════════════════════════════════════════════════════

    @staticmethod
    def _compute_file_hash(filepath: Path) -> str:
        """Return the MD5 hex digest of a file's contents."""
        hasher = hashlib.md5()
        with open(filepath, "rb") as f:
            for block in iter(lambda: f.read(8192), b""):
                hasher.update(block)
        return hasher.hexdigest()

    def _load_hash_cache(self) -> dict[str, str]:
        """Load the hash cache from disk (or return empty dict)."""
        if self._hash_cache_path.exists():
            try:
                return json.loads(self._hash_cache_path.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, OSError):
                logger.warning("[INGEST] Corrupt hash cache — starting fresh.")
        return {}

    def _save_hash_cache(self) -> None:
        """Persist the hash cache to disk."""
        self._hash_cache_path.parent.mkdir(parents=True, exist_ok=True)
        self._hash_cache_path.write_text(json.dumps(self._hash_cache, indent=2, ensure_ascii=False), encoding="utf-8")
        logger.debug("[INGEST] Hash cache saved to %s", self._hash_cache_path)


    def clear_hash_cache(self) -> None:
        """Forget every cached hash (forces a full re-ingest on the next run)."""
        with self._cache_lock:
            self._hash_cache = {}
        if self._hash_cache_path.exists():
            self._hash_cache_path.unlink()

    # ── Summary helper ─────────────────────────────────────────────────

    @staticmethod
    def _summary(total: int, processed: int, skipped: int, failed: int, chunks: int, elapsed: float) -> dict[str, Any]:
        return {
            "total_files": total,
            "files_processed": processed,
            "files_skipped": skipped,
            "files_failed": failed,
            "total_chunks": chunks,
            "elapsed_seconds": round(elapsed, 2),
        }
