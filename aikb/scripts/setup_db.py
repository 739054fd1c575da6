"""
AIKB - Knowledge Base Loader
=============================
Fills (or refills) the LanceDB chunk table from ``DATA_RAW_DIR``.

Steps: validate settings, wire the container, optionally reset the
table and/or hash cache, ingest, then report what the store now holds
per document.

Options
-------
``--drop``        reset the table, keep the hash cache
``--purge``       reset the table and the hash cache
``--drop-only``   reset the table and stop
``--source DIR``  ingest *DIR* instead of ``DATA_RAW_DIR``

Exit status is ``0`` on success, ``1`` on a configuration error and
``2`` when at least one file failed to ingest.

Usage:
    aikb-setup-db --purge
    python -m aikb.scripts.setup_db --source ./handbook
"""

from __future__ import annotations

import argparse
import sys
import time
from pathlib import Path

from pydantic import ValidationError


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="aikb-setup-db", description="Load documents into the AIKB vector store.")
    reset = parser.add_mutually_exclusive_group()
    reset.add_argument("--drop", action="store_true", help="Reset the chunk table before ingesting; unchanged files stay cached.")
    reset.add_argument("--purge", action="store_true", help="Reset the chunk table and the hash cache, re-ingesting everything.")
    reset.add_argument("--drop-only", action="store_true", help="Reset the chunk table and exit.")
    parser.add_argument("--source", type=Path, default=None, help="Directory to ingest (default: DATA_RAW_DIR).")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    started = time.perf_counter()

    try:
        from aikb.config.settings import settings
    except ValidationError as exc:
        print(f"[FATAL] Invalid configuration:\n{exc}", file=sys.stderr)
        return 1

    from aikb.src.core.container import build_container
    from aikb.src.utils.logger import get_logger

    logger = get_logger(__name__)
    container = build_container(settings)
    store = container.store
    source = args.source or settings.DATA_RAW_DIR
    print(f"[SETUP] env={settings.ENV} store={store!r} source={source} embeddings={'gemini' if settings.GOOGLE_API_KEY else 'stub'}")

    pipeline = container.ingestion_pipeline(source_dir=source)

    if args.drop or args.purge or args.drop_only:
        logger.warning("[SETUP] Resetting table '%s'.", settings.LANCEDB_TABLE_NAME)
        store.drop_table()
        if args.purge:
            pipeline.clear_hash_cache()
        if args.drop_only:
            return 0

    summary = pipeline.run()
    _report(summary, store.get_all_metadata(), time.perf_counter() - started)
    return 2 if summary["files_failed"] else 0


def _report(summary: dict, documents: dict[str, dict[str, str]], elapsed: float) -> None:
    print()
    print(f"[SETUP] {summary['files_processed']}/{summary['total_files']} file(s) ingested, {summary['files_skipped']} cached, {summary['files_failed']} failed, {summary['total_chunks']} chunk(s) written in {elapsed:.2f}s")
    if not documents:
        print("[SETUP] The store is empty.")
        return

    width = max(len(doc_id) for doc_id in documents)
    print(f"  {'document'.ljust(width)}  chunks  sensitivity   department")
    for doc_id, meta in sorted(documents.items()):
        print(f"  {doc_id.ljust(width)}  {meta.get('chunk_count', '?'):>6}  {meta.get('sensitivity', ''):<12}  {meta.get('department') or '-'}")


if __name__ == "__main__":
    sys.exit(main())
