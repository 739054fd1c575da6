"""
AIKB - Ask the Knowledge Base
==============================
Runs one question through the full RAG pipeline and prints the answer,
its sources and the integrity check.

Usage:
    python -m aikb.scripts.ask "How many vacation days do I get?"
    python -m aikb.scripts.ask --department HR --role EDITOR "…"
    python -m aikb.scripts.ask --json "…"
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

from aikb.src.core.container import build_container
from aikb.src.core.errors import RAGPipelineError, ValidationError
from aikb.src.core.models import QueryRequest, UserProfile


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="ask", description="AIKB — Ask the knowledge base a question.")
    parser.add_argument("question", help="The question to answer.")
    parser.add_argument("--user", default="cli-user", help="User id recorded in the audit log.")
    parser.add_argument("--name", default="CLI User", help="Display name passed to the model.")
    parser.add_argument("--department", default="General", help="Department used for access filtering.")
    parser.add_argument("--role", default="VIEWER", help="Role used for access filtering (ADMIN sees everything).")
    parser.add_argument("--json", action="store_true", default=False, help="Print the raw response payload as JSON.")
    return parser.parse_args(argv)


async def _ask(args: argparse.Namespace) -> int:
    container = build_container()
    request = QueryRequest(query_text=args.question, user_id=args.user, user_profile=UserProfile(name=args.name, department=args.department, role=args.role))

    try:
        result = await container.rag.query(request)
    except ValidationError as exc:
        print(f"[INVALID] {exc}")
        return 2
    except RAGPipelineError as exc:
        print(json.dumps(exc.to_response(), indent=2) if args.json else f"[{exc.kind.value}] {exc.public_message}")
        return 1

    if args.json:
        print(json.dumps(result.to_response(), indent=2, ensure_ascii=False))
        return 0

    print()
    print("=" * 60)
    print(result.answer)
    print("=" * 60)
    for i, source in enumerate(result.sources, 1):
        print(f"  [{i}] {source.title}  (doc={source.doc_id}, score={source.score:.3f})")
    print("-" * 60)
    print(f"  Confidence : {result.confidence}")
    print(f"  Integrity  : {result.integrity.integrity_score:.2f} ({result.integrity.verified_quote_count} verified, {result.integrity.hallucinated_quote_count} unverified)")
    print(f"  Tokens     : {result.usage.total_tokens} (context {result.usage.context_tokens})")
    if result.integrity.warning:
        print(f"  Warning    : {result.integrity.warning}")
    print()
    return 0


def main(argv: list[str] | None = None) -> int:
    return asyncio.run(_ask(_parse_args(argv)))


if __name__ == "__main__":
    sys.exit(main())
