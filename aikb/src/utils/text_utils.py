"""
AIKB - Text Utilities
======================
Helper functions for text cleaning, normalisation, and front-matter
metadata extraction.

These utilities are consumed primarily by the ``IngestionPipeline``
and should remain stateless and side-effect-free.
"""

from __future__ import annotations

import re
import unicodedata
from pathlib import Path
from typing import Any

import yaml

from aikb.src.utils.logger import get_logger

logger = get_logger(__name__)

# ── Non-printable character pattern ────────────────────────────────────
# Matches control characters (C0/C1), except \n, \r, \t which we handle
# separately. Also catches BOM, zero-width chars, soft hyphens, etc.
_NON_PRINTABLE_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f\ufeff\u200b\u200c\u200d\u200e\u200f\u00ad\u2060\ufffe]")

# ── Front-matter block ─────────────────────────────────────────────────
# A YAML header delimited by "---" lines at the very top of the document.
_FRONT_MATTER_RE = re.compile(r"\A---[ \t]*\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|\Z)", re.DOTALL)

DocumentMetadata = dict[str, Any]


# ── Public API ─────────────────────────────────────────────────────────

def clean_text(text: str) -> str:
    """
    Sanitise raw document text for embedding.

    Steps:
        1. Unicode NFC normalisation (canonical composition).
        2. Strip non-printable / zero-width characters and formatting
           artifacts (BOM, soft hyphens, directional marks).
        3. Collapse runs of horizontal whitespace (spaces, tabs,
           non-breaking spaces) into a single space, *preserving*
           newlines.
        4. Strip leading / trailing whitespace from every line.
        5. Collapse 3+ consecutive blank lines to 2, so paragraph
           breaks survive as ``\\n\\n`` for the chunker.

    Args:
        text: Raw text extracted from a source file.

    Returns:
        Cleaned, normalised text ready for chunking.
    """
    text = unicodedata.normalize("NFC", text)
    text = _NON_PRINTABLE_RE.sub("", text)
    text = re.sub(r"[^\S\n]+", " ", text)
    lines = [line.strip() for line in text.splitlines()]
    text = "\n".join(lines)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def extract_front_matter(text: str) -> tuple[DocumentMetadata, str]:
    """
    Split a document into its YAML front-matter fields and its body.

    The header must open on the very first line::

        ---
        title: Travel Policy
        department: Finance
        sensitivity: CONFIDENTIAL
        ---
        Body text …

    A top-level ``METADATA:`` key is unwrapped, so both flat headers and
    ``METADATA:``-nested headers yield the same field set.

    Extraction never aborts ingestion: an absent header, invalid YAML, or
    a header that is not a mapping all return ``({}, text)`` unchanged.

    Args:
        text: Full document text.

    Returns:
        ``(metadata, body)``; body is stripped when a header was removed.
    """
    match = _FRONT_MATTER_RE.match(text)
    if match is None:
        return {}, text

    try:
        parsed = yaml.safe_load(match.group(1))
    except yaml.YAMLError as exc:
        logger.warning("[META] Malformed front-matter header ignored: %s", exc.__class__.__name__)
        return {}, text

    if isinstance(parsed, dict) and isinstance(parsed.get("METADATA"), dict):
        parsed = parsed["METADATA"]

    if not isinstance(parsed, dict):
        logger.warning("[META] Front-matter header is not a key/value mapping — ignored.")
        return {}, text

    metadata: DocumentMetadata = {str(k): v for k, v in parsed.items()}
    body = text[match.end():].strip()
    return metadata, body


def title_from_filename(filename: str) -> str:
    """
    Derive a human-readable title from a file name.

    Examples::

        "travel_policy-2024.md"  → "Travel Policy 2024"
        "README.txt"             → "Readme"
    """
    stem = Path(filename).stem
    words = re.split(r"[\s_\-]+", stem)
    return " ".join(w.capitalize() for w in words if w) or "Untitled"
