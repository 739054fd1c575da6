"""
AIKB - Chunker
===============
Splits document text into ordered, overlapping chunks for embedding.

Boundaries are chosen by a separator hierarchy (paragraph break,
line break, sentence end, word) and fall back to a hard slice when no
separator lands inside the window.  Every chunk is a verbatim slice of
the (trimmed) input, so nothing is ever lost:

    text == chunks[0] + chunks[1][overlap:] + chunks[2][overlap:] + …

and for ``overlap_size > 0`` the last ``overlap_size`` characters of
chunk *i* are exactly the first ``overlap_size`` characters of chunk
*i + 1*.

When the overlap is comparable to the natural paragraph size, a
separator boundary is only accepted if it still moves the window
forward (``boundary > start + overlap``); otherwise the next separator
level is tried, down to the hard slice.  The output is therefore fully
determined by ``(text, max_chunk_size, overlap_size)``.
"""

from __future__ import annotations

from collections.abc import Sequence

from aikb.src.core.models import Chunk

# Preferred split points, strongest first.  The separator stays at the
# end of the chunk it closes.
_SEPARATORS: tuple[str, ...] = ("\n\n", "\n", ". ", " ")


def chunk(text: str, max_chunk_size: int, overlap_size: int = 0) -> list[str]:
    """
    Split *text* into overlapping chunks of at most *max_chunk_size* characters.

    Args:
        text:           Raw document body.
        max_chunk_size: Upper bound for every chunk's length.
        overlap_size:   Characters of chunk *i* repeated at the start of
                        chunk *i + 1*.

    Returns:
        Chunks in source order.  Empty input yields ``[]``; input that
        fits in one chunk yields ``[text.strip()]``.

    Raises:
        ValueError: ``max_chunk_size < 1``, ``overlap_size < 0`` or
                    ``overlap_size >= max_chunk_size``.
    """
    _validate(max_chunk_size, overlap_size)

    text = text.strip()
    if not text:
        return []
    if len(text) <= max_chunk_size:
        return [text]

    chunks: list[str] = []
    length = len(text)
    start = 0

    while length - start > max_chunk_size:
        end = _find_boundary(text, start, start + max_chunk_size, min_end=start + overlap_size + 1)
        chunks.append(text[start:end])
        start = end - overlap_size

    chunks.append(text[start:])
    return chunks


def build_chunks(document_id: str, texts: Sequence[str]) -> list[Chunk]:
    """Wrap chunk texts as ``Chunk`` models with deterministic ids."""
    return [
        Chunk(id=f"{document_id}_{idx}", document_id=document_id, sequence_index=idx, text=piece)
        for idx, piece in enumerate(texts)
    ]


# ── Internals ──────────────────────────────────────────────────────────


def _validate(max_chunk_size: int, overlap_size: int) -> None:
    if max_chunk_size < 1:
        raise ValueError(f"max_chunk_size must be ≥ 1, got {max_chunk_size}")
    if overlap_size < 0:
        raise ValueError(f"overlap_size must be ≥ 0, got {overlap_size}")
    if overlap_size >= max_chunk_size:
        raise ValueError(f"overlap_size ({overlap_size}) must be smaller than max_chunk_size ({max_chunk_size})")


def _find_boundary(text: str, start: int, limit: int, min_end: int) -> int:
    """Return the end index of the chunk starting at *start* (``min_end <= end <= limit``)."""
    for sep in _SEPARATORS:
        idx = text.rfind(sep, start, limit)
        if idx == -1:
            continue
        end = idx + len(sep)
        if end >= min_end:
            return end
    return limit
