"""
AIKB - Embedding Gateway
=========================
Turns text into fixed-length vectors.

Two implementations of the ``EmbeddingGateway`` protocol, selected by
the container at construction time:

``GeminiEmbeddingGateway``
    Network-backed, via LangChain's ``GoogleGenerativeAIEmbeddings``.

``StubEmbeddingGateway``
    Deterministic, offline.  Each word is hashed (SHAKE-256) into a signed
    vector; a text's embedding is the L2-normalised, frequency-weighted
    mean of its word vectors.  Identical texts embed identically and
    texts sharing vocabulary score higher, enough for local runs and
    tests without credentials.

Both expose the async ``embed`` used by the query pipeline and the
batch ``embed_documents`` used by ingestion (which runs in worker
threads).
"""

from __future__ import annotations

import hashlib
import math
import re
from collections import Counter
from typing import Protocol, runtime_checkable

from aikb.config.settings import settings
from aikb.src.core.errors import UpstreamError
from aikb.src.utils.logger import get_logger

logger = get_logger(__name__)

_RE_WORD = re.compile(r"\w+", re.UNICODE)


@runtime_checkable
class EmbeddingGateway(Protocol):
    """Anything that can produce embedding vectors from text."""

    async def embed(self, text: str) -> list[float]: ...

    def embed_documents(self, texts: list[str]) -> list[list[float]]: ...


# ══════════════════════════════════════════════════════════════════════
#  GEMINI (network-backed)
# ══════════════════════════════════════════════════════════════════════


class GeminiEmbeddingGateway:
    """
    Gemini embeddings through ``langchain-google-genai``.

    Backend exceptions are re-raised as ``UpstreamError`` carrying only the
    exception type; the original stays chained for the logs.
    """

    __slots__ = ("_client", "_model")

    def __init__(self, api_key: str, model: str | None = None) -> None:
        from langchain_google_genai import GoogleGenerativeAIEmbeddings

        self._model = model or settings.EMBEDDING_MODEL
        self._client = GoogleGenerativeAIEmbeddings(model=self._model, google_api_key=api_key)
        logger.info("Embedding gateway initialised: %s", self._model)


    async def embed(self, text: str) -> list[float]:
        try:
            vector = await self._client.aembed_query(text)
        except Exception as exc:
            raise UpstreamError("embedding", f"backend call failed ({type(exc).__name__})") from exc
        if not vector:
            raise UpstreamError("embedding", "backend returned an empty vector")
        return list(vector)


    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        try:
            return [list(v) for v in self._client.embed_documents(texts)]
        except Exception as exc:
            raise UpstreamError("embedding", f"batch call failed ({type(exc).__name__})") from exc


# ══════════════════════════════════════════════════════════════════════
#  STUB (deterministic)
# ══════════════════════════════════════════════════════════════════════


class StubEmbeddingGateway:
    """Deterministic word-hash embeddings of dimension *dimension*."""

    __slots__ = ("dimension",)

    def __init__(self, dimension: int | None = None) -> None:
        self.dimension = dimension or settings.EMBEDDING_DIM


    async def embed(self, text: str) -> list[float]:
        return self._combine(text)


    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [self._combine(t) for t in texts]


    def _word_vector(self, word: str) -> list[float]:
        digest = hashlib.shake_256(word.encode("utf-8")).digest(self.dimension)
        return [b / 127.5 - 1.0 for b in digest]


    def _combine(self, text: str) -> list[float]:
        counts = Counter(w.lower() for w in _RE_WORD.findall(text))
        if not counts:
            return [0.0] * self.dimension

        vector = [0.0] * self.dimension
        total = sum(counts.values())
        for word, count in counts.items():
            for idx, value in enumerate(self._word_vector(word)):
                vector[idx] += value * count / total

        norm = math.sqrt(sum(v * v for v in vector)) or 1.0
        return [v / norm for v in vector]
