"""
AIKB - Container
=================
Builds the object graph once, at start-up.

Capabilities are chosen here, never by inspecting types at run time:

=================  ===============================  ==========================
Capability         ``GOOGLE_API_KEY`` / ``MONGO_URI``  Fallback
=================  ===============================  ==========================
Embeddings         ``GeminiEmbeddingGateway``       ``StubEmbeddingGateway``
Generation         ``GeminiAnswerGenerator``        ``StubAnswerGenerator``
Audit              ``MongoAuditSink``               ``LoggingAuditSink``
=================  ===============================  ==========================

The vector store is ``LanceVectorStore`` unless ``in_memory=True``.
"""

from __future__ import annotations

from dataclasses import dataclass

from aikb.config.settings import Settings, settings as default_settings
from aikb.src.core.embedder import EmbeddingGateway, GeminiEmbeddingGateway, StubEmbeddingGateway
from aikb.src.core.generator import AnswerGenerator, GeminiAnswerGenerator, StubAnswerGenerator
from aikb.src.core.ingestor import IngestionPipeline
from aikb.src.core.rag_engine import RAGManager
from aikb.src.database.audit_log import AuditSink, LoggingAuditSink, MongoAuditSink
from aikb.src.database.vector_store import InMemoryVectorStore, LanceVectorStore
from aikb.src.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class Container:
    embedder: EmbeddingGateway
    store: LanceVectorStore | InMemoryVectorStore
    generator: AnswerGenerator
    audit_sink: AuditSink
    rag: RAGManager


    def ingestion_pipeline(self, **kwargs) -> IngestionPipeline:
        return IngestionPipeline(self.store, self.embedder, **kwargs)


def build_container(config: Settings | None = None, *, in_memory: bool = False) -> Container:
    """Wire every capability from *config* (defaults to the global ``settings``)."""
    config = config or default_settings

    if config.GOOGLE_API_KEY is not None:
        api_key = config.GOOGLE_API_KEY.get_secret_value()
        embedder: EmbeddingGateway = GeminiEmbeddingGateway(api_key, config.EMBEDDING_MODEL)
        generator: AnswerGenerator = GeminiAnswerGenerator(api_key, config.LLM_MODEL)
    else:
        logger.warning("GOOGLE_API_KEY not set — using deterministic stub embedder and generator.")
        embedder = StubEmbeddingGateway(config.EMBEDDING_DIM)
        generator = StubAnswerGenerator()

    if config.MONGO_URI is not None:
        audit_sink: AuditSink = MongoAuditSink(config.MONGO_URI.get_secret_value(), config.MONGO_DB_NAME, config.AUDIT_COLLECTION)
    else:
        logger.info("MONGO_URI not set — audit entries go to the log.")
        audit_sink = LoggingAuditSink()

    if in_memory:
        store: LanceVectorStore | InMemoryVectorStore = InMemoryVectorStore()
    else:
        store = LanceVectorStore(str(config.LANCEDB_PATH), config.LANCEDB_TABLE_NAME, config.EMBEDDING_DIM)

    rag = RAGManager(embedder, store, generator, audit_sink)
    return Container(embedder=embedder, store=store, generator=generator, audit_sink=audit_sink, rag=rag)
