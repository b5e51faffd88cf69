"""
kbchat - Service Wiring
========================
Builds the production object graph once (Gemini clients, LanceDB chunk
store, Mongo repositories, pipelines) for the API and the CLI scripts.
"""

from __future__ import annotations

from kbchat.src.core.ingestor import IngestionPipeline
from kbchat.src.core.rag_engine import RAGManager
from kbchat.src.core.retriever import QueryRewriter, SimilarityRetriever
from kbchat.src.core.usage import UsageAccountant
from kbchat.src.database.mongo_store import MongoChatbotRepository, MongoKnowledgeRepository, MongoMessageRepository, MongoUsageRepository
from kbchat.src.database.repositories import ChunkRepository
from kbchat.src.database.vector_store import ChunkVectorStore
from kbchat.src.providers.embedding_client import EmbeddingClient
from kbchat.src.providers.generation_client import GenerationClient
from kbchat.src.utils.logger import get_logger

logger = get_logger(__name__)


class Services:
    """The two pipelines plus the chunk store they share."""

    __slots__ = ("rag", "ingestion", "chunk_store")

    def __init__(self, rag: RAGManager, ingestion: IngestionPipeline, chunk_store: ChunkRepository) -> None:
        self.rag = rag
        self.ingestion = ingestion
        self.chunk_store = chunk_store


def build_services() -> Services:
    embedder = EmbeddingClient()
    generator = GenerationClient()
    chunk_store = ChunkVectorStore()

    chatbots = MongoChatbotRepository()
    accountant = UsageAccountant(MongoUsageRepository())

    retriever = SimilarityRetriever(embedder, chunk_store, rewriter=QueryRewriter(generator))
    rag = RAGManager(chatbots, MongoMessageRepository(), retriever, generator, accountant)
    ingestion = IngestionPipeline(embedder, chunk_store, MongoKnowledgeRepository(), chatbots, accountant)

    logger.info("Services ready (llm=%s, embedding=%s).", generator.model, embedder.model)
    return Services(rag, ingestion, chunk_store)
