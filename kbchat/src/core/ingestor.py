"""
kbchat - IngestionPipeline
===========================
Turns a chatbot's knowledge items into stored chunk rows:
clean → chunk → embed (batched) → insert (sub-batched).

Key design decisions:
    • **Dependency Injection** – embedder, chunk store, repositories
      and the usage accountant are all injected.
    • **Sequential batches** – items and their embedding batches are
      processed one after another, with ``EMBED_BATCH_DELAY_SECONDS``
      between batches, so ``chunk_index`` assignment is deterministic.
    • **Bounded rate-limit retry** – delegated to
      ``EmbeddingClient.embed_with_retry``; ``RateLimitExhausted``
      fails the item and the job moves on.
    • **Degraded mode** – a ``ConfigurationError`` in the middle of an
      item stores the rest of its chunks as ``UnembeddedChunk`` rows
      (keyword-searchable only).  The same error before any work starts
      aborts the whole call.
    • **All or nothing per item** – rows go in as sub-batches of at most
      ``INSERT_BATCH_SIZE``; a failed sub-batch deletes the rows already
      written for that item and the item stays unprocessed.

Usage:
    pipeline = IngestionPipeline(embedder, chunk_store, knowledge_repo, chatbot_repo, accountant)
    report   = await pipeline.run_for_chatbot("bot-123")
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Sequence

from pydantic import BaseModel, Field

from kbchat.config.settings import settings
from kbchat.src.core.chunker import ChunkingOptions, chunk_text, validate_chunk_size
from kbchat.src.core.errors import ConfigurationError, KBChatError, NotFoundError, StorageError
from kbchat.src.core.models import EmbeddedChunk, IngestItem, KnowledgeItem, StoredChunk, UnembeddedChunk
from kbchat.src.core.usage import UsageAccountant
from kbchat.src.database.repositories import ChatbotRepository, ChunkRepository, KnowledgeRepository
from kbchat.src.providers.embedding_client import EmbeddingClient
from kbchat.src.providers.genai_client import Sleep
from kbchat.src.utils.logger import get_logger
from kbchat.src.utils.text_utils import chunk_metadata, clean_text

logger = get_logger(__name__)


class IngestionReport(BaseModel):
    """Execution summary of one ingestion call."""

    chatbot_id: str
    items_total: int = 0
    items_processed: int = 0
    items_failed: int = 0
    items_degraded: int = 0
    chunks_created: int = 0
    embeddings_created: int = 0
    tokens_used: int = 0
    errors: dict[str, str] = Field(default_factory=dict)
    elapsed_seconds: float = 0.0


class _ItemOutcome(BaseModel):
    chunks: int = 0
    embeddings: int = 0
    tokens: int = 0
    degraded: bool = False


class IngestionPipeline:
    """
    End-to-end knowledge ingestion for one chatbot at a time.

    Parameters
    ----------
    embedder
        ``EmbeddingClient`` (or a fake with ``ensure_configured``,
        ``embed_with_retry`` and ``model``).
    chunk_store
        Chunk repository rows are written to.
    knowledge_repo / chatbot_repo
        Item and chatbot bookkeeping.
    accountant
        Records the embedding tokens once per call.
    options
        Chunker options; defaults come from settings.
    sleep
        Awaitable sleep for the inter-batch delay.
    """

    __slots__ = ("_embedder", "_store", "_knowledge", "_chatbots", "_accountant", "_options", "_sleep", "_batch_size", "_batch_delay", "_insert_batch_size")

    def __init__(self, embedder: EmbeddingClient, chunk_store: ChunkRepository, knowledge_repo: KnowledgeRepository, chatbot_repo: ChatbotRepository, accountant: UsageAccountant, options: ChunkingOptions | None = None, sleep: Sleep = asyncio.sleep) -> None:
        self._embedder = embedder
        self._store = chunk_store
        self._knowledge = knowledge_repo
        self._chatbots = chatbot_repo
        self._accountant = accountant
        self._options = options or ChunkingOptions()
        self._sleep = sleep
        self._batch_size = settings.EMBED_BATCH_SIZE
        self._batch_delay = settings.EMBED_BATCH_DELAY_SECONDS
        self._insert_batch_size = settings.INSERT_BATCH_SIZE

    # ══════════════════════════════════════════════════════════════════
    #  PUBLIC ENTRY POINTS
    # ══════════════════════════════════════════════════════════════════

    async def run_for_chatbot(self, chatbot_id: str, user_id: str | None = None) -> IngestionReport:
        """
        Ingest every unprocessed knowledge item of *chatbot_id* and move
        the chatbot through ``processing`` to ``ready`` or ``error``.
        """
        chatbot = await self._chatbots.get_chatbot(chatbot_id)
        if chatbot is None:
            raise NotFoundError(f"Chatbot {chatbot_id} not found.")

        await self._chatbots.set_status(chatbot_id, "processing")
        try:
            items = await self._knowledge.list_unprocessed(chatbot_id)
            report = await self.ingest_items(chatbot_id, items, user_id=user_id or chatbot.user_id)
        except Exception:
            await self._chatbots.set_status(chatbot_id, "error", knowledge_base_processed=False)
            raise

        all_failed = report.items_total > 0 and report.items_failed == report.items_total
        await self._chatbots.set_status(chatbot_id, "error" if all_failed else "ready", knowledge_base_processed=report.items_failed == 0)
        return report


    async def add_and_ingest(self, chatbot_id: str, uploads: Sequence[IngestItem], user_id: str | None = None) -> IngestionReport:
        """Persist a pre-collected batch of uploads, then ingest exactly those items."""
        items = [KnowledgeItem(chatbot_id=chatbot_id, content=u.content, content_type=u.content_type, filename=u.filename) for u in uploads]
        await self._knowledge.add_items(items)
        logger.info("[INGEST] Stored %d new knowledge item(s) for chatbot %s.", len(items), chatbot_id)
        if user_id is None:
            chatbot = await self._chatbots.get_chatbot(chatbot_id)
            user_id = chatbot.user_id if chatbot else None
        return await self.ingest_items(chatbot_id, items, user_id=user_id)


    async def ingest_items(self, chatbot_id: str, items: Sequence[KnowledgeItem], user_id: str | None = None) -> IngestionReport:
        """
        Chunk, embed and store *items* sequentially.

        Raises
        ------
        ConfigurationError
            The embedding provider is unusable before any work starts.
        """
        t_start = time.perf_counter()
        report = IngestionReport(chatbot_id=chatbot_id, items_total=len(items))

        if not items:
            logger.info("[INGEST] Chatbot %s has nothing to ingest.", chatbot_id)
            return report

        self._embedder.ensure_configured()
        logger.info("[INGEST] Starting ingestion — %d item(s) for chatbot %s.", len(items), chatbot_id)

        stored_ids: list[str] = []
        for item in items:
            try:
                outcome = await self._ingest_item(item)
            except KBChatError as exc:
                report.items_failed += 1
                report.errors[item.id] = str(exc)
                logger.error("[INGEST] Item %s failed: %s", item.id, exc)
                await self._mark_failed(item, str(exc))
                continue
            except Exception as exc:
                report.items_failed += 1
                report.errors[item.id] = f"Unexpected error: {exc}"
                logger.exception("[INGEST] Item %s failed unexpectedly.", item.id)
                await self._mark_failed(item, str(exc))
                continue

            stored_ids.append(item.id)
            report.chunks_created += outcome.chunks
            report.embeddings_created += outcome.embeddings
            report.tokens_used += outcome.tokens
            report.items_degraded += int(outcome.degraded)

        for item_id in stored_ids:
            await self._knowledge.mark_processed(item_id)
        report.items_processed = len(stored_ids)

        if report.tokens_used > 0:
            await self._accountant.record_tokens(user_id=user_id, tokens=report.tokens_used, metadata={"chatbot_id": chatbot_id, "model": self._embedder.model, "processing_type": "training", "items_processed": report.items_processed, "chunks_created": report.chunks_created, "embeddings_created": report.embeddings_created})

        report.elapsed_seconds = round(time.perf_counter() - t_start, 3)
        logger.info("[INGEST] Ingestion complete — %d processed, %d failed, %d degraded, %d chunk(s), %d token(s) in %.2fs.", report.items_processed, report.items_failed, report.items_degraded, report.chunks_created, report.tokens_used, report.elapsed_seconds)
        return report

    # ══════════════════════════════════════════════════════════════════
    #  PER-ITEM PROCESSING
    # ══════════════════════════════════════════════════════════════════

    async def _ingest_item(self, item: KnowledgeItem) -> _ItemOutcome:
        t_item = time.perf_counter()
        cleaned = clean_text(item.content)
        chunks = chunk_text(cleaned, self._options)
        validate_chunk_size(chunks, self._options.max_length, self._options.overlap_length)

        if not chunks:
            logger.warning("[INGEST] Item %s has no content after cleaning — marking processed.", item.id)
            return _ItemOutcome()

        rows, outcome = await self._embed_chunks(item, chunks, len(cleaned))
        await self._insert_rows(item.id, rows)
        outcome.chunks = len(rows)

        logger.info("[INGEST] Item %s → %d chunk(s), %d embedded in %.1fms.", item.id, outcome.chunks, outcome.embeddings, (time.perf_counter() - t_item) * 1000)
        return outcome


    async def _embed_chunks(self, item: KnowledgeItem, chunks: list[str], original_length: int) -> tuple[list[StoredChunk], _ItemOutcome]:
        outcome = _ItemOutcome()
        rows: list[StoredChunk] = []

        for start in range(0, len(chunks), self._batch_size):
            batch = chunks[start : start + self._batch_size]

            if not outcome.degraded:
                try:
                    result = await self._embedder.embed_with_retry(batch)
                except ConfigurationError as exc:
                    logger.warning("[INGEST] Embedding provider unavailable mid-item %s (%s) — storing remaining chunks without vectors.", item.id, exc)
                    outcome.degraded = True
                else:
                    outcome.tokens += result.tokens_used
                    outcome.embeddings += len(result.vectors)
                    for offset, (text, vector) in enumerate(zip(batch, result.vectors)):
                        rows.append(EmbeddedChunk(embedding=vector, **self._row_fields(item, text, start + offset, original_length)))
                    if start + self._batch_size < len(chunks):
                        await self._sleep(self._batch_delay)
                    continue

            for offset, text in enumerate(batch):
                rows.append(UnembeddedChunk(**self._row_fields(item, text, start + offset, original_length)))

        return rows, outcome


    async def _insert_rows(self, item_id: str, rows: list[StoredChunk]) -> None:
        # Earlier partial attempts for this item must not leave duplicate indexes
        await self._store.delete_item_chunks(item_id)

        written = 0
        try:
            for start in range(0, len(rows), self._insert_batch_size):
                written += await self._store.insert_chunks(rows[start : start + self._insert_batch_size])
        except Exception as exc:
            logger.error("[INGEST] Insert failed for item %s after %d row(s) — rolling back.", item_id, written)
            try:
                await self._store.delete_item_chunks(item_id)
            except Exception:
                logger.exception("[INGEST] Rollback of item %s failed.", item_id)
            raise StorageError(f"Chunk insert failed: {exc}") from exc


    @staticmethod
    def _row_fields(item: KnowledgeItem, text: str, index: int, original_length: int) -> dict:
        return {"chatbot_id": item.chatbot_id, "knowledge_base_id": item.id, "content": text, "chunk_index": index, "source_url": item.source_url, "metadata": chunk_metadata(item.content_type, original_length, text)}


    async def _mark_failed(self, item: KnowledgeItem, message: str) -> None:
        try:
            await self._knowledge.mark_failed(item.id, message)
        except Exception:
            logger.exception("[INGEST] Could not record failure of item %s.", item.id)
