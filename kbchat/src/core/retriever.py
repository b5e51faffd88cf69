"""
kbchat - Similarity Retriever
==============================
Query → (optional rewrite) → query embedding → scoped vector search,
with a keyword fallback.

Failure policy
--------------
* ``ConfigurationError`` from embedding or search propagates.
* Any other failure, and an empty vector result, falls back to keyword
  search over the chatbot's chunks (embedded or not), limited to
  ``settings.FALLBACK_SEARCH_LIMIT`` unscored matches.
* The query rewrite is best effort and never raises.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol

from kbchat.config.prompt_templates import REWRITE_PROMPT
from kbchat.config.settings import settings
from kbchat.src.core.errors import ConfigurationError, TransientRetrievalError
from kbchat.src.core.models import RetrievedChunk
from kbchat.src.database.repositories import ChunkRepository
from kbchat.src.utils.logger import get_logger, timed

logger = get_logger(__name__)

_REWRITE_TEMPERATURE = 0.0
_REWRITE_MAX_TOKENS = 100


class QueryEmbedder(Protocol):
    async def embed_query(self, text: str) -> list[float]: ...


class QueryRewriter:
    """
    Turns a chat message into a search-optimised query.

    ``rewrite_or_identity`` returns the original query whenever
    rewriting is disabled, fails, or produces nothing usable.
    """

    __slots__ = ("_generator", "_enabled")

    def __init__(self, generator, enabled: bool | None = None) -> None:
        self._generator = generator
        self._enabled = settings.ENABLE_QUERY_REWRITE if enabled is None else enabled


    async def rewrite_or_identity(self, query: str) -> str:
        if not self._enabled or self._generator is None:
            return query
        try:
            completion = await self._generator.complete(REWRITE_PROMPT, query, temperature=_REWRITE_TEMPERATURE, max_tokens=_REWRITE_MAX_TOKENS)
        except Exception as exc:
            logger.warning("[RETRIEVER] Query rewrite failed (%s) — using the original query.", exc)
            return query

        lines = [line.strip().strip('"') for line in completion.text.splitlines() if line.strip()]
        if not lines:
            return query
        if completion.usage is not None:
            logger.debug("[RETRIEVER] Rewrite used %d token(s).", completion.usage.total_tokens)
        logger.info("[RETRIEVER] Rewrote query %r → %r", query, lines[0])
        return lines[0]


def rank_chunks(chunks: Iterable[RetrievedChunk], threshold: float, top_k: int) -> list[RetrievedChunk]:
    """Keep scored chunks at or above *threshold*, best first, ties by ``chunk_index``."""
    kept = [c for c in chunks if c.similarity is not None and c.similarity >= threshold]
    kept.sort(key=lambda c: (-c.similarity, c.chunk_index if c.chunk_index is not None else 0))
    return kept[:top_k]


class SimilarityRetriever:
    """
    Ranked chunk retrieval for one chatbot.

    Parameters
    ----------
    embedder
        Anything with ``embed_query`` (normally ``EmbeddingClient``).
    store
        Chunk repository providing ``similarity_search`` and ``text_search``.
    rewriter
        Optional ``QueryRewriter``; ``None`` searches with the raw query.
    fallback_limit
        Keyword-fallback result cap; defaults to ``settings.FALLBACK_SEARCH_LIMIT``.
    """

    __slots__ = ("_embedder", "_store", "_rewriter", "_fallback_limit")

    def __init__(self, embedder: QueryEmbedder, store: ChunkRepository, rewriter: QueryRewriter | None = None, fallback_limit: int | None = None) -> None:
        self._embedder = embedder
        self._store = store
        self._rewriter = rewriter
        self._fallback_limit = fallback_limit or settings.FALLBACK_SEARCH_LIMIT


    async def retrieve(self, query: str, chatbot_id: str, *, threshold: float, top_k: int) -> list[RetrievedChunk]:
        search_query = await self._rewriter.rewrite_or_identity(query) if self._rewriter else query

        try:
            with timed(logger, "[RETRIEVER] Vector search"):
                hits = await self._vector_search(search_query, chatbot_id, threshold, top_k)
        except TransientRetrievalError as exc:
            logger.warning("[RETRIEVER] %s — falling back to keyword search.", exc)
            return await self._fallback(query, chatbot_id)

        if not hits:
            logger.info("[RETRIEVER] No chunk ≥ %.2f for chatbot %s — falling back to keyword search.", threshold, chatbot_id)
            return await self._fallback(query, chatbot_id)

        logger.info("[RETRIEVER] %d chunk(s) retrieved (best %.3f).", len(hits), hits[0].similarity)
        return hits


    async def _vector_search(self, query: str, chatbot_id: str, threshold: float, top_k: int) -> list[RetrievedChunk]:
        try:
            vector = await self._embedder.embed_query(query)
            hits = await self._store.similarity_search(chatbot_id, vector, threshold, top_k)
        except ConfigurationError:
            raise
        except Exception as exc:
            raise TransientRetrievalError(f"Vector search failed: {exc}") from exc
        return rank_chunks(hits, threshold, top_k)


    async def _fallback(self, query: str, chatbot_id: str) -> list[RetrievedChunk]:
        try:
            matches = await self._store.text_search(chatbot_id, query, self._fallback_limit)
        except Exception:
            logger.exception("[RETRIEVER] Keyword fallback failed for chatbot %s.", chatbot_id)
            return []
        matches = [RetrievedChunk(content=m.content, similarity=None, chunk_index=m.chunk_index, source_url=m.source_url) for m in matches[: self._fallback_limit]]
        logger.info("[RETRIEVER] Keyword fallback returned %d chunk(s).", len(matches))
        return matches
