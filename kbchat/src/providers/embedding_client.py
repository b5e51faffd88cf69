"""
kbchat - Embedding Client
==========================
Wraps Gemini ``embed_content`` for document batches and single queries.

Rate limiting
-------------
``embed_with_retry`` retries a batch that came back 429 with exponential
backoff (``RATE_LIMIT_BACKOFF_SECONDS * 2**(attempt-1)``, capped at
``RATE_LIMIT_BACKOFF_MAX_SECONDS``) and gives up with
``RateLimitExhausted`` after ``RATE_LIMIT_MAX_ATTEMPTS`` attempts, so a
permanently throttled batch fails its knowledge item instead of
stalling the job.

Usage:
    client = EmbeddingClient()
    batch  = await client.embed_with_retry(["chunk one", "chunk two"])
    batch.vectors, batch.tokens_used
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence

from google.genai import types
from pydantic import BaseModel

from kbchat.config.settings import settings
from kbchat.src.core.errors import ProviderError, RateLimitError, RateLimitExhausted
from kbchat.src.core.usage import estimate_tokens
from kbchat.src.providers.genai_client import ClientFactory, Sleep, call_with_reconnect, get_genai_client, translate_provider_error
from kbchat.src.utils.logger import get_logger

logger = get_logger(__name__)


class EmbeddingBatch(BaseModel):
    vectors: list[list[float]]
    tokens_used: int = 0


class EmbeddingClient:
    """
    Document and query embeddings through the Gemini API.

    Parameters
    ----------
    client_factory
        Returns a ``genai.Client``; raises ``ConfigurationError`` when
        no credential is configured.
    model / dimensions
        Override ``settings.EMBEDDING_MODEL`` / ``settings.EMBEDDING_DIMENSIONS``.
    sleep
        Awaitable sleep used between retries (tests pass a no-op).
    """

    __slots__ = ("_client_factory", "_model", "_dimensions", "_sleep", "_max_attempts", "_backoff", "_backoff_max")

    def __init__(self, client_factory: ClientFactory = get_genai_client, model: str | None = None, dimensions: int | None = None, sleep: Sleep = asyncio.sleep, max_attempts: int | None = None, backoff_seconds: float | None = None, backoff_max_seconds: float | None = None) -> None:
        self._client_factory = client_factory
        self._model = model or settings.EMBEDDING_MODEL
        self._dimensions = dimensions or settings.EMBEDDING_DIMENSIONS
        self._sleep = sleep
        self._max_attempts = max_attempts or settings.RATE_LIMIT_MAX_ATTEMPTS
        self._backoff = settings.RATE_LIMIT_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        self._backoff_max = settings.RATE_LIMIT_BACKOFF_MAX_SECONDS if backoff_max_seconds is None else backoff_max_seconds


    @property
    def model(self) -> str:
        return self._model


    def ensure_configured(self) -> None:
        """Raise ``ConfigurationError`` now if no provider client can be built."""
        self._client_factory()


    async def embed_documents(self, texts: Sequence[str]) -> EmbeddingBatch:
        """Embed one batch of chunk texts (single attempt)."""
        if not texts:
            return EmbeddingBatch(vectors=[])

        client = self._client_factory()
        config = types.EmbedContentConfig(task_type="RETRIEVAL_DOCUMENT", output_dimensionality=self._dimensions)
        try:
            response = await client.aio.models.embed_content(model=self._model, contents=list(texts), config=config)
        except Exception as exc:
            translated = translate_provider_error(exc)
            if translated is exc:
                raise
            raise translated from exc

        vectors = _vectors_of(response)
        if len(vectors) != len(texts):
            raise ProviderError(f"Embedding count mismatch: sent {len(texts)}, got {len(vectors)}.")
        return EmbeddingBatch(vectors=vectors, tokens_used=_token_count(response, texts))


    async def embed_with_retry(self, texts: Sequence[str]) -> EmbeddingBatch:
        """
        ``embed_documents`` with the bounded rate-limit retry.

        Raises
        ------
        RateLimitExhausted
            The batch was still rate limited on the last attempt.
        """
        for attempt in range(1, self._max_attempts + 1):
            try:
                return await self.embed_documents(texts)
            except RateLimitError as exc:
                if attempt == self._max_attempts:
                    logger.error("[EMBED] Batch of %d still rate limited after %d attempt(s) — giving up.", len(texts), attempt)
                    raise RateLimitExhausted(attempt) from exc
                delay = min(self._backoff * 2 ** (attempt - 1), self._backoff_max)
                logger.warning("[EMBED] Rate limited (attempt %d/%d) — waiting %.1fs before retrying the same batch.", attempt, self._max_attempts, delay)
                await self._sleep(delay)

        raise AssertionError("unreachable")


    async def embed_query(self, text: str) -> list[float]:
        """Embed a search query; one reconnect on 429/5xx."""
        client = self._client_factory()
        config = types.EmbedContentConfig(task_type="RETRIEVAL_QUERY", output_dimensionality=self._dimensions)

        async def _call() -> list[float]:
            response = await client.aio.models.embed_content(model=self._model, contents=[text], config=config)
            vectors = _vectors_of(response)
            if not vectors:
                raise ProviderError("Embedding response contained no vectors.")
            return vectors[0]

        return await call_with_reconnect(_call, label="EMBED", sleep=self._sleep)


def _vectors_of(response: types.EmbedContentResponse) -> list[list[float]]:
    return [list(e.values or []) for e in (response.embeddings or [])]


def _token_count(response: types.EmbedContentResponse, texts: Sequence[str]) -> int:
    """Provider token statistics when present, else the chars/4 estimate."""
    reported = 0
    for embedding in response.embeddings or []:
        stats = getattr(embedding, "statistics", None)
        if stats is not None and stats.token_count:
            reported += int(stats.token_count)
    if reported:
        return reported
    return sum(estimate_tokens(t) for t in texts)
