"""Shared in-memory fakes for the kbchat pipelines."""

from __future__ import annotations

import asyncio
import math
from collections.abc import Sequence
from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Any

import pytest

from kbchat.src.core.errors import ConfigurationError, NotFoundError
from kbchat.src.core.models import Chatbot, ChatMessage, EmbeddedChunk, KnowledgeItem, RAGConfig, RetrievedChunk, StoredChunk, TokenUsage
from kbchat.src.core.usage import UsageAccountant
from kbchat.src.providers.embedding_client import EmbeddingBatch
from kbchat.src.providers.generation_client import Completion, IncrementalCompletion


async def no_sleep(_seconds: float) -> None:
    return None


def fixed_clock() -> datetime:
    return datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


def _cosine(a: Sequence[float], b: Sequence[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


# ── Providers ──────────────────────────────────────────────────────────


class FakeEmbedder:
    """Stands in for ``EmbeddingClient``; ``outcomes`` scripts each batch call."""

    model = "fake-embedding"

    def __init__(self, outcomes: list[Exception | None] | None = None, query_vector: list[float] | None = None, query_error: Exception | None = None, configured: bool = True) -> None:
        self.outcomes = list(outcomes or [])
        self.query_vector = query_vector or [1.0, 0.0]
        self.query_error = query_error
        self.configured = configured
        self.batches: list[list[str]] = []
        self.queries: list[str] = []

    def ensure_configured(self) -> None:
        if not self.configured:
            raise ConfigurationError("no key")

    async def embed_with_retry(self, texts: Sequence[str]) -> EmbeddingBatch:
        self.batches.append(list(texts))
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if outcome is not None:
            raise outcome
        return EmbeddingBatch(vectors=[[float(len(t)), 1.0] for t in texts], tokens_used=sum(len(t) for t in texts) // 4 or 1)

    async def embed_query(self, text: str) -> list[float]:
        self.queries.append(text)
        if self.query_error is not None:
            raise self.query_error
        return self.query_vector


def text_chunk(text: str, usage: dict[str, int] | None = None, finish_reason: str | None = None) -> SimpleNamespace:
    """One provider stream chunk, shaped like ``GenerateContentResponse``."""
    metadata = SimpleNamespace(prompt_token_count=usage.get("prompt", 0), candidates_token_count=usage.get("completion", 0), total_token_count=usage.get("total", 0)) if usage else None
    candidates = [SimpleNamespace(finish_reason=finish_reason)] if finish_reason else []
    return SimpleNamespace(text=text, usage_metadata=metadata, candidates=candidates)


async def _iterate(chunks: list[Any], fail_after: Exception | None = None, stall_after: int | None = None):
    for n, chunk in enumerate(chunks):
        if n == stall_after:
            await asyncio.sleep(5)
        yield chunk
    if fail_after is not None:
        raise fail_after


class FakeGenerator:
    """Stands in for ``GenerationClient``; streams use the real ``IncrementalCompletion``."""

    model = "fake-llm"

    def __init__(self, text: str = "An answer.", usage: TokenUsage | None = None, stream_chunks: list[Any] | None = None, stream_error: Exception | None = None, complete_error: Exception | None = None, configured: bool = True, stall_after: int | None = None) -> None:
        self.text = text
        self.stall_after = stall_after
        self.usage = usage
        self.stream_chunks = stream_chunks
        self.stream_error = stream_error
        self.complete_error = complete_error
        self.configured = configured
        self.complete_calls: list[tuple[str, str]] = []
        self.stream_calls: list[tuple[str, str]] = []

    def ensure_configured(self) -> None:
        if not self.configured:
            raise ConfigurationError("no key")

    async def complete(self, system_prompt: str, user_message: str, *, temperature: float, max_tokens: int) -> Completion:
        self.complete_calls.append((system_prompt, user_message))
        if self.complete_error is not None:
            raise self.complete_error
        return Completion(text=self.text, usage=self.usage)

    def stream(self, system_prompt: str, user_message: str, *, temperature: float, max_tokens: int) -> IncrementalCompletion:
        self.stream_calls.append((system_prompt, user_message))
        chunks = self.stream_chunks if self.stream_chunks is not None else [text_chunk(self.text, finish_reason="STOP")]

        async def _open():
            return _iterate(chunks, self.stream_error, self.stall_after)

        return IncrementalCompletion(_open, attempts=2, delay=0, sleep=no_sleep)


# ── Storage ────────────────────────────────────────────────────────────


class FakeChunkStore:
    def __init__(self, fail_on_insert_call: int | None = None, search_error: Exception | None = None) -> None:
        self.rows: list[StoredChunk] = []
        self.insert_calls: list[int] = []
        self.fail_on_insert_call = fail_on_insert_call
        self.search_error = search_error
        self.text_queries: list[str] = []

    async def insert_chunks(self, chunks: Sequence[StoredChunk]) -> int:
        self.insert_calls.append(len(chunks))
        if self.fail_on_insert_call is not None and len(self.insert_calls) == self.fail_on_insert_call:
            raise OSError("disk full")
        self.rows.extend(chunks)
        return len(chunks)

    async def similarity_search(self, chatbot_id: str, vector: list[float], threshold: float, top_k: int) -> list[RetrievedChunk]:
        if self.search_error is not None:
            raise self.search_error
        hits = [RetrievedChunk(content=r.content, similarity=_cosine(vector, r.embedding), chunk_index=r.chunk_index, source_url=r.source_url) for r in self.rows if isinstance(r, EmbeddedChunk) and r.chatbot_id == chatbot_id]
        hits = [h for h in hits if h.similarity >= threshold]
        hits.sort(key=lambda h: (-h.similarity, h.chunk_index))
        return hits[:top_k]

    async def text_search(self, chatbot_id: str, query: str, limit: int) -> list[RetrievedChunk]:
        self.text_queries.append(query)
        terms = [t for t in query.lower().split() if len(t) > 2]
        matches = [r for r in self.rows if r.chatbot_id == chatbot_id and any(t in r.content.lower() for t in terms)]
        return [RetrievedChunk(content=r.content, chunk_index=r.chunk_index, source_url=r.source_url) for r in matches[:limit]]

    async def delete_item_chunks(self, knowledge_base_id: str) -> int:
        before = len(self.rows)
        self.rows = [r for r in self.rows if r.knowledge_base_id != knowledge_base_id]
        return before - len(self.rows)

    async def delete_chatbot(self, chatbot_id: str) -> int:
        before = len(self.rows)
        self.rows = [r for r in self.rows if r.chatbot_id != chatbot_id]
        return before - len(self.rows)


class FakeChatbotRepo:
    def __init__(self, chatbots: list[Chatbot] | None = None, configs: dict[str, RAGConfig] | None = None) -> None:
        self.chatbots = {c.id: c for c in (chatbots or [])}
        self.configs = configs or {}
        self.status_changes: list[tuple[str, str, bool | None]] = []

    async def get_chatbot(self, chatbot_id: str) -> Chatbot | None:
        return self.chatbots.get(chatbot_id)

    async def get_ready_chatbot(self, chatbot_id: str) -> Chatbot:
        chatbot = self.chatbots.get(chatbot_id)
        if chatbot is None or chatbot.status != "ready":
            raise NotFoundError(chatbot_id)
        return chatbot

    async def get_rag_config(self, chatbot_id: str) -> RAGConfig:
        return self.configs.get(chatbot_id, RAGConfig())

    async def set_status(self, chatbot_id: str, status: str, knowledge_base_processed: bool | None = None) -> None:
        self.status_changes.append((chatbot_id, status, knowledge_base_processed))
        chatbot = self.chatbots[chatbot_id]
        update: dict[str, Any] = {"status": status}
        if knowledge_base_processed is not None:
            update["knowledge_base_processed"] = knowledge_base_processed
        self.chatbots[chatbot_id] = chatbot.model_copy(update=update)


class FakeKnowledgeRepo:
    def __init__(self, items: list[KnowledgeItem] | None = None) -> None:
        self.items = {i.id: i for i in (items or [])}

    async def add_items(self, items: Sequence[KnowledgeItem]) -> int:
        for item in items:
            self.items[item.id] = item
        return len(items)

    async def list_unprocessed(self, chatbot_id: str) -> list[KnowledgeItem]:
        return [i for i in self.items.values() if i.chatbot_id == chatbot_id and not i.processed]

    async def mark_processed(self, item_id: str) -> None:
        self.items[item_id] = self.items[item_id].model_copy(update={"processed": True, "status": "processed", "error_message": None})

    async def mark_failed(self, item_id: str, error_message: str) -> None:
        self.items[item_id] = self.items[item_id].model_copy(update={"status": "error", "error_message": error_message})


class FakeMessageRepo:
    def __init__(self, fail: bool = False, suspend: bool = False) -> None:
        self.saved: list[ChatMessage] = []
        self.fail = fail
        self.suspend = suspend

    async def save_message(self, message: ChatMessage) -> None:
        if self.suspend:
            await asyncio.sleep(0)
        if self.fail:
            raise OSError("messages collection unavailable")
        self.saved.append(message)


class FakeUsageRepo:
    def __init__(self, fail: bool = False, subscription_id: str | None = "sub_1", suspend: bool = False) -> None:
        self.suspend = suspend
        self.increments: list[dict[str, Any]] = []
        self.failures: list[dict[str, Any]] = []
        self.fail = fail
        self.subscription_id = subscription_id

    async def increment(self, user_id: str, metric_name: str, value: int, period_start: datetime, period_end: datetime, metadata: dict[str, Any]) -> None:
        if self.suspend:
            await asyncio.sleep(0)
        if self.fail:
            raise OSError("usage collection unavailable")
        self.increments.append({"user_id": user_id, "metric_name": metric_name, "value": value, "period_start": period_start, "period_end": period_end, "metadata": metadata})

    async def active_subscription_id(self, user_id: str) -> str | None:
        if self.suspend:
            await asyncio.sleep(0)
        return self.subscription_id

    async def record_billing_failure(self, user_id: str, tokens: int, metadata: dict[str, Any], error: str) -> None:
        self.failures.append({"user_id": user_id, "tokens": tokens, "error": error})


# ── Fixtures ───────────────────────────────────────────────────────────


@pytest.fixture
def chatbot() -> Chatbot:
    return Chatbot(id="bot-1", name="Helper", status="ready", user_id="owner-1")


@pytest.fixture
def chatbot_repo(chatbot: Chatbot) -> FakeChatbotRepo:
    return FakeChatbotRepo([chatbot])


@pytest.fixture
def usage_repo() -> FakeUsageRepo:
    return FakeUsageRepo()


@pytest.fixture
def accountant(usage_repo: FakeUsageRepo) -> UsageAccountant:
    return UsageAccountant(usage_repo, metric_name="chat_tokens_per_month", clock=fixed_clock)


@pytest.fixture
def chunk_store() -> FakeChunkStore:
    return FakeChunkStore()


@pytest.fixture
def message_repo() -> FakeMessageRepo:
    return FakeMessageRepo()
