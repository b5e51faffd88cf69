"""
kbchat - Repository Protocols
==============================
Structural types for the storage collaborators the pipelines consume.
The production implementations are ``ChunkVectorStore`` (LanceDB) and
the Mongo repositories in ``mongo_store``; tests substitute in-memory
fakes.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from kbchat.src.core.models import Chatbot, ChatMessage, KnowledgeItem, RAGConfig, RetrievedChunk, StoredChunk


@runtime_checkable
class ChunkRepository(Protocol):
    """Persist chunk rows and search them."""

    async def insert_chunks(self, chunks: Sequence[StoredChunk]) -> int: ...

    async def similarity_search(self, chatbot_id: str, vector: list[float], threshold: float, top_k: int) -> list[RetrievedChunk]: ...

    async def text_search(self, chatbot_id: str, query: str, limit: int) -> list[RetrievedChunk]: ...

    async def delete_item_chunks(self, knowledge_base_id: str) -> int: ...

    async def delete_chatbot(self, chatbot_id: str) -> int: ...


@runtime_checkable
class ChatbotRepository(Protocol):
    async def get_chatbot(self, chatbot_id: str) -> Chatbot | None: ...

    async def get_ready_chatbot(self, chatbot_id: str) -> Chatbot: ...

    async def get_rag_config(self, chatbot_id: str) -> RAGConfig: ...

    async def set_status(self, chatbot_id: str, status: str, knowledge_base_processed: bool | None = None) -> None: ...


@runtime_checkable
class KnowledgeRepository(Protocol):
    async def add_items(self, items: Sequence[KnowledgeItem]) -> int: ...

    async def list_unprocessed(self, chatbot_id: str) -> list[KnowledgeItem]: ...

    async def mark_processed(self, item_id: str) -> None: ...

    async def mark_failed(self, item_id: str, error_message: str) -> None: ...


@runtime_checkable
class MessageRepository(Protocol):
    async def save_message(self, message: ChatMessage) -> None: ...


@runtime_checkable
class UsageRepository(Protocol):
    async def increment(self, user_id: str, metric_name: str, value: int, period_start: datetime, period_end: datetime, metadata: dict[str, Any]) -> None: ...

    async def active_subscription_id(self, user_id: str) -> str | None: ...

    async def record_billing_failure(self, user_id: str, tokens: int, metadata: dict[str, Any], error: str) -> None: ...
