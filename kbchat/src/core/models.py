"""
kbchat - Domain Models
=======================
Pydantic models for everything that crosses a module boundary: stored
rows, per-query configuration, and the request/response bodies of the
query API.

Chunk variants
--------------
A stored chunk is either ``EmbeddedChunk`` (has a vector, visible to
similarity search) or ``UnembeddedChunk`` (stored while the embedding
provider was unavailable, visible to keyword search only).  ``StoredChunk``
is the discriminated union of the two, so code that needs a vector has
to narrow to ``EmbeddedChunk`` first.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from kbchat.config.settings import settings


def _new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ══════════════════════════════════════════════════════════════════════
#  CHATBOTS & KNOWLEDGE
# ══════════════════════════════════════════════════════════════════════

ChatbotStatus = Literal["creating", "processing", "ready", "error", "inactive"]


class Chatbot(BaseModel):
    id: str
    name: str
    status: ChatbotStatus = "ready"
    user_id: str | None = None
    knowledge_base_processed: bool = False


class KnowledgeItem(BaseModel):
    """One uploaded document or pasted text owned by a chatbot."""

    id: str = Field(default_factory=_new_id)
    chatbot_id: str
    content: str
    content_type: Literal["document", "text"] = "text"
    filename: str | None = None
    processed: bool = False
    status: Literal["pending", "processed", "error"] = "pending"
    error_message: str | None = None

    @property
    def source_url(self) -> str | None:
        return f"file://{self.filename}" if self.filename else None


# ══════════════════════════════════════════════════════════════════════
#  CHUNKS
# ══════════════════════════════════════════════════════════════════════


class _ChunkBase(BaseModel):
    id: str = Field(default_factory=_new_id)
    chatbot_id: str
    knowledge_base_id: str
    content: str
    chunk_index: int
    source_url: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class EmbeddedChunk(_ChunkBase):
    kind: Literal["embedded"] = "embedded"
    embedding: list[float]


class UnembeddedChunk(_ChunkBase):
    kind: Literal["unembedded"] = "unembedded"


StoredChunk = Annotated[EmbeddedChunk | UnembeddedChunk, Field(discriminator="kind")]


class RetrievedChunk(BaseModel):
    """Ephemeral search hit.  ``similarity`` is ``None`` for keyword matches."""

    content: str
    similarity: float | None = None
    chunk_index: int | None = None
    source_url: str | None = None


# ══════════════════════════════════════════════════════════════════════
#  PER-CHATBOT CONFIGURATION
# ══════════════════════════════════════════════════════════════════════


class RAGConfig(BaseModel):
    """Immutable per-query configuration; defaults come from ``settings``."""

    model_config = ConfigDict(frozen=True)

    temperature: float = Field(default_factory=lambda: settings.DEFAULT_TEMPERATURE)
    max_tokens: int = Field(default_factory=lambda: settings.DEFAULT_MAX_TOKENS)
    similarity_threshold: float = Field(default_factory=lambda: settings.DEFAULT_SIMILARITY_THRESHOLD)
    max_retrieved_chunks: int = Field(default_factory=lambda: settings.DEFAULT_MAX_RETRIEVED_CHUNKS)
    enable_citations: bool = Field(default_factory=lambda: settings.DEFAULT_ENABLE_CITATIONS)
    chunk_char_limit: int = Field(default_factory=lambda: settings.DEFAULT_CHUNK_CHAR_LIMIT)
    min_word_count: int = Field(default_factory=lambda: settings.DEFAULT_MIN_WORD_COUNT)
    stopwords: tuple[str, ...] = Field(default_factory=lambda: tuple(settings.DEFAULT_STOPWORDS))
    custom_instructions: str | None = None


# ══════════════════════════════════════════════════════════════════════
#  MESSAGES & USAGE
# ══════════════════════════════════════════════════════════════════════


class ChatMessage(BaseModel):
    id: str = Field(default_factory=_new_id)
    chatbot_id: str
    message: str
    response: str
    user_ip: str | None = None
    thread_id: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)


class TokenUsage(BaseModel):
    """Provider-reported token counts for one generation call."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class UsageRecord(BaseModel):
    user_id: str
    metric_name: str
    metric_value: int = Field(ge=0)
    period_start: datetime
    period_end: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)


# ══════════════════════════════════════════════════════════════════════
#  QUERY API
# ══════════════════════════════════════════════════════════════════════


class QueryRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    chatbot_id: str = Field(validation_alias=AliasChoices("chatbot_id", "botId"))
    message: str = Field(min_length=1)
    thread_id: str | None = Field(default=None, validation_alias=AliasChoices("thread_id", "threadId"))
    user_id: str | None = Field(default=None, validation_alias=AliasChoices("user_id", "userId"))
    stream: bool = False


class Source(BaseModel):
    content: str
    similarity: float | None = None
    chunk_index: int | None = None
    source_url: str | None = None


class QueryResponse(BaseModel):
    response: str
    sources: list[Source] | None = None
    citations_enabled: bool
    thread_id: str | None = None


class IngestItem(BaseModel):
    content: str
    content_type: Literal["document", "text"] = "text"
    filename: str | None = None


class IngestRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    chatbot_id: str = Field(validation_alias=AliasChoices("chatbot_id", "chatbotId"))
    user_id: str | None = Field(default=None, validation_alias=AliasChoices("user_id", "userId"))
    items: list[IngestItem] | None = None
