"""
kbchat - Centralised Configuration
====================================
Uses ``pydantic-settings`` (``BaseSettings``) to load *all* configuration
from environment variables and the project-level ``.env`` file.

Security
--------
- ``GOOGLE_API_KEY`` is typed as ``SecretStr | None``.  A missing key
  does **not** stop the process from starting: it is detected the first
  time a provider call is made and surfaced as ``ConfigurationError``,
  so the API can answer "service unavailable" instead of crashing.
- ``MONGO_URI`` is also ``SecretStr``.  Connection strings contain
  credentials and must never leak into logs.

Per-chatbot defaults
--------------------
The ``DEFAULT_*`` fields are the values every chatbot starts with.
Overrides written by the settings UI live in the ``rag_settings``
collection and are merged on top of these (see ``RAGConfig``).
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application-wide settings.

    Every field is loaded from environment variables (or ``.env``).

    Attributes
    ----------
    GOOGLE_API_KEY : SecretStr | None
        API key for Google AI Studio (Gemini).  Read the raw value with
        ``settings.GOOGLE_API_KEY.get_secret_value()``.
    EMBEDDING_MODEL : str
        Model identifier for document and query embeddings.
    EMBEDDING_DIMENSIONS : int
        Requested output dimensionality; also the width of the vector column.
    LLM_MODEL : str
        Model identifier for answer generation and query rewriting.
    CHUNK_MAX_LENGTH / CHUNK_OVERLAP : int
        Chunker bounds in characters.
    EMBED_BATCH_SIZE : int
        Number of chunks sent per embedding request.
    RATE_LIMIT_MAX_ATTEMPTS : int
        Attempts per embedding batch before ``RateLimitExhausted``.
    STREAM_IDLE_TIMEOUT_SECONDS : float
        Abort a stream when no frame arrives within this window.
    """

    # ── Resolved Absolute Paths ────────────────────────────────────────
    BASE_DIR: Path = Path(__file__).resolve().parent.parent
    LANCEDB_PATH: Path = BASE_DIR / "data" / "lancedb"

    # ── Environment Mode ───────────────────────────────────────────────
    ENV: Literal["dev", "prod"] = "dev"
    LOG_LEVEL: str | None = None

    # ── Provider ───────────────────────────────────────────────────────
    GOOGLE_API_KEY: SecretStr | None = None
    EMBEDDING_MODEL: str = "gemini-embedding-001"
    EMBEDDING_DIMENSIONS: int = 768
    LLM_MODEL: str = "gemini-2.0-flash"
    ENABLE_QUERY_REWRITE: bool = True

    # ── MongoDB ────────────────────────────────────────────────────────
    MONGO_URI: SecretStr = SecretStr("mongodb://localhost:27017")
    MONGO_DB_NAME: str = "kbchat"

    # ── LanceDB ────────────────────────────────────────────────────────
    LANCEDB_TABLE_NAME: str = "kb_chunks"

    # ── Ingestion Parameters ───────────────────────────────────────────
    CHUNK_MAX_LENGTH: int = 800
    CHUNK_OVERLAP: int = 100
    PRESERVE_PARAGRAPHS: bool = True
    PRESERVE_SENTENCES: bool = True
    EMBED_BATCH_SIZE: int = 20
    EMBED_BATCH_DELAY_SECONDS: float = 0.5
    RATE_LIMIT_BACKOFF_SECONDS: float = 10.0
    RATE_LIMIT_BACKOFF_MAX_SECONDS: float = 60.0
    RATE_LIMIT_MAX_ATTEMPTS: int = 5
    INSERT_BATCH_SIZE: int = 100

    # ── Retrieval ──────────────────────────────────────────────────────
    FALLBACK_SEARCH_LIMIT: int = 3

    # ── Per-chatbot RAG defaults ───────────────────────────────────────
    DEFAULT_TEMPERATURE: float = 0.7
    DEFAULT_MAX_TOKENS: int = 500
    DEFAULT_SIMILARITY_THRESHOLD: float = 0.7
    DEFAULT_MAX_RETRIEVED_CHUNKS: int = 5
    DEFAULT_ENABLE_CITATIONS: bool = False
    DEFAULT_CHUNK_CHAR_LIMIT: int = 1000
    DEFAULT_MIN_WORD_COUNT: int = 1
    DEFAULT_STOPWORDS: list[str] = ["hi", "hello", "hey", "thanks", "thank you", "ok", "okay", "bye"]

    # ── Streaming / provider retries ───────────────────────────────────
    STREAM_IDLE_TIMEOUT_SECONDS: float = 30.0
    PROVIDER_RETRY_ATTEMPTS: int = 2
    PROVIDER_RETRY_DELAY_SECONDS: float = 1.0

    # ── Usage accounting ───────────────────────────────────────────────
    USAGE_METRIC_NAME: str = "chat_tokens_per_month"

    # ── HTTP API ───────────────────────────────────────────────────────
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000
    CORS_ORIGINS: list[str] = ["*"]

    # ── Chat client ────────────────────────────────────────────────────
    CHAT_API_URL: str = "http://localhost:8000"
    CHAT_REQUEST_TIMEOUT_SECONDS: float = 45.0

    # ── Validators ─────────────────────────────────────────────────────

    @field_validator("CHUNK_MAX_LENGTH")
    @classmethod
    def _chunk_size_positive(cls, v: int) -> int:
        if v < 50:
            raise ValueError(f"CHUNK_MAX_LENGTH must be ≥ 50, got {v}")
        return v


    @field_validator("EMBED_BATCH_SIZE", "INSERT_BATCH_SIZE")
    @classmethod
    def _batch_range(cls, v: int) -> int:
        if not 1 <= v <= 100:
            raise ValueError(f"batch size must be 1–100, got {v}")
        return v


    @field_validator("RATE_LIMIT_MAX_ATTEMPTS", "PROVIDER_RETRY_ATTEMPTS")
    @classmethod
    def _attempts_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"attempt count must be ≥ 1, got {v}")
        return v


    @model_validator(mode="after")
    def _overlap_below_chunk_size(self) -> "Settings":
        if not 0 <= self.CHUNK_OVERLAP < self.CHUNK_MAX_LENGTH:
            raise ValueError(f"CHUNK_OVERLAP must be in [0, CHUNK_MAX_LENGTH), got {self.CHUNK_OVERLAP}")
        return self

    # ── Pydantic Settings Configuration ────────────────────────────────
    model_config = SettingsConfigDict(env_file=Path(__file__).resolve().parent.parent / ".env", env_file_encoding="utf-8", extra="ignore")


# ── Singleton Instance ─────────────────────────────────────────────────
# Import this throughout the project:
#     from kbchat.config.settings import settings
settings = Settings()
