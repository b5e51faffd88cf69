"""
kbchat - Error Taxonomy
========================
Every failure the pipelines distinguish between has its own type here.
The API layer maps them to HTTP status codes; the orchestrators decide
per type whether to retry, degrade, fall back, or surface.

``ConfigurationError``
    Missing or rejected provider credential.  Fatal, never retried.
``RateLimitError``
    Provider answered 429.  Retried with backoff (bounded).
``RateLimitExhausted``
    A rate-limited batch ran out of attempts.
``TransientProviderError``
    Provider answered 5xx.  One reconnect at query time, then surfaced.
``NotFoundError``
    Chatbot missing or not in ``ready`` status.
``TransientRetrievalError``
    Vector search failed for a non-configuration reason; triggers the
    keyword fallback.
``StorageError``
    A row write or read against the chunk/message stores failed.
``StreamingError``
    Mid-stream failure, idle timeout, or explicit cancellation.  Carries
    whatever text had been streamed so far.
"""

from __future__ import annotations


class KBChatError(Exception):
    """Base class for all kbchat errors."""


class ConfigurationError(KBChatError):
    """The generation/embedding provider is not usable (no credential)."""


class ProviderError(KBChatError):
    """The provider rejected or failed a request."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class RateLimitError(ProviderError):
    """HTTP 429 from the provider."""

    def __init__(self, message: str = "Provider rate limit reached.", status: int | None = 429) -> None:
        super().__init__(message, status)


class TransientProviderError(ProviderError):
    """HTTP 5xx from the provider."""


class RateLimitExhausted(KBChatError):
    """Raised after the bounded rate-limit retry gave up."""

    def __init__(self, attempts: int) -> None:
        super().__init__(f"Rate limit persisted after {attempts} attempt(s).")
        self.attempts = attempts


class NotFoundError(KBChatError):
    """Requested chatbot does not exist or is not ready."""


class TransientRetrievalError(KBChatError):
    """Vector retrieval failed for a reason other than configuration."""


class StorageError(KBChatError):
    """Persisting or reading rows failed."""


class StreamingError(KBChatError):
    """The stream was aborted; ``partial_text`` holds the text received so far."""

    def __init__(self, message: str, partial_text: str = "") -> None:
        super().__init__(message)
        self.partial_text = partial_text
