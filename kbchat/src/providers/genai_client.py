"""
kbchat - Gemini Client Access
==============================
Module-level ``google.genai.Client`` singleton plus the translation of
SDK exceptions into the kbchat error taxonomy.

The client is created lazily so that a missing ``GOOGLE_API_KEY`` is
reported as ``ConfigurationError`` at the first provider call rather
than at import time.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

import httpx
from google import genai
from google.genai import errors as genai_errors

from kbchat.config.settings import settings
from kbchat.src.core.errors import ConfigurationError, KBChatError, ProviderError, RateLimitError, TransientProviderError
from kbchat.src.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")
ClientFactory = Callable[[], genai.Client]
Sleep = Callable[[float], Awaitable[None]]

_genai_client: genai.Client | None = None


def get_genai_client() -> genai.Client:
    """Return (or create) the module-level Gemini client."""
    global _genai_client
    if _genai_client is None:
        key = settings.GOOGLE_API_KEY
        if key is None or not key.get_secret_value().strip():
            raise ConfigurationError("Provider credential missing: set GOOGLE_API_KEY.")
        _genai_client = genai.Client(api_key=key.get_secret_value())
        logger.info("Gemini client created (singleton).")
    return _genai_client


def translate_provider_error(exc: BaseException) -> BaseException:
    """Map an SDK / transport exception onto the kbchat error taxonomy."""
    if isinstance(exc, KBChatError):
        return exc

    if isinstance(exc, genai_errors.APIError):
        code = exc.code
        message = str(exc)
        if code == 429:
            return RateLimitError(message)
        if code in (401, 403) or (code == 400 and "api key" in message.lower()):
            return ConfigurationError(f"Provider rejected the credential: {message}")
        if code is not None and code >= 500:
            return TransientProviderError(message, code)
        return ProviderError(message, code)

    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return TransientProviderError(f"Provider unreachable: {exc}")

    return exc


async def call_with_reconnect(operation: Callable[[], Awaitable[T]], *, label: str, attempts: int | None = None, delay: float | None = None, sleep: Sleep = asyncio.sleep) -> T:
    """
    Run *operation*, reconnecting on 429/5xx up to ``attempts`` times in total.

    Any other error is translated and raised immediately.
    """
    max_attempts = attempts or settings.PROVIDER_RETRY_ATTEMPTS
    wait = settings.PROVIDER_RETRY_DELAY_SECONDS if delay is None else delay

    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except Exception as exc:
            translated = translate_provider_error(exc)
            retryable = isinstance(translated, (RateLimitError, TransientProviderError))
            if not retryable or attempt == max_attempts:
                if translated is exc:
                    raise
                raise translated from exc
            logger.warning("[%s] Attempt %d/%d failed (%s) — reconnecting in %.1fs.", label, attempt, max_attempts, translated, wait)
            await sleep(wait)

    raise AssertionError("unreachable")
