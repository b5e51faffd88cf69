"""
kbchat - Generation Client
===========================
Gemini chat completion in two modes.

* ``complete``  – one request, full text plus reported token usage.
* ``stream``    – an ``IncrementalCompletion``: iterate it for text
  deltas; it keeps the running ``text``, the last reported ``usage``
  and sets ``done`` once the provider's finish sentinel (a candidate
  ``finish_reason``) or the end of the stream is seen.

Both modes reconnect once on 429/5xx.  A stream only reconnects before
its first delta; after text has been emitted the error propagates.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

from google.genai import types
from pydantic import BaseModel

from kbchat.config.settings import settings
from kbchat.src.core.errors import RateLimitError, TransientProviderError
from kbchat.src.core.models import TokenUsage
from kbchat.src.providers.genai_client import ClientFactory, Sleep, call_with_reconnect, get_genai_client, translate_provider_error
from kbchat.src.utils.logger import get_logger

logger = get_logger(__name__)


class Completion(BaseModel):
    text: str
    usage: TokenUsage | None = None
    finish_reason: str | None = None


class IncrementalCompletion:
    """
    Async iterable of text deltas for one streamed generation.

    Parameters
    ----------
    open_stream
        Coroutine factory returning the provider's async chunk iterator.
    attempts
        Total connection attempts allowed before the first delta.
    sleep
        Awaitable sleep between attempts.
    """

    __slots__ = ("_open_stream", "_attempts", "_delay", "_sleep", "_iterator", "text", "usage", "done", "finish_reason")

    def __init__(self, open_stream, attempts: int, delay: float, sleep: Sleep) -> None:
        self._open_stream = open_stream
        self._attempts = attempts
        self._delay = delay
        self._sleep = sleep
        self._iterator: AsyncIterator[str] | None = None
        self.text = ""
        self.usage: TokenUsage | None = None
        self.done = False
        self.finish_reason: str | None = None


    def __aiter__(self) -> AsyncIterator[str]:
        if self._iterator is None:
            self._iterator = self._deltas()
        return self._iterator


    async def aclose(self) -> None:
        if self._iterator is not None:
            await self._iterator.aclose()


    async def _deltas(self) -> AsyncIterator[str]:
        attempt = 0
        while True:
            attempt += 1
            try:
                source = await self._open_stream()
                async for chunk in source:
                    usage = usage_from(getattr(chunk, "usage_metadata", None))
                    if usage is not None:
                        self.usage = usage
                    piece = getattr(chunk, "text", None) or ""
                    if piece:
                        self.text += piece
                        yield piece
                    reason = _finish_reason(chunk)
                    if reason is not None:
                        self.finish_reason = reason
                self.done = True
                logger.debug("[GENERATE] Stream finished (%s) — %d chars.", self.finish_reason or "eof", len(self.text))
                return
            except Exception as exc:
                translated = translate_provider_error(exc)
                retryable = isinstance(translated, (RateLimitError, TransientProviderError))
                if self.text or not retryable or attempt >= self._attempts:
                    if translated is exc:
                        raise
                    raise translated from exc
                logger.warning("[GENERATE] Stream attempt %d/%d failed before any text (%s) — reconnecting.", attempt, self._attempts, translated)
                await self._sleep(self._delay)


class GenerationClient:
    """
    Chat completions through the Gemini API.

    Parameters
    ----------
    client_factory
        Returns a ``genai.Client``; raises ``ConfigurationError`` without a credential.
    model
        Override ``settings.LLM_MODEL``.
    sleep
        Awaitable sleep used before the reconnect.
    """

    __slots__ = ("_client_factory", "_model", "_sleep")

    def __init__(self, client_factory: ClientFactory = get_genai_client, model: str | None = None, sleep: Sleep = asyncio.sleep) -> None:
        self._client_factory = client_factory
        self._model = model or settings.LLM_MODEL
        self._sleep = sleep


    @property
    def model(self) -> str:
        return self._model


    def ensure_configured(self) -> None:
        self._client_factory()


    async def complete(self, system_prompt: str, user_message: str, *, temperature: float, max_tokens: int) -> Completion:
        client = self._client_factory()
        config = _config(system_prompt, temperature, max_tokens)

        async def _call() -> Completion:
            response = await client.aio.models.generate_content(model=self._model, contents=user_message, config=config)
            return Completion(text=getattr(response, "text", None) or "", usage=usage_from(response.usage_metadata), finish_reason=_finish_reason(response))

        completion = await call_with_reconnect(_call, label="GENERATE", sleep=self._sleep)
        logger.debug("[GENERATE] Completion: %d chars (%s).", len(completion.text), completion.finish_reason)
        return completion


    def stream(self, system_prompt: str, user_message: str, *, temperature: float, max_tokens: int) -> IncrementalCompletion:
        """Start an incremental generation; the request is sent on first iteration."""
        client = self._client_factory()
        config = _config(system_prompt, temperature, max_tokens)

        async def _open():
            return await client.aio.models.generate_content_stream(model=self._model, contents=user_message, config=config)

        return IncrementalCompletion(_open, attempts=settings.PROVIDER_RETRY_ATTEMPTS, delay=settings.PROVIDER_RETRY_DELAY_SECONDS, sleep=self._sleep)


def _config(system_prompt: str, temperature: float, max_tokens: int) -> types.GenerateContentConfig:
    return types.GenerateContentConfig(system_instruction=system_prompt, temperature=temperature, max_output_tokens=max_tokens)


def usage_from(metadata) -> TokenUsage | None:
    """Convert ``usage_metadata`` into ``TokenUsage`` (``None`` when absent)."""
    if metadata is None:
        return None
    prompt = getattr(metadata, "prompt_token_count", None) or 0
    completion = getattr(metadata, "candidates_token_count", None) or 0
    total = getattr(metadata, "total_token_count", None) or prompt + completion
    if not (prompt or completion or total):
        return None
    return TokenUsage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


def _finish_reason(response) -> str | None:
    candidates = getattr(response, "candidates", None) or []
    if not candidates:
        return None
    reason = getattr(candidates[0], "finish_reason", None)
    if reason is None:
        return None
    return getattr(reason, "value", None) or str(reason)
