"""
kbchat - Stream Consumer & Chat Client
=======================================
UI-side half of the streaming transport.

``StreamConsumer``
    Turns a byte stream of events into callbacks (``on_ready``,
    ``on_delta`` per fragment, ``on_end`` exactly once), resetting the
    idle timer on every received frame.  A plain JSON body (non-stream
    fallback) produces the same callback sequence with a single delta.

``ChatStreamClient``
    ``httpx`` client for ``POST /chat``.  Retries once on 429/5xx or a
    transport failure before any frame is read, picks streaming vs JSON
    handling from the response ``content-type``, and exposes
    ``cancel()`` which aborts every in-flight request through the same
    token the idle timer uses.  Pass a ``CancellationToken`` to ``send``
    to abort one request on its own.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterable, Callable
from contextlib import aclosing
from typing import Any

import httpx
from pydantic import BaseModel

from kbchat.config.settings import settings
from kbchat.src.core.errors import ConfigurationError, NotFoundError, ProviderError, RateLimitError, StreamingError, TransientProviderError
from kbchat.src.streaming.cancellation import CancellationToken, iterate_with_idle_timeout
from kbchat.src.streaming.events import DELTA, END, ERROR, EVENT_STREAM_MEDIA_TYPE, READY, EventStreamDecoder, ServerEvent
from kbchat.src.utils.logger import get_logger

logger = get_logger(__name__)


def _noop(*_args: Any) -> None:
    return None


class StreamHandlers:
    """Callbacks invoked while a response is consumed."""

    __slots__ = ("on_ready", "on_delta", "on_end")

    def __init__(self, on_ready: Callable[[str | None], None] = _noop, on_delta: Callable[[str], None] = _noop, on_end: Callable[[str, str | None], None] = _noop) -> None:
        self.on_ready = on_ready
        self.on_delta = on_delta
        self.on_end = on_end


class StreamResult(BaseModel):
    text: str
    thread_id: str | None = None
    streamed: bool = True


class StreamConsumer:
    """
    Decode one response into handler callbacks.

    Parameters
    ----------
    idle_seconds
        Abort when no frame arrives within this window; defaults to
        ``settings.STREAM_IDLE_TIMEOUT_SECONDS``.
    """

    __slots__ = ("_idle_seconds",)

    def __init__(self, idle_seconds: float | None = None) -> None:
        self._idle_seconds = idle_seconds or settings.STREAM_IDLE_TIMEOUT_SECONDS


    async def consume(self, frames: AsyncIterable[bytes | str], handlers: StreamHandlers, token: CancellationToken | None = None) -> StreamResult:
        """
        Raises
        ------
        StreamingError
            ``error`` event, idle timeout, cancellation, or a stream that
            closed without ``end``.  ``partial_text`` holds the deltas seen.
        """
        token = token or CancellationToken()
        decoder = EventStreamDecoder()
        state = _StreamState()

        try:
            async with aclosing(iterate_with_idle_timeout(frames, token, self._idle_seconds)) as received:
                async for raw in received:
                    for event in decoder.feed(raw):
                        if self._dispatch(event, state, handlers):
                            return StreamResult(text=state.final_text, thread_id=state.thread_id)
            for event in decoder.flush():
                if self._dispatch(event, state, handlers):
                    return StreamResult(text=state.final_text, thread_id=state.thread_id)
        except StreamingError as exc:
            if exc.partial_text:
                raise
            raise StreamingError(str(exc), partial_text=state.text) from exc

        raise StreamingError("Stream closed before the end event.", partial_text=state.text)


    @staticmethod
    def consume_json(body: dict[str, Any], handlers: StreamHandlers) -> StreamResult:
        """Non-streaming fallback: same callbacks, one delta with the whole text."""
        text = body.get("response") or ""
        thread_id = body.get("thread_id")
        handlers.on_ready(thread_id)
        handlers.on_delta(text)
        handlers.on_end(text, thread_id)
        return StreamResult(text=text, thread_id=thread_id, streamed=False)


    @staticmethod
    def _dispatch(event: ServerEvent, state: "_StreamState", handlers: StreamHandlers) -> bool:
        """Apply one event; ``True`` once ``end`` has been handled."""
        payload = event.payload()

        if event.event == READY:
            state.thread_id = payload.get("thread_id") or state.thread_id
            handlers.on_ready(state.thread_id)
        elif event.event == DELTA:
            piece = payload.get("text") or ""
            if piece:
                state.text += piece
                handlers.on_delta(piece)
        elif event.event == END:
            state.thread_id = payload.get("thread_id") or state.thread_id
            state.final_text = payload.get("text") or state.text
            handlers.on_end(state.final_text, state.thread_id)
            return True
        elif event.event == ERROR:
            message = payload.get("message") or payload.get("text") or "Stream failed."
            raise StreamingError(message, partial_text=state.text)
        else:
            logger.debug("[STREAM] Ignoring unknown event %r.", event.event)
        return False


class _StreamState:
    __slots__ = ("text", "final_text", "thread_id")

    def __init__(self) -> None:
        self.text = ""
        self.final_text = ""
        self.thread_id: str | None = None


# ══════════════════════════════════════════════════════════════════════
#  HTTP CLIENT
# ══════════════════════════════════════════════════════════════════════

_RETRYABLE_STATUS = {429, 500, 502, 503, 504}


class ChatStreamClient:
    """
    Client for the chat endpoint.

    Parameters
    ----------
    base_url
        API root; defaults to ``settings.CHAT_API_URL``.
    transport
        Optional ``httpx`` transport (tests pass ``httpx.MockTransport``).
    idle_seconds
        Idle window while reading a stream.
    """

    __slots__ = ("_base_url", "_timeout", "_transport", "_consumer", "_tokens")

    def __init__(self, base_url: str | None = None, transport: httpx.AsyncBaseTransport | None = None, idle_seconds: float | None = None, timeout: float | None = None) -> None:
        self._base_url = (base_url or settings.CHAT_API_URL).rstrip("/")
        self._timeout = timeout or settings.CHAT_REQUEST_TIMEOUT_SECONDS
        self._transport = transport
        self._consumer = StreamConsumer(idle_seconds)
        self._tokens: set[CancellationToken] = set()


    def cancel(self, reason: str = "Cancelled by user.") -> None:
        """Abort every in-flight request."""
        for token in list(self._tokens):
            token.cancel(reason)


    async def send(self, chatbot_id: str, message: str, handlers: StreamHandlers | None = None, *, thread_id: str | None = None, user_id: str | None = None, stream: bool = True, token: CancellationToken | None = None) -> StreamResult:
        handlers = handlers or StreamHandlers()
        token = token or CancellationToken()
        self._tokens.add(token)
        body = {"chatbot_id": chatbot_id, "message": message, "thread_id": thread_id, "user_id": user_id, "stream": stream}
        headers = {"Accept": f"{EVENT_STREAM_MEDIA_TYPE}, application/json"}

        try:
            async with httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout, transport=self._transport) as client:
                for attempt in (1, 2):
                    try:
                        async with client.stream("POST", "/chat", json=body, headers=headers) as response:
                            if response.status_code in _RETRYABLE_STATUS and attempt == 1:
                                logger.warning("[STREAM] Chat request answered %d — retrying once.", response.status_code)
                                continue
                            if response.status_code >= 400:
                                await response.aread()
                                raise _error_for(response)
                            return await self._read(response, handlers, token)
                    except httpx.TransportError as exc:
                        if attempt == 2:
                            raise TransientProviderError(f"Chat service unreachable: {exc}") from exc
                        logger.warning("[STREAM] Transport error (%s) — retrying once.", exc)
        finally:
            token.disarm()
            self._tokens.discard(token)

        raise AssertionError("unreachable")


    async def _read(self, response: httpx.Response, handlers: StreamHandlers, token: CancellationToken) -> StreamResult:
        content_type = response.headers.get("content-type", "")
        if EVENT_STREAM_MEDIA_TYPE in content_type:
            return await self._consumer.consume(response.aiter_bytes(), handlers, token)
        body = json.loads(await response.aread())
        return self._consumer.consume_json(body, handlers)


def _error_for(response: httpx.Response) -> Exception:
    try:
        message = response.json().get("error") or response.text
    except ValueError:
        message = response.text
    status = response.status_code
    if status == 404:
        return NotFoundError(message)
    if status == 503:
        return ConfigurationError(message)
    if status == 429:
        return RateLimitError(message)
    return ProviderError(message, status)
