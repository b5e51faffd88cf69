"""
kbchat - Stream Cancellation
=============================
Per-request cancellation handle and the idle-timeout iterator built on
it.  Each in-flight stream owns one ``CancellationToken``; its idle
timer belongs to the token, so concurrent streams never share timers.

Usage:
    token = CancellationToken()
    async for item in iterate_with_idle_timeout(source, token, 30.0):
        ...
    token.cancel("closed by user")   # from anywhere, same abort path
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterable, AsyncIterator
from typing import TypeVar

from kbchat.src.core.errors import StreamingError
from kbchat.src.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class CancellationToken:
    """Abort handle for one stream; idle expiry and user cancel both land here."""

    __slots__ = ("_event", "_timer", "reason")

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._timer: asyncio.TimerHandle | None = None
        self.reason: str | None = None


    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


    def cancel(self, reason: str = "Stream cancelled.") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self.disarm()
        self._event.set()
        logger.info("[STREAM] Cancelled: %s", reason)


    async def wait(self) -> None:
        await self._event.wait()


    def arm_idle_timer(self, seconds: float) -> None:
        """(Re)start the idle window; expiry cancels the token."""
        self.disarm()
        if self.cancelled:
            return
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(seconds, self.cancel, f"No data received for {seconds:g}s.")


    def disarm(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


async def iterate_with_idle_timeout(source: AsyncIterable[T], token: CancellationToken, idle_seconds: float) -> AsyncIterator[T]:
    """
    Yield from *source* until it ends, the idle window lapses, or
    *token* is cancelled.

    Raises
    ------
    StreamingError
        On idle timeout or cancellation.  Nothing is yielded after the
        token has been cancelled, and *source* is closed either way.
    """
    iterator = source.__aiter__()
    cancelled = asyncio.ensure_future(token.wait())
    pending_item: asyncio.Future | None = None
    try:
        while True:
            if token.cancelled:
                raise StreamingError(token.reason or "Stream cancelled.")
            token.arm_idle_timer(idle_seconds)
            pending_item = asyncio.ensure_future(iterator.__anext__())
            done, _ = await asyncio.wait({pending_item, cancelled}, return_when=asyncio.FIRST_COMPLETED)
            token.disarm()

            if pending_item not in done:
                pending_item.cancel()
                await asyncio.gather(pending_item, return_exceptions=True)
                raise StreamingError(token.reason or "Stream cancelled.")

            try:
                item = pending_item.result()
            except StopAsyncIteration:
                return
            if token.cancelled:
                raise StreamingError(token.reason or "Stream cancelled.")
            yield item
    finally:
        token.disarm()
        cancelled.cancel()
        if pending_item is not None and not pending_item.done():
            pending_item.cancel()
        await asyncio.gather(*(f for f in (cancelled, pending_item) if f is not None), return_exceptions=True)
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            try:
                await aclose()
            except Exception:
                logger.debug("[STREAM] Source did not close cleanly.", exc_info=True)
