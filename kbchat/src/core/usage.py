"""
kbchat - Usage Accountant
==========================
Estimates and records token consumption.

Estimation
----------
* prompt tokens     = ceil(total prompt characters / 4)
                      + ``MESSAGE_OVERHEAD_TOKENS`` per message
* completion tokens = provider-reported count when available,
                      otherwise ceil(response characters / 4)

Recording
---------
One ``$inc``-style increment per completed generation request (or per
ingestion call), under ``settings.USAGE_METRIC_NAME``, bucketed by the
calendar month (UTC).  A failed write is logged and copied to the
billing-failures collection; it never fails the request that incurred
the tokens.
"""

from __future__ import annotations

import math
from collections.abc import Callable, Sequence
from datetime import datetime, timezone
from typing import Any

from kbchat.config.settings import settings
from kbchat.src.core.models import TokenUsage
from kbchat.src.database.repositories import UsageRepository
from kbchat.src.utils.logger import get_logger

logger = get_logger(__name__)

CHARS_PER_TOKEN = 4
MESSAGE_OVERHEAD_TOKENS = 10

# USD per 1K tokens (input, output)
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "gemini-2.0-flash": (0.0001, 0.0004),
    "gemini-2.0-flash-lite": (0.000075, 0.0003),
    "gemini-2.5-flash": (0.0003, 0.0025),
    "gemini-2.5-pro": (0.00125, 0.01),
    "gemini-embedding-001": (0.00015, 0.0),
}
_DEFAULT_PRICING = MODEL_PRICING["gemini-2.0-flash"]


def estimate_tokens(text: str) -> int:
    """Rough token count: one token per four characters, rounded up."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_prompt_tokens(messages: Sequence[str]) -> int:
    total_chars = sum(len(m) for m in messages)
    return math.ceil(total_chars / CHARS_PER_TOKEN) + MESSAGE_OVERHEAD_TOKENS * len(messages)


def estimate_cost(prompt_tokens: int, completion_tokens: int, model: str) -> float:
    input_price, output_price = MODEL_PRICING.get(model, _DEFAULT_PRICING)
    return round(prompt_tokens / 1000 * input_price + completion_tokens / 1000 * output_price, 8)


def month_period(now: datetime) -> tuple[datetime, datetime]:
    """Return ``[start, end)`` of the UTC calendar month containing *now*."""
    start = datetime(now.year, now.month, 1, tzinfo=timezone.utc)
    if now.month == 12:
        end = datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        end = datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)
    return start, end


class UsageAccountant:
    """
    Turns a finished generation into one usage increment.

    Parameters
    ----------
    repository
        Where increments are written.
    metric_name
        Usage metric; defaults to ``settings.USAGE_METRIC_NAME``.
    clock
        Returns "now" (UTC); injectable for tests.
    """

    __slots__ = ("_repo", "_metric", "_clock")

    def __init__(self, repository: UsageRepository, metric_name: str | None = None, clock: Callable[[], datetime] | None = None) -> None:
        self._repo = repository
        self._metric = metric_name or settings.USAGE_METRIC_NAME
        self._clock = clock or (lambda: datetime.now(timezone.utc))


    @staticmethod
    def count_tokens(prompt_messages: Sequence[str], response_text: str, reported: TokenUsage | None) -> tuple[int, int]:
        """Return ``(prompt_tokens, completion_tokens)`` for one generation."""
        prompt_tokens = estimate_prompt_tokens(prompt_messages)
        if reported is not None and reported.completion_tokens > 0:
            completion_tokens = reported.completion_tokens
        else:
            completion_tokens = estimate_tokens(response_text)
        return prompt_tokens, completion_tokens


    async def record_generation(self, *, user_id: str | None, chatbot_id: str, model: str, prompt_messages: Sequence[str], response_text: str, reported: TokenUsage | None, streaming: bool, context_chunks: int) -> int:
        """
        Record one increment for a completed (or partially streamed) generation.

        Returns
        -------
        int
            Tokens recorded, or ``0`` when nothing was recorded.
        """
        prompt_tokens, completion_tokens = self.count_tokens(prompt_messages, response_text, reported)
        total = prompt_tokens + completion_tokens
        user_message = prompt_messages[-1] if prompt_messages else ""

        metadata: dict[str, Any] = {
            "chatbot_id": chatbot_id,
            "model": model,
            "streaming": streaming,
            "message_length": len(user_message),
            "response_length": len(response_text),
            "context_chunks": context_chunks,
            "tokens": {"prompt": prompt_tokens, "completion": completion_tokens},
            "estimated_vs_actual": {"estimated_prompt_tokens": prompt_tokens, "actual_prompt_tokens": reported.prompt_tokens if reported else None},
            "reported_usage": reported.model_dump() if reported else None,
            "cost_estimate": estimate_cost(prompt_tokens, completion_tokens, model),
        }
        return await self._increment(user_id, total, metadata)


    async def record_tokens(self, *, user_id: str | None, tokens: int, metadata: dict[str, Any]) -> int:
        """Record a pre-computed token count (ingestion embeddings)."""
        return await self._increment(user_id, tokens, dict(metadata))


    async def _increment(self, user_id: str | None, tokens: int, metadata: dict[str, Any]) -> int:
        if not user_id:
            logger.warning("[USAGE] Skipped usage increment — no user to attribute %d token(s) to.", tokens)
            return 0
        if tokens <= 0:
            logger.warning("[USAGE] Skipped usage increment for user %s — token count is %d.", user_id, tokens)
            return 0

        period_start, period_end = month_period(self._clock())
        try:
            metadata["subscription_id"] = await self._repo.active_subscription_id(user_id)
            await self._repo.increment(user_id, self._metric, tokens, period_start, period_end, metadata)
        except Exception as exc:
            logger.exception("[USAGE] Failed to record %d token(s) for user %s.", tokens, user_id)
            try:
                await self._repo.record_billing_failure(user_id, tokens, metadata, str(exc))
            except Exception:
                logger.exception("[USAGE] Billing-failure record could not be written either.")
            return 0

        logger.info("[USAGE] +%d token(s) → %s for user %s (period %s).", tokens, self._metric, user_id, period_start.date().isoformat())
        return tokens
