"""
kbchat - RAG Engine
====================
Orchestrates one chat query from request to persisted answer.

Architecture
------------
``RAGManager.prepare``
    Everything that can fail with a clean HTTP status runs here, before
    any response bytes exist:
        1. Load the chatbot (must be ``ready``) and its ``RAGConfig``.
        2. Resolve the thread id (new uuid hex when none was sent).
        3. Trivial-query short-circuit → no provider calls at all.
        4. Retrieve context (rewrite → embed → vector search / keyword fallback).
        5. Build the system prompt under the containment policy.

``RAGManager.answer``
    Single-shot generation → ``QueryResponse``.

``RAGManager.stream_prepared``
    Async generator of encoded events: ``ready``, ``delta``…, then
    ``end`` or ``error``.  Partial text from an aborted stream is still
    persisted and its usage recorded.

Side effects per completed request: exactly one usage increment and one
``ChatMessage``.  The two are independent; a failed message write is
logged and never undoes or skips the usage record.

Usage:
    rag      = RAGManager(chatbot_repo, message_repo, retriever, generator, accountant)
    response = await rag.answer(QueryRequest(chatbot_id="bot-1", message="What are your opening hours?"))
"""

from __future__ import annotations

import logging
import random
import time
import uuid
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import aclosing

import anyio

from kbchat.config.prompt_templates import CLARIFICATION_MESSAGE, EMPTY_COMPLETION_RESPONSES, ERROR_RESPONSES
from kbchat.config.settings import settings
from kbchat.src.core.errors import ConfigurationError, KBChatError, RateLimitError, StreamingError
from kbchat.src.core.models import Chatbot, ChatMessage, QueryRequest, QueryResponse, RAGConfig, RetrievedChunk, Source, TokenUsage
from kbchat.src.core.prompt_builder import build_prompt, is_trivial_query
from kbchat.src.core.retriever import SimilarityRetriever
from kbchat.src.core.usage import UsageAccountant
from kbchat.src.database.repositories import ChatbotRepository, MessageRepository
from kbchat.src.providers.generation_client import GenerationClient
from kbchat.src.streaming.cancellation import CancellationToken, iterate_with_idle_timeout
from kbchat.src.streaming.events import DELTA, END, ERROR, READY, encode_event
from kbchat.src.utils.logger import get_logger, timed

logger = get_logger(__name__)

ResponseSelector = Callable[[Sequence[str]], str]

_SOURCE_PREVIEW_CHARS = 200


class PreparedQuery:
    """Validated request plus everything generation needs."""

    __slots__ = ("request", "chatbot", "config", "thread_id", "user_id", "user_ip", "chunks", "system_prompt", "short_circuit")

    def __init__(self, request: QueryRequest, chatbot: Chatbot, config: RAGConfig, thread_id: str, user_ip: str | None = None) -> None:
        self.request = request
        self.chatbot = chatbot
        self.config = config
        self.thread_id = thread_id
        self.user_id = request.user_id or chatbot.user_id
        self.user_ip = user_ip
        self.chunks: list[RetrievedChunk] = []
        self.system_prompt = ""
        self.short_circuit = False


class RAGManager:
    """
    Stateless query pipeline; safe to share between concurrent requests.

    Parameters
    ----------
    chatbots / messages
        Chatbot lookup and chat-message persistence.
    retriever
        ``SimilarityRetriever`` for context.
    generator
        ``GenerationClient`` for both generation modes.
    accountant
        ``UsageAccountant`` recording one increment per completed request.
    response_selector
        Picks the canned reply for an empty completion; ``random.choice``
        in production, something deterministic in tests.
    idle_seconds
        Abort a provider stream that stays silent this long.
    """

    __slots__ = ("_chatbots", "_messages", "_retriever", "_generator", "_accountant", "_select", "_idle_seconds")

    def __init__(self, chatbots: ChatbotRepository, messages: MessageRepository, retriever: SimilarityRetriever, generator: GenerationClient, accountant: UsageAccountant, response_selector: ResponseSelector = random.choice, idle_seconds: float | None = None) -> None:
        self._chatbots = chatbots
        self._messages = messages
        self._retriever = retriever
        self._generator = generator
        self._accountant = accountant
        self._select = response_selector
        self._idle_seconds = idle_seconds or settings.STREAM_IDLE_TIMEOUT_SECONDS

    # ══════════════════════════════════════════════════════════════════
    #  PREPARATION
    # ══════════════════════════════════════════════════════════════════

    async def prepare(self, request: QueryRequest, user_ip: str | None = None) -> PreparedQuery:
        """
        Raises
        ------
        NotFoundError
            Chatbot missing or not ready.
        ConfigurationError
            Provider credential missing or rejected.
        """
        t_start = time.perf_counter()
        chatbot = await self._chatbots.get_ready_chatbot(request.chatbot_id)
        config = await self._chatbots.get_rag_config(chatbot.id)
        prepared = PreparedQuery(request, chatbot, config, request.thread_id or uuid.uuid4().hex, user_ip)

        if is_trivial_query(request.message, config):
            prepared.short_circuit = True
            logger.info("[RAG] Trivial message for chatbot %s — asking for more detail.", chatbot.id)
            return prepared

        self._generator.ensure_configured()

        with timed(logger, "[RAG] Retrieval", level=logging.INFO) as t_search:
            prepared.chunks = await self._retriever.retrieve(request.message, chatbot.id, threshold=config.similarity_threshold, top_k=config.max_retrieved_chunks)
        prepared.system_prompt = build_prompt(chatbot.name, prepared.chunks, config.enable_citations, config.chunk_char_limit, config.custom_instructions)

        logger.info("[RAG] Prepared query for chatbot %s: %d chunk(s), search %.1fms, total %.1fms.", chatbot.id, len(prepared.chunks), t_search.elapsed_ms, (time.perf_counter() - t_start) * 1000)
        return prepared

    # ══════════════════════════════════════════════════════════════════
    #  SINGLE-SHOT
    # ══════════════════════════════════════════════════════════════════

    async def answer(self, request: QueryRequest, user_ip: str | None = None) -> QueryResponse:
        prepared = await self.prepare(request, user_ip)
        return await self.answer_prepared(prepared)


    async def answer_prepared(self, prepared: PreparedQuery) -> QueryResponse:
        config = prepared.config
        if prepared.short_circuit:
            await self._persist(prepared, CLARIFICATION_MESSAGE)
            return QueryResponse(response=CLARIFICATION_MESSAGE, citations_enabled=config.enable_citations, thread_id=prepared.thread_id)

        with timed(logger, "[RAG] Generation", level=logging.INFO):
            completion = await self._generator.complete(prepared.system_prompt, prepared.request.message, temperature=config.temperature, max_tokens=config.max_tokens)

        text = completion.text.strip() or self._empty_completion_reply(prepared.chatbot.name)
        await self._record_usage(prepared, completion.text, completion.usage, streaming=False)
        await self._persist(prepared, text)

        return QueryResponse(response=text, sources=self._sources(prepared), citations_enabled=config.enable_citations, thread_id=prepared.thread_id)

    # ══════════════════════════════════════════════════════════════════
    #  STREAMING
    # ══════════════════════════════════════════════════════════════════

    async def stream_prepared(self, prepared: PreparedQuery, token: CancellationToken | None = None) -> AsyncIterator[str]:
        """Yield encoded ``ready`` / ``delta`` / ``end`` | ``error`` events."""
        yield encode_event(READY, {"thread_id": prepared.thread_id})

        if prepared.short_circuit:
            yield encode_event(DELTA, {"text": CLARIFICATION_MESSAGE})
            yield encode_event(END, {"thread_id": prepared.thread_id, "text": CLARIFICATION_MESSAGE})
            await self._persist(prepared, CLARIFICATION_MESSAGE)
            return

        token = token or CancellationToken()
        config = prepared.config
        incremental = self._generator.stream(prepared.system_prompt, prepared.request.message, temperature=config.temperature, max_tokens=config.max_tokens)
        final_text: str | None = None
        t_stream = time.perf_counter()

        try:
            try:
                async with aclosing(iterate_with_idle_timeout(incremental, token, self._idle_seconds)) as deltas:
                    async for piece in deltas:
                        yield encode_event(DELTA, {"text": piece})
            except KBChatError as exc:
                logger.warning("[RAG] Stream for chatbot %s aborted after %d chars: %s", prepared.chatbot.id, len(incremental.text), exc)
                yield encode_event(ERROR, {"message": _user_message(exc)})
                return

            final_text = incremental.text.strip()
            if not final_text:
                final_text = self._empty_completion_reply(prepared.chatbot.name)
                yield encode_event(DELTA, {"text": final_text})
            yield encode_event(END, {"thread_id": prepared.thread_id, "text": final_text})
            logger.info("[RAG] Stream complete: %d chars in %.1fms.", len(final_text), (time.perf_counter() - t_stream) * 1000)
        finally:
            token.disarm()
            # A disconnected client cancels the response scope; billing and persistence still run
            with anyio.CancelScope(shield=True):
                await self._finalize_stream(prepared, incremental.text, incremental.usage, final_text)


    async def _finalize_stream(self, prepared: PreparedQuery, generated: str, usage: TokenUsage | None, final_text: str | None) -> None:
        if final_text is not None:
            await self._record_usage(prepared, generated, usage, streaming=True)
            await self._persist(prepared, final_text)
            return

        # Aborted: bill what the provider already produced, keep the partial answer
        logger.info("[RAG] Finalising aborted stream for chatbot %s with %d chars.", prepared.chatbot.id, len(generated))
        if generated or usage is not None:
            await self._record_usage(prepared, generated, usage, streaming=True)
        if generated.strip():
            await self._persist(prepared, generated)

    # ══════════════════════════════════════════════════════════════════
    #  SIDE EFFECTS
    # ══════════════════════════════════════════════════════════════════

    async def _record_usage(self, prepared: PreparedQuery, response_text: str, usage: TokenUsage | None, streaming: bool) -> None:
        await self._accountant.record_generation(user_id=prepared.user_id, chatbot_id=prepared.chatbot.id, model=self._generator.model, prompt_messages=[prepared.system_prompt, prepared.request.message], response_text=response_text, reported=usage, streaming=streaming, context_chunks=len(prepared.chunks))


    async def _persist(self, prepared: PreparedQuery, response_text: str) -> None:
        message = ChatMessage(chatbot_id=prepared.chatbot.id, message=prepared.request.message, response=response_text, user_ip=prepared.user_ip, thread_id=prepared.thread_id)
        try:
            await self._messages.save_message(message)
        except Exception:
            logger.exception("[RAG] Could not save chat message for chatbot %s.", prepared.chatbot.id)


    def _empty_completion_reply(self, bot_name: str) -> str:
        logger.warning("[RAG] Provider returned an empty completion — using a canned reply.")
        return self._select(EMPTY_COMPLETION_RESPONSES).format(bot_name=bot_name)


    @staticmethod
    def _sources(prepared: PreparedQuery) -> list[Source] | None:
        if not prepared.config.enable_citations or not prepared.chunks:
            return None
        return [Source(content=c.content[:_SOURCE_PREVIEW_CHARS] + "...", similarity=c.similarity, chunk_index=c.chunk_index, source_url=c.source_url) for c in prepared.chunks]


def _user_message(exc: BaseException) -> str:
    if isinstance(exc, RateLimitError):
        return ERROR_RESPONSES["rate_limited"]
    if isinstance(exc, ConfigurationError):
        return ERROR_RESPONSES["unavailable"]
    if isinstance(exc, StreamingError):
        return ERROR_RESPONSES["stream"]
    return ERROR_RESPONSES["provider"]
