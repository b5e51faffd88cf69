import anyio
import pytest

from kbchat.config.prompt_templates import CLARIFICATION_MESSAGE, EMPTY_COMPLETION_RESPONSES, ERROR_RESPONSES
from kbchat.src.core.errors import ConfigurationError, NotFoundError, TransientProviderError
from kbchat.src.core.models import Chatbot, EmbeddedChunk, QueryRequest, RAGConfig, TokenUsage
from kbchat.src.core.rag_engine import RAGManager
from kbchat.src.core.retriever import SimilarityRetriever
from kbchat.src.core.usage import UsageAccountant
from kbchat.src.streaming.events import EventStreamDecoder

from conftest import FakeChatbotRepo, FakeChunkStore, FakeEmbedder, FakeGenerator, FakeMessageRepo, FakeUsageRepo, fixed_clock, text_chunk

QUESTION = "What time does the store open?"


def _store() -> FakeChunkStore:
    store = FakeChunkStore()
    store.rows = [EmbeddedChunk(chatbot_id="bot-1", knowledge_base_id="k1", content="The store opens at nine and closes at six.", chunk_index=0, embedding=[1.0, 0.0])]
    return store


def _manager(generator, chatbots, messages, accountant, embedder=None, store=None, idle_seconds=1) -> RAGManager:
    retriever = SimilarityRetriever(embedder or FakeEmbedder(query_vector=[1.0, 0.0]), store or _store())
    return RAGManager(chatbots, messages, retriever, generator, accountant, response_selector=lambda options: options[0], idle_seconds=idle_seconds)


async def _events(manager: RAGManager, request: QueryRequest) -> list[tuple[str, dict]]:
    prepared = await manager.prepare(request)
    decoder = EventStreamDecoder()
    events = []
    async for frame in manager.stream_prepared(prepared):
        events.extend(decoder.feed(frame))
    return [(e.event, e.payload()) for e in events]


class TestPrepare:
    async def test_trivial_message_makes_no_provider_calls(self, chatbot, message_repo, accountant, usage_repo):
        chatbots = FakeChatbotRepo([chatbot], {"bot-1": RAGConfig(min_word_count=5)})
        embedder = FakeEmbedder()
        generator = FakeGenerator(configured=False)
        manager = _manager(generator, chatbots, message_repo, accountant, embedder=embedder)

        response = await manager.answer(QueryRequest(chatbot_id="bot-1", message="hi"))

        assert response.response == CLARIFICATION_MESSAGE
        assert embedder.queries == []
        assert generator.complete_calls == []
        assert usage_repo.increments == []
        assert [m.response for m in message_repo.saved] == [CLARIFICATION_MESSAGE]

    async def test_chatbot_not_ready(self, message_repo, accountant):
        chatbots = FakeChatbotRepo([Chatbot(id="bot-1", name="Helper", status="processing")])
        manager = _manager(FakeGenerator(), chatbots, message_repo, accountant)
        with pytest.raises(NotFoundError):
            await manager.prepare(QueryRequest(chatbot_id="bot-1", message=QUESTION))

    async def test_missing_credential_fails_before_generation(self, chatbot_repo, message_repo, accountant):
        embedder = FakeEmbedder()
        manager = _manager(FakeGenerator(configured=False), chatbot_repo, message_repo, accountant, embedder=embedder)
        with pytest.raises(ConfigurationError):
            await manager.prepare(QueryRequest(chatbot_id="bot-1", message=QUESTION))
        assert embedder.queries == []

    async def test_thread_id_generated_when_absent(self, chatbot_repo, message_repo, accountant):
        manager = _manager(FakeGenerator(), chatbot_repo, message_repo, accountant)
        prepared = await manager.prepare(QueryRequest(chatbot_id="bot-1", message=QUESTION))
        assert len(prepared.thread_id) == 32
        assert "The store opens at nine" in prepared.system_prompt


class TestAnswer:
    async def test_answer_records_usage_and_message_once(self, chatbot_repo, message_repo, accountant, usage_repo):
        generator = FakeGenerator(text="We open at nine.", usage=TokenUsage(prompt_tokens=120, completion_tokens=6, total_tokens=126))
        manager = _manager(generator, chatbot_repo, message_repo, accountant)

        response = await manager.answer(QueryRequest(chatbot_id="bot-1", message=QUESTION, thread_id="t1"))

        assert response.response == "We open at nine."
        assert response.thread_id == "t1"
        assert response.sources is None
        assert len(usage_repo.increments) == 1
        assert usage_repo.increments[0]["metadata"]["streaming"] is False
        assert len(message_repo.saved) == 1
        assert message_repo.saved[0].thread_id == "t1"

    async def test_sources_when_citations_enabled(self, chatbot, message_repo, accountant):
        chatbots = FakeChatbotRepo([chatbot], {"bot-1": RAGConfig(enable_citations=True)})
        manager = _manager(FakeGenerator(text="Nine [1]."), chatbots, message_repo, accountant)

        response = await manager.answer(QueryRequest(chatbot_id="bot-1", message=QUESTION))

        assert response.citations_enabled is True
        assert response.sources[0].content == "The store opens at nine and closes at six...."
        assert response.sources[0].similarity == pytest.approx(1.0)

    async def test_empty_completion_uses_canned_reply(self, chatbot_repo, message_repo, accountant, usage_repo):
        manager = _manager(FakeGenerator(text="   "), chatbot_repo, message_repo, accountant)

        response = await manager.answer(QueryRequest(chatbot_id="bot-1", message=QUESTION))

        assert response.response == EMPTY_COMPLETION_RESPONSES[0].format(bot_name="Helper")
        assert len(usage_repo.increments) == 1

    async def test_failed_message_write_keeps_usage(self, chatbot_repo, accountant, usage_repo):
        manager = _manager(FakeGenerator(), chatbot_repo, FakeMessageRepo(fail=True), accountant)

        response = await manager.answer(QueryRequest(chatbot_id="bot-1", message=QUESTION))

        assert response.response == "An answer."
        assert len(usage_repo.increments) == 1

    async def test_usage_attributed_to_request_user(self, chatbot_repo, message_repo, accountant, usage_repo):
        manager = _manager(FakeGenerator(), chatbot_repo, message_repo, accountant)
        await manager.answer(QueryRequest(chatbot_id="bot-1", message=QUESTION, user_id="visitor-9"))
        assert usage_repo.increments[0]["user_id"] == "visitor-9"

    async def test_no_context_prompt_refuses(self, chatbot_repo, message_repo, accountant):
        generator = FakeGenerator()
        manager = _manager(generator, chatbot_repo, message_repo, accountant, store=FakeChunkStore())

        await manager.answer(QueryRequest(chatbot_id="bot-1", message=QUESTION))

        system_prompt, _ = generator.complete_calls[0]
        assert "The store opens" not in system_prompt
        assert "knowledge base" in system_prompt


class TestStream:
    async def test_event_sequence_and_side_effects(self, chatbot_repo, message_repo, accountant, usage_repo):
        generator = FakeGenerator(stream_chunks=[text_chunk("We open "), text_chunk("at nine.", usage={"prompt": 100, "completion": 5, "total": 105}, finish_reason="STOP")])
        manager = _manager(generator, chatbot_repo, message_repo, accountant)

        events = await _events(manager, QueryRequest(chatbot_id="bot-1", message=QUESTION, thread_id="t1", stream=True))

        assert [name for name, _ in events] == ["ready", "delta", "delta", "end"]
        assert events[0][1] == {"thread_id": "t1"}
        assert events[-1][1] == {"thread_id": "t1", "text": "We open at nine."}
        assert len(usage_repo.increments) == 1
        assert usage_repo.increments[0]["metadata"]["tokens"]["completion"] == 5
        assert usage_repo.increments[0]["metadata"]["streaming"] is True
        assert [m.response for m in message_repo.saved] == ["We open at nine."]

    async def test_failure_after_text_keeps_partial_answer(self, chatbot_repo, message_repo, accountant, usage_repo):
        generator = FakeGenerator(stream_chunks=[text_chunk("We open ")], stream_error=TransientProviderError("upstream reset", 503))
        manager = _manager(generator, chatbot_repo, message_repo, accountant)

        events = await _events(manager, QueryRequest(chatbot_id="bot-1", message=QUESTION, stream=True))

        assert [name for name, _ in events] == ["ready", "delta", "error"]
        assert events[-1][1] == {"message": ERROR_RESPONSES["provider"]}
        assert len(usage_repo.increments) == 1
        assert [m.response for m in message_repo.saved] == ["We open "]

    async def test_failure_before_any_text_reports_error(self, chatbot_repo, message_repo, accountant):
        generator = FakeGenerator(stream_chunks=[], stream_error=TransientProviderError("upstream reset", 503))
        manager = _manager(generator, chatbot_repo, message_repo, accountant)

        events = await _events(manager, QueryRequest(chatbot_id="bot-1", message=QUESTION, stream=True))

        assert [name for name, _ in events] == ["ready", "error"]
        assert message_repo.saved == []

    async def test_empty_stream_sends_canned_reply(self, chatbot_repo, message_repo, accountant, usage_repo):
        manager = _manager(FakeGenerator(stream_chunks=[]), chatbot_repo, message_repo, accountant)

        events = await _events(manager, QueryRequest(chatbot_id="bot-1", message=QUESTION, stream=True))

        canned = EMPTY_COMPLETION_RESPONSES[0].format(bot_name="Helper")
        assert events[1] == ("delta", {"text": canned})
        assert events[2][1]["text"] == canned
        assert len(usage_repo.increments) == 1

    async def test_trivial_message_streams_clarification(self, chatbot, message_repo, accountant, usage_repo):
        chatbots = FakeChatbotRepo([chatbot], {"bot-1": RAGConfig(min_word_count=5)})
        generator = FakeGenerator()
        manager = _manager(generator, chatbots, message_repo, accountant)

        events = await _events(manager, QueryRequest(chatbot_id="bot-1", message="hi", stream=True))

        assert [name for name, _ in events] == ["ready", "delta", "end"]
        assert events[1][1] == {"text": CLARIFICATION_MESSAGE}
        assert generator.stream_calls == []
        assert usage_repo.increments == []

    async def test_idle_provider_stream_keeps_partial_answer(self, chatbot_repo, message_repo, accountant, usage_repo):
        generator = FakeGenerator(stream_chunks=[text_chunk("We open "), text_chunk("at nine.")], stall_after=1)
        manager = _manager(generator, chatbot_repo, message_repo, accountant, idle_seconds=0.05)

        events = await _events(manager, QueryRequest(chatbot_id="bot-1", message=QUESTION, stream=True))

        assert [name for name, _ in events] == ["ready", "delta", "error"]
        assert events[-1][1] == {"message": ERROR_RESPONSES["stream"]}
        assert len(usage_repo.increments) == 1
        assert [m.response for m in message_repo.saved] == ["We open "]


class TestClientDisconnect:
    async def test_cancelled_response_still_bills_and_saves(self, chatbot_repo):
        usage = FakeUsageRepo(suspend=True)
        messages = FakeMessageRepo(suspend=True)
        generator = FakeGenerator(stream_chunks=[text_chunk("We open "), text_chunk("at nine.")], stall_after=1)
        manager = _manager(generator, chatbot_repo, messages, UsageAccountant(usage, metric_name="chat_tokens_per_month", clock=fixed_clock), idle_seconds=5)
        prepared = await manager.prepare(QueryRequest(chatbot_id="bot-1", message=QUESTION, stream=True))

        decoder = EventStreamDecoder()
        names = []
        with anyio.CancelScope() as scope:
            async for frame in manager.stream_prepared(prepared):
                names.extend(e.event for e in decoder.feed(frame))
                if "delta" in names:
                    scope.cancel()

        assert scope.cancelled_caught
        assert names == ["ready", "delta"]
        assert len(usage.increments) == 1
        assert usage.increments[0]["metadata"]["streaming"] is True
        assert [m.response for m in messages.saved] == ["We open "]
