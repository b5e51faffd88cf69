import pytest

from kbchat.src.core.errors import ConfigurationError, ProviderError
from kbchat.src.core.models import EmbeddedChunk, RetrievedChunk, UnembeddedChunk
from kbchat.src.core.retriever import QueryRewriter, SimilarityRetriever, rank_chunks

from conftest import FakeChunkStore, FakeEmbedder, FakeGenerator


def _embedded(content: str, vector: list[float], index: int, chatbot_id: str = "bot-1") -> EmbeddedChunk:
    return EmbeddedChunk(chatbot_id=chatbot_id, knowledge_base_id="k1", content=content, chunk_index=index, embedding=vector)


class TestRankChunks:
    def test_threshold_then_top_k(self):
        chunks = [RetrievedChunk(content="a", similarity=0.9, chunk_index=0), RetrievedChunk(content="b", similarity=0.5, chunk_index=1), RetrievedChunk(content="c", similarity=0.7, chunk_index=2)]
        ranked = rank_chunks(chunks, threshold=0.6, top_k=2)
        assert [c.similarity for c in ranked] == [0.9, 0.7]

    def test_ties_broken_by_chunk_index(self):
        chunks = [RetrievedChunk(content="late", similarity=0.8, chunk_index=5), RetrievedChunk(content="early", similarity=0.8, chunk_index=1)]
        assert [c.content for c in rank_chunks(chunks, 0.5, 5)] == ["early", "late"]

    def test_unscored_chunks_dropped(self):
        assert rank_chunks([RetrievedChunk(content="kw")], 0.0, 5) == []


class TestSimilarityRetriever:
    async def test_vector_hits_scoped_to_chatbot(self):
        store = FakeChunkStore()
        store.rows = [_embedded("opening hours are nine to six", [1.0, 0.0], 0), _embedded("other bot data", [1.0, 0.0], 0, chatbot_id="bot-2"), _embedded("unrelated", [0.0, 1.0], 1)]
        retriever = SimilarityRetriever(FakeEmbedder(query_vector=[1.0, 0.0]), store)

        hits = await retriever.retrieve("When do you open?", "bot-1", threshold=0.7, top_k=5)

        assert [h.content for h in hits] == ["opening hours are nine to six"]
        assert hits[0].similarity == pytest.approx(1.0)

    async def test_empty_result_falls_back_to_keywords(self):
        store = FakeChunkStore()
        store.rows = [UnembeddedChunk(chatbot_id="bot-1", knowledge_base_id="k1", content="Refunds are processed within five days.", chunk_index=0)]
        retriever = SimilarityRetriever(FakeEmbedder(), store, fallback_limit=3)

        hits = await retriever.retrieve("refunds policy", "bot-1", threshold=0.7, top_k=5)

        assert [h.content for h in hits] == ["Refunds are processed within five days."]
        assert hits[0].similarity is None

    async def test_search_failure_falls_back_with_raw_query(self):
        store = FakeChunkStore(search_error=OSError("table locked"))
        rewriter = QueryRewriter(FakeGenerator(text="refund policy details"), enabled=True)
        retriever = SimilarityRetriever(FakeEmbedder(), store, rewriter=rewriter)

        await retriever.retrieve("how do refunds work", "bot-1", threshold=0.7, top_k=5)

        assert store.text_queries == ["how do refunds work"]

    async def test_configuration_error_propagates(self):
        retriever = SimilarityRetriever(FakeEmbedder(query_error=ConfigurationError("no key")), FakeChunkStore())
        with pytest.raises(ConfigurationError):
            await retriever.retrieve("anything at all", "bot-1", threshold=0.7, top_k=5)

    async def test_provider_error_falls_back(self):
        store = FakeChunkStore()
        retriever = SimilarityRetriever(FakeEmbedder(query_error=ProviderError("boom", 500)), store)

        hits = await retriever.retrieve("anything at all", "bot-1", threshold=0.7, top_k=5)

        assert hits == []
        assert store.text_queries == ["anything at all"]

    async def test_rewritten_query_is_embedded(self):
        embedder = FakeEmbedder()
        rewriter = QueryRewriter(FakeGenerator(text='"store opening hours"\nextra line'), enabled=True)
        retriever = SimilarityRetriever(embedder, FakeChunkStore(), rewriter=rewriter)

        await retriever.retrieve("when r u open??", "bot-1", threshold=0.7, top_k=5)

        assert embedder.queries == ["store opening hours"]


class TestQueryRewriter:
    async def test_failure_returns_original(self):
        rewriter = QueryRewriter(FakeGenerator(complete_error=ProviderError("down", 503)), enabled=True)
        assert await rewriter.rewrite_or_identity("refund policy") == "refund policy"

    async def test_blank_output_returns_original(self):
        rewriter = QueryRewriter(FakeGenerator(text="  \n "), enabled=True)
        assert await rewriter.rewrite_or_identity("refund policy") == "refund policy"

    async def test_disabled_makes_no_call(self):
        generator = FakeGenerator()
        rewriter = QueryRewriter(generator, enabled=False)
        assert await rewriter.rewrite_or_identity("refund policy") == "refund policy"
        assert generator.complete_calls == []
