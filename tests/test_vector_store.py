import pytest

from kbchat.src.core.models import EmbeddedChunk, UnembeddedChunk
from kbchat.src.database.vector_store import ChunkVectorStore, keyword_terms


def _rows():
    return [
        EmbeddedChunk(chatbot_id="bot-1", knowledge_base_id="k1", content="The store opens at nine.", chunk_index=0, embedding=[1.0, 0.0], source_url="file://hours.md"),
        EmbeddedChunk(chatbot_id="bot-1", knowledge_base_id="k1", content="Parking is free on Sundays.", chunk_index=1, embedding=[0.0, 1.0]),
        UnembeddedChunk(chatbot_id="bot-1", knowledge_base_id="k2", content="Refunds take five business days.", chunk_index=0),
        EmbeddedChunk(chatbot_id="bot-2", knowledge_base_id="k3", content="Another tenant's opening hours.", chunk_index=0, embedding=[1.0, 0.0]),
    ]


@pytest.fixture
async def store(tmp_path):
    store = ChunkVectorStore(db_path=str(tmp_path / "lancedb"), table_name="chunks_test", dimensions=2)
    await store.insert_chunks(_rows())
    return store


class TestKeywordTerms:
    def test_short_and_duplicate_terms_dropped(self):
        assert keyword_terms("Do you do REFUNDS, refunds?") == ["you", "refunds"]


class TestChunkVectorStore:
    async def test_similarity_scoped_to_embedded_rows_of_one_chatbot(self, store):
        hits = await store.similarity_search("bot-1", [1.0, 0.0], threshold=0.5, top_k=5)

        assert [h.content for h in hits] == ["The store opens at nine."]
        assert hits[0].similarity == pytest.approx(1.0, abs=1e-5)
        assert hits[0].source_url == "file://hours.md"

    async def test_text_search_sees_unembedded_rows(self, store):
        hits = await store.text_search("bot-1", "how long do refunds take", limit=3)

        assert [h.content for h in hits] == ["Refunds take five business days."]
        assert hits[0].similarity is None

    async def test_delete_item_then_chatbot(self, store):
        assert await store.delete_item_chunks("k2") == 1
        assert await store.delete_chatbot("bot-1") == 2
        assert store.count() == 1

    async def test_wrong_vector_width_rejected(self, store):
        with pytest.raises(ValueError):
            await store.insert_chunks([EmbeddedChunk(chatbot_id="bot-1", knowledge_base_id="k9", content="x", chunk_index=0, embedding=[1.0, 0.0, 0.0])])

    async def test_underscore_in_term_matches_literally(self, tmp_path):
        store = ChunkVectorStore(db_path=str(tmp_path / "lancedb"), table_name="chunks_terms", dimensions=2)
        await store.insert_chunks([
            UnembeddedChunk(chatbot_id="bot-1", knowledge_base_id="k1", content="Quote your order_id when calling.", chunk_index=0),
            UnembeddedChunk(chatbot_id="bot-1", knowledge_base_id="k1", content="The orderXid field is internal.", chunk_index=1),
        ])

        hits = await store.text_search("bot-1", "where is my order_id", limit=5)

        assert [h.content for h in hits] == ["Quote your order_id when calling."]
