"""
kbchat - ChunkVectorStore
==========================
LanceDB implementation of ``ChunkRepository``:
  • Table creation with a strict PyArrow schema
  • Chunk insertion (embedded and unembedded rows)
  • Cosine similarity search over one chatbot's embedded rows
  • Keyword search over all of one chatbot's rows
  • Deletion per knowledge item and per chatbot (cascade)

Design decisions:
  • **Singleton DB connection** — ``_get_connection()`` caches the
    ``lancedb.DBConnection`` per path to avoid file-lock issues.
  • **Unembedded rows** carry an all-zero placeholder vector and
    ``embedded = false``; every vector query prefilters on
    ``embedded = true`` so they never reach similarity ranking.
  • LanceDB's Python API is synchronous; calls run in a worker thread
    via ``asyncio.to_thread`` so the event loop is never blocked.

Usage:
    store = ChunkVectorStore()
    await store.insert_chunks(rows)
    hits  = await store.similarity_search("bot-1", vector, threshold=0.7, top_k=5)
"""

from __future__ import annotations

import asyncio
import json
import re
import threading
from collections.abc import Sequence
from typing import Any

import lancedb
import pyarrow as pa

from kbchat.config.settings import settings
from kbchat.src.core.models import EmbeddedChunk, RetrievedChunk, StoredChunk
from kbchat.src.core.retriever import rank_chunks
from kbchat.src.utils.logger import get_logger

logger = get_logger(__name__)

ChunkRecord = dict[str, str | int | bool | list[float] | None]

_TERM_RE = re.compile(r"\w+", re.UNICODE)
_MIN_TERM_LENGTH = 3
_KEYWORD_OVERFETCH = 4

_DB_LOCK = threading.Lock()
_db_connection_cache: dict[str, lancedb.DBConnection] = {}


def chunk_schema(dimensions: int) -> pa.Schema:
    return pa.schema([
        pa.field("id", pa.utf8()),
        pa.field("chatbot_id", pa.utf8()),
        pa.field("knowledge_base_id", pa.utf8()),
        pa.field("text", pa.utf8()),
        pa.field("vector", pa.list_(pa.float32(), dimensions)),
        pa.field("embedded", pa.bool_()),
        pa.field("chunk_index", pa.int32()),
        pa.field("source_url", pa.utf8()),
        pa.field("metadata", pa.utf8()),
    ])


def _get_connection(db_path: str) -> lancedb.DBConnection:
    """Return a process-wide ``lancedb.DBConnection`` for *db_path*."""
    if db_path not in _db_connection_cache:
        with _DB_LOCK:
            if db_path not in _db_connection_cache:
                logger.info("Opening new LanceDB connection: %s", db_path)
                _db_connection_cache[db_path] = lancedb.connect(db_path)
    return _db_connection_cache[db_path]


def _quote(value: str) -> str:
    """SQL string literal with embedded quotes doubled."""
    return "'" + value.replace("'", "''") + "'"


def keyword_terms(query: str) -> list[str]:
    """Lowercased, de-duplicated words of *query* longer than two characters."""
    seen: dict[str, None] = {}
    for term in _TERM_RE.findall(query.lower()):
        if len(term) >= _MIN_TERM_LENGTH:
            seen.setdefault(term, None)
    return list(seen)


class ChunkVectorStore:
    """
    High-level abstraction over the LanceDB chunk table.

    Parameters
    ----------
    db_path
        Override the database directory.  Defaults to ``settings.LANCEDB_PATH``.
    table_name
        Override the table name.  Defaults to ``settings.LANCEDB_TABLE_NAME``.
    dimensions
        Vector width.  Defaults to ``settings.EMBEDDING_DIMENSIONS``.
    """

    __slots__ = ("_db_path", "_table_name", "_dimensions", "db", "table")

    def __init__(self, db_path: str | None = None, table_name: str | None = None, dimensions: int | None = None) -> None:
        self._db_path: str = str(db_path or settings.LANCEDB_PATH)
        self._table_name: str = table_name or settings.LANCEDB_TABLE_NAME
        self._dimensions: int = dimensions or settings.EMBEDDING_DIMENSIONS
        self.db: lancedb.DBConnection | None = None
        self.table: lancedb.table.Table | None = None
        self._connect()


    def _connect(self) -> None:
        try:
            self.db = _get_connection(self._db_path)
            if self._table_name in self.db.table_names():
                self.table = self.db.open_table(self._table_name)
                logger.info("Opened existing table '%s' (%d rows).", self._table_name, self.table.count_rows())
            else:
                self.table = self.db.create_table(self._table_name, schema=chunk_schema(self._dimensions))
                logger.info("Created new table '%s' (dim=%d).", self._table_name, self._dimensions)
        except OSError as exc:
            logger.error("LanceDB filesystem error at %s: %s", self._db_path, exc)
            raise

    # ── Write path ─────────────────────────────────────────────────────

    async def insert_chunks(self, chunks: Sequence[StoredChunk]) -> int:
        """Write one sub-batch of rows; the caller bounds its size."""
        if not chunks:
            return 0
        records = [self._to_record(c) for c in chunks]
        await asyncio.to_thread(self._require_table().add, records)
        logger.debug("Added %d chunk row(s) to '%s'.", len(records), self._table_name)
        return len(records)


    async def delete_item_chunks(self, knowledge_base_id: str) -> int:
        return await asyncio.to_thread(self._delete_where, f"knowledge_base_id = {_quote(knowledge_base_id)}")


    async def delete_chatbot(self, chatbot_id: str) -> int:
        removed = await asyncio.to_thread(self._delete_where, f"chatbot_id = {_quote(chatbot_id)}")
        logger.info("Deleted %d chunk row(s) of chatbot %s.", removed, chatbot_id)
        return removed


    def _delete_where(self, predicate: str) -> int:
        table = self._require_table()
        before = table.count_rows(predicate)
        if before:
            table.delete(predicate)
        return before


    def _to_record(self, chunk: StoredChunk) -> ChunkRecord:
        embedded = isinstance(chunk, EmbeddedChunk)
        vector = chunk.embedding if embedded else [0.0] * self._dimensions
        if len(vector) != self._dimensions:
            raise ValueError(f"Chunk {chunk.id} has a {len(vector)}-dim vector; table expects {self._dimensions}.")
        return {"id": chunk.id, "chatbot_id": chunk.chatbot_id, "knowledge_base_id": chunk.knowledge_base_id, "text": chunk.content, "vector": vector, "embedded": embedded, "chunk_index": chunk.chunk_index, "source_url": chunk.source_url, "metadata": json.dumps(chunk.metadata)}

    # ── Read path ──────────────────────────────────────────────────────

    async def similarity_search(self, chatbot_id: str, vector: list[float], threshold: float, top_k: int) -> list[RetrievedChunk]:
        rows = await asyncio.to_thread(self._vector_query, chatbot_id, vector, top_k)
        hits = [RetrievedChunk(content=r["text"], similarity=1.0 - float(r["_distance"]), chunk_index=r["chunk_index"], source_url=r.get("source_url")) for r in rows]
        ranked = rank_chunks(hits, threshold, top_k)
        logger.info("Similarity search: %d candidate(s) → %d ≥ %.2f.", len(hits), len(ranked), threshold)
        return ranked


    def _vector_query(self, chatbot_id: str, vector: list[float], top_k: int) -> list[dict[str, Any]]:
        where = f"chatbot_id = {_quote(chatbot_id)} AND embedded = true"
        query = self._require_table().search(vector, vector_column_name="vector").distance_type("cosine").where(where, prefilter=True).limit(top_k)
        return query.to_list()


    async def text_search(self, chatbot_id: str, query: str, limit: int) -> list[RetrievedChunk]:
        terms = keyword_terms(query)
        if not terms:
            return []
        rows = await asyncio.to_thread(self._keyword_query, chatbot_id, terms, limit * _KEYWORD_OVERFETCH)
        # LIKE only narrows the candidates; a row matches when a term occurs verbatim
        rows = [r for r in rows if any(t in r["text"].lower() for t in terms)][:limit]
        return [RetrievedChunk(content=r["text"], chunk_index=r["chunk_index"], source_url=r.get("source_url")) for r in rows]


    def _keyword_query(self, chatbot_id: str, terms: list[str], limit: int) -> list[dict[str, Any]]:
        like = " OR ".join(f"lower(text) LIKE {_quote('%' + t + '%')}" for t in terms)
        where = f"chatbot_id = {_quote(chatbot_id)} AND ({like})"
        return self._require_table().search().where(where).limit(limit).to_list()

    # ── Housekeeping ───────────────────────────────────────────────────

    def count(self) -> int:
        if self.table is None:
            return 0
        return self.table.count_rows()


    def drop_table(self) -> None:
        if self.db is None:
            return
        try:
            self.db.drop_table(self._table_name)
            self.table = None
            logger.info("Dropped table '%s'.", self._table_name)
        except ValueError:
            logger.warning("Table '%s' does not exist — nothing to drop.", self._table_name)


    def _require_table(self) -> lancedb.table.Table:
        if self.table is None:
            raise RuntimeError("Chunk table is not initialised.")
        return self.table


    def __repr__(self) -> str:
        return f"ChunkVectorStore(db='{self._db_path}', table='{self._table_name}', rows={self.count()})"
