"""
kbchat - MongoDB Repositories
==============================
``motor``-backed implementations of the chatbot, knowledge, message and
usage repositories.

Collections
-----------
``chatbots``          ``{_id, name, status, user_id, knowledge_base_processed, updated_at}``
``rag_settings``      ``{chatbot_id, temperature?, max_tokens?, …}`` per-bot overrides
``knowledge_base``    ``{_id, chatbot_id, content, content_type, filename, processed, status, error_message, created_at}``
``chat_messages``     one document per completed query
``usage_tracking``    ``{user_id, metric_name, period_start, period_end, metric_value}`` (``$inc``)
``subscriptions``     read-only here; the active one is attached to usage metadata
``billing_failures``  usage increments that could not be written
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any

import motor.motor_asyncio
from pymongo.errors import PyMongoError

from kbchat.config.settings import settings
from kbchat.src.core.errors import NotFoundError, StorageError
from kbchat.src.core.models import Chatbot, ChatMessage, KnowledgeItem, RAGConfig
from kbchat.src.utils.logger import get_logger

logger = get_logger(__name__)

_ACTIVE_SUBSCRIPTION_STATES = ["active", "trialing"]


# ══════════════════════════════════════════════════════════════════════
#  MONGODB SINGLETON CLIENT
# ══════════════════════════════════════════════════════════════════════

_mongo_client: motor.motor_asyncio.AsyncIOMotorClient | None = None


def get_mongo_client() -> motor.motor_asyncio.AsyncIOMotorClient:
    """Return (or create) the module-level async MongoDB client."""
    global _mongo_client
    if _mongo_client is None:
        _mongo_client = motor.motor_asyncio.AsyncIOMotorClient(settings.MONGO_URI.get_secret_value())
        logger.info("MongoDB async client created (singleton).")
    return _mongo_client


def get_database() -> motor.motor_asyncio.AsyncIOMotorDatabase:
    return get_mongo_client()[settings.MONGO_DB_NAME]


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ══════════════════════════════════════════════════════════════════════
#  CHATBOTS
# ══════════════════════════════════════════════════════════════════════


class MongoChatbotRepository:
    __slots__ = ("_chatbots", "_rag_settings")

    def __init__(self, database: motor.motor_asyncio.AsyncIOMotorDatabase | None = None) -> None:
        db = database if database is not None else get_database()
        self._chatbots = db["chatbots"]
        self._rag_settings = db["rag_settings"]


    async def get_chatbot(self, chatbot_id: str) -> Chatbot | None:
        doc = await self._chatbots.find_one({"_id": chatbot_id})
        if doc is None:
            return None
        return Chatbot(id=str(doc["_id"]), name=doc.get("name") or "Assistant", status=doc.get("status", "creating"), user_id=doc.get("user_id"), knowledge_base_processed=bool(doc.get("knowledge_base_processed", False)))


    async def get_ready_chatbot(self, chatbot_id: str) -> Chatbot:
        chatbot = await self.get_chatbot(chatbot_id)
        if chatbot is None or chatbot.status != "ready":
            raise NotFoundError(f"Chatbot {chatbot_id} not found or not ready.")
        return chatbot


    async def get_rag_config(self, chatbot_id: str) -> RAGConfig:
        """Stored per-bot overrides merged over the settings defaults."""
        doc = await self._rag_settings.find_one({"chatbot_id": chatbot_id}) or {}
        overrides = {name: doc[name] for name in RAGConfig.model_fields if doc.get(name) is not None}
        if "stopwords" in overrides:
            overrides["stopwords"] = tuple(overrides["stopwords"])
        return RAGConfig(**overrides)


    async def set_status(self, chatbot_id: str, status: str, knowledge_base_processed: bool | None = None) -> None:
        update: dict[str, Any] = {"status": status, "updated_at": _now()}
        if knowledge_base_processed is not None:
            update["knowledge_base_processed"] = knowledge_base_processed
        await self._chatbots.update_one({"_id": chatbot_id}, {"$set": update})
        logger.info("[DB] Chatbot %s → %s.", chatbot_id, status)


# ══════════════════════════════════════════════════════════════════════
#  KNOWLEDGE ITEMS
# ══════════════════════════════════════════════════════════════════════


class MongoKnowledgeRepository:
    __slots__ = ("_items",)

    def __init__(self, database: motor.motor_asyncio.AsyncIOMotorDatabase | None = None) -> None:
        db = database if database is not None else get_database()
        self._items = db["knowledge_base"]


    async def add_items(self, items: Sequence[KnowledgeItem]) -> int:
        if not items:
            return 0
        now = _now()
        docs = [{"_id": item.id, **item.model_dump(exclude={"id"}), "created_at": now} for item in items]
        try:
            result = await self._items.insert_many(docs)
        except PyMongoError as exc:
            raise StorageError(f"Could not store knowledge items: {exc}") from exc
        return len(result.inserted_ids)


    async def list_unprocessed(self, chatbot_id: str) -> list[KnowledgeItem]:
        cursor = self._items.find({"chatbot_id": chatbot_id, "processed": False}).sort("created_at", 1)
        return [KnowledgeItem(id=str(doc.pop("_id")), **{k: v for k, v in doc.items() if k in KnowledgeItem.model_fields}) async for doc in cursor]


    async def mark_processed(self, item_id: str) -> None:
        await self._items.update_one({"_id": item_id}, {"$set": {"processed": True, "status": "processed", "error_message": None, "updated_at": _now()}})


    async def mark_failed(self, item_id: str, error_message: str) -> None:
        await self._items.update_one({"_id": item_id}, {"$set": {"processed": False, "status": "error", "error_message": error_message, "updated_at": _now()}})


# ══════════════════════════════════════════════════════════════════════
#  CHAT MESSAGES
# ══════════════════════════════════════════════════════════════════════


class MongoMessageRepository:
    __slots__ = ("_messages",)

    def __init__(self, database: motor.motor_asyncio.AsyncIOMotorDatabase | None = None) -> None:
        db = database if database is not None else get_database()
        self._messages = db["chat_messages"]


    async def save_message(self, message: ChatMessage) -> None:
        try:
            await self._messages.insert_one({"_id": message.id, **message.model_dump(exclude={"id"})})
        except PyMongoError as exc:
            raise StorageError(f"Could not save chat message: {exc}") from exc


# ══════════════════════════════════════════════════════════════════════
#  USAGE
# ══════════════════════════════════════════════════════════════════════


class MongoUsageRepository:
    __slots__ = ("_usage", "_subscriptions", "_failures")

    def __init__(self, database: motor.motor_asyncio.AsyncIOMotorDatabase | None = None) -> None:
        db = database if database is not None else get_database()
        self._usage = db["usage_tracking"]
        self._subscriptions = db["subscriptions"]
        self._failures = db["billing_failures"]


    async def increment(self, user_id: str, metric_name: str, value: int, period_start: datetime, period_end: datetime, metadata: dict[str, Any]) -> None:
        """Accumulate *value* into the user's record for the period (upsert)."""
        now = _now()
        await self._usage.update_one(
            {"user_id": user_id, "metric_name": metric_name, "period_start": period_start},
            {"$inc": {"metric_value": value}, "$set": {"period_end": period_end, "updated_at": now, "last_metadata": metadata}, "$setOnInsert": {"created_at": now}},
            upsert=True,
        )


    async def active_subscription_id(self, user_id: str) -> str | None:
        doc = await self._subscriptions.find_one({"user_id": user_id, "status": {"$in": _ACTIVE_SUBSCRIPTION_STATES}}, sort=[("created_at", -1)])
        if doc is None:
            return None
        return str(doc.get("subscription_id") or doc["_id"])


    async def record_billing_failure(self, user_id: str, tokens: int, metadata: dict[str, Any], error: str) -> None:
        await self._failures.insert_one({"user_id": user_id, "tokens": tokens, "metadata": metadata, "error": error, "created_at": _now()})
