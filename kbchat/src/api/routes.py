"""
kbchat - API Routes
====================
Thin controllers: validate the body, delegate to the pipelines, shape
the response.  Errors raised by the pipelines are turned into status
codes by the handlers registered in ``kbchat.src.main``.

    POST /chat     JSON answer, or ``text/event-stream`` when ``stream`` is true
    POST /ingest   ingest a chatbot's pending items, or an uploaded batch
    GET  /health   liveness
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse

from kbchat.config.settings import settings
from kbchat.src.core.models import IngestRequest, QueryRequest
from kbchat.src.services import Services
from kbchat.src.streaming.events import EVENT_STREAM_MEDIA_TYPE
from kbchat.src.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter()

_STREAM_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"}


def _services(request: Request) -> Services:
    return request.app.state.services


@router.get("/health")
async def health() -> dict[str, Any]:
    return {"ok": True, "env": settings.ENV}


@router.post("/chat")
async def chat(body: QueryRequest, request: Request):
    services = _services(request)
    user_ip = request.client.host if request.client else None
    logger.info("[API] /chat chatbot=%s stream=%s thread=%s", body.chatbot_id, body.stream, body.thread_id)

    # Validation and retrieval happen before the first byte so errors keep their status codes
    prepared = await services.rag.prepare(body, user_ip=user_ip)

    if body.stream:
        return StreamingResponse(services.rag.stream_prepared(prepared), media_type=EVENT_STREAM_MEDIA_TYPE, headers=_STREAM_HEADERS)

    response = await services.rag.answer_prepared(prepared)
    return response.model_dump(exclude_none=True)


@router.post("/ingest")
async def ingest(body: IngestRequest, request: Request) -> dict[str, Any]:
    services = _services(request)
    if body.items:
        logger.info("[API] /ingest chatbot=%s with %d uploaded item(s)", body.chatbot_id, len(body.items))
        report = await services.ingestion.add_and_ingest(body.chatbot_id, body.items, user_id=body.user_id)
    else:
        logger.info("[API] /ingest chatbot=%s (pending items)", body.chatbot_id)
        report = await services.ingestion.run_for_chatbot(body.chatbot_id, user_id=body.user_id)
    return {"ok": report.items_failed == 0, **report.model_dump()}
