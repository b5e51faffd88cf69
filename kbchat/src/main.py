"""
kbchat - Application Entry Point
=================================
FastAPI application factory.  Builds the service graph on startup
(lifespan), mounts the routes, and maps the kbchat error taxonomy to
HTTP responses shaped ``{"ok": false, "error": "<message>"}``:

    NotFoundError                        → 404
    ConfigurationError                   → 503  service unavailable
    RateLimitError / RateLimitExhausted  → 429  please try again
    other ProviderError / StreamingError → 502
    anything else                        → 500

Usage:
    python -m kbchat.src.main
    uvicorn kbchat.src.main:app --reload
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from kbchat.config.prompt_templates import ERROR_RESPONSES
from kbchat.config.settings import settings
from kbchat.src.api.routes import router
from kbchat.src.core.errors import ConfigurationError, KBChatError, NotFoundError, ProviderError, RateLimitError, RateLimitExhausted, StreamingError
from kbchat.src.services import Services, build_services
from kbchat.src.utils.logger import get_logger

logger = get_logger(__name__)


def error_status(exc: KBChatError) -> tuple[int, str]:
    """HTTP status and user-facing message for a pipeline error."""
    if isinstance(exc, NotFoundError):
        return 404, ERROR_RESPONSES["not_found"]
    if isinstance(exc, ConfigurationError):
        return 503, ERROR_RESPONSES["unavailable"]
    if isinstance(exc, (RateLimitError, RateLimitExhausted)):
        return 429, ERROR_RESPONSES["rate_limited"]
    if isinstance(exc, (ProviderError, StreamingError)):
        return 502, ERROR_RESPONSES["provider"]
    return 500, str(exc)


async def _kbchat_error_handler(request: Request, exc: KBChatError) -> JSONResponse:
    status, message = error_status(exc)
    if status >= 500:
        logger.error("[API] %s %s → %d: %s", request.method, request.url.path, status, exc)
    else:
        logger.warning("[API] %s %s → %d: %s", request.method, request.url.path, status, exc)
    return JSONResponse(status_code=status, content={"ok": False, "error": message})


def create_app(services: Services | None = None) -> FastAPI:
    """
    Build the FastAPI app.

    Args:
        services: Pre-built service graph (tests inject fakes).  When
                  omitted the production graph is built on startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        app.state.services = services or build_services()
        logger.info("[API] kbchat started (env=%s).", settings.ENV)
        yield
        logger.info("[API] kbchat stopped.")

    app = FastAPI(title="kbchat", version="0.1.0", lifespan=lifespan)
    app.add_middleware(CORSMiddleware, allow_origins=settings.CORS_ORIGINS, allow_methods=["*"], allow_headers=["*"])
    app.add_exception_handler(KBChatError, _kbchat_error_handler)
    app.include_router(router)
    return app


app = create_app()


def main() -> None:
    uvicorn.run("kbchat.src.main:app", host=settings.API_HOST, port=settings.API_PORT, reload=settings.ENV == "dev")


if __name__ == "__main__":
    main()
