"""
Accent Relay - API server (main entry point)
============================================
FastAPI application exposing the telephony media stream (``/stream``) and the
operational routes of the relay. The relay orchestrator is created once in the
application lifespan and shared through ``app.state.voice_orchestrator``.

Run with ``uvicorn accent_relay.api.main:app --port 4001``.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from accent_relay.api.voice_endpoints import media_router, router as voice_router
from accent_relay.core.config import Settings, get_settings
from accent_relay.core.exceptions import RelayException, map_exception_to_http
from accent_relay.core.logging import get_logger, install_asyncio_exception_handler, setup_unified_logging
from accent_relay.voice.manager import RelayOrchestrator
from accent_relay.voice.settings import VoiceSettings

load_dotenv()

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    install_asyncio_exception_handler(asyncio.get_running_loop())
    orchestrator = getattr(app.state, "voice_orchestrator", None)
    if orchestrator is None:
        voice_settings = VoiceSettings()
        orchestrator = RelayOrchestrator(settings=voice_settings)
        app.state.voice_orchestrator = orchestrator
        logger.info(
            {
                "event": "relay_orchestrator_ready",
                "stt_language": voice_settings.stt_language,
                "tts_voice": voice_settings.tts_voice,
            }
        )
    await orchestrator.start()
    try:
        yield
    finally:
        await orchestrator.shutdown()


def create_app(
    orchestrator: Optional[RelayOrchestrator] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    settings = settings or get_settings()
    setup_unified_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)

    app = FastAPI(title=settings.APP_NAME, version=settings.APP_VERSION, debug=settings.DEBUG, lifespan=lifespan)
    app.state.start_time = datetime.now()
    app.state.settings = settings
    app.state.voice_orchestrator = orchestrator

    app.include_router(voice_router)
    app.include_router(media_router)

    @app.exception_handler(RelayException)
    async def relay_exception_handler(request: Request, exc: RelayException) -> JSONResponse:
        http_exc = map_exception_to_http(exc)
        return JSONResponse(status_code=http_exc.status_code, content={"detail": http_exc.detail}, headers=http_exc.headers)

    @app.get("/api/health")
    async def api_health():
        return {
            "status": "ok",
            "service": "accent_relay",
            "environment": settings.ENVIRONMENT,
            "started_at": app.state.start_time.isoformat(),
        }

    if settings.METRICS_ENABLED:
        @app.get("/metrics", include_in_schema=False)
        async def prometheus_metrics() -> Response:
            return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()
