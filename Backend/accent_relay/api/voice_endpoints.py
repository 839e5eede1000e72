"""Media-stream WebSocket and operational routes of the relay."""
from __future__ import annotations

import base64
import binascii
import json
from typing import Any, Dict, Optional, Union
from uuid import uuid4

from fastapi import APIRouter, HTTPException, Request, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from accent_relay.core.exceptions import ConfigurationError, SessionNotFoundError, TransportError
from accent_relay.core.logging import get_logger
from accent_relay.voice.manager import RelayOrchestrator
from accent_relay.voice.settings import ALTERNATIVE_VOICES

router = APIRouter(prefix="/api/voice", tags=["voice"])
media_router = APIRouter(tags=["media-stream"])
logger = get_logger(__name__)


class WebSocketMediaTransport:
    """Outbound side of a media-stream WebSocket."""

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket
        self.closed = False

    async def send_text(self, data: str) -> None:
        if self.closed or not _is_open(self._websocket):
            raise TransportError("Media stream is closed")
        try:
            await self._websocket.send_text(data)
        except (RuntimeError, WebSocketDisconnect) as exc:
            self.closed = True
            raise TransportError("Media stream write failed", {"error": str(exc)}) from exc


def _get_relay_orchestrator(scope_obj: Union[Request, WebSocket]) -> RelayOrchestrator:
    app = getattr(scope_obj, "app", None)
    manager = getattr(getattr(app, "state", None), "voice_orchestrator", None)
    if manager is None:
        raise HTTPException(status_code=503, detail="Relay orchestrator not initialised")
    return manager


@router.get("/health")
async def relay_health(request: Request) -> Dict[str, Any]:
    """Active calls, synthesis streams and per-call counters."""
    return _get_relay_orchestrator(request).get_health()


@router.get("/config")
async def relay_config(request: Request) -> Dict[str, Any]:
    """Expose non-sensitive configuration for health checks."""
    settings = _get_relay_orchestrator(request).settings
    return {
        "stt": {
            "language": settings.stt_language,
            "model": settings.stt_model,
            "encoding": settings.stt_encoding,
            "sample_rate": settings.stt_sample_rate,
        },
        "tts": {
            "language": settings.tts_language,
            "voice": settings.tts_voice,
            "encoding": settings.tts_audio_encoding,
            "sample_rate": settings.tts_sample_rate,
            "one_shot_provider": settings.one_shot_provider,
            "one_shot_voice": settings.one_shot_voice,
            "alternative_voices": sorted(ALTERNATIVE_VOICES),
        },
        "keepalive_interval_seconds": settings.keepalive_interval_seconds,
        "keepalive_threshold_seconds": settings.keepalive_threshold_seconds,
        "max_reconnect_attempts": settings.max_reconnect_attempts,
        "max_inactive_seconds": settings.max_inactive_seconds,
        "min_final_confidence": settings.min_final_confidence,
        "speech_pause_seconds": settings.speech_pause_seconds,
        "cache_enabled": settings.synthesis_cache_enabled,
    }


@router.get("/sessions/{call_id}")
async def relay_session(call_id: str, request: Request) -> Dict[str, Any]:
    session = _get_relay_orchestrator(request).get_session(call_id)
    if session is None:
        raise SessionNotFoundError("Call session not found", {"call_id": call_id})
    return session.snapshot()


@media_router.websocket("/stream")
async def media_stream(websocket: WebSocket) -> None:
    """Telephony media stream: caller audio in, converted audio out."""
    await websocket.accept()
    orchestrator = _get_relay_orchestrator(websocket)
    call_id: Optional[str] = None
    transport = WebSocketMediaTransport(websocket)

    try:
        while True:
            payload = await _receive_json(websocket)
            event = payload.get("event")

            if event == "connected":
                logger.info({"event": "media_stream_connected", "protocol": payload.get("protocol")})
            elif event == "start":
                if call_id is not None:
                    logger.warning({"event": "media_stream_restart_ignored", "call_id": call_id})
                    continue
                start = payload.get("start") or {}
                stream_id = str(payload.get("streamSid") or start.get("streamSid") or uuid4())
                candidate_id = str(start.get("callSid") or stream_id)
                try:
                    await orchestrator.on_call_start(candidate_id, stream_id, transport)
                except ConfigurationError as exc:
                    logger.error(
                        {"event": "media_stream_rejected", "call_id": candidate_id, "error": exc.message}
                    )
                    await websocket.close(code=1011, reason="Relay is not configured")
                    return
                call_id = candidate_id
                logger.info({"event": "media_stream_started", "call_id": call_id, "stream_id": stream_id})
            elif event == "media":
                if call_id is None:
                    continue
                media = payload.get("media") or {}
                if media.get("track", "inbound") != "inbound":
                    continue
                chunk = _decode_payload(media.get("payload"))
                if chunk:
                    orchestrator.on_inbound_audio(call_id, chunk)
            elif event == "stop":
                logger.info({"event": "media_stream_stop", "call_id": call_id})
                if call_id is not None:
                    await orchestrator.on_call_stop(call_id)
                    call_id = None
                break
    except WebSocketDisconnect:
        logger.info({"event": "media_stream_disconnect", "call_id": call_id, "client": str(websocket.client)})
        if call_id is not None:
            await orchestrator.on_transport_closed(call_id)
            call_id = None
    except Exception as exc:
        logger.exception("Unhandled media stream error", extra={"call_id": call_id})
        if call_id is not None:
            await orchestrator.on_transport_error(call_id, exc)
            call_id = None
    finally:
        transport.closed = True
        if call_id is not None:
            await orchestrator.on_transport_closed(call_id)

    if _is_open(websocket):
        await websocket.close()


def _is_open(websocket: WebSocket) -> bool:
    return (
        websocket.client_state == WebSocketState.CONNECTED
        and websocket.application_state == WebSocketState.CONNECTED
    )


def _decode_payload(payload: Any) -> bytes:
    if not isinstance(payload, str) or not payload:
        return b""
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        logger.warning({"event": "media_payload_invalid", "length": len(payload)})
        return b""


async def _receive_json(websocket: WebSocket) -> Dict[str, Any]:
    message = await websocket.receive()
    if message.get("type") == "websocket.disconnect":
        raise WebSocketDisconnect(code=message.get("code", 1000))
    text = message.get("text")
    if text is None:
        return {}
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return {}
    return payload if isinstance(payload, dict) else {}
