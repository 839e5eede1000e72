"""Coordinator for relayed calls."""
from __future__ import annotations

import asyncio
import time
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from accent_relay.core.logging import get_logger
from accent_relay.voice import metrics as relay_metrics
from accent_relay.voice.audio_relay import MediaTransport, SynthesisCache
from accent_relay.voice.call_session import CallSession, TranscriptionProvider
from accent_relay.voice.elevenlabs_tts import ElevenLabsTextToSpeechClient
from accent_relay.voice.google_stt import GoogleSpeechClient
from accent_relay.voice.google_tts import GoogleStreamingSynthesizer, GoogleTextToSpeechClient
from accent_relay.voice.settings import VoiceSettings
from accent_relay.voice.synthesis_session import SynthesisStreamProvider
from accent_relay.voice.synthesizers import OneShotTextToSpeech

logger = get_logger(__name__)


@dataclass
class RelayOrchestrator:
    """Registry of call sessions plus the providers they share.

    Built once at startup and handed to the transport layer. Every provider
    can be injected; missing ones are created from ``settings``.
    """

    settings: VoiceSettings
    speech: TranscriptionProvider | None = None
    synthesis_provider: SynthesisStreamProvider | None = None
    one_shot_tts: OneShotTextToSpeech | None = None
    cache: SynthesisCache | None = None
    metrics: Any | None = None
    clock: Callable[[], float] = time.monotonic
    sessions: Dict[str, CallSession] = field(default_factory=dict, init=False)
    _cleanup_task: asyncio.Task | None = field(default=None, init=False, repr=False)
    _started_at: float = field(default=0.0, init=False, repr=False)

    def __post_init__(self) -> None:
        self.metrics = self.metrics or relay_metrics
        self.speech = self.speech or GoogleSpeechClient(self.settings)
        self.synthesis_provider = self.synthesis_provider or GoogleStreamingSynthesizer(self.settings)
        if self.one_shot_tts is None:
            self.one_shot_tts = self._build_one_shot_tts()
        if self.cache is None and self.settings.synthesis_cache_enabled:
            self.cache = SynthesisCache(self.settings.synthesis_cache_max_entries, metrics=self.metrics)
        self._started_at = self.clock()

    def _build_one_shot_tts(self) -> OneShotTextToSpeech | None:
        provider = (self.settings.one_shot_provider or "google").lower()
        if provider == "elevenlabs":
            if not (self.settings.elevenlabs_api_key and self.settings.elevenlabs_voice_id):
                logger.warning(
                    {
                        "event": "one_shot_tts_disabled",
                        "provider": "elevenlabs",
                        "reason": "missing_api_key_or_voice_id",
                    }
                )
                return None
            logger.info({"event": "one_shot_tts_provider_selected", "provider": "elevenlabs"})
            return ElevenLabsTextToSpeechClient(self.settings)
        if provider == "google":
            logger.info({"event": "one_shot_tts_provider_selected", "provider": "google"})
            return GoogleTextToSpeechClient(self.settings)
        logger.warning(
            {
                "event": "one_shot_tts_disabled",
                "provider": provider,
                "reason": "unsupported_provider",
            }
        )
        return None

    @property
    def uptime_seconds(self) -> float:
        return max(0.0, self.clock() - self._started_at)

    async def start(self) -> None:
        """Start the periodic sweep of inactive calls."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def shutdown(self) -> None:
        task, self._cleanup_task = self._cleanup_task, None
        if task is not None and not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        for call_id in list(self.sessions):
            await self.on_call_stop(call_id, reason="shutdown")
        logger.info({"event": "relay_shutdown"})

    def get_session(self, call_id: str) -> Optional[CallSession]:
        return self.sessions.get(call_id)

    async def on_call_start(self, call_id: str, stream_id: str, transport: MediaTransport) -> CallSession:
        """Create and start the session of a new call.

        Raises:
            ConfigurationError: synthesis cannot be configured; no session is registered.
        """
        if call_id in self.sessions:
            logger.warning({"event": "call_session_replaced", "call_id": call_id})
            await self.on_call_stop(call_id, reason="replaced")

        session = CallSession(
            call_id,
            stream_id,
            transport,
            self.settings,
            speech=self.speech,
            synthesis_provider=self.synthesis_provider,
            one_shot_tts=self.one_shot_tts,
            cache=self.cache,
            clock=self.clock,
            metrics=self.metrics,
        )
        await session.start()
        self.sessions[call_id] = session
        return session

    def on_inbound_audio(self, call_id: str, chunk: bytes) -> bool:
        session = self.sessions.get(call_id)
        if session is None:
            logger.debug({"event": "inbound_audio_unknown_call", "call_id": call_id})
            return False
        session.feed_audio(chunk)
        return True

    async def on_call_stop(self, call_id: str, reason: str = "call_stop") -> bool:
        session = self.sessions.pop(call_id, None)
        if session is None:
            return False
        await session.close(reason=reason)
        return True

    async def on_transport_closed(self, call_id: str) -> bool:
        return await self.on_call_stop(call_id, reason="transport_closed")

    async def on_transport_error(self, call_id: str, error: BaseException) -> bool:
        logger.warning(
            {
                "event": "transport_error",
                "call_id": call_id,
                "error": str(error),
                "error_type": type(error).__name__,
            }
        )
        return await self.on_call_stop(call_id, reason="transport_error")

    async def cleanup_inactive_sessions(
        self,
        max_inactive: Optional[float] = None,
        now: Optional[float] = None,
    ) -> List[str]:
        """Close calls without activity for longer than ``max_inactive`` seconds."""
        limit = self.settings.max_inactive_seconds if max_inactive is None else max_inactive
        now = self.clock() if now is None else now
        stale = [call_id for call_id, session in self.sessions.items() if session.inactive_seconds(now) > limit]
        for call_id in stale:
            logger.info({"event": "call_session_inactive", "call_id": call_id, "max_inactive_seconds": limit})
            await self.on_call_stop(call_id, reason="inactive")
        return stale

    def get_health(self) -> Dict[str, Any]:
        sessions = list(self.sessions.values())
        return {
            "status": "healthy",
            "active_sessions": len(sessions),
            "synthesis_sessions": sum(1 for session in sessions if not session.synthesis.is_closed),
            "cache_entries": len(self.cache) if self.cache is not None else 0,
            "uptime_seconds": round(self.uptime_seconds, 3),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "sessions": [session.snapshot() for session in sessions],
        }

    async def _cleanup_loop(self) -> None:
        interval = max(0.01, self.settings.cleanup_interval_seconds)
        while True:
            await asyncio.sleep(interval)
            try:
                await self.cleanup_inactive_sessions()
            except Exception:  # pragma: no cover
                logger.exception("Inactive session sweep failed")
