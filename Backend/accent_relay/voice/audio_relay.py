"""Outbound audio path: staleness check, media envelope and synthesis cache."""
from __future__ import annotations

import base64
import json
from collections import OrderedDict
from typing import Any, Optional, Protocol

from accent_relay.core.logging import get_logger
from accent_relay.voice import metrics as relay_metrics
from accent_relay.voice.audio_models import CallMetrics
from accent_relay.voice.transcript_diff import normalize_transcript

logger = get_logger(__name__)


class MediaTransport(Protocol):
    """Telephony media channel of one call."""

    async def send_text(self, data: str) -> None:
        ...


class GenerationCounter:
    """Monotonic id of the most recent synthesis request of a call."""

    def __init__(self) -> None:
        self._current = 0

    @property
    def current(self) -> int:
        return self._current

    def advance(self) -> int:
        self._current += 1
        return self._current

    def is_current(self, generation: Optional[int]) -> bool:
        return generation is not None and generation == self._current


def media_envelope(stream_id: str, audio: bytes) -> str:
    """Serialise ``audio`` into the media-stream envelope expected by the transport."""
    payload = base64.b64encode(audio).decode("ascii")
    return json.dumps({"event": "media", "streamSid": stream_id, "media": {"payload": payload}})


class AudioRelay:
    """Writes synthesized audio of one call back to its transport.

    Chunks whose generation is not the current one belong to a superseded
    request and are dropped. Chunks produced right after a keepalive frame are
    dropped as well when ``suppress_keepalive_audio`` is enabled.
    """

    def __init__(
        self,
        call_id: str,
        stream_id: str,
        transport: MediaTransport,
        generations: GenerationCounter,
        *,
        suppress_keepalive_audio: bool = True,
        call_metrics: CallMetrics | None = None,
        metrics: Any | None = None,
    ) -> None:
        self.call_id = call_id
        self.stream_id = stream_id
        self.transport = transport
        self.generations = generations
        self.suppress_keepalive_audio = suppress_keepalive_audio
        self.call_metrics = call_metrics
        self.metrics = metrics if metrics is not None else relay_metrics

    async def relay(self, audio: bytes, generation: Optional[int], *, keepalive: bool = False) -> bool:
        """Send one chunk. Returns ``True`` only when it reached the transport."""
        if not audio:
            return False

        if not self.generations.is_current(generation):
            logger.debug(
                {
                    "event": "audio_chunk_stale",
                    "call_id": self.call_id,
                    "generation": generation,
                    "current_generation": self.generations.current,
                }
            )
            if self.call_metrics is not None:
                self.call_metrics.stale_chunks_dropped += 1
            relay_metrics.record(self.metrics, "audio_chunk_relayed", outcome="stale")
            return False

        if keepalive and self.suppress_keepalive_audio:
            if self.call_metrics is not None:
                self.call_metrics.keepalive_chunks_dropped += 1
            relay_metrics.record(self.metrics, "audio_chunk_relayed", outcome="keepalive")
            return False

        try:
            await self.transport.send_text(media_envelope(self.stream_id, audio))
        except Exception as exc:
            logger.warning(
                {
                    "event": "audio_relay_write_failed",
                    "call_id": self.call_id,
                    "stream_id": self.stream_id,
                    "error": str(exc),
                }
            )
            relay_metrics.record(self.metrics, "audio_chunk_relayed", outcome="failed")
            return False

        if self.call_metrics is not None:
            self.call_metrics.audio_chunks_sent += 1
            self.call_metrics.audio_bytes_sent += len(audio)
        relay_metrics.record(self.metrics, "audio_chunk_relayed", outcome="sent", size=len(audio))
        return True


class SynthesisCache:
    """Normalised text to synthesized audio, shared by every call.

    Entries never expire. With ``max_entries`` of 0 the cache grows for the
    lifetime of the process; a positive bound evicts the oldest entry.
    """

    def __init__(self, max_entries: int = 0, metrics: Any | None = None) -> None:
        self.max_entries = max(0, max_entries)
        self.metrics = metrics if metrics is not None else relay_metrics
        self._entries: OrderedDict[str, bytes] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    @staticmethod
    def key(text: str) -> str:
        return normalize_transcript(text)

    def get(self, text: str) -> Optional[bytes]:
        key = self.key(text)
        audio = self._entries.get(key) if key else None
        relay_metrics.record(self.metrics, "cache_lookup", hit=audio is not None)
        return audio

    def put(self, text: str, audio: bytes) -> None:
        key = self.key(text)
        if not key or not audio:
            return
        self._entries[key] = audio
        self._entries.move_to_end(key)
        if self.max_entries and len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()
