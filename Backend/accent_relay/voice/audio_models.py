"""Typed models shared across the relay pipeline."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union


@dataclass
class TranscriptSegment:
    text: str
    is_final: bool
    stability: float | None = None
    confidence: float | None = None


@dataclass(frozen=True)
class TextDelta:
    """New text content ready to be synthesized."""

    text: str
    is_final: bool


@dataclass(frozen=True)
class VoiceConfig:
    language_code: str
    name: str
    ssml_gender: str = "MALE"


@dataclass(frozen=True)
class StreamingAudioConfig:
    audio_encoding: str = "MULAW"
    sample_rate_hertz: int = 8000
    speaking_rate: float = 1.0
    pitch: float = 0.0
    volume_gain_db: float = 0.0


@dataclass(frozen=True)
class SynthesisConfig:
    voice: VoiceConfig
    audio: StreamingAudioConfig


class SessionState(str, Enum):
    CONFIGURED = "configured"
    ACTIVE = "active"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


@dataclass
class SynthesisMetrics:
    call_id: str
    state: str
    duration_seconds: float
    text_count: int
    audio_chunk_count: int
    audio_bytes: int
    avg_latency_ms: float
    reconnect_attempts: int
    total_reconnects: int
    keepalive_count: int
    seconds_since_last_text: float

    def as_dict(self) -> dict[str, str | float | int]:
        return {
            "call_id": self.call_id,
            "state": self.state,
            "duration_seconds": round(self.duration_seconds, 3),
            "text_count": self.text_count,
            "audio_chunk_count": self.audio_chunk_count,
            "audio_bytes": self.audio_bytes,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "reconnect_attempts": self.reconnect_attempts,
            "total_reconnects": self.total_reconnects,
            "keepalive_count": self.keepalive_count,
            "seconds_since_last_text": round(self.seconds_since_last_text, 3),
        }


# Synthesis session events


@dataclass(frozen=True)
class TextAdded:
    call_id: str
    text: str
    generation: Optional[int] = None


@dataclass(frozen=True)
class AudioChunk:
    call_id: str
    audio: bytes
    generation: Optional[int]
    latency_ms: float
    keepalive: bool = False

    @property
    def size(self) -> int:
        return len(self.audio)


@dataclass(frozen=True)
class SynthesisFailed:
    call_id: str
    error: BaseException
    recoverable: bool = False


@dataclass(frozen=True)
class SessionClosed:
    call_id: str
    metrics: SynthesisMetrics


@dataclass(frozen=True)
class SessionEnd:
    call_id: str


SynthesisEvent = Union[TextAdded, AudioChunk, SynthesisFailed, SessionClosed, SessionEnd]


@dataclass
class CallMetrics:
    """Per-call counters exposed through the health snapshot."""

    call_id: str
    stream_id: str
    started_at: float
    last_activity: float
    deltas_submitted: int = 0
    streamed_texts: int = 0
    fallback_texts: int = 0
    audio_chunks_sent: int = 0
    audio_bytes_sent: int = 0
    stale_chunks_dropped: int = 0
    keepalive_chunks_dropped: int = 0
    transcripts_received: int = 0
    stt_restarts: int = 0
