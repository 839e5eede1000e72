"""Prometheus metrics helpers for the accent relay."""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Literal

from prometheus_client import Counter, Gauge, Histogram  # type: ignore

from accent_relay.core.logging import get_logger

logger = get_logger(__name__)

# Gauges
RELAY_ACTIVE_CALLS = Gauge(
    "accent_relay_active_calls",
    "Number of calls currently relayed",
)
RELAY_ACTIVE_SYNTHESIS_STREAMS = Gauge(
    "accent_relay_active_synthesis_streams",
    "Number of open synthesis sessions",
)

# Counters
RELAY_TEXT_DELTAS = Counter(
    "accent_relay_text_deltas_total",
    "Text deltas submitted for synthesis",
    labelnames=("final", "path"),
)
RELAY_AUDIO_CHUNKS = Counter(
    "accent_relay_audio_chunks_total",
    "Synthesized audio chunks by relay outcome",
    labelnames=("outcome",),
)
RELAY_AUDIO_BYTES = Counter(
    "accent_relay_audio_bytes_total",
    "Synthesized audio bytes written to the transport",
)
RELAY_INBOUND_AUDIO_BYTES = Counter(
    "accent_relay_inbound_audio_bytes_total",
    "Caller audio bytes forwarded to transcription",
)
SYNTHESIS_RECONNECTS = Counter(
    "accent_relay_synthesis_reconnects_total",
    "Reconnect attempts of synthesis streams",
)
SYNTHESIS_KEEPALIVES = Counter(
    "accent_relay_synthesis_keepalives_total",
    "Keepalive frames written to synthesis streams",
)
SYNTHESIS_FAILURES = Counter(
    "accent_relay_synthesis_failures_total",
    "Synthesis sessions or requests that failed",
    labelnames=("path",),
)
SYNTHESIS_CACHE = Counter(
    "accent_relay_synthesis_cache_total",
    "One-shot synthesis cache lookups",
    labelnames=("result",),
)

# Histograms
SYNTHESIS_LATENCY = Histogram(
    "accent_relay_synthesis_latency_milliseconds",
    "Latency from text submission to first audio chunk",
    buckets=(50, 100, 200, 300, 500, 750, 1000, 2000, 5000),
)
RELAY_CALL_DURATION = Histogram(
    "accent_relay_call_duration_seconds",
    "Duration of relayed calls",
    buckets=(5, 15, 30, 60, 120, 300, 600, 1800, 3600),
)

ChunkOutcome = Literal["sent", "stale", "keepalive", "failed"]


@dataclass
class CallMetricsContext:
    """Duration bookkeeping for one relayed call."""

    call_id: str
    started_at: float = field(default_factory=time.monotonic)
    completed: bool = False

    def finalize(self) -> None:
        if self.completed:
            return
        self.completed = True
        RELAY_ACTIVE_CALLS.dec()
        RELAY_CALL_DURATION.observe(time.monotonic() - self.started_at)


def call_started(*, call_id: str) -> CallMetricsContext:
    RELAY_ACTIVE_CALLS.inc()
    return CallMetricsContext(call_id=call_id)


def call_finished(ctx: CallMetricsContext) -> None:
    ctx.finalize()


def synthesis_stream_opened() -> None:
    RELAY_ACTIVE_SYNTHESIS_STREAMS.inc()


def synthesis_stream_closed() -> None:
    RELAY_ACTIVE_SYNTHESIS_STREAMS.dec()


def text_delta_submitted(*, is_final: bool, path: Literal["streaming", "one_shot"]) -> None:
    RELAY_TEXT_DELTAS.labels(final=str(is_final).lower(), path=path).inc()


def audio_chunk_relayed(*, outcome: ChunkOutcome, size: int = 0) -> None:
    RELAY_AUDIO_CHUNKS.labels(outcome=outcome).inc()
    if outcome == "sent" and size > 0:
        RELAY_AUDIO_BYTES.inc(size)


def inbound_audio_received(*, size: int) -> None:
    if size > 0:
        RELAY_INBOUND_AUDIO_BYTES.inc(size)


def synthesis_reconnect() -> None:
    SYNTHESIS_RECONNECTS.inc()


def synthesis_keepalive() -> None:
    SYNTHESIS_KEEPALIVES.inc()


def synthesis_failed(*, path: Literal["streaming", "one_shot"]) -> None:
    SYNTHESIS_FAILURES.labels(path=path).inc()


def synthesis_latency(latency_ms: float) -> None:
    SYNTHESIS_LATENCY.observe(latency_ms)


def cache_lookup(*, hit: bool) -> None:
    SYNTHESIS_CACHE.labels(result="hit" if hit else "miss").inc()


def record(recorder: Any, name: str, *args: Any, **kwargs: Any) -> Any:
    """Call ``recorder.<name>`` if present. Metrics must never break the relay."""
    if recorder is None:
        return None
    handler = getattr(recorder, name, None)
    if not callable(handler):
        return None
    try:
        return handler(*args, **kwargs)
    except Exception as exc:  # pragma: no cover
        logger.debug({"event": "metrics_record_failed", "metric": name, "error": str(exc)})
        return None
