"""Long-lived bidirectional synthesis stream for one call.

A session owns exactly one provider stream at a time. Text frames are written
in submission order and audio is read back by a single reader task. Idle
provider timeouts are avoided with whitespace keepalive frames and recoverable
stream errors trigger a bounded reconnect with linear backoff.
"""
from __future__ import annotations

import asyncio
import time
from contextlib import suppress
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Protocol

from google.api_core.exceptions import Aborted, DeadlineExceeded

from accent_relay.core.exceptions import SynthesisError
from accent_relay.core.logging import get_logger
from accent_relay.voice import metrics as relay_metrics
from accent_relay.voice.audio_models import (
    AudioChunk,
    SessionClosed,
    SessionEnd,
    SessionState,
    SynthesisConfig,
    SynthesisEvent,
    SynthesisFailed,
    SynthesisMetrics,
    TextAdded,
)
from accent_relay.voice.settings import VoiceSettings

logger = get_logger(__name__)

# gRPC status codes ABORTED and DEADLINE_EXCEEDED
RECOVERABLE_STATUS_CODES = frozenset({10, 4})
RECOVERABLE_MESSAGE_MARKERS = ("stream aborted", "timeout")
KEEPALIVE_TEXT = " "
TERMINAL_PUNCTUATION = (".", "!", "?")
MIN_WORDS_FOR_PERIOD = 3

SynthesisListener = Callable[[SynthesisEvent], Awaitable[None]]


class SynthesisStream(Protocol):
    """One open bidirectional stream with the synthesis provider."""

    async def send_config(self, config: SynthesisConfig) -> None:
        ...

    async def send_text(self, text: str) -> None:
        ...

    async def end(self) -> None:
        ...

    def audio(self) -> AsyncIterator[bytes]:
        ...


class SynthesisStreamProvider(Protocol):
    async def open_stream(self) -> SynthesisStream:
        ...


def is_recoverable_error(exc: BaseException) -> bool:
    """Idle timeouts and aborted streams can be recovered by reconnecting."""
    if isinstance(exc, (Aborted, DeadlineExceeded, asyncio.TimeoutError)):
        return True
    code = getattr(exc, "code", None)
    if isinstance(code, int) and code in RECOVERABLE_STATUS_CODES:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in RECOVERABLE_MESSAGE_MARKERS)


def prepare_text(text: str, optimize: bool = True) -> str:
    """Collapse whitespace and close multi-word fragments with a period."""
    collapsed = " ".join(text.split())
    if not optimize or not collapsed:
        return collapsed
    if not collapsed.endswith(TERMINAL_PUNCTUATION) and len(collapsed.split()) >= MIN_WORDS_FOR_PERIOD:
        collapsed = f"{collapsed}."
    return collapsed


class SynthesisSession:
    """Synthesis stream lifecycle for a single call.

    Events are delivered to ``listener`` in the order they happen:
    ``TextAdded`` after each accepted write, ``AudioChunk`` for every payload
    read from the provider, ``SynthesisFailed`` at most once when recovery is
    impossible, ``SessionEnd`` when the provider ends the stream by itself and
    ``SessionClosed`` once on close.
    """

    def __init__(
        self,
        call_id: str,
        provider: SynthesisStreamProvider,
        config: SynthesisConfig,
        *,
        listener: SynthesisListener | None = None,
        keepalive_interval_seconds: float = 3.0,
        keepalive_threshold_seconds: float = 2.0,
        max_reconnect_attempts: int = 3,
        reconnect_backoff_seconds: float = 1.0,
        text_optimization: bool = True,
        clock: Callable[[], float] = time.monotonic,
        metrics: Any | None = None,
    ) -> None:
        self.call_id = call_id
        self.provider = provider
        self.config = config
        self.listener = listener
        self.keepalive_interval_seconds = keepalive_interval_seconds
        self.keepalive_threshold_seconds = keepalive_threshold_seconds
        self.max_reconnect_attempts = max_reconnect_attempts
        self.reconnect_backoff_seconds = reconnect_backoff_seconds
        self.text_optimization = text_optimization
        self.metrics = metrics if metrics is not None else relay_metrics
        self._clock = clock

        self.state = SessionState.CONFIGURED
        self.configured = False
        self.created_at = clock()
        self.last_activity = self.created_at
        self.last_text_time: float | None = None
        self.last_keepalive_time: float | None = None
        self.reconnect_attempts = 0
        self.total_reconnects = 0
        self.text_count = 0
        self.audio_chunk_count = 0
        self.audio_bytes = 0
        self.keepalive_count = 0
        self._latencies_ms: list[float] = []
        self._awaiting_first_audio: float | None = None

        self._opened = False
        self._failed = False
        self._stream: SynthesisStream | None = None
        self._generation: Optional[int] = None
        self._keepalive_audio_expected = False
        self._text_on_stream = False
        self._last_audio_time: float | None = None
        self._reader_task: asyncio.Task | None = None
        self._keepalive_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None

    @classmethod
    def from_settings(
        cls,
        call_id: str,
        provider: SynthesisStreamProvider,
        settings: VoiceSettings,
        *,
        listener: SynthesisListener | None = None,
        clock: Callable[[], float] = time.monotonic,
        metrics: Any | None = None,
    ) -> "SynthesisSession":
        return cls(
            call_id,
            provider,
            settings.synthesis_config(),
            listener=listener,
            keepalive_interval_seconds=settings.keepalive_interval_seconds,
            keepalive_threshold_seconds=settings.keepalive_threshold_seconds,
            max_reconnect_attempts=settings.max_reconnect_attempts,
            reconnect_backoff_seconds=settings.reconnect_backoff_seconds,
            text_optimization=settings.text_optimization,
            clock=clock,
            metrics=metrics,
        )

    @property
    def accepts_text(self) -> bool:
        return (
            self.state in (SessionState.CONFIGURED, SessionState.ACTIVE)
            and self.configured
            and self._stream is not None
        )

    @property
    def is_closed(self) -> bool:
        return self.state is SessionState.CLOSED

    async def open(self, *, start_keepalive: bool = True) -> None:
        """Open the provider stream and send the configuration frame.

        Raises:
            ConfigurationError: credentials or voice configuration are unusable.
            SynthesisError: the session was already closed.
        """
        if self.state is SessionState.CLOSED:
            raise SynthesisError("Synthesis session is closed", {"call_id": self.call_id})
        if self._opened:
            return

        await self._connect()
        self._opened = True
        relay_metrics.record(self.metrics, "synthesis_stream_opened")
        if start_keepalive:
            self._keepalive_task = asyncio.create_task(self._keepalive_loop())
        logger.info(
            {
                "event": "synthesis_session_opened",
                "call_id": self.call_id,
                "voice": self.config.voice.name,
                "encoding": self.config.audio.audio_encoding,
                "sample_rate": self.config.audio.sample_rate_hertz,
            }
        )

    async def add_text(self, text: str, generation: Optional[int] = None) -> bool:
        """Write a text frame. Returns ``False`` instead of raising when the
        session cannot take text right now."""
        if not self.accepts_text:
            logger.warning(
                {
                    "event": "synthesis_text_rejected",
                    "call_id": self.call_id,
                    "state": self.state.value,
                    "configured": self.configured,
                }
            )
            return False

        prepared = prepare_text(text, self.text_optimization)
        if not prepared:
            return False

        stream = self._stream
        previous_generation = self._generation
        self._generation = generation
        written_at = self._clock()
        try:
            await stream.send_text(prepared)
        except Exception as exc:
            self._generation = previous_generation
            logger.warning(
                {"event": "synthesis_text_write_failed", "call_id": self.call_id, "error": str(exc)}
            )
            await self._handle_stream_error(stream, exc)
            return False

        if self.state is SessionState.CLOSED or stream is not self._stream:
            return False

        self.last_text_time = written_at
        self.last_activity = written_at
        if self._awaiting_first_audio is None:
            self._awaiting_first_audio = written_at
        self._keepalive_audio_expected = False
        self._text_on_stream = True
        self.text_count += 1
        self.reconnect_attempts = 0
        self.state = SessionState.ACTIVE
        await self._emit(TextAdded(call_id=self.call_id, text=prepared, generation=generation))
        return True

    async def check_keepalive(self, now: Optional[float] = None) -> bool:
        """Write a keepalive frame if the stream has been quiet long enough.

        Returns ``True`` when a frame was written.
        """
        if self.state in (SessionState.CLOSED, SessionState.RECONNECTING):
            return False
        if not self.configured or self._stream is None:
            logger.warning({"event": "synthesis_keepalive_unconfigured", "call_id": self.call_id})
            await self._begin_reconnect(self._stream, reason="not_configured")
            return False

        now = self._clock() if now is None else now
        threshold = self.keepalive_threshold_seconds
        last_text = self.last_text_time if self.last_text_time is not None else self.created_at
        if now - last_text <= threshold:
            return False
        if self.last_keepalive_time is not None and now - self.last_keepalive_time <= threshold:
            return False

        stream = self._stream
        try:
            await stream.send_text(KEEPALIVE_TEXT)
        except Exception as exc:
            logger.warning(
                {"event": "synthesis_keepalive_failed", "call_id": self.call_id, "error": str(exc)}
            )
            await self._handle_stream_error(stream, exc)
            return False

        self.last_keepalive_time = now
        self.keepalive_count += 1
        self._keepalive_audio_expected = self._stream_is_idle(now)
        relay_metrics.record(self.metrics, "synthesis_keepalive")
        logger.debug({"event": "synthesis_keepalive", "call_id": self.call_id, "count": self.keepalive_count})
        return True

    async def close(self) -> None:
        """Close the session. Safe to call repeatedly and from any session task."""
        if self.state is SessionState.CLOSED:
            return
        self.state = SessionState.CLOSED
        self.configured = False
        stream, self._stream = self._stream, None

        for task in (self._keepalive_task, self._reconnect_task, self._reader_task):
            await _cancel_task(task)
        self._keepalive_task = self._reconnect_task = self._reader_task = None

        if stream is not None:
            await self._end_stream(stream)

        snapshot = self.metrics_snapshot()
        if self._opened:
            relay_metrics.record(self.metrics, "synthesis_stream_closed")
        logger.info({"event": "synthesis_session_closed", **snapshot.as_dict()})
        await self._emit(SessionClosed(call_id=self.call_id, metrics=snapshot))

    def metrics_snapshot(self, now: Optional[float] = None) -> SynthesisMetrics:
        now = self._clock() if now is None else now
        last_text = self.last_text_time if self.last_text_time is not None else self.created_at
        avg_latency = sum(self._latencies_ms) / len(self._latencies_ms) if self._latencies_ms else 0.0
        return SynthesisMetrics(
            call_id=self.call_id,
            state=self.state.value,
            duration_seconds=max(0.0, now - self.created_at),
            text_count=self.text_count,
            audio_chunk_count=self.audio_chunk_count,
            audio_bytes=self.audio_bytes,
            avg_latency_ms=avg_latency,
            reconnect_attempts=self.reconnect_attempts,
            total_reconnects=self.total_reconnects,
            keepalive_count=self.keepalive_count,
            seconds_since_last_text=max(0.0, now - last_text),
        )

    def inactive_seconds(self, now: Optional[float] = None) -> float:
        now = self._clock() if now is None else now
        return max(0.0, now - self.last_activity)

    def _stream_is_idle(self, now: float) -> bool:
        """True when no real text written to this stream can still produce audio.

        Text still owes audio until its first chunk arrived and the stream
        has then been quiet for a keepalive threshold.
        """
        if not self._text_on_stream:
            return True
        if self._awaiting_first_audio is not None or self._last_audio_time is None:
            return False
        return now - self._last_audio_time > self.keepalive_threshold_seconds

    async def _connect(self) -> None:
        stream = await self.provider.open_stream()
        self.configured = False
        self._stream = stream
        try:
            await stream.send_config(self.config)
        except Exception:
            self._stream = None
            await self._end_stream(stream)
            raise
        self.configured = True
        self.state = SessionState.CONFIGURED
        self._keepalive_audio_expected = False
        self._text_on_stream = False
        self._awaiting_first_audio = None
        self._last_audio_time = None
        self._reader_task = asyncio.create_task(self._read_audio(stream))

    async def _read_audio(self, stream: SynthesisStream) -> None:
        try:
            async for audio in stream.audio():
                if stream is not self._stream or self.state is SessionState.CLOSED:
                    return
                if not audio:
                    continue
                await self._on_audio(audio)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if stream is not self._stream or self.state is SessionState.CLOSED:
                return
            await self._handle_stream_error(stream, exc)
            return

        if stream is self._stream and self.state is not SessionState.CLOSED:
            logger.info({"event": "synthesis_stream_ended", "call_id": self.call_id})
            await self._emit(SessionEnd(call_id=self.call_id))
            await self.close()

    async def _on_audio(self, audio: bytes) -> None:
        now = self._clock()
        self.audio_chunk_count += 1
        self.audio_bytes += len(audio)
        self.last_activity = now
        self._last_audio_time = now
        if self._awaiting_first_audio is not None:
            latency_ms = (now - self._awaiting_first_audio) * 1000.0
            self._latencies_ms.append(latency_ms)
            self._awaiting_first_audio = None
            relay_metrics.record(self.metrics, "synthesis_latency", latency_ms)
        else:
            reference = self.last_text_time if self.last_text_time is not None else self.created_at
            latency_ms = (now - reference) * 1000.0
        await self._emit(
            AudioChunk(
                call_id=self.call_id,
                audio=audio,
                generation=self._generation,
                latency_ms=latency_ms,
                keepalive=self._keepalive_audio_expected,
            )
        )

    async def _handle_stream_error(self, stream: SynthesisStream | None, exc: BaseException) -> None:
        if self.state in (SessionState.CLOSED, SessionState.RECONNECTING) or stream is not self._stream:
            return
        recoverable = is_recoverable_error(exc)
        logger.warning(
            {
                "event": "synthesis_stream_error",
                "call_id": self.call_id,
                "error": str(exc),
                "error_type": type(exc).__name__,
                "recoverable": recoverable,
                "reconnect_attempts": self.reconnect_attempts,
            }
        )
        if not recoverable:
            await self._fail(exc, recoverable=False)
            return
        await self._begin_reconnect(stream, reason="recoverable_error", error=exc)

    async def _begin_reconnect(
        self,
        stream: SynthesisStream | None,
        *,
        reason: str,
        error: BaseException | None = None,
    ) -> None:
        if self.reconnect_attempts >= self.max_reconnect_attempts:
            failure = error or SynthesisError(
                "Synthesis stream could not be recovered", {"call_id": self.call_id, "reason": reason}
            )
            await self._fail(failure, recoverable=True)
            return

        self.reconnect_attempts += 1
        self.total_reconnects += 1
        self.state = SessionState.RECONNECTING
        self.configured = False
        self._stream = None
        relay_metrics.record(self.metrics, "synthesis_reconnect")
        logger.info(
            {
                "event": "synthesis_reconnect_scheduled",
                "call_id": self.call_id,
                "attempt": self.reconnect_attempts,
                "max_attempts": self.max_reconnect_attempts,
                "reason": reason,
            }
        )
        self._reconnect_task = asyncio.create_task(self._reconnect(stream))

    async def _reconnect(self, old_stream: SynthesisStream | None) -> None:
        reader = self._reader_task
        self._reader_task = None
        await _cancel_task(reader)
        if old_stream is not None:
            await self._end_stream(old_stream)

        while self.state is SessionState.RECONNECTING:
            await asyncio.sleep(self.reconnect_backoff_seconds * self.reconnect_attempts)
            if self.state is not SessionState.RECONNECTING:
                return
            try:
                await self._connect()
            except Exception as exc:
                recoverable = is_recoverable_error(exc)
                logger.warning(
                    {
                        "event": "synthesis_reconnect_failed",
                        "call_id": self.call_id,
                        "attempt": self.reconnect_attempts,
                        "error": str(exc),
                        "recoverable": recoverable,
                    }
                )
                if not recoverable or self.reconnect_attempts >= self.max_reconnect_attempts:
                    await self._fail(exc, recoverable=recoverable)
                    return
                self.reconnect_attempts += 1
                self.total_reconnects += 1
                relay_metrics.record(self.metrics, "synthesis_reconnect")
                continue

            logger.info(
                {"event": "synthesis_reconnected", "call_id": self.call_id, "attempt": self.reconnect_attempts}
            )
            return

    async def _fail(self, exc: BaseException, *, recoverable: bool) -> None:
        if self._failed or self.state is SessionState.CLOSED:
            return
        self._failed = True
        relay_metrics.record(self.metrics, "synthesis_failed", path="streaming")
        logger.error(
            {
                "event": "synthesis_session_failed",
                "call_id": self.call_id,
                "error": str(exc),
                "error_type": type(exc).__name__,
                "total_reconnects": self.total_reconnects,
            }
        )
        await self._emit(SynthesisFailed(call_id=self.call_id, error=exc, recoverable=recoverable))
        await self.close()

    async def _end_stream(self, stream: SynthesisStream) -> None:
        try:
            await stream.end()
        except Exception as exc:  # pragma: no cover
            logger.debug({"event": "synthesis_stream_end_failed", "call_id": self.call_id, "error": str(exc)})

    async def _keepalive_loop(self) -> None:
        while self.state is not SessionState.CLOSED:
            await asyncio.sleep(self.keepalive_interval_seconds)
            await self.check_keepalive()

    async def _emit(self, event: SynthesisEvent) -> None:
        if self.listener is None:
            return
        try:
            await self.listener(event)
        except Exception:
            logger.exception(
                "Synthesis listener failed",
                extra={"call_id": self.call_id, "log_context": type(event).__name__},
            )


async def _cancel_task(task: asyncio.Task | None) -> None:
    """Cancel and await ``task`` unless it is the caller itself."""
    if task is None or task.done() or task is asyncio.current_task():
        return
    task.cancel()
    with suppress(asyncio.CancelledError):
        await task
