"""Per-call wiring: caller audio -> transcription -> deltas -> synthesis -> caller."""
from __future__ import annotations

import asyncio
import time
from contextlib import suppress
from dataclasses import asdict
from typing import Any, AsyncGenerator, AsyncIterator, Callable, List, Optional, Protocol

from accent_relay.core.exceptions import ConfigurationError
from accent_relay.core.logging import get_logger
from accent_relay.voice import metrics as relay_metrics
from accent_relay.voice.audio_models import (
    AudioChunk,
    CallMetrics,
    SessionClosed,
    SessionEnd,
    SynthesisEvent,
    SynthesisFailed,
    TextDelta,
    TranscriptSegment,
)
from accent_relay.voice.audio_relay import AudioRelay, GenerationCounter, MediaTransport, SynthesisCache
from accent_relay.voice.segment_tracker import SegmentTracker
from accent_relay.voice.settings import VoiceSettings
from accent_relay.voice.synthesis_session import SynthesisSession, SynthesisStreamProvider
from accent_relay.voice.synthesizers import OneShotSynthesizer, OneShotTextToSpeech, StreamingSynthesizer

logger = get_logger(__name__)


class TranscriptionProvider(Protocol):
    def stream_transcribe(
        self,
        audio_chunks: AsyncIterator[bytes | None],
        *,
        language_code: Optional[str] = None,
        sample_rate_hz: Optional[int] = None,
    ) -> AsyncIterator[TranscriptSegment]:
        ...


class CallSession:
    """Everything one call owns: tracker, relay, synthesizers and tasks."""

    def __init__(
        self,
        call_id: str,
        stream_id: str,
        transport: MediaTransport,
        settings: VoiceSettings,
        *,
        speech: TranscriptionProvider,
        synthesis_provider: SynthesisStreamProvider,
        one_shot_tts: OneShotTextToSpeech | None = None,
        cache: SynthesisCache | None = None,
        clock: Callable[[], float] = time.monotonic,
        metrics: Any | None = None,
    ) -> None:
        self.call_id = call_id
        self.stream_id = stream_id
        self.transport = transport
        self.settings = settings
        self.speech = speech
        self.metrics = metrics if metrics is not None else relay_metrics
        self._clock = clock

        now = clock()
        self.call_metrics = CallMetrics(call_id=call_id, stream_id=stream_id, started_at=now, last_activity=now)
        self.generations = GenerationCounter()
        self.tracker = SegmentTracker.from_settings(call_id, settings, clock=clock)
        self.relay = AudioRelay(
            call_id,
            stream_id,
            transport,
            self.generations,
            suppress_keepalive_audio=settings.suppress_keepalive_audio,
            call_metrics=self.call_metrics,
            metrics=self.metrics,
        )
        self.synthesis = SynthesisSession.from_settings(
            call_id,
            synthesis_provider,
            settings,
            listener=self._on_synthesis_event,
            clock=clock,
            metrics=self.metrics,
        )
        self.streaming = StreamingSynthesizer(self.synthesis)
        self.one_shot: OneShotSynthesizer | None = None
        if one_shot_tts is not None:
            self.one_shot = OneShotSynthesizer(
                call_id,
                one_shot_tts,
                settings.synthesis_config(settings.one_shot_voice),
                self.relay,
                cache=cache,
                text_optimization=settings.text_optimization,
                metrics=self.metrics,
            )

        self.closed = False
        self._audio_queue: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._pending_audio: List[bytes] = []
        self._first_audio_forwarded = False
        self._transcription_task: asyncio.Task | None = None
        self._pause_task: asyncio.Task | None = None
        self._metrics_ctx: Any = None

    async def start(self) -> None:
        """Open synthesis and start transcription.

        Raises:
            ConfigurationError: synthesis cannot be configured for this call.
        """
        try:
            await self.synthesis.open()
        except ConfigurationError:
            await self.close(reason="configuration_error")
            raise
        except Exception as exc:
            if self.one_shot is None:
                await self.close(reason="synthesis_unavailable")
                raise
            logger.warning(
                {
                    "event": "synthesis_stream_unavailable",
                    "call_id": self.call_id,
                    "error": str(exc),
                    "fallback": self.one_shot.name,
                }
            )
            await self.synthesis.close()

        self._metrics_ctx = relay_metrics.record(self.metrics, "call_started", call_id=self.call_id)
        self._transcription_task = asyncio.create_task(self._run_transcription())
        self._pause_task = asyncio.create_task(self._run_pause_detection())
        logger.info({"event": "call_session_started", "call_id": self.call_id, "stream_id": self.stream_id})

    def feed_audio(self, chunk: bytes) -> None:
        """Queue caller audio. The first chunk goes out alone, later ones in batches."""
        if self.closed or not chunk:
            return
        self.call_metrics.last_activity = self._clock()
        relay_metrics.record(self.metrics, "inbound_audio_received", size=len(chunk))
        if not self._first_audio_forwarded:
            self._first_audio_forwarded = True
            self._audio_queue.put_nowait(chunk)
            return
        self._pending_audio.append(chunk)
        if len(self._pending_audio) >= max(1, self.settings.audio_batch_size):
            self._flush_audio()

    async def handle_transcript(self, segment: TranscriptSegment) -> Optional[TextDelta]:
        self.call_metrics.transcripts_received += 1
        self.call_metrics.last_activity = self._clock()
        delta = self.tracker.process(segment)
        if delta is not None:
            await self.submit_delta(delta)
        return delta

    async def submit_delta(self, delta: TextDelta) -> Optional[str]:
        """Synthesize ``delta`` through the stream, or one-shot when the stream is unavailable.

        Returns the name of the synthesizer that accepted the text.
        """
        if self.closed:
            return None
        generation = self.generations.advance()
        self.call_metrics.deltas_submitted += 1

        if await self.streaming.submit(delta.text, generation):
            self.call_metrics.streamed_texts += 1
            relay_metrics.record(self.metrics, "text_delta_submitted", is_final=delta.is_final, path="streaming")
            return self.streaming.name

        if self.one_shot is not None and await self.one_shot.submit(delta.text, generation):
            self.call_metrics.fallback_texts += 1
            relay_metrics.record(self.metrics, "text_delta_submitted", is_final=delta.is_final, path="one_shot")
            logger.info(
                {
                    "event": "synthesis_fallback",
                    "call_id": self.call_id,
                    "generation": generation,
                    "session_state": self.synthesis.state.value,
                }
            )
            return self.one_shot.name

        logger.warning({"event": "text_delta_dropped", "call_id": self.call_id, "generation": generation})
        return None

    def inactive_seconds(self, now: Optional[float] = None) -> float:
        now = self._clock() if now is None else now
        last_activity = max(self.call_metrics.last_activity, self.synthesis.last_activity)
        return max(0.0, now - last_activity)

    def snapshot(self) -> dict[str, Any]:
        data = asdict(self.call_metrics)
        data["generation"] = self.generations.current
        data["synthesis"] = self.synthesis.metrics_snapshot().as_dict()
        data["one_shot_pending"] = self.one_shot.pending if self.one_shot is not None else 0
        return data

    async def close(self, reason: str = "call_stop") -> None:
        """Tear the call down. Idempotent; cancels every task the call started."""
        if self.closed:
            return
        self.closed = True
        self._pending_audio.clear()
        self._audio_queue.put_nowait(None)

        for task in (self._pause_task, self._transcription_task):
            if task is not None and not task.done() and task is not asyncio.current_task():
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
        self._pause_task = self._transcription_task = None

        if self.one_shot is not None:
            await self.one_shot.close()
        await self.synthesis.close()

        if self._metrics_ctx is not None:
            relay_metrics.record(self.metrics, "call_finished", self._metrics_ctx)
            self._metrics_ctx = None
        logger.info({"event": "call_session_closed", "reason": reason, **self.snapshot()})

    def _flush_audio(self) -> None:
        if not self._pending_audio:
            return
        self._audio_queue.put_nowait(b"".join(self._pending_audio))
        self._pending_audio.clear()

    async def _audio_chunks(self) -> AsyncGenerator[bytes | None, None]:
        while True:
            chunk = await self._audio_queue.get()
            if chunk is None:
                return
            yield chunk

    async def _run_transcription(self) -> None:
        # consecutive streams that ended without a single transcript
        failures = 0
        while not self.closed:
            productive = False
            try:
                async for segment in self.speech.stream_transcribe(
                    self._audio_chunks(),
                    language_code=self.settings.stt_language,
                    sample_rate_hz=self.settings.stt_sample_rate,
                ):
                    if self.closed:
                        return
                    productive = True
                    await self.handle_transcript(segment)
                if self.closed:
                    return
                logger.info({"event": "transcription_stream_ended", "call_id": self.call_id})
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if self.closed:
                    return
                logger.warning(
                    {
                        "event": "transcription_stream_error",
                        "call_id": self.call_id,
                        "error": str(exc),
                        "failures": failures,
                    }
                )

            if productive:
                failures = 0
            if failures >= self.settings.stt_max_restarts:
                logger.error(
                    {
                        "event": "transcription_abandoned",
                        "call_id": self.call_id,
                        "failures": failures,
                    }
                )
                return
            failures += 1
            self.call_metrics.stt_restarts += 1
            await asyncio.sleep(self.settings.stt_restart_delay_seconds)

    async def _run_pause_detection(self) -> None:
        interval = max(0.01, self.settings.pause_check_interval_seconds)
        while not self.closed:
            await asyncio.sleep(interval)
            self.tracker.check_pause()

    async def _on_synthesis_event(self, event: SynthesisEvent) -> None:
        if isinstance(event, AudioChunk):
            await self.relay.relay(event.audio, event.generation, keepalive=event.keepalive)
        elif isinstance(event, SynthesisFailed):
            logger.warning(
                {
                    "event": "synthesis_session_lost",
                    "call_id": self.call_id,
                    "error": str(event.error),
                    "fallback": self.one_shot.name if self.one_shot is not None else None,
                }
            )
        elif isinstance(event, SessionEnd):
            logger.info({"event": "synthesis_session_ended_by_provider", "call_id": self.call_id})
        elif isinstance(event, SessionClosed):
            logger.debug({"event": "synthesis_session_metrics", **event.metrics.as_dict()})
