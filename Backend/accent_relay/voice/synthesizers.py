"""Two ways of turning a text delta into caller audio behind one interface."""
from __future__ import annotations

import asyncio
import time
from typing import Any, Optional, Protocol, Set

from accent_relay.core.logging import get_logger
from accent_relay.voice import metrics as relay_metrics
from accent_relay.voice.audio_models import SynthesisConfig
from accent_relay.voice.audio_relay import AudioRelay, SynthesisCache
from accent_relay.voice.synthesis_session import SynthesisSession, prepare_text

logger = get_logger(__name__)


class OneShotTextToSpeech(Protocol):
    async def synthesize(self, *, text: str, config: SynthesisConfig) -> bytes:
        ...


class Synthesizer(Protocol):
    name: str

    async def submit(self, text: str, generation: int) -> bool:
        ...

    async def close(self) -> None:
        ...


class StreamingSynthesizer:
    """Writes text into the call's long-lived synthesis session."""

    name = "streaming"

    def __init__(self, session: SynthesisSession) -> None:
        self.session = session

    @property
    def available(self) -> bool:
        return self.session.accepts_text

    async def submit(self, text: str, generation: int) -> bool:
        if not self.available:
            return False
        return await self.session.add_text(text, generation)

    async def close(self) -> None:
        await self.session.close()


class OneShotSynthesizer:
    """One request per text, used while the streaming session is unavailable.

    Every request runs as its own task and relays its audio tagged with the
    generation it was submitted with, so a slow response that was overtaken by
    a newer request is discarded by the relay.
    """

    name = "one_shot"

    def __init__(
        self,
        call_id: str,
        tts: OneShotTextToSpeech,
        config: SynthesisConfig,
        relay: AudioRelay,
        *,
        cache: SynthesisCache | None = None,
        text_optimization: bool = True,
        metrics: Any | None = None,
    ) -> None:
        self.call_id = call_id
        self.tts = tts
        self.config = config
        self.relay = relay
        self.cache = cache
        self.text_optimization = text_optimization
        self.metrics = metrics if metrics is not None else relay_metrics
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def submit(self, text: str, generation: int) -> bool:
        prepared = prepare_text(text, self.text_optimization)
        if self._closed or not prepared:
            return False
        task = asyncio.create_task(self._synthesize(prepared, generation))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def drain(self) -> None:
        """Wait for every in-flight request to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        self._closed = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    async def _synthesize(self, text: str, generation: int) -> Optional[bytes]:
        started_at = time.perf_counter()
        audio = self.cache.get(text) if self.cache is not None else None
        cached = audio is not None
        if audio is None:
            try:
                audio = await self.tts.synthesize(text=text, config=self.config)
            except Exception as exc:
                relay_metrics.record(self.metrics, "synthesis_failed", path="one_shot")
                logger.warning(
                    {
                        "event": "one_shot_synthesis_failed",
                        "call_id": self.call_id,
                        "generation": generation,
                        "error": str(exc),
                    }
                )
                return None
            if self.cache is not None:
                self.cache.put(text, audio)

        if not audio:
            return None
        latency_ms = (time.perf_counter() - started_at) * 1000.0
        if not cached:
            relay_metrics.record(self.metrics, "synthesis_latency", latency_ms)
        logger.debug(
            {
                "event": "one_shot_synthesis_complete",
                "call_id": self.call_id,
                "generation": generation,
                "cached": cached,
                "bytes": len(audio),
                "latency_ms": round(latency_ms, 1),
            }
        )
        await self.relay.relay(audio, generation)
        return audio
