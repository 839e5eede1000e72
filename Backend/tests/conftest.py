"""Pytest configuration and shared fakes for the relay."""
import asyncio
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

# Ensure Backend is on sys.path so 'accent_relay' resolves during tests
backend_root = Path(__file__).parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

from accent_relay.voice.audio_models import SynthesisConfig, TranscriptSegment
from accent_relay.voice.settings import VoiceSettings


class FakeClock:
    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class FakeSynthesisStream:
    """In-memory synthesis stream; the test pushes audio, errors or the end."""

    def __init__(self) -> None:
        self.config: Optional[SynthesisConfig] = None
        self.texts: List[str] = []
        self.ended = False
        self.write_error: Optional[BaseException] = None
        self._events: asyncio.Queue = asyncio.Queue()

    async def send_config(self, config: SynthesisConfig) -> None:
        self.config = config

    async def send_text(self, text: str) -> None:
        if self.write_error is not None:
            raise self.write_error
        self.texts.append(text)

    async def end(self) -> None:
        self.ended = True
        self._events.put_nowait(None)

    async def audio(self):
        while True:
            item = await self._events.get()
            if item is None:
                return
            if isinstance(item, BaseException):
                raise item
            yield item

    def push_audio(self, audio: bytes) -> None:
        self._events.put_nowait(audio)

    def push_error(self, error: BaseException) -> None:
        self._events.put_nowait(error)

    def finish(self) -> None:
        self._events.put_nowait(None)


class FakeSynthesisProvider:
    def __init__(self) -> None:
        self.streams: List[FakeSynthesisStream] = []
        self.open_error: Optional[BaseException] = None
        self.fail_streams_with: Optional[BaseException] = None

    async def open_stream(self) -> FakeSynthesisStream:
        if self.open_error is not None:
            raise self.open_error
        stream = FakeSynthesisStream()
        if self.fail_streams_with is not None:
            stream.push_error(self.fail_streams_with)
        self.streams.append(stream)
        return stream


class FakeSpeech:
    """Transcription provider that records caller audio and replays scripted errors."""

    def __init__(self) -> None:
        self.calls = 0
        self.received: List[bytes] = []
        self.errors: List[BaseException] = []
        # Each script is one stream that yields its segments and then ends.
        self.scripts: List[List[TranscriptSegment]] = []

    async def stream_transcribe(self, audio_chunks, *, language_code=None, sample_rate_hz=None):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        if self.scripts:
            for segment in self.scripts.pop(0):
                yield segment
            return
        async for chunk in audio_chunks:
            if chunk is None:
                break
            self.received.append(chunk)


class FakeOneShotTTS:
    def __init__(self) -> None:
        self.calls: List[str] = []
        self.gates: Dict[str, asyncio.Event] = {}
        self.error: Optional[BaseException] = None

    async def synthesize(self, *, text: str, config: SynthesisConfig) -> bytes:
        self.calls.append(text)
        gate = self.gates.get(text)
        if gate is not None:
            await gate.wait()
        if self.error is not None:
            raise self.error
        return f"audio:{text}".encode("utf-8")


class FakeTransport:
    def __init__(self) -> None:
        self.sent: List[str] = []
        self.error: Optional[BaseException] = None

    async def send_text(self, data: str) -> None:
        if self.error is not None:
            raise self.error
        self.sent.append(data)


class RecordingListener:
    def __init__(self) -> None:
        self.events: List[Any] = []

    async def __call__(self, event: Any) -> None:
        self.events.append(event)

    def of_type(self, event_type: type) -> List[Any]:
        return [event for event in self.events if isinstance(event, event_type)]


async def _drain(times: int = 30) -> None:
    for _ in range(times):
        await asyncio.sleep(0)


@pytest.fixture
def drain():
    """Let pending tasks run without waiting on real time."""
    return _drain


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def voice_settings() -> VoiceSettings:
    return VoiceSettings(
        tts_language="en-GB",
        tts_voice="en-GB-Chirp3-HD-Fenrir",
        tts_ssml_gender="MALE",
        tts_audio_encoding="MULAW",
        tts_sample_rate=8000,
        one_shot_provider="google",
        one_shot_voice="en-GB-Neural2-B",
        reconnect_backoff_seconds=0.0,
        stt_restart_delay_seconds=0.0,
        keepalive_interval_seconds=3.0,
        keepalive_threshold_seconds=2.0,
        max_reconnect_attempts=3,
        max_inactive_seconds=300.0,
        audio_batch_size=5,
        suppress_keepalive_audio=True,
        synthesis_cache_enabled=True,
        synthesis_cache_max_entries=0,
    )


@pytest.fixture
def synthesis_provider() -> FakeSynthesisProvider:
    return FakeSynthesisProvider()


@pytest.fixture
def speech() -> FakeSpeech:
    return FakeSpeech()


@pytest.fixture
def one_shot_tts() -> FakeOneShotTTS:
    return FakeOneShotTTS()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def listener() -> RecordingListener:
    return RecordingListener()
