import base64
import json
from dataclasses import replace

import pytest

from accent_relay.core.exceptions import ConfigurationError, SynthesisStreamError
from accent_relay.voice.audio_models import SessionState, TextDelta, TranscriptSegment
from accent_relay.voice.manager import RelayOrchestrator


def payloads(transport):
    return [base64.b64decode(json.loads(item)["media"]["payload"]) for item in transport.sent]


def make_orchestrator(settings, speech, synthesis_provider, one_shot_tts, clock) -> RelayOrchestrator:
    return RelayOrchestrator(
        settings=settings,
        speech=speech,
        synthesis_provider=synthesis_provider,
        one_shot_tts=one_shot_tts,
        clock=clock,
    )


@pytest.fixture
def orchestrator(voice_settings, speech, synthesis_provider, one_shot_tts, clock):
    return make_orchestrator(voice_settings, speech, synthesis_provider, one_shot_tts, clock)


@pytest.mark.asyncio
async def test_call_start_and_stop(orchestrator, synthesis_provider, transport):
    session = await orchestrator.on_call_start("CA1", "MZ1", transport)

    assert orchestrator.get_session("CA1") is session
    assert len(synthesis_provider.streams) == 1
    assert session.synthesis.accepts_text is True

    assert await orchestrator.on_call_stop("CA1") is True
    assert await orchestrator.on_call_stop("CA1") is False
    assert session.closed is True
    assert session.synthesis.is_closed is True
    assert synthesis_provider.streams[0].ended is True
    assert orchestrator.get_session("CA1") is None


@pytest.mark.asyncio
async def test_configuration_error_leaves_no_session(orchestrator, synthesis_provider, transport):
    synthesis_provider.open_error = ConfigurationError("no credentials")

    with pytest.raises(ConfigurationError):
        await orchestrator.on_call_start("CA1", "MZ1", transport)

    assert orchestrator.sessions == {}


@pytest.mark.asyncio
async def test_unavailable_stream_falls_back_to_one_shot(orchestrator, synthesis_provider, one_shot_tts, transport):
    synthesis_provider.open_error = RuntimeError("service unavailable")

    session = await orchestrator.on_call_start("CA1", "MZ1", transport)
    path = await session.submit_delta(TextDelta(text="hello", is_final=False))
    await session.one_shot.drain()

    assert session.synthesis.is_closed is True
    assert path == "one_shot"
    assert one_shot_tts.calls == ["hello"]
    assert payloads(transport) == [b"audio:hello"]
    await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_unavailable_stream_without_fallback_is_raised(voice_settings, speech, synthesis_provider, transport, clock):
    orchestrator = make_orchestrator(
        replace(voice_settings, one_shot_provider="none"), speech, synthesis_provider, None, clock
    )
    synthesis_provider.open_error = RuntimeError("service unavailable")

    assert orchestrator.one_shot_tts is None
    with pytest.raises(RuntimeError):
        await orchestrator.on_call_start("CA1", "MZ1", transport)
    assert orchestrator.sessions == {}


@pytest.mark.asyncio
async def test_starting_a_known_call_replaces_the_session(orchestrator, transport):
    first = await orchestrator.on_call_start("CA1", "MZ1", transport)
    second = await orchestrator.on_call_start("CA1", "MZ2", transport)

    assert first.closed is True
    assert orchestrator.get_session("CA1") is second
    await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_inbound_audio_is_batched_after_first_chunk(orchestrator, speech, transport, drain):
    await orchestrator.on_call_start("CA1", "MZ1", transport)

    for index in range(6):
        assert orchestrator.on_inbound_audio("CA1", f"c{index}".encode()) is True
    await drain()

    assert speech.received == [b"c0", b"c1c2c3c4c5"]
    assert orchestrator.on_inbound_audio("unknown", b"c0") is False
    await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_transcript_is_synthesized_and_relayed(orchestrator, synthesis_provider, transport, drain):
    session = await orchestrator.on_call_start("CA1", "MZ1", transport)
    stream = synthesis_provider.streams[0]

    delta = await session.handle_transcript(TranscriptSegment(text="hello there", is_final=False))
    stream.push_audio(b"accented")
    await drain()

    assert delta == TextDelta(text="hello there", is_final=False)
    assert stream.texts == ["hello there"]
    assert payloads(transport) == [b"accented"]
    assert json.loads(transport.sent[0])["streamSid"] == "MZ1"
    assert session.call_metrics.streamed_texts == 1
    assert session.call_metrics.audio_chunks_sent == 1
    await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_streaming_audio_carries_latest_text_generation(orchestrator, synthesis_provider, transport, drain):
    session = await orchestrator.on_call_start("CA1", "MZ1", transport)
    stream = synthesis_provider.streams[0]

    await session.submit_delta(TextDelta(text="hello", is_final=False))
    await session.submit_delta(TextDelta(text="there", is_final=False))
    stream.push_audio(b"hello-there")
    await drain()

    assert stream.texts == ["hello", "there"]
    assert session.generations.current == 2
    assert payloads(transport) == [b"hello-there"]
    assert session.call_metrics.stale_chunks_dropped == 0
    await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_streaming_audio_is_dropped_once_another_request_takes_the_generation(
    orchestrator, synthesis_provider, transport, drain
):
    session = await orchestrator.on_call_start("CA1", "MZ1", transport)
    stream = synthesis_provider.streams[0]

    await session.submit_delta(TextDelta(text="hello", is_final=False))
    # a one-shot request elsewhere advances the generation without writing to the stream
    session.generations.advance()
    stream.push_audio(b"late")
    await drain()

    assert transport.sent == []
    assert session.call_metrics.stale_chunks_dropped == 1
    await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_late_speech_audio_after_keepalive_is_relayed(orchestrator, synthesis_provider, transport, clock, drain):
    session = await orchestrator.on_call_start("CA1", "MZ1", transport)
    stream = synthesis_provider.streams[0]

    await session.handle_transcript(TranscriptSegment(text="hello", is_final=False))
    clock.advance(3.0)
    assert await session.synthesis.check_keepalive() is True
    stream.push_audio(b"audio-for-hello")
    await drain()

    assert payloads(transport) == [b"audio-for-hello"]
    assert session.call_metrics.keepalive_chunks_dropped == 0
    await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_one_shot_covers_reconnect_window(
    voice_settings, speech, synthesis_provider, one_shot_tts, transport, clock, drain
):
    settings = replace(voice_settings, reconnect_backoff_seconds=60.0)
    orchestrator = make_orchestrator(settings, speech, synthesis_provider, one_shot_tts, clock)
    session = await orchestrator.on_call_start("CA1", "MZ1", transport)

    synthesis_provider.streams[0].push_error(SynthesisStreamError("stream aborted", code=10))
    await drain()
    assert session.synthesis.state is SessionState.RECONNECTING

    path = await session.submit_delta(TextDelta(text="still here", is_final=True))
    await session.one_shot.drain()

    assert path == "one_shot"
    assert payloads(transport) == [b"audio:still here"]
    assert session.call_metrics.fallback_texts == 1
    await orchestrator.shutdown()
    assert session.synthesis.is_closed is True


@pytest.mark.asyncio
async def test_cleanup_closes_inactive_calls(orchestrator, transport, clock):
    await orchestrator.on_call_start("CA1", "MZ1", transport)

    clock.now = 100.0
    assert await orchestrator.cleanup_inactive_sessions() == []

    clock.now = 400.0
    assert await orchestrator.cleanup_inactive_sessions() == ["CA1"]
    assert orchestrator.sessions == {}


@pytest.mark.asyncio
async def test_inbound_audio_keeps_call_alive(orchestrator, transport, clock):
    await orchestrator.on_call_start("CA1", "MZ1", transport)

    clock.now = 250.0
    orchestrator.on_inbound_audio("CA1", b"\xff")
    clock.now = 400.0

    assert await orchestrator.cleanup_inactive_sessions() == []
    assert await orchestrator.cleanup_inactive_sessions(max_inactive=100.0) == ["CA1"]


@pytest.mark.asyncio
async def test_transport_close_and_error_tear_down(orchestrator, transport):
    await orchestrator.on_call_start("CA1", "MZ1", transport)
    await orchestrator.on_call_start("CA2", "MZ2", transport)

    assert await orchestrator.on_transport_closed("CA1") is True
    assert await orchestrator.on_transport_error("CA2", RuntimeError("reset by peer")) is True
    assert await orchestrator.on_transport_error("CA2", RuntimeError("reset by peer")) is False
    assert orchestrator.sessions == {}


@pytest.mark.asyncio
async def test_shutdown_stops_sweep_and_calls(orchestrator, transport):
    await orchestrator.start()
    first = await orchestrator.on_call_start("CA1", "MZ1", transport)
    second = await orchestrator.on_call_start("CA2", "MZ2", transport)

    await orchestrator.shutdown()

    assert orchestrator.sessions == {}
    assert orchestrator._cleanup_task is None
    assert first.closed and second.closed


@pytest.mark.asyncio
async def test_transcription_restarts_after_error(orchestrator, speech, transport, drain):
    speech.errors = [RuntimeError("stream reset")]
    session = await orchestrator.on_call_start("CA1", "MZ1", transport)
    await drain()

    orchestrator.on_inbound_audio("CA1", b"c0")
    await drain()

    assert speech.calls == 2
    assert session.call_metrics.stt_restarts == 1
    assert speech.received == [b"c0"]
    await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_transcription_gives_up_after_max_restarts(orchestrator, voice_settings, speech, transport, drain):
    speech.errors = [RuntimeError("stream reset") for _ in range(10)]
    session = await orchestrator.on_call_start("CA1", "MZ1", transport)
    await drain(60)

    assert speech.calls == voice_settings.stt_max_restarts + 1
    assert session.call_metrics.stt_restarts == voice_settings.stt_max_restarts
    assert session.closed is False
    await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_productive_transcription_streams_do_not_use_up_restarts(
    orchestrator, voice_settings, speech, transport, drain
):
    turns = ("one", "two", "three", "four", "five")
    speech.scripts = [[TranscriptSegment(text=f"turn {word}", is_final=True, confidence=0.9)] for word in turns]
    session = await orchestrator.on_call_start("CA1", "MZ1", transport)
    await drain(100)

    assert len(turns) > voice_settings.stt_max_restarts
    assert speech.calls == len(turns) + 1
    assert session.call_metrics.stt_restarts == len(turns)
    assert session.call_metrics.transcripts_received == len(turns)
    assert session.closed is False
    await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_health_reports_sessions(orchestrator, transport):
    await orchestrator.on_call_start("CA1", "MZ1", transport)

    health = orchestrator.get_health()

    assert health["status"] == "healthy"
    assert health["active_sessions"] == 1
    assert health["synthesis_sessions"] == 1
    assert health["cache_entries"] == 0
    assert health["sessions"][0]["call_id"] == "CA1"
    assert health["sessions"][0]["stream_id"] == "MZ1"
    assert health["sessions"][0]["synthesis"]["state"] == "configured"
    await orchestrator.shutdown()
