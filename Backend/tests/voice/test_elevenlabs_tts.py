import json

import httpx
import pytest

from accent_relay.core.exceptions import ConfigurationError, SynthesisError
from accent_relay.voice.elevenlabs_tts import ElevenLabsTextToSpeechClient


@pytest.fixture
def elevenlabs_settings(voice_settings):
    voice_settings.elevenlabs_api_key = "test-key"
    voice_settings.elevenlabs_voice_id = "voice-123"
    voice_settings.elevenlabs_model_id = "eleven_flash_v2_5"
    voice_settings.elevenlabs_output_format = "ulaw_8000"
    voice_settings.elevenlabs_voice_settings = '{"stability": 0.4}'
    voice_settings.elevenlabs_base_url = "https://api.elevenlabs.test/"
    return voice_settings


@pytest.mark.asyncio
async def test_synthesize_posts_text_and_returns_audio(elevenlabs_settings):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, content=b"\x7f\xff")

    client = ElevenLabsTextToSpeechClient(elevenlabs_settings, transport=httpx.MockTransport(handler))

    audio = await client.synthesize(text="good morning", config=elevenlabs_settings.synthesis_config())

    assert audio == b"\x7f\xff"
    request = requests[0]
    assert request.url.path == "/v1/text-to-speech/voice-123"
    assert request.url.params["output_format"] == "ulaw_8000"
    assert request.headers["xi-api-key"] == "test-key"
    body = json.loads(request.content)
    assert body == {
        "text": "good morning",
        "model_id": "eleven_flash_v2_5",
        "voice_settings": {"stability": 0.4},
        "language_code": "en",
    }


@pytest.mark.asyncio
async def test_error_status_raises_synthesis_error(elevenlabs_settings):
    transport = httpx.MockTransport(lambda request: httpx.Response(401, text="unauthorized"))
    client = ElevenLabsTextToSpeechClient(elevenlabs_settings, transport=transport)

    with pytest.raises(SynthesisError):
        await client.synthesize(text="hello", config=elevenlabs_settings.synthesis_config())


@pytest.mark.asyncio
async def test_network_error_raises_synthesis_error(elevenlabs_settings):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = ElevenLabsTextToSpeechClient(elevenlabs_settings, transport=httpx.MockTransport(handler))

    with pytest.raises(SynthesisError):
        await client.synthesize(text="hello", config=elevenlabs_settings.synthesis_config())


@pytest.mark.asyncio
async def test_invalid_voice_settings_are_ignored(elevenlabs_settings):
    elevenlabs_settings.elevenlabs_voice_settings = "not json"
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, content=b"\x00")

    client = ElevenLabsTextToSpeechClient(elevenlabs_settings, transport=httpx.MockTransport(handler))
    await client.synthesize(text="hello", config=elevenlabs_settings.synthesis_config())

    assert "voice_settings" not in bodies[0]


def test_missing_api_key_is_a_configuration_error(voice_settings):
    voice_settings.elevenlabs_api_key = None
    with pytest.raises(ConfigurationError):
        ElevenLabsTextToSpeechClient(voice_settings)


@pytest.mark.asyncio
async def test_missing_voice_is_a_configuration_error(elevenlabs_settings):
    elevenlabs_settings.elevenlabs_voice_id = None
    client = ElevenLabsTextToSpeechClient(elevenlabs_settings, transport=httpx.MockTransport(lambda r: httpx.Response(200)))

    with pytest.raises(ConfigurationError):
        await client.synthesize(text="hello", config=elevenlabs_settings.synthesis_config())
