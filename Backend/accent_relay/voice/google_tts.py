"""Google Cloud Text-to-Speech helpers: bidirectional streaming and one-shot."""
from __future__ import annotations

import asyncio
import struct
from typing import AsyncGenerator, AsyncIterator

from google.api_core.exceptions import GoogleAPIError
from google.auth.exceptions import DefaultCredentialsError
from google.cloud import texttospeech

from accent_relay.core.exceptions import ConfigurationError, SynthesisError, SynthesisStreamError
from accent_relay.core.logging import get_logger
from accent_relay.voice.audio_models import SynthesisConfig
from accent_relay.voice.settings import VoiceSettings

logger = get_logger(__name__)


def resolve_audio_encoding(name: str) -> texttospeech.AudioEncoding:
    try:
        return texttospeech.AudioEncoding[name.upper()]
    except KeyError as exc:
        raise ConfigurationError("Unsupported TTS audio encoding", {"encoding": name}) from exc


def resolve_ssml_gender(name: str | None) -> texttospeech.SsmlVoiceGender:
    try:
        return texttospeech.SsmlVoiceGender[(name or "SSML_VOICE_GENDER_UNSPECIFIED").upper()]
    except KeyError:
        logger.warning("Unknown SSML gender %s, leaving it unspecified", name)
        return texttospeech.SsmlVoiceGender.SSML_VOICE_GENDER_UNSPECIFIED


def build_voice_params(config: SynthesisConfig) -> texttospeech.VoiceSelectionParams:
    return texttospeech.VoiceSelectionParams(
        language_code=config.voice.language_code,
        name=config.voice.name,
        ssml_gender=resolve_ssml_gender(config.voice.ssml_gender),
    )


def build_streaming_config(config: SynthesisConfig) -> texttospeech.StreamingSynthesizeConfig:
    # Streaming synthesis only honours encoding, rate and speaking rate.
    return texttospeech.StreamingSynthesizeConfig(
        voice=build_voice_params(config),
        streaming_audio_config=texttospeech.StreamingAudioConfig(
            audio_encoding=resolve_audio_encoding(config.audio.audio_encoding),
            sample_rate_hertz=config.audio.sample_rate_hertz,
            speaking_rate=config.audio.speaking_rate,
        ),
    )


def strip_wav_header(audio: bytes) -> bytes:
    """Return the raw samples of a RIFF/WAVE payload; other input is returned unchanged."""
    if len(audio) < 12 or audio[:4] != b"RIFF" or audio[8:12] != b"WAVE":
        return audio
    offset = 12
    while offset + 8 <= len(audio):
        chunk_id = audio[offset:offset + 4]
        (chunk_size,) = struct.unpack("<I", audio[offset + 4:offset + 8])
        if chunk_id == b"data":
            return audio[offset + 8:offset + 8 + chunk_size]
        offset += 8 + chunk_size + (chunk_size % 2)
    return audio


def _new_client() -> texttospeech.TextToSpeechAsyncClient:
    try:
        return texttospeech.TextToSpeechAsyncClient()
    except DefaultCredentialsError as exc:
        raise ConfigurationError("Google Text-to-Speech credentials are not configured", {"error": str(exc)}) from exc


class GoogleSynthesisStream:
    """One ``streaming_synthesize`` call fed from an in-memory request queue."""

    def __init__(self, client: texttospeech.TextToSpeechAsyncClient) -> None:
        self._client = client
        self._requests: asyncio.Queue[texttospeech.StreamingSynthesizeRequest | None] = asyncio.Queue()
        self._ended = False

    async def send_config(self, config: SynthesisConfig) -> None:
        await self._put(texttospeech.StreamingSynthesizeRequest(streaming_config=build_streaming_config(config)))

    async def send_text(self, text: str) -> None:
        await self._put(
            texttospeech.StreamingSynthesizeRequest(input=texttospeech.StreamingSynthesisInput(text=text))
        )

    async def end(self) -> None:
        if self._ended:
            return
        self._ended = True
        await self._requests.put(None)

    async def audio(self) -> AsyncIterator[bytes]:
        try:
            async with self._client:
                responses = await self._client.streaming_synthesize(requests=self._request_iterator())
                async for response in responses:
                    if response.audio_content:
                        yield response.audio_content
        except GoogleAPIError as exc:
            logger.warning("Google streaming TTS error", extra={"log_context": str(exc)})
            raise

    async def _put(self, request: texttospeech.StreamingSynthesizeRequest) -> None:
        if self._ended:
            raise SynthesisStreamError("Synthesis stream already ended")
        await self._requests.put(request)

    async def _request_iterator(self) -> AsyncGenerator[texttospeech.StreamingSynthesizeRequest, None]:
        while True:
            request = await self._requests.get()
            if request is None:
                return
            yield request


class GoogleStreamingSynthesizer:
    """Opens bidirectional Google TTS streams."""

    def __init__(self, settings: VoiceSettings) -> None:
        self._settings = settings

    async def open_stream(self) -> GoogleSynthesisStream:
        return GoogleSynthesisStream(_new_client())


class GoogleTextToSpeechClient:
    """Single request synthesis, used while no stream is available."""

    def __init__(self, settings: VoiceSettings) -> None:
        self._settings = settings

    async def synthesize(self, *, text: str, config: SynthesisConfig) -> bytes:
        """Generate raw audio for ``text`` in the configured telephony encoding."""
        if not text.strip():
            raise ValueError("Cannot synthesize empty text")

        audio_config = texttospeech.AudioConfig(
            audio_encoding=resolve_audio_encoding(config.audio.audio_encoding),
            sample_rate_hertz=config.audio.sample_rate_hertz,
            speaking_rate=config.audio.speaking_rate,
            pitch=config.audio.pitch,
            volume_gain_db=config.audio.volume_gain_db,
        )

        client = _new_client()
        try:
            async with client:
                response = await client.synthesize_speech(
                    input=texttospeech.SynthesisInput(text=text),
                    voice=build_voice_params(config),
                    audio_config=audio_config,
                )
        except GoogleAPIError as exc:
            logger.exception("Google TTS synthesis error", extra={"log_context": str(exc)})
            raise SynthesisError("Google TTS synthesis failed", {"error": str(exc)}) from exc

        return strip_wav_header(getattr(response, "audio_content", None) or b"")
