"""Google Cloud Speech-to-Text async streaming helper."""
from __future__ import annotations

from typing import AsyncGenerator, AsyncIterator

from google.api_core.exceptions import GoogleAPIError
from google.auth.exceptions import DefaultCredentialsError
from google.cloud.speech_v1 import SpeechAsyncClient
from google.cloud.speech_v1.types import (
    RecognitionConfig,
    StreamingRecognitionConfig,
    StreamingRecognizeRequest,
)

from accent_relay.core.exceptions import ConfigurationError, TranscriptionError
from accent_relay.core.logging import get_logger
from accent_relay.voice.audio_models import TranscriptSegment
from accent_relay.voice.settings import VoiceSettings

logger = get_logger(__name__)


def resolve_encoding(name: str) -> RecognitionConfig.AudioEncoding:
    try:
        return RecognitionConfig.AudioEncoding[name.upper()]
    except KeyError as exc:
        raise ConfigurationError("Unsupported STT audio encoding", {"encoding": name}) from exc


class GoogleSpeechClient:
    """Thin wrapper around Google Cloud streaming STT tuned for phone audio."""

    def __init__(self, settings: VoiceSettings) -> None:
        self._settings = settings

    def build_streaming_config(
        self,
        *,
        language_code: str | None = None,
        sample_rate_hz: int | None = None,
    ) -> StreamingRecognitionConfig:
        settings = self._settings
        recognition_config = RecognitionConfig(
            encoding=resolve_encoding(settings.stt_encoding),
            language_code=language_code or settings.stt_language,
            sample_rate_hertz=sample_rate_hz or settings.stt_sample_rate,
            model=settings.stt_model,
            use_enhanced=settings.stt_use_enhanced,
            enable_automatic_punctuation=True,
            enable_word_time_offsets=False,
        )
        return StreamingRecognitionConfig(
            config=recognition_config,
            interim_results=True,
            single_utterance=False,
        )

    async def stream_transcribe(
        self,
        audio_chunks: AsyncIterator[bytes | None],
        *,
        language_code: str | None = None,
        sample_rate_hz: int | None = None,
    ) -> AsyncGenerator[TranscriptSegment, None]:
        """Yield transcript segments as they are produced by Google STT.

        Args:
            audio_chunks: asynchronous iterator of raw telephony audio; ``None`` ends the stream.
            language_code: optional language override; defaults to configured language.
            sample_rate_hz: audio sampling rate; defaults to configured rate.
        """
        streaming_config = self.build_streaming_config(language_code=language_code, sample_rate_hz=sample_rate_hz)

        async def request_iterator() -> AsyncGenerator[StreamingRecognizeRequest, None]:
            yield StreamingRecognizeRequest(streaming_config=streaming_config)
            async for chunk in audio_chunks:
                if chunk is None:
                    break
                if not chunk:
                    continue
                yield StreamingRecognizeRequest(audio_content=chunk)

        try:
            client = SpeechAsyncClient()
        except DefaultCredentialsError as exc:
            raise ConfigurationError("Google Speech credentials are not configured", {"error": str(exc)}) from exc

        try:
            async with client:
                responses = await client.streaming_recognize(requests=request_iterator())
                async for response in responses:
                    for result in response.results:
                        if not result.alternatives:
                            continue
                        alternative = result.alternatives[0]
                        confidence = getattr(alternative, "confidence", None)
                        yield TranscriptSegment(
                            text=alternative.transcript or "",
                            is_final=result.is_final,
                            stability=getattr(result, "stability", None),
                            # interim results carry no confidence; proto reports 0.0 for them
                            confidence=confidence if result.is_final and confidence else None,
                        )
        except GoogleAPIError as exc:
            logger.exception("Google STT streaming error", extra={"log_context": str(exc)})
            raise TranscriptionError("Google STT streaming failed", {"error": str(exc)}) from exc
