"""ElevenLabs Text-to-Speech helper."""
from __future__ import annotations

import json
from typing import Any, Dict, Optional

import httpx

from accent_relay.core.exceptions import ConfigurationError, SynthesisError
from accent_relay.core.logging import get_logger
from accent_relay.voice.audio_models import SynthesisConfig
from accent_relay.voice.settings import VoiceSettings

logger = get_logger(__name__)


class ElevenLabsTextToSpeechClient:
    """One-shot synthesis through the ElevenLabs REST API.

    The voice comes from ``ELEVENLABS_VOICE_ID``; the Google voice name in
    ``config`` has no meaning here. Output defaults to ``ulaw_8000`` which is
    what the telephony leg expects.
    """

    def __init__(self, settings: VoiceSettings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._settings = settings
        self._transport = transport
        if not self._settings.elevenlabs_api_key:
            raise ConfigurationError("ElevenLabs API key is not configured")

    async def synthesize(self, *, text: str, config: SynthesisConfig) -> bytes:
        if not text.strip():
            raise ValueError("Cannot synthesize empty text")

        voice_id = self._settings.elevenlabs_voice_id
        if not voice_id:
            raise ConfigurationError("ElevenLabs voice ID is not configured")

        headers = {
            "xi-api-key": self._settings.elevenlabs_api_key or "",
            "Accept": "audio/basic",
            "Content-Type": "application/json",
        }
        url = f"{self._settings.elevenlabs_base_url.rstrip('/')}/v1/text-to-speech/{voice_id}"
        params = {"output_format": self._settings.elevenlabs_output_format}
        payload = self._build_payload(
            text=text,
            model_id=self._settings.elevenlabs_model_id,
            language_code=config.voice.language_code,
        )

        async with httpx.AsyncClient(timeout=30.0, transport=self._transport) as client:
            try:
                response = await client.post(url, headers=headers, params=params, json=payload)
            except httpx.HTTPError as exc:
                raise SynthesisError("ElevenLabs TTS request failed", {"error": str(exc)}) from exc

        if response.status_code != 200:
            detail = response.text
            logger.error(
                {
                    "event": "elevenlabs_tts_failed",
                    "status_code": response.status_code,
                    "detail": detail[:500],
                }
            )
            raise SynthesisError(
                f"ElevenLabs TTS request failed: {response.status_code}",
                {"status_code": response.status_code},
            )
        return response.content

    def _build_payload(
        self,
        *,
        text: str,
        model_id: str,
        language_code: Optional[str],
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "text": text,
            "model_id": model_id,
        }

        settings = self._parse_voice_settings(self._settings.elevenlabs_voice_settings)
        if settings:
            payload["voice_settings"] = settings
        if language_code:
            # ElevenLabs expects ISO 639-1 ("en"), not a BCP-47 tag ("en-GB")
            payload["language_code"] = language_code.split("-")[0].lower()
        return payload

    @staticmethod
    def _parse_voice_settings(raw_settings: Optional[str]) -> Dict[str, Any]:
        if not raw_settings:
            return {}
        try:
            parsed = json.loads(raw_settings)
        except json.JSONDecodeError:
            logger.warning("Invalid ELEVENLABS_VOICE_SETTINGS JSON; ignoring value")
            return {}
        if not isinstance(parsed, dict):
            logger.warning("ELEVENLABS_VOICE_SETTINGS must be a JSON object; ignoring value")
            return {}
        return parsed
