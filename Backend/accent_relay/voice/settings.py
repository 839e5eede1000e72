"""Centralised configuration for the accent relay pipeline."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, Optional

from accent_relay.core.exceptions import ConfigurationError
from accent_relay.voice.audio_models import StreamingAudioConfig, SynthesisConfig, VoiceConfig


def _env(name: str, default: str | None = None):
    return field(default_factory=lambda: os.getenv(name, default))


def _env_int(name: str, default: int):
    return field(default_factory=lambda: int(os.getenv(name, str(default))))


def _env_float(name: str, default: float):
    return field(default_factory=lambda: float(os.getenv(name, str(default))))


def _env_bool(name: str, default: bool):
    return field(default_factory=lambda: os.getenv(name, str(default)).strip().lower() in ("1", "true", "yes", "on"))


# Voices that can replace the default synthesis voice by name.
ALTERNATIVE_VOICES: Dict[str, VoiceConfig] = {
    "en-GB-Neural2-B": VoiceConfig(language_code="en-GB", name="en-GB-Neural2-B", ssml_gender="MALE"),
    "en-GB-Neural2-A": VoiceConfig(language_code="en-GB", name="en-GB-Neural2-A", ssml_gender="FEMALE"),
}


@dataclass
class VoiceSettings:
    """Runtime configuration for transcription, synthesis and relay behaviour."""

    google_application_credentials: str | None = _env("GOOGLE_APPLICATION_CREDENTIALS")

    # Speech-to-text (telephony leg)
    stt_language: str = _env("STT_LANGUAGE", "en-IN")
    stt_model: str = _env("STT_MODEL", "telephony")
    stt_encoding: str = _env("STT_ENCODING", "MULAW")
    stt_sample_rate: int = _env_int("STT_SAMPLE_RATE", 8000)
    stt_use_enhanced: bool = _env_bool("STT_USE_ENHANCED", True)
    stt_restart_delay_seconds: float = _env_float("STT_RESTART_DELAY_SECONDS", 2.0)
    stt_max_restarts: int = _env_int("STT_MAX_RESTARTS", 3)
    audio_batch_size: int = _env_int("AUDIO_BATCH_SIZE", 5)

    # Text-to-speech voice
    tts_language: str = _env("TTS_LANGUAGE", "en-GB")
    tts_voice: str = _env("TTS_VOICE", "en-GB-Chirp3-HD-Fenrir")
    tts_ssml_gender: str = _env("TTS_SSML_GENDER", "MALE")
    tts_audio_encoding: str = _env("TTS_AUDIO_ENCODING", "MULAW")
    tts_sample_rate: int = _env_int("TTS_SAMPLE_RATE", 8000)
    tts_speaking_rate: float = _env_float("TTS_SPEAKING_RATE", 1.0)
    tts_pitch: float = _env_float("TTS_PITCH", 0.0)
    tts_volume_gain_db: float = _env_float("TTS_VOLUME_GAIN_DB", 2.0)
    one_shot_provider: str = _env("TTS_ONE_SHOT_PROVIDER", "google")
    one_shot_voice: str | None = _env("TTS_ONE_SHOT_VOICE", "en-GB-Neural2-B")

    elevenlabs_api_key: str | None = _env("ELEVENLABS_API_KEY")
    elevenlabs_voice_id: str | None = _env("ELEVENLABS_VOICE_ID")
    elevenlabs_model_id: str = _env("ELEVENLABS_MODEL_ID", "eleven_flash_v2_5")
    elevenlabs_output_format: str = _env("ELEVENLABS_OUTPUT_FORMAT", "ulaw_8000")
    elevenlabs_voice_settings: str | None = _env("ELEVENLABS_VOICE_SETTINGS")
    elevenlabs_base_url: str = _env("ELEVENLABS_API_BASE_URL", "https://api.elevenlabs.io")

    # Synthesis stream lifecycle
    keepalive_interval_seconds: float = _env_float("TTS_KEEPALIVE_INTERVAL_SECONDS", 3.0)
    keepalive_threshold_seconds: float = _env_float("TTS_KEEPALIVE_THRESHOLD_SECONDS", 2.0)
    max_reconnect_attempts: int = _env_int("TTS_MAX_RECONNECT_ATTEMPTS", 3)
    reconnect_backoff_seconds: float = _env_float("TTS_RECONNECT_BACKOFF_SECONDS", 1.0)
    max_inactive_seconds: float = _env_float("RELAY_MAX_INACTIVE_SECONDS", 300.0)
    suppress_keepalive_audio: bool = _env_bool("TTS_SUPPRESS_KEEPALIVE_AUDIO", True)
    text_optimization: bool = _env_bool("TTS_TEXT_OPTIMIZATION", True)

    # Segment tracking
    min_final_confidence: float = _env_float("SEGMENT_MIN_FINAL_CONFIDENCE", 0.7)
    min_initial_words: int = _env_int("SEGMENT_MIN_INITIAL_WORDS", 1)
    speech_pause_seconds: float = _env_float("SEGMENT_SPEECH_PAUSE_SECONDS", 2.0)
    pause_check_interval_seconds: float = _env_float("SEGMENT_PAUSE_CHECK_INTERVAL_SECONDS", 1.0)
    dedup_window: int = _env_int("SEGMENT_DEDUP_WINDOW", 10)
    cumulative_tracking: bool = _env_bool("SEGMENT_CUMULATIVE_TRACKING", True)

    # One-shot cache
    synthesis_cache_enabled: bool = _env_bool("TTS_CACHE_ENABLED", True)
    synthesis_cache_max_entries: int = _env_int("TTS_CACHE_MAX_ENTRIES", 0)

    @property
    def cleanup_interval_seconds(self) -> float:
        """Sweep every minute or a fifth of the idle limit, whichever is smaller."""
        return min(60.0, self.max_inactive_seconds / 5)

    def voice_config(self, voice_name: Optional[str] = None) -> VoiceConfig:
        if voice_name and voice_name in ALTERNATIVE_VOICES:
            return ALTERNATIVE_VOICES[voice_name]
        return VoiceConfig(
            language_code=self.tts_language,
            name=voice_name or self.tts_voice,
            ssml_gender=self.tts_ssml_gender,
        )

    def audio_config(self) -> StreamingAudioConfig:
        return StreamingAudioConfig(
            audio_encoding=self.tts_audio_encoding,
            sample_rate_hertz=self.tts_sample_rate,
            speaking_rate=self.tts_speaking_rate,
            pitch=self.tts_pitch,
            volume_gain_db=self.tts_volume_gain_db,
        )

    def synthesis_config(self, voice_name: Optional[str] = None) -> SynthesisConfig:
        """Build and validate the configuration frame for a synthesis stream."""
        config = SynthesisConfig(voice=self.voice_config(voice_name), audio=self.audio_config())
        validate_synthesis_config(config)
        return config


def validate_synthesis_config(config: SynthesisConfig) -> None:
    if not (config.voice.name or "").strip() or not (config.voice.language_code or "").strip():
        raise ConfigurationError(
            "Synthesis voice requires a name and a language code",
            {"voice": config.voice.name, "language_code": config.voice.language_code},
        )
    if config.audio.sample_rate_hertz <= 0:
        raise ConfigurationError(
            "Synthesis sample rate must be positive",
            {"sample_rate_hertz": config.audio.sample_rate_hertz},
        )
    if not (config.audio.audio_encoding or "").strip():
        raise ConfigurationError("Synthesis audio encoding is not configured")
