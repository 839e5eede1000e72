import pytest

from accent_relay.core.exceptions import ConfigurationError
from accent_relay.voice.audio_models import StreamingAudioConfig, SynthesisConfig, VoiceConfig
from accent_relay.voice.settings import VoiceSettings, validate_synthesis_config


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("TTS_VOICE", "en-GB-Chirp3-HD-Puck")
    monkeypatch.setenv("TTS_SAMPLE_RATE", "16000")
    monkeypatch.setenv("TTS_KEEPALIVE_THRESHOLD_SECONDS", "1.5")
    monkeypatch.setenv("TTS_SUPPRESS_KEEPALIVE_AUDIO", "off")
    monkeypatch.setenv("SEGMENT_CUMULATIVE_TRACKING", "yes")

    settings = VoiceSettings()

    assert settings.tts_voice == "en-GB-Chirp3-HD-Puck"
    assert settings.tts_sample_rate == 16000
    assert settings.keepalive_threshold_seconds == 1.5
    assert settings.suppress_keepalive_audio is False
    assert settings.cumulative_tracking is True


def test_synthesis_config_uses_default_voice(voice_settings):
    config = voice_settings.synthesis_config()

    assert config.voice == VoiceConfig(language_code="en-GB", name="en-GB-Chirp3-HD-Fenrir", ssml_gender="MALE")
    assert config.audio.audio_encoding == "MULAW"
    assert config.audio.sample_rate_hertz == 8000


def test_alternative_voice_is_selected_by_name(voice_settings):
    config = voice_settings.synthesis_config("en-GB-Neural2-A")
    assert config.voice.ssml_gender == "FEMALE"


def test_unknown_voice_name_keeps_configured_language(voice_settings):
    config = voice_settings.synthesis_config("en-GB-Studio-B")
    assert config.voice.name == "en-GB-Studio-B"
    assert config.voice.language_code == "en-GB"


def test_blank_voice_is_rejected(voice_settings):
    voice_settings.tts_voice = "  "
    with pytest.raises(ConfigurationError):
        voice_settings.synthesis_config()


@pytest.mark.parametrize(
    "audio",
    [StreamingAudioConfig(sample_rate_hertz=0), StreamingAudioConfig(audio_encoding="")],
)
def test_invalid_audio_is_rejected(audio):
    config = SynthesisConfig(voice=VoiceConfig(language_code="en-GB", name="en-GB-Chirp3-HD-Fenrir"), audio=audio)
    with pytest.raises(ConfigurationError):
        validate_synthesis_config(config)


def test_cleanup_interval_follows_inactivity_limit(voice_settings):
    assert voice_settings.cleanup_interval_seconds == 60.0
    voice_settings.max_inactive_seconds = 50.0
    assert voice_settings.cleanup_interval_seconds == 10.0
