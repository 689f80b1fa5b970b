"""
Tests for configuration loading and validation.
"""

import dataclasses

import pytest

from src.speechcoach.config import Config, get_config, init_config, to_stream_scheme
from src.speechcoach.errors import ConfigurationError


class TestLoading:
    """Tests for environment-driven configuration."""

    def test_defaults(self):
        config = get_config()

        assert config.port == 7860
        assert config.assessment_mode == "two_step"
        assert config.feedback_delay_seconds == 30.0
        assert config.vad_silence_duration_ms == 800
        assert config.turn_grace_ms == 300
        assert config.azure_tts_voice == "en-US-AriaNeural"
        assert config.llm_model == "llama-3.3-70b-versatile"

    def test_cached(self):
        assert get_config() is get_config()

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("ASSESSMENT_MODE", "Unscripted")
        monkeypatch.setenv("WRITE_RESULTS", "no")
        monkeypatch.setenv("FEEDBACK_DELAY_SECONDS", "45")
        monkeypatch.setenv("VAD_SPEECH_START_FRAMES", "not-a-number")
        get_config.cache_clear()

        config = get_config()

        assert config.assessment_mode == "unscripted"
        assert config.write_results is False
        assert config.feedback_delay_seconds == 45.0
        assert config.vad_speech_start_frames == 2

    def test_frozen(self):
        with pytest.raises(dataclasses.FrozenInstanceError):
            get_config().port = 1


class TestUrls:
    """Tests for derived URLs."""

    def test_public_host(self):
        config = get_config()
        assert config.base_url == "https://test.ngrok.io"
        assert config.ws_url == "wss://test.ngrok.io/api/media-stream"

    def test_public_base_url_wins(self):
        config = Config(public_base_url="http://example.com:8080/", public_host="ignored.io")
        assert config.base_url == "http://example.com:8080"
        assert config.ws_url == "ws://example.com:8080/api/media-stream"

    def test_localhost_fallback(self):
        assert Config(port=9000).base_url == "http://localhost:9000"

    @pytest.mark.parametrize("url,expected", [
        ("https://a.io", "wss://a.io"),
        ("http://a.io", "ws://a.io"),
        ("wss://a.io", "wss://a.io"),
    ])
    def test_to_stream_scheme(self, url, expected):
        assert to_stream_scheme(url) == expected


class TestValidation:
    """Tests for startup validation."""

    def test_valid(self):
        assert init_config() is get_config()

    def test_missing_keys_listed(self, monkeypatch):
        monkeypatch.setenv("DEEPGRAM_API_KEY", "")
        monkeypatch.setenv("AZURE_SPEECH_REGION", "")
        get_config.cache_clear()

        with pytest.raises(ConfigurationError) as exc_info:
            get_config().validate()

        assert "DEEPGRAM_API_KEY" in str(exc_info.value)
        assert "AZURE_SPEECH_REGION" in str(exc_info.value)

    def test_invalid_provider(self):
        with pytest.raises(ConfigurationError):
            dataclasses.replace(get_config(), llm_provider="gemini").validate()

    def test_invalid_assessment_mode(self):
        with pytest.raises(ConfigurationError):
            dataclasses.replace(get_config(), assessment_mode="scripted").validate()

    def test_thresholds_must_leave_hysteresis(self):
        with pytest.raises(ConfigurationError):
            dataclasses.replace(get_config(), vad_speech_threshold=100.0).validate()

    @pytest.mark.parametrize("method,field", [
        ("require_deepgram", "deepgram_api_key"),
        ("require_azure_speech", "azure_speech_key"),
        ("require_llm", "groq_api_key"),
        ("require_twilio", "twilio_auth_token"),
    ])
    def test_component_requirements(self, method, field):
        config = dataclasses.replace(get_config(), **{field: ""})
        with pytest.raises(ConfigurationError):
            getattr(config, method)()
