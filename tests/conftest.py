"""
Pytest configuration and fixtures.
"""

import base64
import json
import os
from unittest.mock import patch

import numpy as np
import pytest


@pytest.fixture(autouse=True)
def mock_env_vars(tmp_path):
    """Mock environment variables for tests."""
    env_vars = {
        "PUBLIC_HOST": "test.ngrok.io",
        "PORT": "7860",
        "LOG_LEVEL": "DEBUG",
        "RESULTS_DIR": str(tmp_path / "results"),
        "TWILIO_ACCOUNT_SID": "ACtest123456789",
        "TWILIO_AUTH_TOKEN": "test_auth_token",
        "TWILIO_FROM_NUMBER": "+15550001111",
        "DEEPGRAM_API_KEY": "test_deepgram_key",
        "AZURE_SPEECH_KEY": "test_azure_key",
        "AZURE_SPEECH_REGION": "eastus",
        "GROQ_API_KEY": "test_groq_key",
        "GROQ_MODEL": "llama-3.3-70b-versatile",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.speechcoach.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


@pytest.fixture
def sample_ulaw_audio():
    """Generate sample mu-law audio (silence)."""
    return b"\xff" * 160  # 20ms of silence


@pytest.fixture
def sample_pcm_audio():
    """Generate sample PCM audio (silence)."""
    return b"\x00\x00" * 160  # 20ms of silence at 8kHz


@pytest.fixture
def loud_pcm_audio():
    """20ms of a 440Hz tone at 8kHz, RMS well above the speech threshold."""
    t = np.arange(160) / 8000
    return (np.sin(2 * np.pi * 440 * t) * 8000).astype(np.int16).tobytes()


def _media_message(ulaw: bytes, track: str = "inbound", stream_sid: str = "MZ123456") -> str:
    return json.dumps({
        "event": "media",
        "streamSid": stream_sid,
        "media": {
            "track": track,
            "chunk": "1",
            "timestamp": "12345",
            "payload": base64.b64encode(ulaw).decode(),
        },
    })


@pytest.fixture
def media_message():
    """Factory for Twilio media messages from raw mu-law bytes."""
    return _media_message


@pytest.fixture
def twilio_connected_message():
    return json.dumps({"event": "connected", "protocol": "Call", "version": "1.0.0"})


@pytest.fixture
def twilio_start_message():
    """Sample Twilio start message."""
    return json.dumps({
        "event": "start",
        "sequenceNumber": "1",
        "streamSid": "MZ123456",
        "start": {
            "streamSid": "MZ123456",
            "callSid": "CA789012",
            "accountSid": "AC345678",
            "tracks": ["inbound"],
            "customParameters": {"callSid": "CA789012"},
            "mediaFormat": {"encoding": "audio/x-mulaw", "sampleRate": 8000, "channels": 1},
        },
    })


@pytest.fixture
def twilio_media_message(sample_ulaw_audio):
    """Sample Twilio media message."""
    return _media_message(sample_ulaw_audio)


@pytest.fixture
def twilio_stop_message():
    """Sample Twilio stop message."""
    return json.dumps({
        "event": "stop",
        "streamSid": "MZ123456",
        "stop": {"accountSid": "AC345678", "callSid": "CA789012"},
    })
