"""
Tests for the energy-based voice activity detector.
"""

import asyncio
import struct

import pytest

from src.speechcoach.vad import VADConfig, VADState, VoiceActivityDetector


def _chunk(amplitude: int, samples: int = 160) -> bytes:
    """Square-ish chunk whose RMS equals `amplitude`."""
    return struct.pack(f"<{samples}h", *([amplitude, -amplitude] * (samples // 2)))


SILENT = _chunk(0)
LOUD = _chunk(3000)


class Recorder:
    def __init__(self):
        self.starts = 0
        self.ends = 0

    def on_start(self):
        self.starts += 1

    def on_end(self):
        self.ends += 1


def _vad(recorder, **overrides) -> VoiceActivityDetector:
    config = VADConfig(**{"silence_duration_ms": 50, **overrides})
    return VoiceActivityDetector(config, on_speech_start=recorder.on_start, on_speech_end=recorder.on_end)


class TestSpeechStart:
    """Tests for the SILENCE -> SPEECH_ACTIVE edge."""

    @pytest.mark.asyncio
    async def test_requires_consecutive_frames(self):
        recorder = Recorder()
        vad = _vad(recorder, history_size=1)

        vad.process_audio(LOUD)
        assert recorder.starts == 0
        assert vad.state == VADState.SILENCE

        vad.process_audio(LOUD)
        assert recorder.starts == 1
        assert vad.state == VADState.SPEECH_ACTIVE
        assert vad.is_speaking()

    @pytest.mark.asyncio
    async def test_interrupted_run_resets_count(self):
        recorder = Recorder()
        vad = _vad(recorder, history_size=1)

        vad.process_audio(LOUD)
        vad.process_audio(SILENT)
        vad.process_audio(LOUD)
        assert recorder.starts == 0

    @pytest.mark.asyncio
    async def test_outbound_track_ignored(self):
        recorder = Recorder()
        vad = _vad(recorder, history_size=1)

        for _ in range(5):
            vad.process_audio(LOUD, track="outbound")

        assert recorder.starts == 0
        assert vad.state == VADState.SILENCE

    @pytest.mark.asyncio
    async def test_smoothing_delays_start(self):
        """Three silent chunks in history dilute the first loud chunk."""
        recorder = Recorder()
        vad = _vad(recorder, history_size=5, speech_threshold=1000)

        for _ in range(3):
            vad.process_audio(SILENT)
        vad.process_audio(LOUD)  # mean 750
        assert recorder.starts == 0
        vad.process_audio(LOUD)  # mean 1200
        vad.process_audio(LOUD)  # mean 1800
        assert recorder.starts == 1


class TestSpeechEnd:
    """Tests for the debounced speech-end edge."""

    @pytest.mark.asyncio
    async def test_silence_timer_fires_once(self):
        recorder = Recorder()
        vad = _vad(recorder, history_size=1)

        vad.process_audio(LOUD)
        vad.process_audio(LOUD)
        vad.process_audio(SILENT)
        assert vad.state == VADState.SPEECH_ENDING
        vad.process_audio(SILENT)

        await asyncio.sleep(0.12)

        assert recorder.ends == 1
        assert vad.state == VADState.SILENCE

    @pytest.mark.asyncio
    async def test_spurious_dip_cancels_timer(self):
        recorder = Recorder()
        vad = _vad(recorder, history_size=1)

        vad.process_audio(LOUD)
        vad.process_audio(LOUD)
        vad.process_audio(SILENT)
        vad.process_audio(LOUD)
        assert vad.state == VADState.SPEECH_ACTIVE

        await asyncio.sleep(0.12)
        assert recorder.ends == 0

    @pytest.mark.asyncio
    async def test_hysteresis_band_keeps_state(self):
        """Energy between the two thresholds neither starts nor ends speech."""
        recorder = Recorder()
        vad = _vad(recorder, history_size=1)
        middle = _chunk(500)

        vad.process_audio(LOUD)
        vad.process_audio(LOUD)
        for _ in range(5):
            vad.process_audio(middle)

        assert vad.state == VADState.SPEECH_ACTIVE

    @pytest.mark.asyncio
    async def test_destroy_cancels_pending_timer(self):
        recorder = Recorder()
        vad = _vad(recorder, history_size=1)

        vad.process_audio(LOUD)
        vad.process_audio(LOUD)
        vad.process_audio(SILENT)
        vad.destroy()
        vad.destroy()

        await asyncio.sleep(0.12)
        assert recorder.ends == 0

        vad.process_audio(LOUD)
        vad.process_audio(LOUD)
        assert recorder.starts == 1


class TestVADConfig:
    def test_from_config(self):
        from src.speechcoach.config import get_config

        config = VADConfig.from_config(get_config())
        assert config.speech_threshold == 800.0
        assert config.silence_threshold == 200.0
        assert config.silence_duration_ms == 800
        assert config.speech_start_frames == 2
        assert config.history_size == 5
