"""
Tests for per-call result artifacts.
"""

import pytest

from src.speechcoach.pronunciation import PhonemeAssessment, PronunciationResult, WordAssessment
from src.speechcoach.results import (
    ResultsStore,
    format_pronunciation_block,
    format_transcript_line,
    is_safe_audio_filename,
)
from src.speechcoach.stt import TranscriptResult, WordDetail


def _result():
    return PronunciationResult(
        accuracy_score=81.0,
        pronunciation_score=79.5,
        completeness_score=100.0,
        fluency_score=88.0,
        prosody_score=70.0,
        words=[WordAssessment("think", 55.0, "Mispronunciation", [PhonemeAssessment("th", 40.0)])],
    )


class TestFormatting:
    """Tests for artifact line formats."""

    def test_final_line_with_confidence(self):
        result = TranscriptResult(
            text="hello there",
            is_final=True,
            words=[WordDetail("hello", 0.98), WordDetail("there", 0.5)],
        )

        line = format_transcript_line(result, timestamp="2024-01-01T00:00:00+00:00")

        assert line.startswith("[FINAL] [2024-01-01T00:00:00+00:00] hello there\n")
        assert "Word confidence: hello(98%) there(50%)" in line

    def test_interim_line(self):
        line = format_transcript_line(TranscriptResult(text="hel", is_final=False), timestamp="t")
        assert line == "[INTERIM] [t] hel\n"

    def test_pronunciation_block(self):
        block = format_pronunciation_block(3, _result(), "I think so")

        assert block.startswith("Result #3\n")
        assert 'Recognized Text: "I think so"' in block
        assert "Accuracy: 81.0%" in block
        assert '1. "think": 55.0% (Mispronunciation)' in block
        assert "Phonemes: th(40.0%)" in block

    def test_low_confidence_noted(self):
        result = _result()
        result.low_confidence = True
        assert "low confidence" in format_pronunciation_block(1, result, "x")


class TestResultsStore:
    """Tests for file output."""

    @pytest.mark.asyncio
    async def test_transcript_appended(self, tmp_path):
        store = ResultsStore(str(tmp_path))

        await store.append_transcript("MZ1", TranscriptResult(text="one", is_final=True))
        await store.append_transcript("MZ1", TranscriptResult(text="two", is_final=False))

        content = store.transcript_path("MZ1").read_text()
        assert "[FINAL]" in content and "one" in content
        assert "[INTERIM]" in content and "two" in content

    @pytest.mark.asyncio
    async def test_pronunciation_header_written_once(self, tmp_path):
        store = ResultsStore(str(tmp_path))

        await store.append_pronunciation("MZ1", "CA1", 1, _result(), "first")
        await store.append_pronunciation("MZ1", "CA1", 2, _result(), "second")

        content = store.pronunciation_path("MZ1").read_text()
        assert content.count("Pronunciation Assessment Results") == 1
        assert "Call SID: CA1" in content
        assert "Result #1" in content and "Result #2" in content

    @pytest.mark.asyncio
    async def test_disabled_store_writes_nothing(self, tmp_path):
        store = ResultsStore(str(tmp_path), enabled=False)
        await store.append_transcript("MZ1", TranscriptResult(text="one", is_final=True))
        assert not store.transcript_path("MZ1").exists()

    @pytest.mark.asyncio
    async def test_feedback_audio_roundtrip(self, tmp_path):
        store = ResultsStore(str(tmp_path))

        filename = await store.save_feedback_audio("MZ1", b"RIFFdata")

        assert filename.startswith("feedback_MZ1_") and filename.endswith(".wav")
        assert store.tts_path(filename).read_bytes() == b"RIFFdata"

    def test_unsafe_sid_sanitized(self, tmp_path):
        store = ResultsStore(str(tmp_path))
        assert store.transcript_path("../../etc").name == "transcription_unknown.txt"

    @pytest.mark.parametrize("name", ["../secret.wav", "a/b.wav", "x.txt", "", ".wav", "a b.wav"])
    def test_unsafe_audio_names_rejected(self, tmp_path, name):
        assert not is_safe_audio_filename(name)
        assert ResultsStore(str(tmp_path)).tts_path(name) is None

    def test_missing_audio_file(self, tmp_path):
        assert ResultsStore(str(tmp_path)).tts_path("feedback_missing.wav") is None
