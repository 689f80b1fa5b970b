"""
Tests for per-call session state and the session registry.
"""

import asyncio

import pytest

from src.speechcoach.pronunciation import PronunciationResult
from src.speechcoach import session as session_module
from src.speechcoach.session import CallSession, SessionRegistry
from src.speechcoach.stt import TranscriptResult


def _final(text):
    return TranscriptResult(text=text, is_final=True)


def _interim(text):
    return TranscriptResult(text=text, is_final=False)


class TestTranscripts:
    """Tests for transcript bookkeeping."""

    def test_full_transcript_uses_finals_only(self):
        session = CallSession("MZ1")
        session.add_transcript(_interim("hel"))
        session.add_transcript(_final("hello"))
        session.add_transcript(_interim("wor"))
        session.add_transcript(_final("world"))

        assert session.get_full_transcript() == "hello world"
        assert session.get_all_transcripts() == "hel hello wor world"

    def test_filler_words_counted_per_match(self):
        session = CallSession("MZ1")
        session.add_transcript(_final("Um, I was like, you know, uh tired"))

        assert [f.word for f in session.filler_words] == ["um", "like", "you know", "uh"]
        assert session.get_filler_word_count() == 4

    def test_filler_words_need_word_boundaries(self):
        session = CallSession("MZ1")
        session.add_transcript(_final("summer umbrella likely"))
        assert session.get_filler_word_count() == 0

    def test_latest_final_transcript_since_last_user_turn(self):
        session = CallSession("MZ1")
        session.add_transcript(_final("good morning"))
        session.add_user_message("good morning")
        session.add_assistant_message("Morning! How are you?")

        session.add_transcript(_final("I am"))
        session.add_transcript(_interim("fine thank"))
        session.add_transcript(_final("fine thanks"))

        assert session.get_latest_final_transcript() == "I am fine thanks"

    def test_latest_final_transcript_empty_when_consumed(self):
        session = CallSession("MZ1")
        session.add_transcript(_final("hello"))
        session.add_user_message("hello")

        assert session.get_latest_final_transcript() == ""


class TestConversationHistory:
    """Tests for the dialogue log."""

    def test_context_splits_at_latest_user_turn(self):
        session = CallSession("MZ1")
        session.add_user_message("hi")
        session.add_assistant_message("hello!")
        session.add_user_message("how are you")

        context = session.get_conversation_context()

        assert context.current == "how are you"
        assert [(t.role, t.text) for t in context.past_turns()] == [("user", "hi"), ("assistant", "hello!")]
        assert session.get_conversation_turn_count() == 2

    def test_context_without_user_turn(self):
        session = CallSession("MZ1")
        session.add_assistant_message("Welcome!")

        context = session.get_conversation_context()
        assert context.current == ""
        assert len(context.past) == 1


class TestAudioAndIdentity:
    """Tests for buffered audio and call identity."""

    def test_audio_retention_cap(self):
        session = CallSession("MZ1", max_audio_seconds=0.02)  # 320 bytes
        for i in range(5):
            session.add_audio_chunk(bytes([i]) * 160)

        assert session.audio_chunk_count == 2
        assert session.get_combined_audio() == bytes([3]) * 160 + bytes([4]) * 160

    def test_unbounded_audio_by_default(self):
        session = CallSession("MZ1")
        for _ in range(50):
            session.add_audio_chunk(b"\x00" * 320)
        assert session.audio_chunk_count == 50

    def test_call_sid_first_value_wins(self):
        session = CallSession("MZ1")
        assert session.set_call_sid("") is False
        assert session.set_call_sid("CA1") is True
        assert session.set_call_sid("CA2") is False
        assert session.call_sid == "CA1"

    def test_pronunciation_results_recorded(self):
        session = CallSession("MZ1")
        session.add_pronunciation_result(PronunciationResult(accuracy_score=88.0), "hello")

        assert session.pronunciation_results[0].text == "hello"
        assert session.pronunciation_results[0].result.accuracy_score == 88.0


class TestTimersAndCleanup:
    """Tests for one-shot timers and teardown."""

    @pytest.mark.asyncio
    async def test_schedule_once_fires(self):
        session = CallSession("MZ1")
        fired = []
        session.schedule_once(0.01, lambda: fired.append(True))

        await asyncio.sleep(0.05)
        assert fired == [True]

    @pytest.mark.asyncio
    async def test_cleanup_cancels_timers_and_is_idempotent(self):
        session = CallSession("MZ1")
        fired = []
        session.schedule_once(0.01, lambda: fired.append(True))
        session.add_audio_chunk(b"\x00" * 320)

        session.cleanup()
        session.cleanup()
        await asyncio.sleep(0.05)

        assert fired == []
        assert session.is_closed
        assert session.get_combined_audio() == b""
        session.add_audio_chunk(b"\x00" * 320)
        assert session.audio_chunk_count == 0


class TestSessionRegistry:
    """Tests for stream-to-session lookup and late CallSid correlation."""

    def test_register_and_unregister(self):
        registry = SessionRegistry()
        session = CallSession("MZ1")
        registry.register(session)

        assert "MZ1" in registry
        assert registry.get("MZ1") is session
        assert len(registry) == 1

        assert registry.unregister("MZ1") is session
        assert "MZ1" not in registry
        assert registry.unregister("MZ1") is None

    def test_correlate_live_session(self):
        registry = SessionRegistry()
        session = CallSession("MZ1")
        registry.register(session)

        assert registry.correlate("MZ1", "CA1") is True
        assert session.call_sid == "CA1"

    def test_correlate_before_start_is_held(self):
        registry = SessionRegistry()

        assert registry.correlate("MZ2", "CA2") is False

        session = CallSession("MZ2")
        registry.register(session)
        assert session.call_sid == "CA2"

    def test_correlate_does_not_override(self):
        registry = SessionRegistry()
        session = CallSession("MZ1", call_sid="CA1")
        registry.register(session)

        assert registry.correlate("MZ1", "CA9") is False
        assert session.call_sid == "CA1"

    def test_status_after_stream_ended_not_held(self):
        registry = SessionRegistry()

        for i in range(1000):
            registry.register(CallSession(f"MZ{i}"))
            registry.unregister(f"MZ{i}")
            assert registry.correlate(f"MZ{i}", f"CA{i}") is False

        assert registry.pending == 0
        assert len(registry) == 0

    def test_held_call_sids_are_bounded(self, monkeypatch):
        monkeypatch.setattr(session_module, "MAX_PENDING_CALL_SIDS", 3)
        registry = SessionRegistry()

        for i in range(5):
            registry.correlate(f"MZ{i}", f"CA{i}")

        assert registry.pending == 3
        oldest = CallSession("MZ0")
        registry.register(oldest)
        assert oldest.call_sid is None
        newest = CallSession("MZ4")
        registry.register(newest)
        assert newest.call_sid == "CA4"
