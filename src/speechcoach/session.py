"""
Per-call session state.

`CallSession` is the aggregate for one media stream: transcripts, filler
words, pronunciation results, the dialogue log, buffered caller audio and the
call's one-shot timers. Operations are plain mutators/accessors with no I/O.

`SessionRegistry` maps stream SIDs to live sessions so that data arriving
out-of-band (e.g. a CallSid from a status callback) can be attached late. It
is created by the server and passed in, not a module-level singleton.
"""

import asyncio
import itertools
import re
import time
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional

import structlog

from src.speechcoach.audio import SAMPLE_WIDTH, TWILIO_SAMPLE_RATE
from src.speechcoach.conversation import DialogueTurn
from src.speechcoach.pronunciation import PronunciationResult
from src.speechcoach.stt import TranscriptResult, WordDetail

logger = structlog.get_logger(__name__)

FILLER_WORD_PATTERN = re.compile(r"\b(um|uh|er|ah|like|you know|well|so)\b", re.IGNORECASE)

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"


@dataclass
class TranscriptEntry:
    text: str
    is_final: bool
    timestamp: float
    seq: int
    words: Optional[List[WordDetail]] = None


@dataclass
class FillerWord:
    word: str
    timestamp: float


@dataclass
class PronunciationEntry:
    result: PronunciationResult
    text: str
    timestamp: float


@dataclass
class ConversationEntry:
    role: str  # "user" | "assistant"
    text: str
    timestamp: float
    seq: int


@dataclass
class ConversationContext:
    """History split at the most recent user turn."""
    past: List[ConversationEntry] = field(default_factory=list)
    current: str = ""

    def past_turns(self) -> List[DialogueTurn]:
        return [DialogueTurn(role=e.role, text=e.text) for e in self.past]


class CallSession:
    """State for one media stream, from `start` until teardown."""

    def __init__(
        self,
        stream_sid: str,
        call_sid: Optional[str] = None,
        max_audio_seconds: float = 0.0,
    ):
        self.stream_sid = stream_sid
        self.call_sid: Optional[str] = call_sid or None
        self.start_time = time.monotonic()
        self.started_at = time.time()

        self.transcripts: List[TranscriptEntry] = []
        self.filler_words: List[FillerWord] = []
        self.pronunciation_results: List[PronunciationEntry] = []
        self.conversation_history: List[ConversationEntry] = []

        self._audio_chunks: Deque[bytes] = deque()
        self._audio_bytes = 0
        self._max_audio_bytes = int(TWILIO_SAMPLE_RATE * SAMPLE_WIDTH * max_audio_seconds)
        self._seq = itertools.count(1)
        self._timers: List[asyncio.TimerHandle] = []
        self._closed = False

    @property
    def is_closed(self) -> bool:
        return self._closed

    def set_call_sid(self, call_sid: Optional[str]) -> bool:
        """Attach the call identifier. The first non-empty value wins."""
        if not call_sid or self.call_sid:
            return False
        self.call_sid = call_sid
        logger.info("Call SID correlated", stream_sid=self.stream_sid, call_sid=call_sid)
        return True

    def elapsed_seconds(self) -> float:
        return time.monotonic() - self.start_time

    # Audio

    def add_audio_chunk(self, pcm_bytes: bytes) -> None:
        if self._closed or not pcm_bytes:
            return
        self._audio_chunks.append(pcm_bytes)
        self._audio_bytes += len(pcm_bytes)
        if self._max_audio_bytes > 0:
            while self._audio_bytes > self._max_audio_bytes and len(self._audio_chunks) > 1:
                self._audio_bytes -= len(self._audio_chunks.popleft())

    def get_combined_audio(self) -> bytes:
        return b"".join(self._audio_chunks)

    @property
    def audio_chunk_count(self) -> int:
        return len(self._audio_chunks)

    # Transcripts

    def add_transcript(self, result: TranscriptResult) -> TranscriptEntry:
        timestamp = result.timestamp or time.time()
        entry = TranscriptEntry(
            text=result.text,
            is_final=result.is_final,
            timestamp=timestamp,
            seq=next(self._seq),
            words=result.words,
        )
        self.transcripts.append(entry)

        for match in FILLER_WORD_PATTERN.finditer(result.text):
            self.filler_words.append(FillerWord(word=match.group(0).lower(), timestamp=timestamp))
        return entry

    def get_full_transcript(self) -> str:
        """All final fragments, in order."""
        return " ".join(t.text for t in self.transcripts if t.is_final).strip()

    def get_all_transcripts(self) -> str:
        """Interim and final fragments, in order."""
        return " ".join(t.text for t in self.transcripts).strip()

    def get_filler_word_count(self) -> int:
        return len(self.filler_words)

    def get_latest_final_transcript(self) -> str:
        """
        Final fragments recorded after the most recent user turn, joined.

        ASR may finalize one utterance in several pieces; they are all newer
        than the last user turn, so concatenating them reconstructs it.
        """
        last_user_seq = 0
        for entry in reversed(self.conversation_history):
            if entry.role == ROLE_USER:
                last_user_seq = entry.seq
                break

        return " ".join(
            t.text.strip()
            for t in self.transcripts
            if t.is_final and t.seq > last_user_seq and t.text.strip()
        ).strip()

    # Pronunciation

    def add_pronunciation_result(self, result: PronunciationResult, text: str) -> None:
        self.pronunciation_results.append(
            PronunciationEntry(result=result, text=text, timestamp=time.time())
        )

    # Conversation

    def _add_turn(self, role: str, text: str) -> ConversationEntry:
        entry = ConversationEntry(role=role, text=text, timestamp=time.time(), seq=next(self._seq))
        self.conversation_history.append(entry)
        return entry

    def add_user_message(self, text: str) -> ConversationEntry:
        return self._add_turn(ROLE_USER, text)

    def add_assistant_message(self, text: str) -> ConversationEntry:
        return self._add_turn(ROLE_ASSISTANT, text)

    def get_conversation_turn_count(self) -> int:
        return sum(1 for e in self.conversation_history if e.role == ROLE_USER)

    def get_conversation_context(self) -> ConversationContext:
        for index in range(len(self.conversation_history) - 1, -1, -1):
            entry = self.conversation_history[index]
            if entry.role == ROLE_USER:
                return ConversationContext(
                    past=list(self.conversation_history[:index]),
                    current=entry.text,
                )
        return ConversationContext(past=list(self.conversation_history), current="")

    # Timers

    def schedule_once(self, delay_seconds: float, callback: Callable[[], Any]) -> asyncio.TimerHandle:
        """Run `callback` once after `delay_seconds`; cancelled by stop_timers()."""
        loop = asyncio.get_running_loop()
        handle = loop.call_later(max(0.0, delay_seconds), callback)
        self._timers.append(handle)
        return handle

    def stop_timers(self) -> None:
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()

    def cleanup(self) -> None:
        """Stop timers and free buffered audio. Idempotent."""
        self.stop_timers()
        self._audio_chunks.clear()
        self._audio_bytes = 0
        if not self._closed:
            self._closed = True
            logger.info(
                "Session cleaned up",
                stream_sid=self.stream_sid,
                call_sid=self.call_sid,
                elapsed_seconds=round(self.elapsed_seconds(), 1),
                transcripts=len(self.transcripts),
                assessments=len(self.pronunciation_results),
            )


# Bounds on per-process bookkeeping for streams that are not live
MAX_PENDING_CALL_SIDS = 256
MAX_ENDED_STREAMS = 1024


class SessionRegistry:
    """Live sessions keyed by stream SID."""

    def __init__(self):
        self._sessions: Dict[str, CallSession] = {}
        self._pending_call_sids: "OrderedDict[str, str]" = OrderedDict()
        self._ended: "OrderedDict[str, None]" = OrderedDict()

    def register(self, session: CallSession) -> None:
        self._sessions[session.stream_sid] = session
        pending = self._pending_call_sids.pop(session.stream_sid, None)
        if pending:
            session.set_call_sid(pending)

    def unregister(self, stream_sid: str) -> Optional[CallSession]:
        self._pending_call_sids.pop(stream_sid, None)
        session = self._sessions.pop(stream_sid, None)
        if session is not None:
            self._ended[stream_sid] = None
            while len(self._ended) > MAX_ENDED_STREAMS:
                self._ended.popitem(last=False)
        return session

    @property
    def pending(self) -> int:
        """CallSids held for streams that have not started yet."""
        return len(self._pending_call_sids)

    def get(self, stream_sid: str) -> Optional[CallSession]:
        return self._sessions.get(stream_sid)

    def correlate(self, stream_sid: str, call_sid: str) -> bool:
        """
        Attach a late-arriving CallSid to a stream.

        If the stream has not started yet the value is held until it registers,
        oldest first out once the hold is full. Streams that already ended are
        ignored.
        """
        if not stream_sid or not call_sid:
            return False
        session = self._sessions.get(stream_sid)
        if session is None:
            if stream_sid in self._ended:
                logger.debug("Status for ended stream ignored", stream_sid=stream_sid, call_sid=call_sid)
                return False
            self._pending_call_sids.setdefault(stream_sid, call_sid)
            while len(self._pending_call_sids) > MAX_PENDING_CALL_SIDS:
                self._pending_call_sids.popitem(last=False)
            return False
        return session.set_call_sid(call_sid)

    def __contains__(self, stream_sid: str) -> bool:
        return stream_sid in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
