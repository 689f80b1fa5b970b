"""
Per-call result artifacts.

Layout under RESULTS_DIR:
    transcription_<streamSid>.txt   one line per transcript fragment
    pronunciation_<streamSid>.txt   header on first write, then one block per result
    tts/feedback_<streamSid>_<ms>.wav  synthesized feedback, served by /api/tts-audio

File writes run in a worker thread.
"""

import asyncio
import re
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import structlog

from src.speechcoach.pronunciation import PronunciationResult
from src.speechcoach.stt import TranscriptResult

logger = structlog.get_logger(__name__)

TTS_SUBDIR = "tts"
_SAFE_NAME_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_SAFE_AUDIO_FILE_RE = re.compile(r"^[A-Za-z0-9_-]+\.wav$")


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _safe_sid(sid: Optional[str]) -> str:
    if sid and _SAFE_NAME_RE.match(sid):
        return sid
    return "unknown"


def is_safe_audio_filename(filename: str) -> bool:
    return bool(filename) and bool(_SAFE_AUDIO_FILE_RE.match(filename))


def format_transcript_line(result: TranscriptResult, timestamp: Optional[str] = None) -> str:
    prefix = "[FINAL]" if result.is_final else "[INTERIM]"
    line = f"{prefix} [{timestamp or _iso_now()}] {result.text}"
    if result.words:
        confidences = " ".join(f"{w.word}({w.confidence * 100:.0f}%)" for w in result.words)
        line += f"\n  Word confidence: {confidences}"
    return line + "\n"


def format_pronunciation_header(stream_sid: str, call_sid: Optional[str]) -> str:
    lines = [
        "Pronunciation Assessment Results",
        "=" * 56,
        f"Call Start Time: {_iso_now()}",
        f"Stream SID: {stream_sid or 'N/A'}",
        f"Call SID: {call_sid or 'N/A'}",
        "",
        "=" * 60,
        "",
        "",
    ]
    return "\n".join(lines)


def format_pronunciation_block(index: int, result: PronunciationResult, text: str) -> str:
    lines: List[str] = [
        f"Result #{index}",
        f"Timestamp: {_iso_now()}",
        f'Recognized Text: "{text}"',
    ]
    if result.low_confidence:
        lines.append("Note: low confidence (assessment text diverged from reference)")
    lines += [
        "",
        "Scores:",
        f"  Accuracy: {result.accuracy_score}%",
        f"  Pronunciation: {result.pronunciation_score}%",
        f"  Completeness: {result.completeness_score}%",
        f"  Fluency: {result.fluency_score}%",
        f"  Prosody: {result.prosody_score}%",
        "",
    ]
    if result.words:
        lines.append("Word-level Details:")
        for idx, word in enumerate(result.words, start=1):
            lines.append(f'  {idx}. "{word.word}": {word.accuracy_score}% ({word.error_type or "None"})')
            if word.phonemes:
                phonemes = ", ".join(f"{p.phoneme}({p.accuracy_score}%)" for p in word.phonemes)
                lines.append(f"     Phonemes: {phonemes}")
        lines.append("")
    lines += ["-" * 60, "", ""]
    return "\n".join(lines)


class ResultsStore:
    """Append-only text artifacts and feedback audio for each stream."""

    def __init__(self, results_dir: str = "results", enabled: bool = True):
        self.root = Path(results_dir)
        self.enabled = enabled

    @property
    def tts_dir(self) -> Path:
        return self.root / TTS_SUBDIR

    def transcript_path(self, stream_sid: str) -> Path:
        return self.root / f"transcription_{_safe_sid(stream_sid)}.txt"

    def pronunciation_path(self, stream_sid: str) -> Path:
        return self.root / f"pronunciation_{_safe_sid(stream_sid)}.txt"

    def tts_path(self, filename: str) -> Optional[Path]:
        """Resolve a feedback audio filename, or None if unsafe or missing."""
        if not is_safe_audio_filename(filename):
            return None
        path = self.tts_dir / filename
        return path if path.is_file() else None

    @staticmethod
    def _append(path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as f:
            f.write(content)

    async def append_transcript(self, stream_sid: str, result: TranscriptResult) -> None:
        if not self.enabled:
            return
        try:
            await asyncio.to_thread(self._append, self.transcript_path(stream_sid), format_transcript_line(result))
        except OSError as e:
            logger.error("Error saving transcription", stream_sid=stream_sid, error=str(e))

    async def append_pronunciation(
        self,
        stream_sid: str,
        call_sid: Optional[str],
        index: int,
        result: PronunciationResult,
        text: str,
    ) -> None:
        if not self.enabled:
            return

        path = self.pronunciation_path(stream_sid)

        def _write() -> None:
            content = ""
            if not path.exists():
                content += format_pronunciation_header(stream_sid, call_sid)
            content += format_pronunciation_block(index, result, text)
            self._append(path, content)

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            logger.error("Error saving pronunciation result", stream_sid=stream_sid, error=str(e))

    async def save_feedback_audio(self, stream_sid: str, wav_bytes: bytes) -> str:
        """
        Store synthesized feedback audio and return its filename.

        Raises:
            OSError: If the file cannot be written
        """
        filename = f"feedback_{_safe_sid(stream_sid)}_{int(time.time() * 1000)}.wav"
        path = self.tts_dir / filename

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(wav_bytes)

        await asyncio.to_thread(_write)
        logger.info("Feedback audio saved", path=str(path))
        return filename
