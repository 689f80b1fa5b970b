"""
Spoken feedback, delivered once per call.

At a fixed elapsed time (FEEDBACK_DELAY_SECONDS, default 30s) the session is
summarized, a coaching utterance is generated, synthesized, and injected into
the live call by replacing its TwiML.

Fallbacks, in order:
- generation fails  -> canned feedback sentence
- synthesis fails   -> the same text through TwiML <Say>
- anything else     -> "Thanks for practicing!" through <Say>
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import structlog

from src.speechcoach.errors import SpeechCoachError

logger = structlog.get_logger(__name__)

CANNED_FEEDBACK = "Thanks for practicing! Keep working on your pronunciation and fluency."
FINAL_FALLBACK = "Thanks for practicing!"

PROBLEM_WORD_THRESHOLD = 70.0
PROBLEM_PHONEME_THRESHOLD = 80.0

# How long feedback waits for queued pronunciation assessments before summarizing
ASSESSMENT_SETTLE_TIMEOUT_S = 3.0


@dataclass
class SessionSummary:
    """Aggregated speech metrics for one call."""
    full_transcript: str = ""
    total_words: int = 0
    speaking_time: int = 0  # seconds
    words_per_minute: int = 0
    filler_count: int = 0
    filler_words: List[str] = field(default_factory=list)
    filler_rate: float = 0.0  # per minute
    average_accuracy: float = 0.0
    average_pronunciation: float = 0.0
    average_completeness: float = 0.0
    average_fluency: float = 0.0
    average_prosody: float = 0.0
    problem_words: List[Dict[str, Any]] = field(default_factory=list)
    problem_phonemes: List[Dict[str, Any]] = field(default_factory=list)
    total_assessments: int = 0
    total_transcripts: int = 0
    call_duration: int = 0


def summarize_session(session: Any, elapsed_seconds: Optional[float] = None) -> SessionSummary:
    """
    Summarize a CallSession.

    Score means divide by max(n, 1), so a call with no assessments yields
    zeros rather than failing.
    """
    finals = [t for t in session.transcripts if t.is_final]
    full_transcript = " ".join(t.text for t in finals).strip()
    total_words = len(full_transcript.split())

    duration = session.elapsed_seconds() if elapsed_seconds is None else elapsed_seconds
    wpm = total_words / duration * 60 if duration > 0 else 0.0

    filler_count = len(session.filler_words)
    filler_rate = filler_count / duration * 60 if duration > 0 else 0.0

    totals = {"accuracy": 0.0, "pronunciation": 0.0, "completeness": 0.0, "fluency": 0.0, "prosody": 0.0}
    problem_words: List[Dict[str, Any]] = []
    problem_phonemes: List[Dict[str, Any]] = []

    for entry in session.pronunciation_results:
        result = entry.result
        totals["accuracy"] += result.accuracy_score
        totals["pronunciation"] += result.pronunciation_score
        totals["completeness"] += result.completeness_score
        totals["fluency"] += result.fluency_score
        totals["prosody"] += result.prosody_score

        for word in result.words:
            if word.accuracy_score < PROBLEM_WORD_THRESHOLD:
                problem_words.append({
                    "word": word.word,
                    "accuracy": word.accuracy_score,
                    "error_type": word.error_type or "Unknown",
                })
            for phoneme in word.phonemes:
                if phoneme.accuracy_score < PROBLEM_PHONEME_THRESHOLD:
                    problem_phonemes.append({
                        "phoneme": phoneme.phoneme,
                        "word": word.word,
                        "accuracy": phoneme.accuracy_score,
                    })

    count = len(session.pronunciation_results)
    divisor = max(count, 1)

    return SessionSummary(
        full_transcript=full_transcript,
        total_words=total_words,
        speaking_time=round(duration),
        words_per_minute=round(wpm),
        filler_count=filler_count,
        filler_words=[f.word for f in session.filler_words],
        filler_rate=round(filler_rate, 1),
        average_accuracy=round(totals["accuracy"] / divisor, 1),
        average_pronunciation=round(totals["pronunciation"] / divisor, 1),
        average_completeness=round(totals["completeness"] / divisor, 1),
        average_fluency=round(totals["fluency"] / divisor, 1),
        average_prosody=round(totals["prosody"] / divisor, 1),
        problem_words=problem_words,
        problem_phonemes=problem_phonemes,
        total_assessments=count,
        total_transcripts=len(finals),
        call_duration=round(duration),
    )


def build_feedback_prompt(summary: SessionSummary, tone: str = "encouraging", focus: str = "all") -> str:
    focus_text = "pronunciation, fluency, pace, and filler words" if focus == "all" else focus
    lines = [
        "You are a pronunciation and speech coach. Analyze the following speech data "
        "and provide 2-3 sentences of specific, actionable feedback.",
        "",
        "Speech Data:",
        f'- Full Transcript: "{summary.full_transcript}"',
        f"- Speaking Pace: {summary.words_per_minute} words per minute "
        f"({summary.total_words} words in {summary.speaking_time} seconds)",
        f"- Filler Words: {summary.filler_count} filler words detected ({summary.filler_rate} per minute)",
        "- Pronunciation Scores:",
        f"  * Accuracy: {summary.average_accuracy}%",
        f"  * Pronunciation: {summary.average_pronunciation}%",
        f"  * Completeness: {summary.average_completeness}%",
        f"  * Fluency: {summary.average_fluency}%",
        f"  * Prosody: {summary.average_prosody}%",
    ]
    if summary.problem_phonemes:
        items = ", ".join(f'{p["phoneme"]} in "{p["word"]}" ({p["accuracy"]}%)' for p in summary.problem_phonemes)
        lines.append(f"- Problem Phonemes: {items}")
    if summary.problem_words:
        items = ", ".join(f'"{w["word"]}" ({w["accuracy"]}% - {w["error_type"]})' for w in summary.problem_words)
        lines.append(f"- Problem Words: {items}")
    if summary.filler_words:
        lines.append(f"- Filler Words Used: {', '.join(summary.filler_words)}")
    lines += [
        "",
        "Instructions:",
        "- Provide 2-3 sentences of feedback",
        f"- Be {tone} in tone",
        f"- Focus on: {focus_text}",
        "- Be specific about what to improve",
        "- Mention specific sounds or words if there are problem areas",
        "- Keep it concise and actionable",
        "",
        "Feedback:",
    ]
    return "\n".join(lines)


class FeedbackPipeline:
    """
    One-shot feedback job for a call.

    `arm()` schedules `fire()` on the session's timers; `fire()` is latched so
    delivery starts at most once no matter how often it is called.
    """

    def __init__(
        self,
        session: Any,
        conversation: Optional[Any],
        synthesizer: Optional[Any],
        call_control: Optional[Any],
        results: Any,
        base_url: str,
        delay_seconds: float = 30.0,
        assessor: Optional[Any] = None,
    ):
        self.session = session
        self.assessor = assessor
        self.conversation = conversation
        self.synthesizer = synthesizer
        self.call_control = call_control
        self.results = results
        self.base_url = base_url.rstrip("/")
        self.delay_seconds = delay_seconds
        self._handle: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None
        self._fired = False
        self._cancelled = False

    @property
    def fired(self) -> bool:
        return self._fired

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    def arm(self) -> None:
        if self._handle is not None or self._fired or self._cancelled:
            return
        self._handle = self.session.schedule_once(self.delay_seconds, self.fire)
        logger.info("Feedback armed", stream_sid=self.session.stream_sid, delay_seconds=self.delay_seconds)

    def fire(self) -> Optional[asyncio.Task]:
        if self._fired or self._cancelled:
            return None
        self._fired = True
        self._handle = None
        logger.info("Feedback firing", stream_sid=self.session.stream_sid)
        self._task = asyncio.create_task(self._deliver())
        return self._task

    def cancel(self) -> None:
        """Disarm a pending timer. An in-flight delivery is left to finish."""
        self._cancelled = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    async def _settle_assessments(self) -> None:
        if self.assessor is None:
            return
        try:
            await asyncio.wait_for(self.assessor.join(), timeout=ASSESSMENT_SETTLE_TIMEOUT_S)
        except asyncio.TimeoutError:
            logger.info(
                "Summarizing before assessments finished",
                stream_sid=self.session.stream_sid,
                pending=self.assessor.pending,
            )

    async def _generate_text(self) -> str:
        if self.conversation is None:
            return CANNED_FEEDBACK
        await self._settle_assessments()
        summary = summarize_session(self.session)
        logger.info(
            "Session summarized",
            stream_sid=self.session.stream_sid,
            words_per_minute=summary.words_per_minute,
            filler_count=summary.filler_count,
            average_accuracy=summary.average_accuracy,
        )
        try:
            return await self.conversation.generate_feedback(build_feedback_prompt(summary))
        except SpeechCoachError as e:
            logger.warning("Feedback generation failed, using canned text", error=str(e))
            return CANNED_FEEDBACK

    async def _deliver(self) -> None:
        call_sid = self.session.call_sid
        if self.call_control is None:
            logger.warning("Feedback skipped, call control unavailable", stream_sid=self.session.stream_sid)
            return

        try:
            text = await self._generate_text()
            call_sid = self.session.call_sid
            if not call_sid:
                logger.warning("Feedback skipped, no CallSid", stream_sid=self.session.stream_sid)
                return

            try:
                if self.synthesizer is None:
                    raise SpeechCoachError("Speech synthesis unavailable")
                wav = await self.synthesizer.synthesize(text)
                filename = await self.results.save_feedback_audio(self.session.stream_sid, wav)
            except (SpeechCoachError, OSError) as e:
                logger.warning("Feedback synthesis failed, using <Say>", error=str(e))
                await self.call_control.say(call_sid, text)
                return

            audio_url = f"{self.base_url}/api/tts-audio/{filename}"
            await self.call_control.play_audio(call_sid, audio_url)
            logger.info("Feedback delivered", stream_sid=self.session.stream_sid, audio_url=audio_url)

        except Exception as e:
            logger.error("Feedback delivery failed", stream_sid=self.session.stream_sid, error=str(e))
            if call_sid:
                try:
                    await self.call_control.say(call_sid, FINAL_FALLBACK)
                except Exception as say_error:
                    logger.error("Final feedback fallback failed", error=str(say_error))
