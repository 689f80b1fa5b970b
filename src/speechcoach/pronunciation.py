"""
Pronunciation assessment.

Two pieces:

- `AzurePronunciationEngine` scores one utterance of PCM audio against an
  optional reference text using the Azure Speech short-audio REST API with
  the `Pronunciation-Assessment` header.
- `PronunciationAssessor` buffers the caller's audio and drains a FIFO of
  utterance snapshots through the engine, one request in flight at a time.

Two-step mode (default): Deepgram's final transcript of an utterance becomes
the reference text, and the buffered audio of that same utterance is assessed
in scripted mode against it. Unscripted mode sends the same snapshots with no
reference text; Azure then scores against what it recognized itself.
"""

import asyncio
import base64
import json
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
import structlog

from src.speechcoach.audio import SAMPLE_WIDTH, TWILIO_SAMPLE_RATE, get_audio_duration_ms, write_wav_mono_pcm16
from src.speechcoach.config import get_config
from src.speechcoach.errors import AdapterError, EmptyResultError, QueueItemError

logger = structlog.get_logger(__name__)

AZURE_STT_URL = "https://{region}.stt.speech.microsoft.com/speech/recognition/conversation/cognitiveservices/v1"

MODE_TWO_STEP = "two_step"
MODE_UNSCRIPTED = "unscripted"

# Minimum share of reference words the engine must also have recognized
MIN_REFERENCE_OVERLAP = 0.5

_WORD_RE = re.compile(r"[a-z0-9']+")


@dataclass(frozen=True)
class AssessmentConfig:
    """Options sent with every assessment request."""
    language: str = "en-US"
    grading_system: str = "HundredMark"
    granularity: str = "Phoneme"
    dimension: str = "Comprehensive"
    enable_miscue: bool = True
    enable_prosody: bool = True

    @classmethod
    def from_config(cls, config: Any) -> "AssessmentConfig":
        return cls(
            language=config.azure_speech_language,
            enable_miscue=config.assessment_enable_miscue,
            enable_prosody=config.assessment_enable_prosody,
        )

    def header_value(self, reference_text: Optional[str]) -> str:
        """Base64 JSON for the `Pronunciation-Assessment` request header."""
        params = {
            "ReferenceText": reference_text or "",
            "GradingSystem": self.grading_system,
            "Granularity": self.granularity,
            "Dimension": self.dimension,
            "EnableMiscue": self.enable_miscue,
            "EnableProsodyAssessment": self.enable_prosody,
        }
        return base64.b64encode(json.dumps(params).encode("utf-8")).decode("ascii")


@dataclass
class PhonemeAssessment:
    phoneme: str
    accuracy_score: float


@dataclass
class WordAssessment:
    word: str
    accuracy_score: float
    error_type: str = "None"
    phonemes: List[PhonemeAssessment] = field(default_factory=list)


@dataclass
class PronunciationResult:
    """Scores on a 0-100 scale plus per-word and per-phoneme detail."""
    accuracy_score: float = 0.0
    pronunciation_score: float = 0.0
    completeness_score: float = 0.0
    fluency_score: float = 0.0
    prosody_score: float = 0.0
    words: List[WordAssessment] = field(default_factory=list)
    recognized_text: str = ""
    low_confidence: bool = False

    @classmethod
    def from_nbest(cls, best: Dict[str, Any], display_text: str = "") -> "PronunciationResult":
        """
        Parse one NBest entry.

        Older API versions put scores directly on the entry; newer ones nest
        them under `PronunciationAssessment`. Both are accepted.
        """
        scores = _scores(best)
        words = []
        for w in best.get("Words") or []:
            w_scores = _scores(w)
            words.append(
                WordAssessment(
                    word=w.get("Word", ""),
                    accuracy_score=float(w_scores.get("AccuracyScore", 0.0)),
                    error_type=w_scores.get("ErrorType") or "None",
                    phonemes=[
                        PhonemeAssessment(
                            phoneme=p.get("Phoneme", ""),
                            accuracy_score=float(_scores(p).get("AccuracyScore", 0.0)),
                        )
                        for p in w.get("Phonemes") or []
                    ],
                )
            )

        return cls(
            accuracy_score=float(scores.get("AccuracyScore", 0.0)),
            pronunciation_score=float(scores.get("PronScore", 0.0)),
            completeness_score=float(scores.get("CompletenessScore", 0.0)),
            fluency_score=float(scores.get("FluencyScore", 0.0)),
            prosody_score=float(scores.get("ProsodyScore", 0.0)),
            words=words,
            recognized_text=best.get("Display") or display_text or best.get("Lexical", ""),
        )


def _scores(entry: Dict[str, Any]) -> Dict[str, Any]:
    nested = entry.get("PronunciationAssessment")
    return nested if isinstance(nested, dict) else entry


@dataclass(frozen=True)
class AssessmentItem:
    """One completed utterance waiting to be scored."""
    reference_text: str
    audio_snapshot: bytes
    sequence: int = 0
    created_at: float = field(default_factory=time.time)


class AssessmentEngine(ABC):
    """One-shot recognition + assessment of a complete utterance."""

    @abstractmethod
    async def assess(self, pcm_bytes: bytes, reference_text: Optional[str]) -> PronunciationResult:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class AzurePronunciationEngine(AssessmentEngine):
    """
    Azure Speech pronunciation assessment over REST.

    Each call is an independent request: the snapshot is wrapped in a WAV
    container, posted, and a single detailed result is parsed.

    Raises:
        ConfigurationError: At construction when Azure credentials are missing
    """

    def __init__(
        self,
        config: Optional[Any] = None,
        assessment_config: Optional[AssessmentConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if config is None:
            config = get_config()
        config.require_azure_speech()

        self.config = config
        self.assessment_config = assessment_config or AssessmentConfig.from_config(config)
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(config.assessment_timeout_seconds))
        self._owns_client = client is None

    @property
    def endpoint(self) -> str:
        return AZURE_STT_URL.format(region=self.config.azure_speech_region)

    async def assess(self, pcm_bytes: bytes, reference_text: Optional[str]) -> PronunciationResult:
        headers = {
            "Ocp-Apim-Subscription-Key": self.config.azure_speech_key,
            "Content-Type": f"audio/wav; codecs=audio/pcm; samplerate={TWILIO_SAMPLE_RATE}",
            "Accept": "application/json",
            "Pronunciation-Assessment": self.assessment_config.header_value(reference_text),
        }
        params = {"language": self.assessment_config.language, "format": "detailed"}
        wav = write_wav_mono_pcm16(pcm_bytes, TWILIO_SAMPLE_RATE)

        try:
            response = await self._client.post(self.endpoint, params=params, headers=headers, content=wav)
        except httpx.HTTPError as e:
            raise AdapterError(f"Azure assessment request failed: {e}") from e

        if response.status_code != 200:
            raise AdapterError(
                f"Azure assessment returned HTTP {response.status_code}: {response.text[:200]}"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise AdapterError("Azure assessment returned invalid JSON") from e

        return parse_assessment_response(data)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def parse_assessment_response(data: Dict[str, Any]) -> PronunciationResult:
    """
    Turn a detailed recognition response into a PronunciationResult.

    Raises:
        EmptyResultError: When nothing was recognized (NoMatch, silence, etc.)
    """
    status = data.get("RecognitionStatus", "")
    if status != "Success":
        raise EmptyResultError(f"Assessment recognized nothing (status={status or 'unknown'})")

    nbest = data.get("NBest") or []
    if not nbest:
        raise EmptyResultError("Assessment response has no NBest entries")

    return PronunciationResult.from_nbest(nbest[0], display_text=data.get("DisplayText", ""))


def _words(text: str) -> List[str]:
    return _WORD_RE.findall((text or "").lower())


def is_divergent(reference_text: str, recognized_text: str) -> bool:
    """
    True when the engine's recognized text does not plausibly match the reference.

    Punctuation-only recognition, or too few shared words, means the snapshot
    probably did not contain the utterance the reference text describes.
    """
    recognized = _words(recognized_text)
    if not recognized:
        return True

    reference = _words(reference_text)
    if not reference:
        return False

    recognized_set = set(recognized)
    shared = sum(1 for w in reference if w in recognized_set)
    return shared / len(reference) < MIN_REFERENCE_OVERLAP


ResultCallback = Callable[[PronunciationResult, str], Awaitable[None]]
ErrorCallback = Callable[[Exception], Awaitable[None]]


class PronunciationAssessor:
    """
    Buffers caller audio and scores completed utterances in FIFO order.

    - Every chunk goes to a rolling whole-call buffer (oldest evicted first)
      and to a per-utterance buffer reset when the caller starts speaking.
    - A final transcript snapshots and resets the per-utterance buffer and
      enqueues it.
    - A single worker scores one item at a time. A failed item is reported
      via `on_error` as QueueItemError and the worker moves on.
    """

    def __init__(
        self,
        engine: AssessmentEngine,
        on_result: Optional[ResultCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        mode: str = MODE_TWO_STEP,
        buffer_seconds: float = 20.0,
        timeout_seconds: float = 15.0,
    ):
        if mode not in (MODE_TWO_STEP, MODE_UNSCRIPTED):
            raise ValueError(f"Unknown assessment mode: {mode}")

        self.engine = engine
        self.mode = mode
        self.timeout_seconds = timeout_seconds
        self._on_result = on_result
        self._on_error = on_error
        self._max_rolling_bytes = int(TWILIO_SAMPLE_RATE * SAMPLE_WIDTH * buffer_seconds)
        self._rolling = bytearray()
        self._utterance = bytearray()
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._closed = False
        self._sequence = 0

    @classmethod
    def from_config(
        cls,
        engine: AssessmentEngine,
        config: Any,
        on_result: Optional[ResultCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> "PronunciationAssessor":
        return cls(
            engine,
            on_result=on_result,
            on_error=on_error,
            mode=config.assessment_mode,
            buffer_seconds=config.assessment_buffer_seconds,
            timeout_seconds=config.assessment_timeout_seconds,
        )

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def rolling_audio(self) -> bytes:
        return bytes(self._rolling)

    @property
    def utterance_audio(self) -> bytes:
        return bytes(self._utterance)

    def start(self) -> None:
        """Start the assessment worker."""
        if self._running or self._closed:
            return
        self._running = True
        self._task = asyncio.create_task(self._worker())
        logger.info("Pronunciation assessor started", mode=self.mode)

    def write_audio(self, pcm_bytes: bytes) -> None:
        if self._closed or not pcm_bytes:
            return

        self._rolling.extend(pcm_bytes)
        excess = len(self._rolling) - self._max_rolling_bytes
        if excess > 0:
            del self._rolling[:excess]

        self._utterance.extend(pcm_bytes)

    def clear_utterance_buffer(self) -> None:
        """Drop leftover audio so the next utterance starts clean."""
        self._utterance.clear()

    def submit_final_transcript(self, text: str) -> Optional[AssessmentItem]:
        """
        Snapshot the current utterance and queue it for scoring.

        Returns the queued item, or None once the assessor is closed.
        """
        if self._closed:
            return None

        self._sequence += 1
        item = AssessmentItem(
            reference_text=(text or "").strip(),
            audio_snapshot=bytes(self._utterance),
            sequence=self._sequence,
        )
        self._utterance.clear()
        self._queue.put_nowait(item)

        logger.debug(
            "Assessment item queued",
            sequence=item.sequence,
            audio_ms=round(get_audio_duration_ms(item.audio_snapshot), 1),
            queue_size=self._queue.qsize(),
        )
        return item

    async def _worker(self) -> None:
        """Background worker that drains the queue strictly in order."""
        while self._running:
            try:
                try:
                    item = await asyncio.wait_for(self._queue.get(), timeout=1.0)
                except asyncio.TimeoutError:
                    continue

                try:
                    await self._process(item)
                finally:
                    self._queue.task_done()

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Assessment worker error", error=str(e))

    async def _process(self, item: AssessmentItem) -> None:
        if not item.audio_snapshot:
            await self._report(QueueItemError("Empty audio snapshot", reference_text=item.reference_text))
            return

        reference = item.reference_text if self.mode == MODE_TWO_STEP else None
        start = time.time()
        try:
            result = await asyncio.wait_for(
                self.engine.assess(item.audio_snapshot, reference),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            await self._report(QueueItemError(
                f"Assessment timed out after {self.timeout_seconds}s",
                reference_text=item.reference_text,
                cause=e,
            ))
            return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._report(QueueItemError(
                f"Assessment failed: {e}",
                reference_text=item.reference_text,
                cause=e,
            ))
            return

        if self.mode == MODE_TWO_STEP:
            result.low_confidence = is_divergent(item.reference_text, result.recognized_text)
        else:
            result.low_confidence = not _words(result.recognized_text)

        if result.low_confidence:
            logger.warning(
                "Assessment text diverges from reference, flagging low confidence",
                sequence=item.sequence,
                reference=item.reference_text[:80],
                recognized=result.recognized_text[:80],
            )

        logger.info(
            "Pronunciation assessed",
            sequence=item.sequence,
            accuracy=result.accuracy_score,
            pronunciation=result.pronunciation_score,
            fluency=result.fluency_score,
            latency_ms=round((time.time() - start) * 1000, 1),
        )

        if self._closed or not self._on_result:
            return

        text = item.reference_text if self.mode == MODE_TWO_STEP else (result.recognized_text or item.reference_text)
        try:
            await self._on_result(result, text)
        except Exception as e:
            logger.error("Assessment result callback failed", error=str(e))

    async def _report(self, error: QueueItemError) -> None:
        logger.warning("Assessment item failed", error=str(error))
        if self._closed or not self._on_error:
            return
        try:
            await self._on_error(error)
        except Exception as e:
            logger.error("Assessment error callback failed", error=str(e))

    async def join(self) -> None:
        """Wait until every queued item has been processed."""
        await self._queue.join()

    async def close(self) -> None:
        """Stop the worker, drop buffers and release the engine. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        self._rolling.clear()
        self._utterance.clear()

        try:
            await self.engine.close()
        except Exception as e:
            logger.warning("Error closing assessment engine", error=str(e))

        logger.info("Pronunciation assessor closed")
