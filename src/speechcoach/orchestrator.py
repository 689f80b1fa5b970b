"""
Media stream orchestration.

One `MediaStreamOrchestrator` per Twilio media-stream WebSocket. It owns the
call's CallSession and sequences every component:

inbound mu-law -> PCM16 -> VAD + Deepgram + pronunciation buffers + session
VAD speech start -> reset the pronunciation utterance buffer
VAD speech end -> (grace period) -> latest final transcript -> user turn ->
LLM reply -> assistant turn -> Azure TTS -> 8kHz mu-law -> one media frame

States:
    IDLE      connected, waiting for `start`
    ACTIVE    session and components live
    STOPPING  `stop` received while speaking; teardown waits for playback
    CLOSED    torn down (terminal)

Speaking is a sub-state flag of ACTIVE. While it is set a second playback is
dropped, not queued. A turn that starts while another is still generating is
dropped the same way; its transcript stays in the session and is picked up by
the next turn.

All handlers run on the connection's event loop. Every await is followed by a
liveness re-check, and adapter callbacks that land after teardown are
discarded.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import structlog

from src.speechcoach.audio import ulaw_to_linear16, wav_to_twilio_ulaw
from src.speechcoach.call_control import CallControl
from src.speechcoach.config import get_config
from src.speechcoach.conversation import DEFAULT_SYSTEM_PROMPT, FALLBACK_APOLOGY, ConversationEngine
from src.speechcoach.errors import ConfigurationError, FormatError, SpeechCoachError, TransportError
from src.speechcoach.feedback import FeedbackPipeline
from src.speechcoach.pronunciation import AzurePronunciationEngine, PronunciationAssessor, PronunciationResult
from src.speechcoach.protocol import (
    EventType,
    MediaEvent,
    StartEvent,
    StopEvent,
    create_connected_message,
    create_media_message,
    parse_message,
)
from src.speechcoach.results import ResultsStore
from src.speechcoach.session import CallSession, SessionRegistry
from src.speechcoach.stt import DeepgramTranscriber, TranscriptResult
from src.speechcoach.tts import AzureSpeechSynthesizer
from src.speechcoach.vad import VADConfig, VoiceActivityDetector

logger = structlog.get_logger(__name__)

class StreamState(str, Enum):
    """Lifecycle of one media-stream connection."""
    IDLE = "idle"
    ACTIVE = "active"
    STOPPING = "stopping"
    CLOSED = "closed"


class PlaybackOutcome(str, Enum):
    SENT = "sent"
    DROPPED = "dropped"
    FAILED = "failed"
    DISCONNECTED = "disconnected"


@dataclass
class StreamMetrics:
    """Counters for one connection."""
    start_time: float = field(default_factory=time.time)
    media_frames: int = 0
    malformed_messages: int = 0
    speech_starts: int = 0
    speech_ends: int = 0
    turns: int = 0
    dropped_turns: int = 0
    playbacks: int = 0
    dropped_playbacks: int = 0
    fallbacks: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "duration_seconds": round(time.time() - self.start_time, 2),
            "media_frames": self.media_frames,
            "malformed_messages": self.malformed_messages,
            "speech_starts": self.speech_starts,
            "speech_ends": self.speech_ends,
            "turns": self.turns,
            "dropped_turns": self.dropped_turns,
            "playbacks": self.playbacks,
            "dropped_playbacks": self.dropped_playbacks,
            "fallbacks": self.fallbacks,
        }


@dataclass
class ComponentFactories:
    """
    Constructors for the external capabilities.

    Each may raise ConfigurationError; the orchestrator then runs the call
    without that component.
    """
    transcriber: Callable[..., Any]
    assessment_engine: Callable[[], Any]
    conversation: Callable[[], Any]
    synthesizer: Callable[[], Any]
    call_control: Callable[[], Any]

    @classmethod
    def default(cls, config: Any) -> "ComponentFactories":
        return cls(
            transcriber=lambda on_transcript, on_error: DeepgramTranscriber(
                on_transcript=on_transcript,
                on_error=on_error,
                config=config,
            ),
            assessment_engine=lambda: AzurePronunciationEngine(config=config),
            conversation=lambda: ConversationEngine(config=config),
            synthesizer=lambda: AzureSpeechSynthesizer(config=config),
            call_control=lambda: CallControl(config=config),
        )


class MediaStreamOrchestrator:
    """State machine binding one media-stream connection to one CallSession."""

    def __init__(
        self,
        send_message: Callable[[str], Awaitable[None]],
        registry: SessionRegistry,
        config: Optional[Any] = None,
        factories: Optional[ComponentFactories] = None,
        results: Optional[ResultsStore] = None,
        call_sid_hint: Optional[str] = None,
        base_url: Optional[str] = None,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
    ):
        if config is None:
            config = get_config()

        self.config = config
        self.registry = registry
        self.factories = factories or ComponentFactories.default(config)
        self.results = results or ResultsStore(config.results_dir, enabled=config.write_results)
        self.system_prompt = system_prompt
        self._send_message = send_message
        self._call_sid_hint = call_sid_hint or None
        self._base_url = base_url or config.base_url

        self._state = StreamState.IDLE
        self.session: Optional[CallSession] = None
        self.vad: Optional[VoiceActivityDetector] = None
        self.transcriber: Optional[Any] = None
        self.assessor: Optional[PronunciationAssessor] = None
        self.conversation: Optional[Any] = None
        self.synthesizer: Optional[Any] = None
        self.call_control: Optional[Any] = None
        self.feedback: Optional[FeedbackPipeline] = None

        self._is_speaking = False
        self._turn_in_progress = False
        self._stop_requested = False
        self._torn_down = False
        self._tasks: Set[asyncio.Task] = set()
        self._metrics = StreamMetrics()

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def is_speaking(self) -> bool:
        return self._is_speaking

    @property
    def stream_sid(self) -> str:
        return self.session.stream_sid if self.session else ""

    @property
    def call_sid(self) -> Optional[str]:
        return self.session.call_sid if self.session else self._call_sid_hint

    @property
    def metrics(self) -> StreamMetrics:
        return self._metrics

    def _is_live(self) -> bool:
        return self._state == StreamState.ACTIVE and not self._torn_down

    # Inbound protocol

    async def handle_message(self, raw_message: str) -> None:
        """Handle one WebSocket text frame from Twilio."""
        if self._state == StreamState.CLOSED:
            return

        try:
            event_type, event = parse_message(raw_message)
        except FormatError as e:
            self._metrics.malformed_messages += 1
            logger.warning("Dropping malformed media-stream message", stream_sid=self.stream_sid, error=str(e))
            return

        if event_type == EventType.CONNECTED:
            await self._handle_connected()
        elif event_type == EventType.START:
            await self._handle_start(event)
        elif event_type == EventType.MEDIA:
            await self._handle_media(event)
        elif event_type == EventType.STOP:
            await self._handle_stop(event)

    async def _handle_connected(self) -> None:
        logger.info("Media stream connected")
        await self._send(create_connected_message())

    async def _handle_start(self, event: StartEvent) -> None:
        if self._state != StreamState.IDLE:
            logger.warning("Ignoring duplicate start event", stream_sid=event.stream_sid)
            return

        call_sid = event.correlated_call_sid or self._call_sid_hint
        self.session = CallSession(
            event.stream_sid,
            call_sid=call_sid,
            max_audio_seconds=self.config.max_session_audio_seconds,
        )
        self.registry.register(self.session)
        self._state = StreamState.ACTIVE

        logger.info(
            "Call started",
            stream_sid=event.stream_sid,
            call_sid=self.session.call_sid,
            tracks=event.tracks,
            encoding=event.media_format.encoding,
            sample_rate=event.media_format.sample_rate,
        )

        self.vad = VoiceActivityDetector(
            VADConfig.from_config(self.config),
            on_speech_start=self._on_speech_start,
            on_speech_end=self._on_speech_end,
        )

        engine = self._build("assessment_engine", self.factories.assessment_engine)
        if engine is not None:
            self.assessor = PronunciationAssessor.from_config(
                engine,
                self.config,
                on_result=self._on_assessment,
                on_error=self._on_assessment_error,
            )
            self.assessor.start()

        self.conversation = self._build("conversation", self.factories.conversation)
        self.synthesizer = self._build("synthesizer", self.factories.synthesizer)
        self.call_control = self._build("call_control", self.factories.call_control)

        self.feedback = FeedbackPipeline(
            self.session,
            conversation=self.conversation,
            synthesizer=self.synthesizer,
            call_control=self.call_control,
            results=self.results,
            base_url=self._base_url,
            delay_seconds=self.config.feedback_delay_seconds,
            assessor=self.assessor,
        )
        self.feedback.arm()

        self.transcriber = self._build(
            "transcriber",
            lambda: self.factories.transcriber(self._on_transcript, self._on_transcriber_error),
        )
        if self.transcriber is not None:
            ok = await self.transcriber.start()
            if not ok:
                logger.warning("Transcriber failed to start, continuing without it", stream_sid=self.stream_sid)
            if not self._is_live():
                return

    def _build(self, name: str, factory: Callable[[], Any]) -> Optional[Any]:
        try:
            return factory()
        except ConfigurationError as e:
            logger.error("Component disabled", component=name, stream_sid=self.stream_sid, error=str(e))
            return None

    async def _handle_media(self, event: MediaEvent) -> None:
        if not self._is_live() or not event.payload:
            return

        self._metrics.media_frames += 1
        pcm = ulaw_to_linear16(event.payload)

        self.vad.process_audio(pcm, track=event.track)
        if not event.is_inbound:
            return

        if self.assessor is not None:
            self.assessor.write_audio(pcm)
        self.session.add_audio_chunk(pcm)
        if self.transcriber is not None:
            await self.transcriber.send_audio(pcm)

    async def _handle_stop(self, event: StopEvent) -> None:
        if self._state in (StreamState.STOPPING, StreamState.CLOSED):
            return

        if self.session is not None and event.call_sid:
            self.session.set_call_sid(event.call_sid)

        self._state = StreamState.STOPPING
        if self._is_speaking:
            self._stop_requested = True
            logger.info("Stop received while speaking, deferring teardown", stream_sid=self.stream_sid)
            return

        await self._teardown(reason="stop")

    # VAD edges

    def _on_speech_start(self) -> None:
        if not self._is_live():
            return
        self._metrics.speech_starts += 1
        if self.assessor is not None:
            self.assessor.clear_utterance_buffer()
        logger.debug("Caller started speaking", stream_sid=self.stream_sid)

    def _on_speech_end(self) -> None:
        if not self._is_live():
            return
        self._metrics.speech_ends += 1
        logger.debug("Caller stopped speaking", stream_sid=self.stream_sid)
        self._spawn(self._run_turn())

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # Conversation turn

    async def _run_turn(self) -> None:
        if self._turn_in_progress:
            self._metrics.dropped_turns += 1
            logger.info("Turn dropped, previous turn still in progress", stream_sid=self.stream_sid)
            return

        self._turn_in_progress = True
        try:
            await asyncio.sleep(self.config.turn_grace_ms / 1000)
            if not self._is_live():
                return

            transcript = self.session.get_latest_final_transcript()
            if len(transcript.strip()) < self.config.min_transcript_chars:
                logger.debug("No usable transcript for turn", stream_sid=self.stream_sid, transcript=transcript)
                return

            if self._is_speaking:
                self._metrics.dropped_turns += 1
                logger.info("Turn dropped, agent is speaking", stream_sid=self.stream_sid)
                return

            self._metrics.turns += 1
            self.session.add_user_message(transcript)
            context = self.session.get_conversation_context()
            logger.info("User turn", stream_sid=self.stream_sid, text=transcript[:80])

            is_fallback = False
            if self.conversation is None:
                reply, is_fallback = FALLBACK_APOLOGY, True
            else:
                try:
                    reply = await self.conversation.generate_reply(
                        context.past_turns(),
                        context.current,
                        self.system_prompt,
                    )
                except SpeechCoachError as e:
                    logger.warning("Reply generation failed, using apology", stream_sid=self.stream_sid, error=str(e))
                    reply, is_fallback = FALLBACK_APOLOGY, True

            if not self._is_live():
                return

            if is_fallback:
                self._metrics.fallbacks += 1
            self.session.add_assistant_message(reply)
            logger.info("Assistant turn", stream_sid=self.stream_sid, text=reply[:80])

            outcome = await self._speak(reply)
            # no apology over a dead transport
            if outcome == PlaybackOutcome.FAILED and not is_fallback and self._is_live():
                self._metrics.fallbacks += 1
                await self._speak(FALLBACK_APOLOGY)

        except Exception as e:
            logger.error("Conversation turn failed", stream_sid=self.stream_sid, error=str(e))
        finally:
            self._turn_in_progress = False

    # Playback

    async def _speak(self, text: str) -> PlaybackOutcome:
        """Synthesize `text` and send it as one outbound media frame."""
        if self._is_speaking:
            self._metrics.dropped_playbacks += 1
            logger.info("Playback dropped, already speaking", stream_sid=self.stream_sid)
            return PlaybackOutcome.DROPPED
        if self.synthesizer is None or self._torn_down:
            return PlaybackOutcome.FAILED

        self._is_speaking = True
        outcome = PlaybackOutcome.FAILED
        try:
            wav = await self.synthesizer.synthesize(text)
            if self._torn_down:
                logger.debug("Discarding synthesized audio after teardown", stream_sid=self.stream_sid)
                return PlaybackOutcome.DISCONNECTED

            ulaw = wav_to_twilio_ulaw(wav)
            sent = await self._send(create_media_message(self.stream_sid, ulaw))
            if sent is None:
                outcome = PlaybackOutcome.DISCONNECTED
            elif sent:
                outcome = PlaybackOutcome.SENT
                self._metrics.playbacks += 1
                await asyncio.sleep(self.config.playback_cooldown_ms / 1000)

        except SpeechCoachError as e:
            logger.warning("Playback failed", stream_sid=self.stream_sid, error=str(e))
        except Exception as e:
            logger.error("Playback error", stream_sid=self.stream_sid, error_type=type(e).__name__, error=str(e))
        finally:
            self._is_speaking = False
            if self._stop_requested:
                await self._teardown(reason="deferred stop")

        return outcome

    async def _send(self, message: str) -> Optional[bool]:
        """
        Send one frame; failures are logged, never raised.

        Returns True when sent, None when the transport is gone and False for
        any other failure.
        """
        try:
            await self._send_message(message)
            return True
        except TransportError as e:
            logger.warning("Media stream not writable", stream_sid=self.stream_sid, error=str(e))
            return None
        except Exception as e:
            logger.error("Failed to send media-stream message", stream_sid=self.stream_sid, error=str(e))
        return False

    # Adapter callbacks

    async def _on_transcript(self, result: TranscriptResult) -> None:
        if self._torn_down or self.session is None:
            return

        self.session.add_transcript(result)
        if result.is_final and self.assessor is not None:
            self.assessor.submit_final_transcript(result.text)
        await self.results.append_transcript(self.session.stream_sid, result)

    async def _on_transcriber_error(self, error: Exception) -> None:
        logger.warning("Transcriber error", stream_sid=self.stream_sid, error=str(error))

    async def _on_assessment(self, result: PronunciationResult, text: str) -> None:
        if self._torn_down or self.session is None:
            return

        self.session.add_pronunciation_result(result, text)
        await self.results.append_pronunciation(
            self.session.stream_sid,
            self.session.call_sid,
            len(self.session.pronunciation_results),
            result,
            text,
        )

    async def _on_assessment_error(self, error: Exception) -> None:
        logger.warning("Pronunciation assessment error", stream_sid=self.stream_sid, error=str(error))

    # Teardown

    def _cancel_timers(self) -> None:
        if self.feedback is not None:
            self.feedback.cancel()
        if self.session is not None:
            self.session.stop_timers()
        if self.vad is not None:
            self.vad.destroy()

    async def _teardown(self, reason: str) -> None:
        """Release everything for this call. Idempotent and safe before `start`."""
        if self._torn_down:
            return
        self._torn_down = True
        self._state = StreamState.CLOSED
        self._cancel_timers()

        if self.session is not None:
            self.session.cleanup()
            self.registry.unregister(self.session.stream_sid)

        for name, component in (
            ("transcriber", self.transcriber),
            ("assessor", self.assessor),
            ("synthesizer", self.synthesizer),
        ):
            if component is None:
                continue
            try:
                await component.close()
            except Exception as e:
                logger.warning("Error closing component", component=name, error=str(e))

        logger.info(
            "Media stream closed",
            stream_sid=self.stream_sid,
            call_sid=self.call_sid,
            reason=reason,
            **self._metrics.to_dict(),
        )

    async def close(self) -> None:
        """
        Called when the transport closes.

        Timers are cancelled before any await and adapters are closed right
        away. A playback still in flight finds the stream torn down and
        discards its audio.
        """
        self._cancel_timers()
        await self._teardown(reason="connection closed")

    async def drain(self) -> None:
        """Wait for in-flight turn tasks to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


async def create_orchestrator(
    send_message: Callable[[str], Awaitable[None]],
    registry: SessionRegistry,
    call_sid_hint: Optional[str] = None,
    base_url: Optional[str] = None,
) -> MediaStreamOrchestrator:
    """Create an orchestrator for a freshly accepted media-stream connection."""
    return MediaStreamOrchestrator(
        send_message,
        registry,
        call_sid_hint=call_sid_hint,
        base_url=base_url,
    )
