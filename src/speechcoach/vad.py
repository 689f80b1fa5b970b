"""
Energy-based Voice Activity Detection.

Classifies a stream of PCM16 chunks into speech/silence and emits edge events:

    SILENCE --(smoothed energy > speech threshold for K chunks)--> SPEECH_ACTIVE
    SPEECH_ACTIVE --(smoothed energy < silence threshold)--> SPEECH_ENDING
    SPEECH_ENDING --(energy > speech threshold before timer)--> SPEECH_ACTIVE
    SPEECH_ENDING --(silence timer fires)--> SILENCE

The two thresholds give hysteresis so the detector does not chatter at the
boundary. The silence timer is a one-shot `loop.call_later` handle.

Only caller audio (inbound track) may drive the detector: agent playback on
the outbound track must never be mistaken for the caller speaking.
"""

import asyncio
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, Optional

import structlog

from src.speechcoach.audio import pcm_rms

logger = structlog.get_logger(__name__)


class VADState(str, Enum):
    """Current state of the detector."""
    SILENCE = "silence"
    SPEECH_STARTING = "speech_starting"  # transient, promoted immediately
    SPEECH_ACTIVE = "speech_active"
    SPEECH_ENDING = "speech_ending"


@dataclass(frozen=True)
class VADConfig:
    """Detector thresholds and timing."""
    speech_threshold: float = 800.0
    silence_threshold: float = 200.0
    silence_duration_ms: int = 800
    speech_start_frames: int = 2
    history_size: int = 5

    @classmethod
    def from_config(cls, config) -> "VADConfig":
        return cls(
            speech_threshold=config.vad_speech_threshold,
            silence_threshold=config.vad_silence_threshold,
            silence_duration_ms=config.vad_silence_duration_ms,
            speech_start_frames=config.vad_speech_start_frames,
            history_size=config.vad_history_size,
        )


class VoiceActivityDetector:
    """
    Four-state energy VAD with smoothing and a debounced speech-end timer.

    Callbacks are plain synchronous callables invoked on the event loop thread.
    """

    def __init__(
        self,
        config: Optional[VADConfig] = None,
        on_speech_start: Optional[Callable[[], None]] = None,
        on_speech_end: Optional[Callable[[], None]] = None,
    ):
        self.config = config or VADConfig()
        self._on_speech_start = on_speech_start
        self._on_speech_end = on_speech_end
        self._state = VADState.SILENCE
        self._speech_frame_count = 0
        self._history: Deque[float] = deque(maxlen=max(1, self.config.history_size))
        self._silence_timer: Optional[asyncio.TimerHandle] = None
        self._destroyed = False

    @property
    def state(self) -> VADState:
        return self._state

    def is_speaking(self) -> bool:
        return self._state in (VADState.SPEECH_STARTING, VADState.SPEECH_ACTIVE)

    def process_audio(self, pcm_bytes: bytes, track: Optional[str] = None) -> None:
        """
        Feed one PCM16 chunk.

        Args:
            pcm_bytes: Linear PCM 16-bit LE audio
            track: "inbound" (caller) or "outbound" (agent); outbound is ignored
        """
        if self._destroyed or track == "outbound":
            return

        self._history.append(pcm_rms(pcm_bytes))
        smoothed = sum(self._history) / len(self._history)
        self._update_state(smoothed)

    def _update_state(self, energy: float) -> None:
        if self._state == VADState.SILENCE:
            if energy > self.config.speech_threshold:
                self._speech_frame_count += 1
                if self._speech_frame_count >= self.config.speech_start_frames:
                    self._speech_frame_count = 0
                    self._state = VADState.SPEECH_STARTING
                    logger.debug("VAD speech started", energy=round(energy, 1))
                    if self._on_speech_start:
                        self._on_speech_start()
                    self._state = VADState.SPEECH_ACTIVE
            else:
                self._speech_frame_count = 0

        elif self._state == VADState.SPEECH_STARTING:
            self._state = VADState.SPEECH_ACTIVE

        elif self._state == VADState.SPEECH_ACTIVE:
            if energy < self.config.silence_threshold:
                self._state = VADState.SPEECH_ENDING
                self._start_silence_timer()

        elif self._state == VADState.SPEECH_ENDING:
            if energy > self.config.speech_threshold:
                # Spurious dip
                self._cancel_silence_timer()
                self._state = VADState.SPEECH_ACTIVE

    def _start_silence_timer(self) -> None:
        if self._silence_timer is not None:
            return
        loop = asyncio.get_running_loop()
        self._silence_timer = loop.call_later(
            self.config.silence_duration_ms / 1000,
            self._on_silence_timeout,
        )

    def _cancel_silence_timer(self) -> None:
        if self._silence_timer is not None:
            self._silence_timer.cancel()
            self._silence_timer = None

    def _on_silence_timeout(self) -> None:
        self._silence_timer = None
        if self._destroyed or self._state != VADState.SPEECH_ENDING:
            return
        self._state = VADState.SILENCE
        logger.debug("VAD speech ended")
        if self._on_speech_end:
            self._on_speech_end()

    def reset(self) -> None:
        """Return to SILENCE and forget energy history."""
        self._cancel_silence_timer()
        self._state = VADState.SILENCE
        self._speech_frame_count = 0
        self._history.clear()

    def destroy(self) -> None:
        """Cancel any pending timer and stop reacting to audio. Idempotent."""
        self.reset()
        self._destroyed = True
