"""
Streaming speech-to-text.

`Transcriber` is the capability interface the orchestrator depends on;
`DeepgramTranscriber` implements it over the Deepgram live WebSocket API.

Audio is sent as linear16 8kHz mono (decoded from Twilio mu-law), with
interim results, punctuation and filler words enabled so the session can
count "um"/"uh" even though most ASR models drop them by default.
"""

import asyncio
import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional
from urllib.parse import urlencode

import structlog
import websockets

from src.speechcoach.config import get_config
from src.speechcoach.errors import AdapterError

logger = structlog.get_logger(__name__)

DEEPGRAM_LISTEN_URL = "wss://api.deepgram.com/v1/listen"


@dataclass
class WordDetail:
    """Per-word recognition detail."""
    word: str
    confidence: float = 0.0
    start: float = 0.0
    end: float = 0.0
    punctuated_word: Optional[str] = None


@dataclass
class TranscriptResult:
    """A partial or final transcript fragment."""
    text: str
    is_final: bool
    confidence: Optional[float] = None
    words: Optional[List[WordDetail]] = None
    timestamp: float = field(default_factory=time.time)


TranscriptCallback = Callable[[TranscriptResult], Awaitable[None]]
ErrorCallback = Callable[[Exception], Awaitable[None]]


class Transcriber(ABC):
    """
    Streaming recognition session.

    `send_audio` is fire-and-forget and silently drops audio once the session
    is closed. Errors are delivered via `on_error`, never raised to the caller.
    """

    def __init__(
        self,
        on_transcript: Optional[TranscriptCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ):
        self._on_transcript = on_transcript
        self._on_error = on_error

    @abstractmethod
    async def start(self) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def send_audio(self, pcm_bytes: bytes) -> None:
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        raise NotImplementedError

    async def _emit_transcript(self, result: TranscriptResult) -> None:
        if self._on_transcript:
            await self._on_transcript(result)

    async def _emit_error(self, error: Exception) -> None:
        if self._on_error:
            try:
                await self._on_error(error)
            except Exception as e:
                logger.error("Transcriber error callback failed", error=str(e))


class DeepgramTranscriber(Transcriber):
    """
    Deepgram streaming STT client using raw WebSocket.

    Raises:
        ConfigurationError: At construction when DEEPGRAM_API_KEY is missing
    """

    def __init__(
        self,
        on_transcript: Optional[TranscriptCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        config: Optional[Any] = None,
    ):
        super().__init__(on_transcript=on_transcript, on_error=on_error)
        if config is None:
            config = get_config()
        config.require_deepgram()

        self.config = config
        self._ws = None
        self._is_connected = False
        self._is_closed = False
        self._receive_task: Optional[asyncio.Task] = None

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    def build_url(self) -> str:
        params = {
            "model": self.config.deepgram_model,
            "language": self.config.deepgram_language,
            "encoding": "linear16",
            "sample_rate": 8000,
            "channels": 1,
            "interim_results": "true",
            "punctuate": "true",
            "diarize": "false",
            "filler_words": "true",
        }
        return f"{DEEPGRAM_LISTEN_URL}?{urlencode(params)}"

    async def start(self) -> bool:
        """Connect to Deepgram streaming API."""
        if self._is_connected:
            return True
        if self._is_closed:
            return False

        headers = {"Authorization": f"Token {self.config.deepgram_api_key}"}
        try:
            self._ws = await websockets.connect(
                self.build_url(),
                additional_headers=headers,
                open_timeout=10,
            )
        except Exception as e:
            logger.error(
                "Deepgram connection failed",
                error_type=type(e).__name__,
                error=str(e),
            )
            self._ws = None
            await self._emit_error(AdapterError(f"Deepgram connection failed: {e}"))
            return False

        self._is_connected = True
        self._receive_task = asyncio.create_task(self._receive_loop())
        logger.info("Deepgram STT connected", model=self.config.deepgram_model)
        return True

    async def close(self) -> None:
        """Finish the stream and disconnect. Idempotent."""
        if self._is_closed:
            return
        self._is_closed = True
        self._is_connected = False

        if self._ws:
            try:
                await self._ws.send(json.dumps({"type": "CloseStream"}))
            except Exception as e:
                logger.debug("Could not send CloseStream", error=str(e))
            try:
                await self._ws.close()
            except Exception as e:
                logger.warning("Error closing Deepgram connection", error=str(e))

        if self._receive_task:
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass

        self._ws = None
        logger.info("Deepgram STT closed")

    async def send_audio(self, pcm_bytes: bytes) -> None:
        """Send audio data to Deepgram."""
        if not self._is_connected or not self._ws or not pcm_bytes:
            return

        try:
            await self._ws.send(pcm_bytes)
        except websockets.exceptions.ConnectionClosed:
            self._is_connected = False
            logger.info("Deepgram connection closed while sending")
        except Exception as e:
            logger.error("Failed to send audio to Deepgram", error=str(e))

    async def _receive_loop(self) -> None:
        """Receive and process messages from Deepgram."""
        try:
            async for message in self._ws:
                if not self._is_connected:
                    break

                try:
                    data = json.loads(message)
                    await self._handle_message(data)
                except json.JSONDecodeError:
                    logger.warning("Invalid JSON from Deepgram")
                except Exception as e:
                    logger.error("Error processing Deepgram message", error=str(e))

        except websockets.exceptions.ConnectionClosed:
            logger.info("Deepgram connection closed")
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("Deepgram receive loop error", error=str(e))
            await self._emit_error(AdapterError(f"Deepgram receive failed: {e}"))
        finally:
            self._is_connected = False

    async def _handle_message(self, data: dict) -> None:
        """Handle a message from Deepgram."""
        msg_type = str(data.get("type", "")).lower()

        if msg_type == "results":
            result = parse_results_message(data)
            if result is None:
                return

            logger.debug(
                "STT transcript",
                text=result.text[:50],
                is_final=result.is_final,
            )
            await self._emit_transcript(result)

        elif msg_type == "error":
            message = data.get("message") or data.get("description") or "Unknown"
            logger.error("Deepgram error", error=message, details=data)
            await self._emit_error(AdapterError(f"Deepgram error: {message}"))


def parse_results_message(data: dict) -> Optional[TranscriptResult]:
    """
    Normalize a Deepgram `Results` message.

    Returns None when the message carries no non-blank transcript.
    """
    channel = data.get("channel") or {}
    alternatives = channel.get("alternatives") or []
    if not alternatives:
        return None

    alternative = alternatives[0]
    transcript = (alternative.get("transcript") or "").strip()
    if not transcript:
        return None

    words = [
        WordDetail(
            word=w.get("word") or "",
            confidence=float(w.get("confidence") or 0.0),
            start=float(w.get("start") or 0.0),
            end=float(w.get("end") or 0.0),
            punctuated_word=w.get("punctuated_word"),
        )
        for w in alternative.get("words") or []
    ]

    confidence = alternative.get("confidence")
    return TranscriptResult(
        text=transcript,
        is_final=bool(data.get("is_final", False)),
        confidence=float(confidence) if confidence is not None else None,
        words=words or None,
    )
