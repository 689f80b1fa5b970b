"""
Twilio Media Streams WebSocket protocol.

Twilio sends JSON messages with events:
- connected: Initial connection
- start: Stream started, contains streamSid, callSid, tracks and mediaFormat
- media: Audio data as base64 mu-law 8kHz, tagged with its track
- stop: Stream stopped

Outbound messages:
- connected: Acknowledgment of the connection
- media: Whole-utterance playback as base64 mu-law 8kHz
"""

import base64
import binascii
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

import msgspec
import structlog

from src.speechcoach.errors import FormatError

logger = structlog.get_logger(__name__)

decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()

INBOUND_TRACK = "inbound"
OUTBOUND_TRACK = "outbound"


class EventType(str, Enum):
    """Media stream event types."""
    CONNECTED = "connected"
    START = "start"
    MEDIA = "media"
    STOP = "stop"


@dataclass
class MediaFormat:
    encoding: str = "audio/x-mulaw"
    sample_rate: int = 8000
    channels: int = 1


@dataclass
class StartEvent:
    """Parsed start event."""
    stream_sid: str
    call_sid: str = ""
    account_sid: str = ""
    tracks: List[str] = field(default_factory=list)
    media_format: MediaFormat = field(default_factory=MediaFormat)
    custom_parameters: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "StartEvent":
        start = message.get("start") or {}
        fmt = start.get("mediaFormat") or {}
        stream_sid = message.get("streamSid") or start.get("streamSid") or ""
        return cls(
            stream_sid=stream_sid,
            call_sid=start.get("callSid") or "",
            account_sid=start.get("accountSid") or "",
            tracks=list(start.get("tracks") or []),
            media_format=MediaFormat(
                encoding=fmt.get("encoding", "audio/x-mulaw"),
                sample_rate=int(fmt.get("sampleRate", 8000)),
                channels=int(fmt.get("channels", 1)),
            ),
            custom_parameters=dict(start.get("customParameters") or {}),
        )

    @property
    def correlated_call_sid(self) -> str:
        """First non-empty call identifier carried by the start event."""
        if self.call_sid:
            return self.call_sid
        for key in ("callSid", "CallSid", "call_sid"):
            value = self.custom_parameters.get(key)
            if isinstance(value, str) and value:
                return value
        return ""


@dataclass
class MediaEvent:
    """Parsed media event."""
    stream_sid: str
    track: Optional[str]
    chunk: int
    timestamp: str
    payload: bytes  # Decoded audio bytes (mu-law)

    @property
    def is_inbound(self) -> bool:
        """Untagged media is treated as caller audio."""
        return self.track != OUTBOUND_TRACK

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "MediaEvent":
        media = message.get("media") or {}
        payload_b64 = media.get("payload", "")

        try:
            payload = base64.b64decode(payload_b64, validate=True)
        except (binascii.Error, ValueError, TypeError) as e:
            raise FormatError(f"Invalid media payload: {e}") from e

        return cls(
            stream_sid=message.get("streamSid", ""),
            track=media.get("track"),
            chunk=int(media.get("chunk", 0) or 0),
            timestamp=str(media.get("timestamp", "")),
            payload=payload,
        )


@dataclass
class StopEvent:
    """Parsed stop event."""
    stream_sid: str
    call_sid: str = ""

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "StopEvent":
        stop = message.get("stop") or {}
        return cls(
            stream_sid=message.get("streamSid", ""),
            call_sid=stop.get("callSid") or "",
        )


def parse_message(raw_message: Union[str, bytes]) -> tuple[EventType, Any]:
    """
    Parse a raw media-stream WebSocket message.

    Args:
        raw_message: Raw JSON text (or bytes) from Twilio

    Returns:
        Tuple of (event_type, parsed_event). `connected` yields the raw dict.

    Raises:
        FormatError: If the message is not JSON, has an unknown event type or
            carries an undecodable media payload
    """
    try:
        message = decoder.decode(raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message)
    except msgspec.DecodeError as e:
        raise FormatError(f"Invalid JSON: {e}") from e

    if not isinstance(message, dict):
        raise FormatError("Message is not a JSON object")

    event_type_str = message.get("event", "")
    try:
        event_type = EventType(event_type_str)
    except ValueError:
        raise FormatError(f"Unknown event type: {event_type_str}")

    if event_type == EventType.START:
        return event_type, StartEvent.from_message(message)
    if event_type == EventType.MEDIA:
        return event_type, MediaEvent.from_message(message)
    if event_type == EventType.STOP:
        return event_type, StopEvent.from_message(message)
    return event_type, message


def create_connected_message() -> str:
    """Acknowledgment sent in reply to `connected`."""
    return encoder.encode({"event": "connected"}).decode("utf-8")


def create_media_message(stream_sid: str, audio_payload: bytes) -> str:
    """
    Create an outbound media message.

    Args:
        stream_sid: The stream SID
        audio_payload: Raw mu-law audio bytes (a whole utterance)

    Returns:
        JSON string to send to Twilio
    """
    payload_b64 = base64.b64encode(audio_payload).decode("utf-8")

    message = {
        "event": "media",
        "streamSid": stream_sid,
        "media": {
            "payload": payload_b64
        }
    }

    return encoder.encode(message).decode("utf-8")
