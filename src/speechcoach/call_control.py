"""
Twilio call control.

- TwiML builders for the stream webhook and the feedback injection
- URL helpers for the public base URL and the media-stream URL
- `CallControl`: thin async wrapper over the blocking Twilio REST client
  (calls run in a worker thread so they never stall the event loop)
"""

import asyncio
from typing import Any, Dict, Optional
from urllib.parse import quote

import structlog
from twilio.rest import Client as TwilioClient
from twilio.twiml.voice_response import Connect, VoiceResponse

from src.speechcoach.config import get_config, to_stream_scheme
from src.speechcoach.errors import AdapterError, ConfigurationError

logger = structlog.get_logger(__name__)

MEDIA_STREAM_PATH = "/api/media-stream"
FEEDBACK_INTRO = "Here's your feedback."


def resolve_base_url(
    config: Any,
    host: Optional[str] = None,
    forwarded_proto: Optional[str] = None,
) -> str:
    """
    Public HTTP(S) base URL for callbacks.

    Configured PUBLIC_BASE_URL / PUBLIC_HOST wins; otherwise the request's
    (forwarded) host and scheme are used, as seen behind ngrok or a proxy.
    """
    if config.public_base_url or config.public_host:
        return config.base_url
    if host:
        scheme = (forwarded_proto or "").split(",")[0].strip() or ("http" if host.startswith("localhost") else "https")
        return f"{scheme}://{host}".rstrip("/")
    return config.base_url


def build_stream_url(base_url: str, call_sid: Optional[str] = None) -> str:
    """Media-stream WebSocket URL, carrying the CallSid as a query parameter."""
    url = f"{to_stream_scheme(base_url.rstrip('/'))}{MEDIA_STREAM_PATH}"
    if call_sid:
        url += f"?callSid={quote(call_sid, safe='')}"
    return url


def build_stream_twiml(
    stream_url: str,
    call_sid: Optional[str] = None,
    status_callback_url: Optional[str] = None,
) -> str:
    """
    TwiML that opens a bidirectional media stream for the call.

    The CallSid travels twice: in the URL query and as a custom <Parameter>,
    which Twilio echoes back in the stream's `start` event.
    Stream lifecycle events are POSTed to `status_callback_url` when given.
    """
    response = VoiceResponse()
    connect = Connect()
    if status_callback_url:
        stream = connect.stream(
            url=stream_url,
            status_callback=status_callback_url,
            status_callback_method="POST",
        )
    else:
        stream = connect.stream(url=stream_url)
    if call_sid:
        stream.parameter(name="callSid", value=call_sid)
    response.append(connect)
    return str(response)


def build_play_twiml(audio_url: str) -> str:
    response = VoiceResponse()
    response.pause(length=1)
    response.say(FEEDBACK_INTRO)
    response.play(audio_url)
    return str(response)


def build_say_twiml(text: str) -> str:
    response = VoiceResponse()
    response.pause(length=1)
    response.say(text)
    return str(response)


class CallControl:
    """
    Twilio REST operations used by the agent.

    Raises:
        ConfigurationError: At construction when Twilio credentials are missing
    """

    def __init__(self, config: Optional[Any] = None, client: Optional[Any] = None):
        if config is None:
            config = get_config()
        if client is None:
            config.require_twilio()
            client = TwilioClient(config.twilio_account_sid, config.twilio_auth_token)

        self.config = config
        self._client = client

    async def create_call(self, to: str, webhook_url: str, from_number: Optional[str] = None) -> Dict[str, str]:
        """
        Place an outbound call whose TwiML is fetched from `webhook_url`.

        Returns:
            {"call_sid": ..., "status": ...}
        """
        from_number = from_number or self.config.twilio_from_number
        if not from_number:
            raise ConfigurationError("TWILIO_FROM_NUMBER not configured")

        def _call():
            return self._client.calls.create(to=to, from_=from_number, url=webhook_url, method="POST")

        try:
            call = await asyncio.to_thread(_call)
        except Exception as e:
            raise AdapterError(f"Twilio call creation failed: {e}") from e

        logger.info("Outbound call created", call_sid=call.sid, status=call.status)
        return {"call_sid": call.sid, "status": str(call.status)}

    async def update_call(self, call_sid: str, twiml: str) -> None:
        """Replace the live call's instructions with `twiml`."""
        if not call_sid:
            raise AdapterError("No CallSid available for call update")

        def _update():
            return self._client.calls(call_sid).update(twiml=twiml)

        try:
            await asyncio.to_thread(_update)
        except Exception as e:
            raise AdapterError(f"Twilio call update failed: {e}") from e

        logger.info("Call updated", call_sid=call_sid)

    async def play_audio(self, call_sid: str, audio_url: str) -> None:
        await self.update_call(call_sid, build_play_twiml(audio_url))

    async def say(self, call_sid: str, text: str) -> None:
        await self.update_call(call_sid, build_say_twiml(text))
