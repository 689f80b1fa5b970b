"""
Speech synthesis.

`SpeechSynthesizer` is the capability interface; `AzureSpeechSynthesizer`
calls the Azure TTS REST endpoint with SSML and returns a 16kHz 16-bit mono
RIFF/WAV container. Use `audio.wav_to_twilio_ulaw` to render it for playback.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional
from xml.sax.saxutils import escape, quoteattr

import httpx
import structlog

from src.speechcoach.config import get_config
from src.speechcoach.errors import AdapterError, EmptyResultError

logger = structlog.get_logger(__name__)

AZURE_TTS_URL = "https://{region}.tts.speech.microsoft.com/cognitiveservices/v1"
AZURE_TTS_OUTPUT_FORMAT = "riff-16khz-16bit-mono-pcm"


class SpeechSynthesizer(ABC):
    @abstractmethod
    async def synthesize(self, text: str) -> bytes:
        """Return a WAV container (16kHz, 16-bit, mono) for `text`."""
        raise NotImplementedError

    async def close(self) -> None:
        return None


def build_ssml(text: str, voice: str, rate: str = "+0%", pitch: str = "+0Hz", language: str = "en-US") -> str:
    return (
        f'<speak version="1.0" xmlns="http://www.w3.org/2001/10/synthesis" xml:lang={quoteattr(language)}>'
        f"<voice name={quoteattr(voice)}>"
        f"<prosody rate={quoteattr(rate)} pitch={quoteattr(pitch)}>{escape(text)}</prosody>"
        "</voice></speak>"
    )


class AzureSpeechSynthesizer(SpeechSynthesizer):
    """
    Azure neural TTS over REST.

    Raises:
        ConfigurationError: At construction when Azure credentials are missing
    """

    def __init__(self, config: Optional[Any] = None, client: Optional[httpx.AsyncClient] = None):
        if config is None:
            config = get_config()
        config.require_azure_speech()

        self.config = config
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(15.0))
        self._owns_client = client is None

    @property
    def endpoint(self) -> str:
        return AZURE_TTS_URL.format(region=self.config.azure_speech_region)

    async def synthesize(self, text: str) -> bytes:
        if not text or not text.strip():
            raise EmptyResultError("Nothing to synthesize")

        ssml = build_ssml(
            text.strip(),
            voice=self.config.azure_tts_voice,
            rate=self.config.azure_tts_rate,
            pitch=self.config.azure_tts_pitch,
            language=self.config.azure_speech_language,
        )
        headers = {
            "Ocp-Apim-Subscription-Key": self.config.azure_speech_key,
            "Content-Type": "application/ssml+xml",
            "X-Microsoft-OutputFormat": AZURE_TTS_OUTPUT_FORMAT,
            "User-Agent": "speechcoach",
        }

        try:
            response = await self._client.post(self.endpoint, headers=headers, content=ssml.encode("utf-8"))
        except httpx.HTTPError as e:
            raise AdapterError(f"Azure TTS request failed: {e}") from e

        if response.status_code != 200:
            raise AdapterError(f"Azure TTS returned HTTP {response.status_code}: {response.text[:200]}")

        audio = response.content
        if not audio:
            raise EmptyResultError("Azure TTS returned no audio")

        logger.debug("TTS synthesized", chars=len(text), audio_bytes=len(audio))
        return audio

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
