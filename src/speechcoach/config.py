"""
Configuration management for the speech-practice agent.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup; per-component credential checks raise
ConfigurationError when that component is constructed.
"""

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv
import structlog

from src.speechcoach.errors import ConfigurationError

load_dotenv()

logger = structlog.get_logger(__name__)

ASSESSMENT_MODES = ("two_step", "unscripted")


def to_stream_scheme(url: str) -> str:
    """Convert an http(s) URL to the matching ws(s) URL. Other schemes pass through."""
    if url.startswith("https://"):
        return "wss://" + url[len("https://"):]
    if url.startswith("http://"):
        return "ws://" + url[len("http://"):]
    return url


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_base_url: str = ""
    public_host: str = ""
    port: int = 7860
    log_level: str = "INFO"
    results_dir: str = "results"
    write_results: bool = True

    # Twilio
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from_number: str = ""

    # Deepgram (STT)
    deepgram_api_key: str = ""
    deepgram_model: str = "nova-2"
    deepgram_language: str = "en-US"

    # Azure Speech (pronunciation assessment + TTS)
    azure_speech_key: str = ""
    azure_speech_region: str = ""
    azure_speech_language: str = "en-US"
    azure_tts_voice: str = "en-US-AriaNeural"
    azure_tts_rate: str = "+0%"
    azure_tts_pitch: str = "+0Hz"

    # LLM Provider (Groq/OpenAI)
    llm_provider: str = "groq"  # "groq" | "openai"
    groq_api_key: str = ""
    groq_model: str = "llama-3.3-70b-versatile"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    reply_max_words: int = 15

    # Pronunciation assessment
    assessment_mode: str = "two_step"  # "two_step" | "unscripted"
    assessment_buffer_seconds: float = 20.0
    assessment_timeout_seconds: float = 15.0
    assessment_enable_miscue: bool = True
    assessment_enable_prosody: bool = True

    # Voice activity detection
    vad_speech_threshold: float = 800.0
    vad_silence_threshold: float = 200.0
    vad_silence_duration_ms: int = 800
    vad_speech_start_frames: int = 2
    vad_history_size: int = 5

    # Turn-taking
    turn_grace_ms: int = 300
    min_transcript_chars: int = 2
    playback_cooldown_ms: int = 100

    # Session / feedback
    feedback_delay_seconds: float = 30.0
    max_session_audio_seconds: float = 0.0  # 0 = keep the whole call

    @property
    def base_url(self) -> str:
        """Get the base HTTP URL (scheme included)."""
        if self.public_base_url:
            return self.public_base_url.rstrip("/")
        if self.public_host:
            return f"https://{self.public_host}"
        return f"http://localhost:{self.port}"

    @property
    def ws_url(self) -> str:
        """Get the media-stream WebSocket URL."""
        return f"{to_stream_scheme(self.base_url)}/api/media-stream"

    @property
    def llm_model(self) -> str:
        return self.openai_model if self.llm_provider == "openai" else self.groq_model

    def require_deepgram(self) -> None:
        if not self.deepgram_api_key:
            raise ConfigurationError("Deepgram API key not configured. Set DEEPGRAM_API_KEY.")

    def require_azure_speech(self) -> None:
        missing = []
        if not self.azure_speech_key:
            missing.append("AZURE_SPEECH_KEY")
        if not self.azure_speech_region:
            missing.append("AZURE_SPEECH_REGION")
        if missing:
            raise ConfigurationError(
                f"Azure Speech credentials not configured. Set {', '.join(missing)}."
            )

    def require_llm(self) -> None:
        provider = (self.llm_provider or "groq").strip().lower()
        if provider not in ("groq", "openai"):
            raise ConfigurationError(
                f"Invalid LLM_PROVIDER '{self.llm_provider}'. Expected 'groq' or 'openai'."
            )
        if provider == "groq" and not self.groq_api_key:
            raise ConfigurationError("GROQ_API_KEY not configured")
        if provider == "openai" and not self.openai_api_key:
            raise ConfigurationError("OPENAI_API_KEY not configured")

    def require_twilio(self) -> None:
        if not self.twilio_account_sid or not self.twilio_auth_token:
            raise ConfigurationError("Twilio credentials not configured")

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.public_base_url and not self.public_host:
            missing.append("PUBLIC_BASE_URL (or PUBLIC_HOST)")
        if not self.twilio_account_sid:
            missing.append("TWILIO_ACCOUNT_SID")
        if not self.twilio_auth_token:
            missing.append("TWILIO_AUTH_TOKEN")
        if not self.deepgram_api_key:
            missing.append("DEEPGRAM_API_KEY")
        if not self.azure_speech_key:
            missing.append("AZURE_SPEECH_KEY")
        if not self.azure_speech_region:
            missing.append("AZURE_SPEECH_REGION")

        provider = (self.llm_provider or "groq").strip().lower()
        if provider not in ("groq", "openai"):
            raise ConfigurationError(
                f"Invalid LLM_PROVIDER '{self.llm_provider}'. Expected 'groq' or 'openai'."
            )
        if provider == "groq" and not self.groq_api_key:
            missing.append("GROQ_API_KEY")
        if provider == "openai" and not self.openai_api_key:
            missing.append("OPENAI_API_KEY")

        if self.assessment_mode not in ASSESSMENT_MODES:
            raise ConfigurationError(
                f"Invalid ASSESSMENT_MODE '{self.assessment_mode}'. "
                f"Expected one of: {', '.join(ASSESSMENT_MODES)}."
            )
        if self.vad_speech_threshold <= self.vad_silence_threshold:
            raise ConfigurationError(
                "VAD_SPEECH_THRESHOLD must be greater than VAD_SILENCE_THRESHOLD"
            )

        if missing:
            raise ConfigurationError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            base_url=self.base_url,
            ws_url=self.ws_url,
            port=self.port,
            log_level=self.log_level,
            results_dir=self.results_dir,
            deepgram_model=self.deepgram_model,
            azure_speech_region=self.azure_speech_region,
            azure_tts_voice=self.azure_tts_voice,
            llm_provider=self.llm_provider,
            llm_model=self.llm_model,
            assessment_mode=self.assessment_mode,
            feedback_delay_seconds=self.feedback_delay_seconds,
            vad_speech_threshold=self.vad_speech_threshold,
            vad_silence_threshold=self.vad_silence_threshold,
            vad_silence_duration_ms=self.vad_silence_duration_ms,
            twilio_sid_prefix=self.twilio_account_sid[:6] + "..." if self.twilio_account_sid else "NOT SET",
            deepgram_key_set=bool(self.deepgram_api_key),
            azure_key_set=bool(self.azure_speech_key),
            groq_key_set=bool(self.groq_api_key),
            openai_key_set=bool(self.openai_api_key),
        )


def _get_bool(key: str, default: bool = False) -> bool:
    """Get a boolean from environment variable."""
    value = os.getenv(key, "").lower()
    if value in ("true", "1", "yes", "on"):
        return True
    if value in ("false", "0", "no", "off"):
        return False
    return default


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    assessment_mode = os.getenv("ASSESSMENT_MODE", "two_step").strip().lower().replace("-", "_")

    return Config(
        # Server
        public_base_url=os.getenv("PUBLIC_BASE_URL", "").strip(),
        public_host=os.getenv("PUBLIC_HOST", "").strip(),
        port=_get_int("PORT", 7860),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        results_dir=os.getenv("RESULTS_DIR", "results"),
        write_results=_get_bool("WRITE_RESULTS", True),

        # Twilio
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
        twilio_from_number=os.getenv("TWILIO_FROM_NUMBER", ""),

        # Deepgram
        deepgram_api_key=os.getenv("DEEPGRAM_API_KEY", ""),
        deepgram_model=os.getenv("DEEPGRAM_MODEL", "nova-2"),
        deepgram_language=os.getenv("DEEPGRAM_LANGUAGE", "en-US"),

        # Azure Speech
        azure_speech_key=os.getenv("AZURE_SPEECH_KEY", ""),
        azure_speech_region=os.getenv("AZURE_SPEECH_REGION", ""),
        azure_speech_language=os.getenv("AZURE_SPEECH_LANGUAGE", "en-US"),
        azure_tts_voice=os.getenv("AZURE_TTS_VOICE", "en-US-AriaNeural"),
        azure_tts_rate=os.getenv("AZURE_TTS_RATE", "+0%"),
        azure_tts_pitch=os.getenv("AZURE_TTS_PITCH", "+0Hz"),

        # LLM Provider
        llm_provider=os.getenv("LLM_PROVIDER", "groq").strip().lower(),
        groq_api_key=os.getenv("GROQ_API_KEY", ""),
        groq_model=os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile"),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        reply_max_words=_get_int("REPLY_MAX_WORDS", 15),

        # Pronunciation assessment
        assessment_mode=assessment_mode,
        assessment_buffer_seconds=_get_float("ASSESSMENT_BUFFER_SECONDS", 20.0),
        assessment_timeout_seconds=_get_float("ASSESSMENT_TIMEOUT_SECONDS", 15.0),
        assessment_enable_miscue=_get_bool("ASSESSMENT_ENABLE_MISCUE", True),
        assessment_enable_prosody=_get_bool("ASSESSMENT_ENABLE_PROSODY", True),

        # VAD
        vad_speech_threshold=_get_float("VAD_SPEECH_THRESHOLD", 800.0),
        vad_silence_threshold=_get_float("VAD_SILENCE_THRESHOLD", 200.0),
        vad_silence_duration_ms=_get_int("VAD_SILENCE_DURATION_MS", 800),
        vad_speech_start_frames=_get_int("VAD_SPEECH_START_FRAMES", 2),
        vad_history_size=_get_int("VAD_HISTORY_SIZE", 5),

        # Turn-taking
        turn_grace_ms=_get_int("TURN_GRACE_MS", 300),
        min_transcript_chars=_get_int("MIN_TRANSCRIPT_CHARS", 2),
        playback_cooldown_ms=_get_int("PLAYBACK_COOLDOWN_MS", 100),

        # Session / feedback
        feedback_delay_seconds=_get_float("FEEDBACK_DELAY_SECONDS", 30.0),
        max_session_audio_seconds=_get_float("MAX_SESSION_AUDIO_SECONDS", 0.0),
    )


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
