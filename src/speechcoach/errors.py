"""
Error taxonomy for the speech-practice agent.

Adapter-level errors never cross the orchestrator boundary: they are delivered
through `on_error` callbacks or caught where a fallback utterance exists.
"""

from typing import Optional


class SpeechCoachError(Exception):
    """Base class for all agent errors."""
    pass


class ConfigurationError(SpeechCoachError):
    """Raised when configuration is invalid or credentials are missing."""
    pass


class TransportError(SpeechCoachError):
    """The media-stream connection is closed or not ready for sending."""
    pass


class FormatError(SpeechCoachError):
    """Malformed audio container or protocol payload."""
    pass


class AdapterError(SpeechCoachError):
    """An external capability (ASR, assessment, generation, synthesis) failed."""
    pass


class EmptyResultError(AdapterError):
    """An external capability answered, but with nothing usable."""
    pass


class EmptyGenerationError(EmptyResultError):
    """The language model returned an empty response."""
    pass


class QueueItemError(AdapterError):
    """A single queued assessment item failed; the queue keeps going."""

    def __init__(self, message: str, *, reference_text: str = "", cause: Optional[Exception] = None):
        super().__init__(message)
        self.reference_text = reference_text
        self.cause = cause
