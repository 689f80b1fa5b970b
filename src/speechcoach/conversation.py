"""
Conversation engine over an OpenAI-compatible chat API (Groq or OpenAI).

Stateless per call: dialogue history is passed in by the caller (the call
session is the source of truth). Replies are kept short for phone playback by
instruction: every user message carries a word-budget reminder.

No retries here. An empty completion raises EmptyGenerationError and a
transport/API failure raises AdapterError; the orchestrator decides what the
caller hears.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import httpx
import structlog
from openai import AsyncOpenAI

from src.speechcoach.config import get_config
from src.speechcoach.errors import AdapterError, ConfigurationError, EmptyGenerationError

logger = structlog.get_logger(__name__)

GROQ_BASE_URL = "https://api.groq.com/openai/v1"
OPENAI_BASE_URL = "https://api.openai.com/v1"

DEFAULT_SYSTEM_PROMPT = (
    "You are a friendly English pronunciation tutor. Have natural, helpful "
    "conversations with students to help them practice speaking English. "
    "Keep responses concise (1-2 sentences) for phone conversations."
)

FEEDBACK_SYSTEM_PROMPT = (
    "You are a pronunciation and speech coach giving spoken feedback at the "
    "end of a short phone practice session."
)

FALLBACK_APOLOGY = "I'm sorry, I didn't catch that. Could you repeat?"


def reply_reminder(max_words: int) -> str:
    return f"[Remember: MAXIMUM {max_words} WORDS. One short sentence only.]"


@dataclass
class DialogueTurn:
    """A single turn in the conversation."""
    role: str  # "user" or "assistant"
    text: str


def _chat_role(role: str) -> str:
    return "user" if role == "user" else "assistant"


class ConversationEngine:
    """
    Reply and feedback generation.

    Uses the OpenAI client with the Groq base URL when LLM_PROVIDER=groq.

    Raises:
        ConfigurationError: At construction when the provider key is missing
    """

    def __init__(self, config: Optional[Any] = None, client: Optional[AsyncOpenAI] = None):
        if config is None:
            config = get_config()
        config.require_llm()

        self.config = config
        self.provider = (config.llm_provider or "groq").strip().lower()
        self.model = config.llm_model
        self.max_words = config.reply_max_words

        if client is not None:
            self._client = client
        elif self.provider == "openai":
            self._client = AsyncOpenAI(api_key=config.openai_api_key)
        else:
            self._client = AsyncOpenAI(api_key=config.groq_api_key, base_url=GROQ_BASE_URL)

    def build_messages(
        self,
        history: Sequence[DialogueTurn],
        current_utterance: str,
        system_prompt: Optional[str] = None,
    ) -> List[Dict[str, str]]:
        messages = [{"role": "system", "content": system_prompt or DEFAULT_SYSTEM_PROMPT}]
        messages.extend(
            {"role": _chat_role(turn.role), "content": turn.text}
            for turn in history
        )
        messages.append({
            "role": "user",
            "content": f"{current_utterance}\n\n{reply_reminder(self.max_words)}",
        })
        return messages

    async def generate_reply(
        self,
        history: Sequence[DialogueTurn],
        current_utterance: str,
        system_prompt: Optional[str] = None,
    ) -> str:
        """
        Generate a short spoken reply to the caller's latest utterance.

        Args:
            history: Prior turns, oldest first, not including the current utterance
            current_utterance: What the caller just said
            system_prompt: Persona override (defaults to the tutor prompt)
        """
        messages = self.build_messages(history, current_utterance, system_prompt)
        logger.debug(
            "Generating reply",
            history_length=len(history),
            utterance=current_utterance[:50],
        )
        return await self._complete(messages, max_tokens=60)

    async def generate_feedback(self, prompt: str) -> str:
        """Generate a 2-3 sentence coaching utterance from a session summary prompt."""
        messages = [
            {"role": "system", "content": FEEDBACK_SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ]
        return await self._complete(messages, max_tokens=200)

    async def _complete(self, messages: List[Dict[str, str]], *, max_tokens: int) -> str:
        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                messages=messages,
                max_tokens=max_tokens,
                temperature=0.7,
            )
        except Exception as e:
            logger.error("LLM generation failed", error_type=type(e).__name__, error=str(e))
            raise AdapterError(f"Text generation failed: {e}") from e

        text = ""
        if response.choices:
            text = (response.choices[0].message.content or "").strip()
        if not text:
            raise EmptyGenerationError("Empty response from language model")

        logger.debug("LLM response", text=text[:80])
        return text


async def validate_llm_model(config: Optional[Any] = None) -> bool:
    """
    Check the configured model exists on the provider.

    Calls GET {base_url}/models.

    Raises:
        ConfigurationError: If the provider rejects the key or the model is unknown
    """
    if config is None:
        config = get_config()
    config.require_llm()

    provider = (config.llm_provider or "groq").strip().lower()
    base_url = OPENAI_BASE_URL if provider == "openai" else GROQ_BASE_URL
    api_key = config.openai_api_key if provider == "openai" else config.groq_api_key
    model_name = config.llm_model

    logger.info("Validating LLM model", provider=provider, model=model_name)

    async with httpx.AsyncClient() as client:
        try:
            response = await client.get(
                f"{base_url}/models",
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=10.0,
            )
        except httpx.RequestError as e:
            raise ConfigurationError(f"Failed to connect to {provider} API: {e}") from e

    if response.status_code != 200:
        raise ConfigurationError(
            f"Failed to validate {provider} model. API returned status {response.status_code}."
        )

    model_ids = [m.get("id") for m in response.json().get("data", [])]
    if model_name not in model_ids:
        available = ", ".join(sorted(i for i in model_ids if i)[:10])
        raise ConfigurationError(
            f"Model '{model_name}' not found. Available models include: {available}"
        )

    logger.info("LLM model validated successfully", model=model_name)
    return True
