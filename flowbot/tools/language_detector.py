"""
LLM-backed language detection, used only when the heuristics are unsure.

Talks to any OpenAI-compatible chat completions endpoint. The API key and
base URL are read by the client from OPENAI_API_KEY / OPENAI_BASE_URL.
"""

import logging
from typing import Optional

from openai import AsyncOpenAI

from flowbot.config import settings
from flowbot.prompts.system_prompts import LANGUAGE_DETECTION_PROMPT
from flowbot.schemas.conversation_schema import Language

logger = logging.getLogger(__name__)


class OpenAILanguageDetector:
    """Asks a chat model for a one-word language code."""

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> None:
        self._client = client or AsyncOpenAI()
        self._model = model or settings.language.llm_model
        self._temperature = (
            settings.language.llm_temperature if temperature is None else temperature
        )

    async def detect(self, text: str) -> Optional[Language]:
        response = await self._client.chat.completions.create(
            model=self._model,
            temperature=self._temperature,
            max_tokens=3,
            messages=[
                {"role": "system", "content": LANGUAGE_DETECTION_PROMPT},
                {"role": "user", "content": text},
            ],
        )
        answer = (response.choices[0].message.content or "").strip().lower()
        logger.debug("LLM language answer: %r", answer)
        try:
            return Language(answer)
        except ValueError:
            return None


def build_language_detector() -> Optional[OpenAILanguageDetector]:
    """Return the LLM detector if enabled in configuration."""
    if not settings.language.llm_fallback_enabled:
        return None
    return OpenAILanguageDetector()
