"""
Language detection for English and Spanish messages.

Heuristics run first: Spanish diacritics and inverted punctuation, then
keyword counts. Only longer messages the heuristics cannot decide are
sent to the optional LLM detector. Short or neutral input ("1", an email
address, a name) keeps the session's previous language.
"""

import logging
import re
from typing import Optional, Protocol

from flowbot.config import settings
from flowbot.schemas.conversation_schema import Language

logger = logging.getLogger(__name__)

SPANISH_MARKERS = re.compile(r"[áéíóúñü¿¡]", re.IGNORECASE)
WORD_PATTERN = re.compile(r"[a-záéíóúñü]+")

SPANISH_KEYWORDS = frozenset({
    "hola", "gracias", "favor", "quiero", "necesito", "cita", "agendar", "reservar",
    "pago", "pagar", "enlace", "precio", "cuanto", "costo", "buenos", "buenas",
    "dias", "tardes", "noches", "si", "que", "como", "donde", "cuando", "semana",
    "proxima", "siguiente", "horario", "horarios", "nombre", "correo", "confirmar",
    "claro", "vale", "quien", "empresa", "ayuda", "tengo", "puedo", "el", "la",
    "los", "las", "de", "del", "por", "para", "con", "una", "un", "mi", "es",
    "mas", "historial", "pagos", "comprar", "dame", "genera", "crea",
})

ENGLISH_KEYWORDS = frozenset({
    "hi", "hello", "hey", "thanks", "thank", "please", "want", "need", "book",
    "appointment", "schedule", "payment", "pay", "price", "cost", "how", "what",
    "when", "where", "the", "is", "are", "my", "your", "yes", "next", "week",
    "confirm", "sure", "help", "can", "you", "to", "for", "and", "of", "with",
    "more", "history", "buy", "show", "good", "morning", "who", "company",
})


class LanguageModelDetector(Protocol):
    async def detect(self, text: str) -> Optional[Language]: ...


def _strip_accents(word: str) -> str:
    return word.translate(str.maketrans("áéíóúü", "aeiouu"))


def detect_heuristic(text: str) -> Optional[Language]:
    """Return the language the heuristics are sure about, or None."""
    if SPANISH_MARKERS.search(text):
        return Language.ES

    words = [_strip_accents(w) for w in WORD_PATTERN.findall(text.lower())]
    spanish = sum(1 for w in words if w in SPANISH_KEYWORDS)
    english = sum(1 for w in words if w in ENGLISH_KEYWORDS)
    if spanish > english:
        return Language.ES
    if english > spanish:
        return Language.EN
    return None


class LanguageDetector:
    """Heuristic-first detector with an optional slower LLM fallback."""

    def __init__(
        self,
        llm_detector: Optional[LanguageModelDetector] = None,
        min_llm_length: Optional[int] = None,
    ) -> None:
        self._llm = llm_detector
        self._min_llm_length = min_llm_length or settings.language.llm_min_length

    async def detect(self, text: str, previous: Optional[Language] = None) -> Language:
        fallback = previous or Language(settings.bot.default_language)

        detected = detect_heuristic(text)
        if detected is not None:
            return detected

        if self._llm is None or len(text.strip()) < self._min_llm_length:
            return fallback

        try:
            detected = await self._llm.detect(text)
        except Exception as e:
            logger.warning("LLM language detection failed: %s", e)
            return fallback
        return detected or fallback
