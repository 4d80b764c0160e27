"""
Intent classifier contract and a deterministic keyword classifier.

Production deployments plug an NLU or LLM classifier in behind the
``IntentClassifier`` protocol. The keyword classifier covers the English
and Spanish phrasings the console demo and the tests use, and it reads
the current step so that bare answers ("Ana", "2", "skip") map to the
intent the step is waiting for.
"""

import logging
import re
from typing import Optional, Protocol

from flowbot.conversation.profile_fields import EMAIL_PATTERN
from flowbot.payments.matchers import (
    ReplyKind,
    classify_reply,
    is_history_request,
    is_payment_intent,
)
from flowbot.schemas.conversation_schema import ConversationStep, IntentType
from flowbot.schemas.intent_schema import ClassificationContext, IntentEntities, IntentResult

logger = logging.getLogger(__name__)

EMAIL_SEARCH = re.compile(r"[^\s@]+@[^\s@]+\.[^\s@]+")
PHONE_SEARCH = re.compile(r"\+?[\d\s().-]{7,}")
DATE_SEARCH = re.compile(r"\b(\d{4}-\d{2}-\d{2})\b")
SLOT_CHOICE = re.compile(r"^\s*(?:(?:option|opción|opcion|slot|horario|number|número|numero)\s*)?#?(\d{1,2})\s*[.)]?\s*$", re.IGNORECASE)

GREETING_WORDS = [
    "hola", "hi", "hello", "hey", "buenos días", "buenos dias", "buenas tardes",
    "buenas noches", "good morning", "good afternoon", "good evening",
]
SCHEDULE_WORDS = [
    "book", "appointment", "schedule", "meeting", "reserve",
    "agendar", "cita", "reservar", "agenda", "reunión", "reunion",
]
PRICING_WORDS = [
    "price", "pricing", "cost", "how much", "fee", "rates",
    "precio", "precios", "cuánto", "cuanto", "costo", "tarifa",
]
TECHNICAL_WORDS = [
    "specs", "specification", "technical", "features", "integration", "api",
    "especificaciones", "técnico", "tecnico", "características", "caracteristicas", "integración",
]
COMPANY_WORDS = [
    "who are you", "about you", "your company", "about the company",
    "quiénes son", "quienes son", "quién eres", "quien eres", "empresa",
]
OFF_TOPIC_WORDS = [
    "weather", "football", "soccer", "joke", "recipe", "movie",
    "clima", "fútbol", "futbol", "chiste", "receta", "película",
]
HARMFUL_WORDS = [
    "kill", "bomb", "weapon", "hack into", "matar", "bomba", "arma", "hackear",
]
NEXT_WEEK_WORDS = [
    "next week", "following week", "other week",
    "próxima semana", "proxima semana", "siguiente semana", "otra semana",
]
SPECIFIC_DATE_WORDS = ["specific date", "another date", "fecha específica", "fecha especifica", "otra fecha"]
DECLINE_PHONE_WORDS = [
    "skip", "no phone", "rather not", "prefer not", "no thanks",
    "omitir", "prefiero no", "sin teléfono", "sin telefono", "no gracias", "paso",
]


class IntentClassifier(Protocol):
    async def classify(self, message: str, context: ClassificationContext) -> IntentResult: ...


def _contains_any(text: str, words: list[str]) -> bool:
    return any(re.search(rf"(?<!\w){re.escape(w)}(?!\w)", text) for w in words)


class KeywordIntentClassifier:
    """Deterministic, step-aware keyword classifier."""

    async def classify(self, message: str, context: ClassificationContext) -> IntentResult:
        result = self._classify(message.strip(), context)
        logger.debug(
            "Classified as %s (step: %s)", result.intent.value, context.current_step.value
        )
        return result

    def _classify(self, text: str, context: ClassificationContext) -> IntentResult:
        lower = text.lower()
        step = context.current_step

        if _contains_any(lower, HARMFUL_WORDS):
            return IntentResult(intent=IntentType.HARMFUL_CONTENT, confidence=0.9)
        if is_history_request(lower):
            return IntentResult(intent=IntentType.VIEW_PAYMENT_HISTORY, confidence=0.9)
        if is_payment_intent(lower):
            return IntentResult(intent=IntentType.REQUEST_PAYMENT_LINK, confidence=0.9)

        step_result = self._classify_for_step(text, lower, step, context)
        if step_result is not None:
            return step_result

        if _contains_any(lower, SCHEDULE_WORDS):
            return IntentResult(intent=IntentType.SCHEDULE_APPOINTMENT, confidence=0.85)
        if _contains_any(lower, PRICING_WORDS):
            return IntentResult(intent=IntentType.PRICING_QUESTION, confidence=0.85)
        if _contains_any(lower, TECHNICAL_WORDS):
            return IntentResult(intent=IntentType.TECHNICAL_SPECS, confidence=0.8)
        if _contains_any(lower, COMPANY_WORDS):
            return IntentResult(intent=IntentType.COMPANY_INFO, confidence=0.8)
        if _contains_any(lower, OFF_TOPIC_WORDS):
            return IntentResult(intent=IntentType.OFF_TOPIC, confidence=0.8)
        if _contains_any(lower, GREETING_WORDS):
            return IntentResult(intent=IntentType.GREETING, confidence=0.9)

        if step == ConversationStep.COLLECTING_NAME and not text.endswith("?"):
            return IntentResult(
                intent=IntentType.PROVIDE_NAME,
                confidence=0.6,
                entities=IntentEntities(name=text),
            )
        if text.endswith("?") or text.startswith("¿"):
            return IntentResult(intent=IntentType.ASK_QUESTION, confidence=0.6)
        return IntentResult(intent=IntentType.UNKNOWN, confidence=0.3)

    def _classify_for_step(
        self, text: str, lower: str, step: ConversationStep, context: ClassificationContext
    ) -> Optional[IntentResult]:
        if step == ConversationStep.COLLECTING_EMAIL:
            match = EMAIL_SEARCH.search(text)
            if match and EMAIL_PATTERN.match(match.group(0)):
                return IntentResult(
                    intent=IntentType.PROVIDE_EMAIL,
                    confidence=0.95,
                    entities=IntentEntities(email=match.group(0)),
                )
            if "@" in text:
                return IntentResult(intent=IntentType.PROVIDE_EMAIL, confidence=0.5)

        if step == ConversationStep.COLLECTING_PHONE:
            if _contains_any(lower, DECLINE_PHONE_WORDS) or lower in ("no", "n"):
                return IntentResult(intent=IntentType.DECLINE_PHONE, confidence=0.9)
            match = PHONE_SEARCH.search(text)
            if match:
                return IntentResult(
                    intent=IntentType.PROVIDE_PHONE,
                    confidence=0.9,
                    entities=IntentEntities(phone=match.group(0).strip()),
                )

        if step in (ConversationStep.SHOWING_SLOTS, ConversationStep.CONFIRMING):
            choice = SLOT_CHOICE.match(text)
            if choice:
                return IntentResult(
                    intent=IntentType.SELECT_TIME_SLOT,
                    confidence=0.9,
                    entities=IntentEntities(slot_id=choice.group(1)),
                )
            if _contains_any(lower, NEXT_WEEK_WORDS):
                return IntentResult(
                    intent=IntentType.REQUEST_NEXT_WEEK,
                    confidence=0.9,
                    entities=IntentEntities(week_preference="next"),
                )
            date_match = DATE_SEARCH.search(text)
            if date_match or _contains_any(lower, SPECIFIC_DATE_WORDS):
                return IntentResult(
                    intent=IntentType.REQUEST_SPECIFIC_DATE,
                    confidence=0.85,
                    entities=IntentEntities(
                        specific_date=date_match.group(1) if date_match else None
                    ),
                )

        if step == ConversationStep.CONFIRMING:
            if classify_reply(text, context.language) == ReplyKind.AFFIRMATIVE:
                return IntentResult(intent=IntentType.CONFIRM_APPOINTMENT, confidence=0.9)

        return None
