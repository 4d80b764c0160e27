"""
Guard rails for off-topic and harmful user input.

Three independent checks, each covering a different concern:
1. IntentGuardrail: intents the classifier already flagged as guarded
2. ContentGuardrail: keyword backstop for harmful text the classifier missed
3. ScopeGuardrail: off-topic subjects in otherwise unclassified messages

They are composed into a GuardrailPipeline that runs before the
transition table sees the intent. A guard rail never advances the
conversation; the transition table decides where a guarded intent lands.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional

from flowbot.schemas.conversation_schema import IntentType

logger = logging.getLogger(__name__)


@dataclass
class GuardrailResult:
    """Outcome of a single guard rail check."""
    passed: bool
    violation_type: Optional[str] = None
    message_key: Optional[str] = None
    severity: str = "warning"  # "warning" | "redirect" | "block"

    @property
    def guarded_intent(self) -> Optional[IntentType]:
        if self.passed:
            return None
        if self.violation_type == "harmful_content":
            return IntentType.HARMFUL_CONTENT
        return IntentType.OFF_TOPIC


_OFF_TOPIC = GuardrailResult(
    passed=False,
    violation_type="off_topic",
    message_key="offTopicGuardRail",
    severity="redirect",
)
_HARMFUL = GuardrailResult(
    passed=False,
    violation_type="harmful_content",
    message_key="harmfulGuardRail",
    severity="block",
)


class IntentGuardrail:
    """Maps classifier intents that are guarded by definition."""

    def check_intent(self, intent: IntentType) -> GuardrailResult:
        if intent == IntentType.HARMFUL_CONTENT:
            return _HARMFUL
        if intent == IntentType.OFF_TOPIC:
            return _OFF_TOPIC
        return GuardrailResult(passed=True)


class ContentGuardrail:
    """Catches harmful phrasing regardless of the classified intent."""

    HARMFUL_KEYWORDS = [
        "kill", "bomb", "weapon", "explosive", "hack into", "steal",
        "matar", "bomba", "arma", "explosivo", "hackear", "robar",
    ]

    def __init__(self) -> None:
        self._pattern = re.compile(
            r"\b(" + "|".join(re.escape(k) for k in self.HARMFUL_KEYWORDS) + r")\b",
            re.IGNORECASE,
        )

    def check_text(self, text: str) -> GuardrailResult:
        match = self._pattern.search(text)
        if match:
            logger.info("Harmful keyword detected: '%s'", match.group(0).lower())
            return _HARMFUL
        return GuardrailResult(passed=True)


class ScopeGuardrail:
    """Flags unclassified messages about subjects outside the assistant's scope."""

    OUT_OF_SCOPE_TOPICS = [
        "weather", "football", "soccer", "recipe", "horoscope", "politics",
        "lottery", "joke", "clima", "fútbol", "futbol", "receta",
        "horóscopo", "política", "lotería", "chiste",
    ]

    # Only these intents are second-guessed; a confident intent wins
    SCOPED_INTENTS = frozenset({IntentType.UNKNOWN, IntentType.ASK_QUESTION})

    def check_topic_scope(self, text: str, intent: IntentType) -> GuardrailResult:
        if intent not in self.SCOPED_INTENTS:
            return GuardrailResult(passed=True)
        lower = text.lower()
        for topic in self.OUT_OF_SCOPE_TOPICS:
            if re.search(rf"\b{re.escape(topic)}\b", lower):
                logger.info("Out-of-scope topic detected: '%s'", topic)
                return _OFF_TOPIC
        return GuardrailResult(passed=True)


class GuardrailPipeline:
    """Composes all guard rails into a single pre-routing check."""

    def __init__(self) -> None:
        self.intent = IntentGuardrail()
        self.content = ContentGuardrail()
        self.scope = ScopeGuardrail()

    def check_user_input(self, text: str, intent: IntentType) -> list[GuardrailResult]:
        """Return only the failed checks, most severe first."""
        results = [
            self.content.check_text(text),
            self.intent.check_intent(intent),
            self.scope.check_topic_scope(text, intent),
        ]
        failed = [r for r in results if not r.passed]
        failed.sort(key=lambda r: r.severity != "block")
        return failed

    def apply(self, text: str, intent: IntentType) -> tuple[IntentType, Optional[GuardrailResult]]:
        """Return the intent to route with and the guard rail that fired, if any."""
        failed = self.check_user_input(text, intent)
        if not failed:
            return intent, None
        result = failed[0]
        return result.guarded_intent or intent, result

    def check_harmful(self, text: str, intent: IntentType) -> Optional[GuardrailResult]:
        """Harmful-content check alone, for input the main flow never routes."""
        for result in (self.content.check_text(text), self.intent.check_intent(intent)):
            if result.violation_type == "harmful_content":
                return result
        return None
