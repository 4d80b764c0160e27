from flowbot.conversation.guardrails import GuardrailPipeline
from flowbot.conversation.language import LanguageDetector
from flowbot.conversation.state_store import (
    SessionStateStore,
    create_initial_state,
    deserialize_state,
    serialize_state,
)
from flowbot.conversation.transition_table import (
    InvalidTransitionError,
    get_fallback_state,
    is_intent_allowed,
    is_transition_allowed,
)

__all__ = [
    "SessionStateStore",
    "create_initial_state",
    "serialize_state",
    "deserialize_state",
    "GuardrailPipeline",
    "LanguageDetector",
    "InvalidTransitionError",
    "is_intent_allowed",
    "is_transition_allowed",
    "get_fallback_state",
]
