"""
Static transition table for the main conversation flow.

Each step declares which intents are legal in it, which steps each
intent may lead to, and the step to recover to when an intent or a
transition is rejected. An intent can be legal but looping in one step
and legal and advancing in another. When an intent has several
candidate targets, the caller picks the actual one from that set.

Usage:
    assert is_intent_allowed(ConversationStep.GREETING, IntentType.GREETING)
    assert is_transition_allowed(
        ConversationStep.GREETING, ConversationStep.AWAITING_INTENT, IntentType.GREETING
    )
    assert get_fallback_state(ConversationStep.COLLECTING_NAME) == ConversationStep.COLLECTING_NAME
"""

import logging
from dataclasses import dataclass
from typing import Optional, Union

from flowbot.schemas.conversation_schema import ConversationStep, IntentType

logger = logging.getLogger(__name__)

# Wildcard intent bucket for fallback loops
ANY = "ANY"

TransitionKey = Union[IntentType, str]

S = ConversationStep
I = IntentType  # noqa: E741

_PROFILE_STEPS = (S.COLLECTING_NAME, S.COLLECTING_EMAIL, S.COLLECTING_PHONE, S.SHOWING_SLOTS)

_ENTRY_INTENTS = frozenset({
    I.GREETING, I.PRICING_QUESTION, I.TECHNICAL_SPECS, I.COMPANY_INFO,
    I.SCHEDULE_APPOINTMENT, I.ASK_QUESTION, I.VIEW_PAYMENT_HISTORY,
    I.OFF_TOPIC, I.HARMFUL_CONTENT, I.UNKNOWN,
})

_COLLECTING_INTENTS = frozenset({
    I.UNKNOWN, I.ASK_QUESTION, I.PRICING_QUESTION, I.OFF_TOPIC,
    I.HARMFUL_CONTENT, I.VIEW_PAYMENT_HISTORY,
})


class InvalidTransitionError(Exception):
    """Raised when a step change is requested that the table does not declare."""


@dataclass(frozen=True)
class StateDefinition:
    """Allowed intents, transition targets and recovery step for one step."""
    allowed_intents: frozenset[IntentType]
    transitions: dict[TransitionKey, tuple[ConversationStep, ...]]
    fallback_state: Optional[ConversationStep]


def _collecting(step: ConversationStep, field_intents: dict[IntentType, tuple]) -> StateDefinition:
    transitions: dict[TransitionKey, tuple[ConversationStep, ...]] = dict(field_intents)
    transitions.update({
        I.UNKNOWN: (step,),
        I.ASK_QUESTION: (S.AWAITING_INTENT, step),
        I.PRICING_QUESTION: (S.AWAITING_INTENT, step),
        I.VIEW_PAYMENT_HISTORY: (step,),
        I.OFF_TOPIC: (step,),
        I.HARMFUL_CONTENT: (step,),
        ANY: (step,),
    })
    return StateDefinition(
        allowed_intents=_COLLECTING_INTENTS | frozenset(field_intents),
        transitions=transitions,
        fallback_state=step,
    )


STATE_DEFINITIONS: dict[ConversationStep, StateDefinition] = {
    # --- Entry ---
    S.GREETING: StateDefinition(
        allowed_intents=_ENTRY_INTENTS,
        transitions={
            **{intent: (S.AWAITING_INTENT,) for intent in _ENTRY_INTENTS},
            I.SCHEDULE_APPOINTMENT: _PROFILE_STEPS + (S.AWAITING_INTENT,),
            ANY: (S.GREETING,),
        },
        fallback_state=S.AWAITING_INTENT,
    ),
    S.AWAITING_INTENT: StateDefinition(
        allowed_intents=_ENTRY_INTENTS,
        transitions={
            **{intent: (S.AWAITING_INTENT,) for intent in _ENTRY_INTENTS},
            I.SCHEDULE_APPOINTMENT: _PROFILE_STEPS,
            ANY: (S.AWAITING_INTENT,),
        },
        fallback_state=S.AWAITING_INTENT,
    ),

    # --- Profile collection (retry in place) ---
    S.COLLECTING_NAME: _collecting(S.COLLECTING_NAME, {
        I.PROVIDE_NAME: (S.COLLECTING_EMAIL, S.COLLECTING_PHONE, S.SHOWING_SLOTS),
    }),
    S.COLLECTING_EMAIL: _collecting(S.COLLECTING_EMAIL, {
        I.PROVIDE_EMAIL: (S.COLLECTING_PHONE, S.SHOWING_SLOTS),
    }),
    S.COLLECTING_PHONE: _collecting(S.COLLECTING_PHONE, {
        I.PROVIDE_PHONE: (S.SHOWING_SLOTS,),
        I.DECLINE_PHONE: (S.SHOWING_SLOTS,),
    }),

    # --- Scheduling ---
    S.SHOWING_SLOTS: StateDefinition(
        allowed_intents=frozenset({
            I.SELECT_TIME_SLOT, I.REQUEST_NEXT_WEEK, I.REQUEST_SPECIFIC_DATE,
            I.ASK_QUESTION, I.UNKNOWN, I.PRICING_QUESTION, I.OFF_TOPIC,
            I.HARMFUL_CONTENT, I.SCHEDULE_APPOINTMENT, I.VIEW_PAYMENT_HISTORY,
        }),
        transitions={
            I.SELECT_TIME_SLOT: (S.CONFIRMING,),
            I.REQUEST_NEXT_WEEK: (S.SHOWING_SLOTS,),
            I.REQUEST_SPECIFIC_DATE: (S.SHOWING_SLOTS,),
            I.ASK_QUESTION: (S.AWAITING_INTENT, S.SHOWING_SLOTS),
            I.PRICING_QUESTION: (S.AWAITING_INTENT,),
            I.UNKNOWN: (S.SHOWING_SLOTS,),
            I.OFF_TOPIC: (S.SHOWING_SLOTS,),
            I.HARMFUL_CONTENT: (S.SHOWING_SLOTS,),
            I.SCHEDULE_APPOINTMENT: (S.SHOWING_SLOTS,),
            I.VIEW_PAYMENT_HISTORY: (S.SHOWING_SLOTS,),
            ANY: (S.SHOWING_SLOTS,),
        },
        fallback_state=S.AWAITING_INTENT,
    ),
    S.CONFIRMING: StateDefinition(
        allowed_intents=frozenset({
            I.CONFIRM_APPOINTMENT, I.SELECT_TIME_SLOT, I.REQUEST_NEXT_WEEK,
            I.REQUEST_SPECIFIC_DATE, I.ASK_QUESTION, I.UNKNOWN, I.PRICING_QUESTION,
            I.OFF_TOPIC, I.HARMFUL_CONTENT, I.VIEW_PAYMENT_HISTORY,
        }),
        transitions={
            I.CONFIRM_APPOINTMENT: (S.COMPLETED, S.SHOWING_SLOTS),
            I.SELECT_TIME_SLOT: (S.CONFIRMING, S.SHOWING_SLOTS),
            I.REQUEST_NEXT_WEEK: (S.SHOWING_SLOTS,),
            I.REQUEST_SPECIFIC_DATE: (S.SHOWING_SLOTS,),
            I.ASK_QUESTION: (S.AWAITING_INTENT, S.CONFIRMING),
            I.PRICING_QUESTION: (S.AWAITING_INTENT,),
            I.UNKNOWN: (S.CONFIRMING,),
            I.OFF_TOPIC: (S.CONFIRMING,),
            I.HARMFUL_CONTENT: (S.CONFIRMING,),
            I.VIEW_PAYMENT_HISTORY: (S.CONFIRMING,),
            ANY: (S.CONFIRMING,),
        },
        fallback_state=S.AWAITING_INTENT,
    ),

    # --- Terminal, tolerant of off-topic ---
    S.COMPLETED: StateDefinition(
        allowed_intents=frozenset({
            I.SCHEDULE_APPOINTMENT, I.ASK_QUESTION, I.PRICING_QUESTION,
            I.TECHNICAL_SPECS, I.COMPANY_INFO, I.OFF_TOPIC, I.HARMFUL_CONTENT,
            I.UNKNOWN, I.VIEW_PAYMENT_HISTORY,
        }),
        transitions={
            I.SCHEDULE_APPOINTMENT: _PROFILE_STEPS,
            I.ASK_QUESTION: (S.AWAITING_INTENT,),
            I.PRICING_QUESTION: (S.AWAITING_INTENT,),
            I.TECHNICAL_SPECS: (S.AWAITING_INTENT,),
            I.COMPANY_INFO: (S.AWAITING_INTENT,),
            I.UNKNOWN: (S.AWAITING_INTENT,),
            I.OFF_TOPIC: (S.COMPLETED,),
            I.HARMFUL_CONTENT: (S.COMPLETED,),
            I.VIEW_PAYMENT_HISTORY: (S.COMPLETED,),
            ANY: (S.COMPLETED,),
        },
        fallback_state=S.AWAITING_INTENT,
    ),
}


def is_intent_allowed(step: ConversationStep, intent: IntentType) -> bool:
    """Return True if ``intent`` is declared for ``step``."""
    definition = STATE_DEFINITIONS.get(step)
    if definition is None:
        return False
    return intent in definition.allowed_intents


def get_transition_candidates(
    step: ConversationStep, intent: IntentType
) -> tuple[ConversationStep, ...]:
    """Return the targets declared for ``intent`` in ``step``, without the ANY bucket."""
    definition = STATE_DEFINITIONS.get(step)
    if definition is None:
        return ()
    return definition.transitions.get(intent, ())


def is_transition_allowed(
    from_step: ConversationStep, to_step: ConversationStep, intent: IntentType
) -> bool:
    """Return True if ``to_step`` is in the union of the intent's targets and ANY."""
    definition = STATE_DEFINITIONS.get(from_step)
    if definition is None:
        return False
    targets = definition.transitions.get(intent, ()) + definition.transitions.get(ANY, ())
    return to_step in targets


def get_fallback_state(step: ConversationStep) -> Optional[ConversationStep]:
    definition = STATE_DEFINITIONS.get(step)
    if definition is None:
        return None
    return definition.fallback_state


def require_transition(
    from_step: ConversationStep, to_step: ConversationStep, intent: IntentType
) -> ConversationStep:
    """Return ``to_step`` if the table allows it.

    Raises:
        InvalidTransitionError: If no declared target matches.
    """
    if is_transition_allowed(from_step, to_step, intent):
        logger.debug(
            "Step transition: %s -> %s (intent: %s)",
            from_step.value, to_step.value, intent.value,
        )
        return to_step
    valid = [s.value for s in get_transition_candidates(from_step, intent)]
    raise InvalidTransitionError(
        f"No transition from '{from_step.value}' to '{to_step.value}' "
        f"for intent '{intent.value}'. Valid targets: {valid}"
    )
