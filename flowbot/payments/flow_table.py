"""
Declarative stage table for the payment sub-flow.

Mirrors the main transition table: every stage declares the events it
reacts to and the single stage each event leads to. The orchestrator
turns raw input into an event and asks the table where to go; it never
assigns a stage on its own.

Usage:
    stage = next_stage(PaymentStage.IDLE, PaymentEvent.PAYMENT_REQUESTED)
    assert stage == PaymentStage.AWAITING_PRODUCT
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from flowbot.schemas.conversation_schema import PaymentStage, PendingAction

logger = logging.getLogger(__name__)


class PaymentEvent(str, Enum):
    """Interpretations of a user message inside the payment sub-flow."""
    PAYMENT_REQUESTED = "payment_requested"
    HISTORY_REQUESTED = "history_requested"
    NO_PRODUCTS = "no_products"
    VALID_INPUT = "valid_input"
    INVALID_INPUT = "invalid_input"
    AFFIRMATIVE = "affirmative"
    NEGATIVE = "negative"
    OTHER = "other"
    GATEWAY_ERROR = "gateway_error"
    HISTORY_MORE = "history_more"
    EXIT = "exit"
    EXIT_WITH_LINK = "exit_with_link"


class InvalidStageTransitionError(Exception):
    """Raised when an event is not declared for the current stage."""


@dataclass(frozen=True)
class StageDefinition:
    description: str
    transitions: dict[PaymentEvent, PaymentStage]
    pending_action: Optional[PendingAction] = None


P = PaymentStage
E = PaymentEvent

PAYMENT_FLOW: dict[PaymentStage, StageDefinition] = {
    P.IDLE: StageDefinition(
        description="No payment in progress",
        transitions={
            E.PAYMENT_REQUESTED: P.AWAITING_PRODUCT,
            E.NO_PRODUCTS: P.IDLE,
            E.HISTORY_REQUESTED: P.HISTORY,
        },
    ),
    P.AWAITING_PRODUCT: StageDefinition(
        description="Catalog listed, waiting for an index or product name",
        transitions={
            E.VALID_INPUT: P.AWAITING_NAME,
            E.INVALID_INPUT: P.AWAITING_PRODUCT,
            E.PAYMENT_REQUESTED: P.AWAITING_PRODUCT,
            E.NO_PRODUCTS: P.IDLE,
        },
        pending_action=PendingAction.PAYMENT_SELECT_PRODUCT,
    ),
    P.AWAITING_NAME: StageDefinition(
        description="Product frozen, collecting the payer name",
        transitions={
            E.VALID_INPUT: P.AWAITING_EMAIL,
            E.INVALID_INPUT: P.AWAITING_NAME,
        },
        pending_action=PendingAction.PAYMENT_COLLECT_NAME,
    ),
    P.AWAITING_EMAIL: StageDefinition(
        description="Collecting the receipt email",
        transitions={
            E.VALID_INPUT: P.AWAITING_CONFIRMATION,
            E.INVALID_INPUT: P.AWAITING_EMAIL,
        },
        pending_action=PendingAction.PAYMENT_COLLECT_EMAIL,
    ),
    P.AWAITING_CONFIRMATION: StageDefinition(
        description="Summary shown, waiting for an explicit yes",
        transitions={
            E.AFFIRMATIVE: P.COMPLETED,
            E.NEGATIVE: P.AWAITING_PRODUCT,
            E.OTHER: P.AWAITING_CONFIRMATION,
            E.GATEWAY_ERROR: P.AWAITING_CONFIRMATION,
            E.NO_PRODUCTS: P.IDLE,
        },
        pending_action=PendingAction.PAYMENT_CONFIRM,
    ),
    P.COMPLETED: StageDefinition(
        description="Link issued",
        transitions={
            E.PAYMENT_REQUESTED: P.AWAITING_NEW_LINK_CONFIRMATION,
            E.HISTORY_REQUESTED: P.HISTORY,
        },
    ),
    P.AWAITING_NEW_LINK_CONFIRMATION: StageDefinition(
        description="Existing link shown, asking whether to start over",
        transitions={
            E.AFFIRMATIVE: P.AWAITING_PRODUCT,
            E.NEGATIVE: P.COMPLETED,
            E.OTHER: P.AWAITING_NEW_LINK_CONFIRMATION,
            E.NO_PRODUCTS: P.IDLE,
        },
        pending_action=PendingAction.PAYMENT_NEW_LINK_CONFIRM,
    ),
    P.HISTORY: StageDefinition(
        description="Read-only pagination over issued links",
        transitions={
            E.HISTORY_MORE: P.HISTORY,
            E.HISTORY_REQUESTED: P.HISTORY,
            E.EXIT: P.IDLE,
            E.EXIT_WITH_LINK: P.COMPLETED,
        },
        pending_action=PendingAction.PAYMENT_HISTORY_MORE,
    ),
}

# Stages where the orchestrator owns every incoming message
ACTIVE_STAGES = frozenset({
    P.AWAITING_PRODUCT,
    P.AWAITING_NAME,
    P.AWAITING_EMAIL,
    P.AWAITING_CONFIRMATION,
    P.AWAITING_NEW_LINK_CONFIRMATION,
    P.HISTORY,
})


def get_valid_events(stage: PaymentStage) -> list[PaymentEvent]:
    return list(PAYMENT_FLOW[stage].transitions)


def next_stage(stage: PaymentStage, event: PaymentEvent) -> PaymentStage:
    """Return the stage ``event`` leads to from ``stage``.

    Raises:
        InvalidStageTransitionError: If the table does not declare the pair.
    """
    target = PAYMENT_FLOW[stage].transitions.get(event)
    if target is None:
        valid = [e.value for e in get_valid_events(stage)]
        raise InvalidStageTransitionError(
            f"No payment transition from '{stage.value}' "
            f"on event '{event.value}'. Valid events: {valid}"
        )
    logger.debug("Payment stage: %s -> %s (event: %s)", stage.value, target.value, event.value)
    return target


def pending_action_for(stage: PaymentStage) -> Optional[PendingAction]:
    return PAYMENT_FLOW[stage].pending_action
