"""Tests for the payment stage table."""

import pytest

from flowbot.payments.flow_table import (
    ACTIVE_STAGES,
    PAYMENT_FLOW,
    InvalidStageTransitionError,
    PaymentEvent,
    get_valid_events,
    next_stage,
    pending_action_for,
)
from flowbot.schemas.conversation_schema import PaymentStage, PendingAction

P = PaymentStage
E = PaymentEvent


class TestStageTable:
    def test_every_stage_is_defined(self):
        assert set(PAYMENT_FLOW) == set(PaymentStage)

    def test_happy_path(self):
        stage = P.IDLE
        for event in (E.PAYMENT_REQUESTED, E.VALID_INPUT, E.VALID_INPUT, E.VALID_INPUT, E.AFFIRMATIVE):
            stage = next_stage(stage, event)
        assert stage == P.COMPLETED

    def test_negative_confirmation_returns_to_catalog(self):
        assert next_stage(P.AWAITING_CONFIRMATION, E.NEGATIVE) == P.AWAITING_PRODUCT

    def test_gateway_error_stays(self):
        assert next_stage(P.AWAITING_CONFIRMATION, E.GATEWAY_ERROR) == P.AWAITING_CONFIRMATION

    def test_new_request_after_completion_asks_first(self):
        assert next_stage(P.COMPLETED, E.PAYMENT_REQUESTED) == P.AWAITING_NEW_LINK_CONFIRMATION

    @pytest.mark.parametrize("event,target", [(E.EXIT, P.IDLE), (E.EXIT_WITH_LINK, P.COMPLETED)])
    def test_history_exits(self, event, target):
        assert next_stage(P.HISTORY, event) == target

    def test_undeclared_event_raises(self):
        with pytest.raises(InvalidStageTransitionError, match="awaiting_name"):
            next_stage(P.AWAITING_NAME, E.AFFIRMATIVE)

    def test_completed_cannot_be_reached_without_confirmation(self):
        for stage in PaymentStage:
            for event, target in PAYMENT_FLOW[stage].transitions.items():
                if target == P.COMPLETED and stage != P.COMPLETED:
                    assert event in (E.AFFIRMATIVE, E.NEGATIVE, E.EXIT_WITH_LINK)

    def test_valid_events(self):
        assert set(get_valid_events(P.AWAITING_EMAIL)) == {E.VALID_INPUT, E.INVALID_INPUT}


class TestPendingActions:
    def test_awaiting_stages_have_pending_action(self):
        assert pending_action_for(P.AWAITING_PRODUCT) == PendingAction.PAYMENT_SELECT_PRODUCT
        assert pending_action_for(P.AWAITING_CONFIRMATION) == PendingAction.PAYMENT_CONFIRM
        assert pending_action_for(P.HISTORY) == PendingAction.PAYMENT_HISTORY_MORE

    @pytest.mark.parametrize("stage", [P.IDLE, P.COMPLETED])
    def test_resting_stages_have_none(self, stage):
        assert pending_action_for(stage) is None

    def test_active_stages(self):
        assert P.IDLE not in ACTIVE_STAGES
        assert P.COMPLETED not in ACTIVE_STAGES
        assert P.HISTORY in ACTIVE_STAGES
