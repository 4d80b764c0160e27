"""Tests for the main conversation transition table."""

import pytest

from flowbot.conversation.transition_table import (
    ANY,
    STATE_DEFINITIONS,
    InvalidTransitionError,
    get_fallback_state,
    get_transition_candidates,
    is_intent_allowed,
    is_transition_allowed,
    require_transition,
)
from flowbot.schemas.conversation_schema import ConversationStep, IntentType

S = ConversationStep
I = IntentType  # noqa: E741


class TestTableIntegrity:
    def test_every_step_is_defined(self):
        assert set(STATE_DEFINITIONS) == set(ConversationStep)

    @pytest.mark.parametrize("step", list(ConversationStep))
    def test_every_allowed_intent_has_targets(self, step):
        for intent in STATE_DEFINITIONS[step].allowed_intents:
            assert get_transition_candidates(step, intent), f"{step} / {intent}"

    @pytest.mark.parametrize("step", list(ConversationStep))
    def test_every_step_has_any_bucket(self, step):
        assert ANY in STATE_DEFINITIONS[step].transitions

    def test_payment_link_intent_never_routed_by_table(self):
        for step in ConversationStep:
            assert not is_intent_allowed(step, I.REQUEST_PAYMENT_LINK)


class TestIntentAllowance:
    def test_greeting_allowed_at_start(self):
        assert is_intent_allowed(S.GREETING, I.GREETING)

    def test_provide_email_not_allowed_at_greeting(self):
        assert not is_intent_allowed(S.GREETING, I.PROVIDE_EMAIL)

    def test_same_intent_loops_or_advances_by_step(self):
        assert get_transition_candidates(S.CONFIRMING, I.SELECT_TIME_SLOT) == (S.CONFIRMING, S.SHOWING_SLOTS)
        assert get_transition_candidates(S.SHOWING_SLOTS, I.SELECT_TIME_SLOT) == (S.CONFIRMING,)

    def test_history_allowed_everywhere(self):
        for step in ConversationStep:
            assert is_intent_allowed(step, I.VIEW_PAYMENT_HISTORY)


class TestTransitionValidation:
    def test_declared_transition(self):
        assert is_transition_allowed(S.COLLECTING_NAME, S.COLLECTING_EMAIL, I.PROVIDE_NAME)

    def test_name_can_skip_to_slots(self):
        assert is_transition_allowed(S.COLLECTING_NAME, S.SHOWING_SLOTS, I.PROVIDE_NAME)

    def test_undeclared_transition(self):
        assert not is_transition_allowed(S.GREETING, S.COMPLETED, I.GREETING)

    def test_any_bucket_allows_self_loop(self):
        assert is_transition_allowed(S.SHOWING_SLOTS, S.SHOWING_SLOTS, I.SELECT_TIME_SLOT)

    def test_candidates_exclude_any_bucket(self):
        assert S.COLLECTING_NAME not in get_transition_candidates(S.COLLECTING_NAME, I.PROVIDE_NAME)

    def test_require_transition_returns_target(self):
        assert require_transition(S.GREETING, S.AWAITING_INTENT, I.GREETING) == S.AWAITING_INTENT

    def test_require_transition_raises(self):
        with pytest.raises(InvalidTransitionError, match="COMPLETED"):
            require_transition(S.GREETING, S.COMPLETED, I.GREETING)


class TestFallbacks:
    @pytest.mark.parametrize(
        "step", [S.COLLECTING_NAME, S.COLLECTING_EMAIL, S.COLLECTING_PHONE]
    )
    def test_collecting_steps_retry_in_place(self, step):
        assert get_fallback_state(step) == step

    @pytest.mark.parametrize(
        "step", [S.GREETING, S.AWAITING_INTENT, S.SHOWING_SLOTS, S.CONFIRMING, S.COMPLETED]
    )
    def test_other_steps_recover_to_menu(self, step):
        assert get_fallback_state(step) == S.AWAITING_INTENT
