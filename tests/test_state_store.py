"""Tests for state serialization, merge rules and the session store."""

import json
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from flowbot.conversation.state_store import (
    create_initial_state,
    deserialize_state,
    merge_appointment_data,
    merge_payment_context,
    merge_state,
    merge_user_data,
    serialize_state,
    should_ask_for,
)
from flowbot.conversation.state_store import SessionStateStore
from flowbot.schemas.conversation_schema import (
    AppointmentData,
    ConversationStep,
    IntentType,
    Language,
    MessageRole,
    PaymentContext,
    PaymentStage,
    TransitionReason,
    TransitionRecord,
    UserData,
)
from tests.conftest import FIXED_NOW, SESSION, TENANT, make_payment_context, make_state


class FailingMetadataStore:
    """Durable store that is always down."""

    async def get(self, session_id, tenant_id):
        raise RuntimeError("storage offline")

    async def put(self, session_id, tenant_id, blob):
        raise RuntimeError("storage offline")


class TestInitialState:
    def test_defaults(self):
        state = create_initial_state(SESSION, TENANT, now=FIXED_NOW)
        assert state.current_step == ConversationStep.GREETING
        assert state.language == Language.EN
        assert state.user_data == UserData()
        assert state.attempt_count.name == 0
        assert state.payment_context.stage == PaymentStage.IDLE
        assert state.transition_log == []
        assert state.last_activity == FIXED_NOW

    def test_explicit_language(self):
        state = create_initial_state(SESSION, TENANT, Language.ES)
        assert state.language == Language.ES


class TestSerialization:
    def _populated_state(self):
        return make_state(
            ConversationStep.CONFIRMING,
            Language.ES,
            payment=make_payment_context(
                PaymentStage.COMPLETED,
                link_token="tok123",
                confirmed=True,
                last_generated_at=FIXED_NOW,
            ),
            user_data=UserData(name="Ana", email="ana@example.com"),
            shown_weeks=["current", "next"],
            transition_log=[
                TransitionRecord(
                    from_step=ConversationStep.GREETING,
                    to_step=ConversationStep.AWAITING_INTENT,
                    intent=IntentType.GREETING,
                    reason=TransitionReason.TRANSITION,
                    timestamp=FIXED_NOW,
                )
            ],
        )

    def test_camel_case_keys(self):
        blob = serialize_state(self._populated_state())
        assert blob["sessionId"] == SESSION
        assert blob["currentStep"] == "CONFIRMING"
        assert blob["userData"]["email"] == "ana@example.com"
        assert blob["paymentContext"]["linkToken"] == "tok123"
        assert blob["transitionLog"][0]["from"] == "GREETING"
        assert blob["transitionLog"][0]["to"] == "AWAITING_INTENT"

    def test_round_trip_is_stable(self):
        state = self._populated_state()
        blob = serialize_state(state)
        restored = deserialize_state(json.loads(json.dumps(blob)))
        assert restored == state
        assert json.dumps(serialize_state(restored), sort_keys=True) == json.dumps(blob, sort_keys=True)

    def test_missing_fields_take_defaults(self):
        restored = deserialize_state({"sessionId": SESSION, "currentStep": "COLLECTING_EMAIL"})
        assert restored.current_step == ConversationStep.COLLECTING_EMAIL
        assert restored.attempt_count.email == 0
        assert restored.payment_context.stage == PaymentStage.IDLE

    def test_boolean_strings_coerced(self):
        restored = deserialize_state({"sessionId": SESSION, "phoneDeclined": "true"})
        assert restored.phone_declined is True

    def test_duplicate_set_entries_dropped(self):
        restored = deserialize_state(
            {"sessionId": SESSION, "shownWeeks": ["current", "next", "current"]}
        )
        assert restored.shown_weeks == ["current", "next"]

    def test_naive_timestamps_become_utc(self):
        restored = deserialize_state({"sessionId": SESSION, "lastActivity": "2026-03-02T08:00:00"})
        assert restored.last_activity == datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)

    def test_invalid_step_rejected(self):
        with pytest.raises(ValidationError):
            deserialize_state({"sessionId": SESSION, "currentStep": "DANCING"})


class TestMergeRules:
    def test_user_data_none_never_clears(self):
        merged = merge_user_data(UserData(name="Ana"), {"name": None, "email": "a@b.co"})
        assert merged.name == "Ana"
        assert merged.email == "a@b.co"

    def test_user_data_unknown_field(self):
        with pytest.raises(KeyError):
            merge_user_data(UserData(), {"nickname": "Annie"})

    def test_appointment_mapping_can_clear_selection(self):
        current = AppointmentData(selected_slot_id="2026-03-03T09:00", booking_ref="AP-1")
        merged = merge_appointment_data(current, {"selected_slot_id": None})
        assert merged.selected_slot_id is None
        assert merged.booking_ref == "AP-1"

    def test_payment_instance_replaces(self):
        current = make_payment_context(PaymentStage.AWAITING_EMAIL, customer_name="Ana")
        merged = merge_payment_context(current, PaymentContext())
        assert merged.stage == PaymentStage.IDLE
        assert merged.customer_name is None

    def test_payment_none_flags_are_kept(self):
        current = make_payment_context(PaymentStage.AWAITING_EMAIL, name_confirmed=True)
        merged = merge_payment_context(current, {"name_confirmed": None, "customer_email": "x@y.co"})
        assert merged.name_confirmed is True
        assert merged.customer_email == "x@y.co"

    def test_completed_payment_needs_link(self):
        with pytest.raises(ValidationError):
            merge_payment_context(PaymentContext(), {"stage": PaymentStage.COMPLETED})

    def test_merge_state_scalars_and_entities(self):
        state = make_state(user_data=UserData(name="Ana"))
        merged = merge_state(state, {
            "current_step": ConversationStep.COLLECTING_EMAIL,
            "user_data": {"email": "ana@example.com"},
            "attempt_count": {"email": 2},
        })
        assert merged.current_step == ConversationStep.COLLECTING_EMAIL
        assert merged.user_data.name == "Ana"
        assert merged.user_data.email == "ana@example.com"
        assert merged.attempt_count.email == 2
        assert merged.attempt_count.name == 0

    def test_merge_state_unknown_key(self):
        with pytest.raises(KeyError, match="favourite_color"):
            merge_state(make_state(), {"favourite_color": "blue"})

    def test_should_ask_for_respects_decline(self):
        state = make_state(phone_declined=True)
        assert should_ask_for(state, "name") is True
        assert should_ask_for(state, "phone") is False


class TestSessionStateStore:
    @pytest.mark.asyncio
    async def test_new_session_is_fresh(self, store):
        state = await store.get(SESSION, TENANT)
        assert state.current_step == ConversationStep.GREETING
        assert state.tenant_id == TENANT

    @pytest.mark.asyncio
    async def test_update_persists_and_reloads(self, store, metadata_store):
        await store.update(SESSION, TENANT, {"user_data": {"name": "Ana"}})
        assert "Ana" in metadata_store.raw(SESSION, TENANT)

        store.evict(SESSION, TENANT)
        reloaded = await store.get(SESSION, TENANT)
        assert reloaded.user_data.name == "Ana"

    @pytest.mark.asyncio
    async def test_get_returns_a_copy(self, store):
        state = await store.get(SESSION, TENANT)
        state.user_data.name = "Mallory"
        again = await store.get(SESSION, TENANT)
        assert again.user_data.name is None

    @pytest.mark.asyncio
    async def test_update_refreshes_last_activity(self, store, clock):
        clock.advance(minutes=5)
        state = await store.update(SESSION, TENANT, {"phone_declined": True})
        assert state.last_activity == clock()

    @pytest.mark.asyncio
    async def test_expired_session_starts_fresh(self, store, clock):
        await store.update(SESSION, TENANT, {
            "current_step": ConversationStep.COLLECTING_EMAIL,
            "user_data": {"name": "Ana"},
        })
        clock.advance(minutes=31)
        state = await store.get(SESSION, TENANT)
        assert state.current_step == ConversationStep.GREETING
        assert state.user_data.name is None

    @pytest.mark.asyncio
    async def test_expired_stored_blob_starts_fresh(self, store, clock):
        await store.update(SESSION, TENANT, {"user_data": {"name": "Ana"}})
        store.evict(SESSION, TENANT)
        clock.advance(hours=2)
        state = await store.get(SESSION, TENANT)
        assert state.user_data.name is None

    @pytest.mark.asyncio
    async def test_unreadable_blob_starts_fresh(self, store, metadata_store):
        await metadata_store.put(SESSION, TENANT, {"currentStep": "DANCING"})
        state = await store.get(SESSION, TENANT)
        assert state.current_step == ConversationStep.GREETING

    @pytest.mark.asyncio
    async def test_storage_outage_is_not_fatal(self, clock):
        store = SessionStateStore(FailingMetadataStore(), clock=clock)
        state = await store.update(SESSION, TENANT, {"user_data": {"name": "Ana"}})
        assert state.user_data.name == "Ana"
        assert (await store.get(SESSION, TENANT)).user_data.name == "Ana"

    @pytest.mark.asyncio
    async def test_reset_discards_state(self, store):
        await store.update(SESSION, TENANT, {"user_data": {"name": "Ana"}})
        fresh = await store.reset(SESSION, TENANT, Language.ES)
        assert fresh.user_data.name is None
        assert fresh.language == Language.ES
        assert (await store.get(SESSION, TENANT)).language == Language.ES

    @pytest.mark.asyncio
    async def test_sessions_are_isolated_by_tenant(self, store):
        await store.update(SESSION, TENANT, {"user_data": {"name": "Ana"}})
        other = await store.get(SESSION, "tenant-2")
        assert other.user_data.name is None

    @pytest.mark.asyncio
    async def test_record_message(self, store):
        state = await store.record_message(SESSION, TENANT, MessageRole.USER, "hola", Language.ES)
        assert state.conversation_history[-1].content == "hola"
        assert state.conversation_history[-1].role == MessageRole.USER
