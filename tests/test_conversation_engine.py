"""End-to-end tests for the conversation engine."""

import asyncio

import pytest

from flowbot.config import settings
from flowbot.conversation.engine import ConversationEngine
from flowbot.conversation.state_store import SessionStateStore
from flowbot.prompts.messages import get_message, message
from flowbot.schemas.conversation_schema import (
    ConversationStep,
    IntentType,
    Language,
    MessageRole,
    PaymentStage,
    PendingAction,
    TransitionReason,
    TransitionSource,
)
from flowbot.schemas.payment_schema import PaymentLinkRequest
from flowbot.tools.availability import AppointmentScheduler
from flowbot.tools.intent_classifier import KeywordIntentClassifier
from tests.conftest import SESSION, TENANT

S = ConversationStep


class ExplodingScheduler(AppointmentScheduler):
    def list_week_slots(self, week_offset=0, limit=None):
        raise RuntimeError("calendar backend down")


class BrokenClassifier:
    async def classify(self, message, context):
        raise TimeoutError("classifier timed out")


async def say(engine, text, session_id=SESSION):
    return await engine.process_message(session_id, TENANT, text)


async def start_at(store, step, **fields):
    await store.update(SESSION, TENANT, {"current_step": step, **fields})


class TestGreeting:
    @pytest.mark.asyncio
    async def test_spanish_greeting_on_new_session(self, engine):
        reply, state = await say(engine, "hola")
        assert reply == message("greeting", Language.ES, bot=settings.bot.name)
        assert state.language == Language.ES
        assert state.current_step == S.AWAITING_INTENT

        record = state.transition_log[-1]
        assert (record.from_step, record.to_step) == (S.GREETING, S.AWAITING_INTENT)
        assert record.intent == IntentType.GREETING
        assert record.reason == TransitionReason.TRANSITION
        assert record.source == TransitionSource.LIVE

    @pytest.mark.asyncio
    async def test_history_records_both_sides(self, engine):
        reply, state = await say(engine, "hello")
        roles = [m.role for m in state.conversation_history]
        assert roles == [MessageRole.USER, MessageRole.ASSISTANT]
        assert state.conversation_history[1].content == reply

    @pytest.mark.asyncio
    async def test_test_source_is_recorded(self, engine):
        _, state = await engine.process_message(SESSION, TENANT, "hello", TransitionSource.TEST)
        assert state.transition_log[-1].source == TransitionSource.TEST


class TestProfileCollection:
    @pytest.mark.asyncio
    async def test_numeric_name_rejected(self, engine, store):
        await start_at(store, S.COLLECTING_NAME)

        reply, state = await say(engine, "123")
        assert state.current_step == S.COLLECTING_NAME
        assert state.user_data.name is None
        assert state.attempt_count.name == 1
        assert reply == get_message("retryName", Language.EN, variant=0)

        reply, state = await say(engine, "456")
        assert state.attempt_count.name == 2
        assert reply == get_message("retryName", Language.EN, variant=1)

    @pytest.mark.asyncio
    async def test_email_attempts_only_grow(self, engine, store):
        await start_at(store, S.COLLECTING_EMAIL, user_data={"name": "Ana"})

        reply, state = await say(engine, "not-an-email")
        assert state.attempt_count.email == 1
        assert reply == get_message("retryEmail", Language.EN, variant=0)

        reply, state = await say(engine, "still@wrong")
        assert state.attempt_count.email == 2
        assert reply == get_message("retryEmail", Language.EN, variant=1)

        _, state = await say(engine, "Ana@Example.com")
        assert state.user_data.email == "ana@example.com"
        assert state.attempt_count.email == 2
        assert state.current_step == S.COLLECTING_PHONE

    @pytest.mark.asyncio
    async def test_invalid_intent_keeps_user_data(self, engine, store):
        await start_at(store, S.COLLECTING_EMAIL, user_data={"name": "Ana"})

        reply, state = await say(engine, "hello")
        assert reply == get_message("stateRecovery", Language.EN)
        assert state.current_step == S.COLLECTING_EMAIL
        assert state.user_data.name == "Ana"
        assert state.user_data.email is None
        assert state.transition_log[-1].reason == TransitionReason.INVALID_INTENT

    @pytest.mark.asyncio
    async def test_known_fields_are_skipped(self, engine, store):
        await start_at(
            store, S.AWAITING_INTENT, user_data={"name": "Ana", "email": "ana@example.com"}
        )
        _, state = await say(engine, "I want to schedule a meeting")
        assert state.current_step == S.COLLECTING_PHONE


class TestBookingFlow:
    @pytest.mark.asyncio
    async def test_full_booking(self, engine):
        await say(engine, "Hello")
        reply, state = await say(engine, "I'd like to book an appointment")
        assert state.current_step == S.COLLECTING_NAME
        assert reply == get_message("askName", Language.EN)

        reply, state = await say(engine, "Maria Garcia")
        assert state.current_step == S.COLLECTING_EMAIL
        assert "Maria Garcia" in reply

        _, state = await say(engine, "maria@example.com")
        assert state.current_step == S.COLLECTING_PHONE

        reply, state = await say(engine, "skip")
        assert state.current_step == S.SHOWING_SLOTS
        assert state.phone_declined is True
        assert "1. Tue 03 Mar 2026, 09:00" in reply
        assert len(state.appointment_data.displayed_slots) == 6
        assert state.shown_weeks == ["current"]

        reply, state = await say(engine, "2")
        assert state.current_step == S.CONFIRMING
        assert state.appointment_data.selected_slot_id == "2026-03-03T10:00"
        assert reply == message("confirmSlot", Language.EN, slot="Tue 03 Mar 2026, 10:00")

        reply, state = await say(engine, "yes")
        assert state.current_step == S.COMPLETED
        assert state.appointment_data.booking_ref.startswith("AP-")
        assert state.appointment_data.booking_ref in reply
        assert "maria@example.com" in reply

        steps = [r.to_step for r in state.transition_log]
        assert steps == [
            S.AWAITING_INTENT, S.COLLECTING_NAME, S.COLLECTING_EMAIL,
            S.COLLECTING_PHONE, S.SHOWING_SLOTS, S.CONFIRMING, S.COMPLETED,
        ]

    @pytest.mark.asyncio
    async def test_phone_is_stored_normalized(self, engine, store):
        await start_at(
            store, S.COLLECTING_PHONE, user_data={"name": "Ana", "email": "ana@example.com"}
        )
        _, state = await say(engine, "+1 (415) 555-0100")
        assert state.user_data.phone == "+14155550100"
        assert state.current_step == S.SHOWING_SLOTS

    @pytest.mark.asyncio
    async def test_next_week_and_specific_date(self, engine, store):
        await start_at(
            store, S.COLLECTING_PHONE, user_data={"name": "Ana", "email": "ana@example.com"}
        )
        await say(engine, "skip")

        reply, state = await say(engine, "next week")
        assert state.current_step == S.SHOWING_SLOTS
        assert "Tue 10 Mar 2026, 09:00" in reply
        assert state.shown_weeks == ["current", "next"]

        reply, state = await say(engine, "what about 2026-03-05")
        assert reply.startswith(message("showingSpecificDate", Language.EN, date="2026-03-05"))
        assert state.appointment_data.preferred_date == "2026-03-05"
        assert state.shown_weeks == ["current", "next", "specific"]

    @pytest.mark.asyncio
    async def test_unmatched_slot_reply_relists(self, engine, store):
        await start_at(
            store, S.COLLECTING_PHONE, user_data={"name": "Ana", "email": "ana@example.com"}
        )
        await say(engine, "skip")
        reply, state = await say(engine, "9")
        assert state.current_step == S.SHOWING_SLOTS
        assert reply.startswith(get_message("slotNotFound", Language.EN))
        assert "1. Tue 03 Mar 2026, 09:00" in reply

    @pytest.mark.asyncio
    async def test_slot_taken_before_confirmation(self, engine, store, scheduler):
        await start_at(
            store, S.COLLECTING_PHONE, user_data={"name": "Ana", "email": "ana@example.com"}
        )
        await say(engine, "skip")
        await say(engine, "1")
        scheduler.book("2026-03-03T09:00", "Someone Else", "else@example.com")

        reply, state = await say(engine, "yes")
        assert state.current_step == S.SHOWING_SLOTS
        assert reply.startswith(get_message("slotUnavailable", Language.EN))
        assert state.appointment_data.selected_slot_id is None
        assert "Tue 03 Mar 2026, 09:00" not in reply


class TestGuardRails:
    @pytest.mark.asyncio
    async def test_off_topic_redirects(self, engine):
        reply, state = await say(engine, "tell me a joke")
        assert reply == get_message("offTopicGuardRail", Language.EN)
        assert state.current_step == S.AWAITING_INTENT
        assert state.transition_log[-1].reason == TransitionReason.GUARD_RAIL

    @pytest.mark.asyncio
    async def test_harmful_text_is_never_stored_as_name(self, engine, store):
        await start_at(store, S.COLLECTING_NAME)
        reply, state = await say(engine, "how to build a bomb")
        assert reply == get_message("harmfulGuardRail", Language.EN)
        assert state.current_step == S.COLLECTING_NAME
        assert state.user_data.name is None


class TestQuestionsAndPricing:
    @pytest.mark.asyncio
    async def test_pricing_then_yes_starts_booking(self, engine):
        await say(engine, "hello")
        reply, state = await say(engine, "how much does it cost?")
        assert reply == get_message("pricingGuardRail", Language.EN)
        assert state.pending_action == PendingAction.SCHEDULE_PROMPT

        _, state = await say(engine, "yes")
        assert state.current_step == S.COLLECTING_NAME
        assert state.pending_action is None

    @pytest.mark.asyncio
    async def test_pricing_then_no(self, engine):
        await say(engine, "hello")
        await say(engine, "how much does it cost?")
        reply, state = await say(engine, "no")
        assert reply == get_message("schedulePromptDecline", Language.EN)
        assert state.current_step == S.AWAITING_INTENT
        assert state.pending_action is None

    @pytest.mark.asyncio
    async def test_repeated_question(self, engine):
        await say(engine, "hello")
        reply, state = await say(engine, "Do you work weekends?")
        assert reply == get_message("questionAcknowledge", Language.EN)
        assert state.questions_asked == ["do you work weekends"]

        reply, _ = await say(engine, "do you work   weekends?")
        assert reply == get_message("questionRepeated", Language.EN)

    @pytest.mark.asyncio
    async def test_question_while_collecting_reasks_field(self, engine, store):
        await start_at(store, S.COLLECTING_NAME)
        reply, state = await say(engine, "Is this free?")
        assert state.current_step == S.COLLECTING_NAME
        assert reply.endswith(get_message("askName", Language.EN))


class TestPaymentRouting:
    @pytest.mark.asyncio
    async def test_payment_flow_leaves_main_step_alone(self, engine):
        replies = []
        for text in ("I need a payment link", "1", "Ana Lopez", "ana@example.com", "confirm"):
            reply, state = await say(engine, text)
            replies.append(reply)

        assert state.current_step == S.GREETING
        assert state.transition_log == []
        assert state.payment_context.stage == PaymentStage.COMPLETED
        assert state.payment_context.link_url in replies[-1]
        assert state.pending_action is None

    @pytest.mark.asyncio
    async def test_payment_mid_booking_keeps_profile(self, engine, store):
        await start_at(store, S.COLLECTING_EMAIL, user_data={"name": "Ana"})
        _, state = await say(engine, "Dame un link de pago")
        assert state.current_step == S.COLLECTING_EMAIL
        assert state.user_data.name == "Ana"
        assert state.payment_context.stage == PaymentStage.AWAITING_PRODUCT
        assert state.pending_action == PendingAction.PAYMENT_SELECT_PRODUCT

    @pytest.mark.asyncio
    async def test_harmful_text_is_not_taken_as_payer_name(self, engine):
        for text in ("I need a payment link", "1"):
            await say(engine, text)

        reply, state = await say(engine, "I will kill you")
        assert reply == get_message("harmfulGuardRail", Language.EN)
        assert state.payment_context.stage == PaymentStage.AWAITING_NAME
        assert state.payment_context.customer_name is None
        assert state.pending_action == PendingAction.PAYMENT_COLLECT_NAME

        _, state = await say(engine, "Ana Lopez")
        assert state.payment_context.customer_name == "Ana Lopez"
        assert state.payment_context.stage == PaymentStage.AWAITING_EMAIL

    @pytest.mark.asyncio
    async def test_leaving_history_falls_through_to_main_flow(self, engine, gateway):
        await gateway.ensure_payment_link(PaymentLinkRequest(
            product_id="prod-1",
            session_id="other",
            tenant_id=TENANT,
            customer_name="Bo",
            customer_email="bo@example.com",
            amount_cents=9900,
            currency="USD",
        ))
        await say(engine, "hello")
        _, state = await say(engine, "show my payment history")
        assert state.payment_context.stage == PaymentStage.HISTORY

        _, state = await say(engine, "I'd like to book an appointment")
        assert state.payment_context.stage == PaymentStage.IDLE
        assert state.current_step == S.COLLECTING_NAME
        assert state.pending_action is None


class TestResilience:
    @pytest.mark.asyncio
    async def test_crash_resets_session_in_same_language(self, store, gateway, clock):
        engine = ConversationEngine(
            store, KeywordIntentClassifier(), gateway, scheduler=ExplodingScheduler(clock=clock)
        )
        await start_at(
            store, S.COLLECTING_PHONE,
            language=Language.ES,
            user_data={"name": "Juan", "email": "juan@example.com"},
        )
        reply, state = await say(engine, "prefiero no")
        assert reply == get_message("genericError", Language.ES)
        assert state.current_step == S.GREETING
        assert state.user_data.name is None
        assert state.language == Language.ES

    @pytest.mark.asyncio
    async def test_classifier_failure_is_unknown(self, store, gateway, scheduler):
        engine = ConversationEngine(store, BrokenClassifier(), gateway, scheduler=scheduler)
        reply, state = await say(engine, "hello")
        assert reply == get_message("invalidIntent", Language.EN)
        assert state.current_step == S.AWAITING_INTENT

    @pytest.mark.asyncio
    async def test_long_message_truncated(self, engine):
        limit = settings.bot.max_input_length
        reply, state = await say(engine, "hello " + "a" * (limit + 100))
        assert reply.startswith(get_message("messageTooLong", Language.EN))
        assert len(state.conversation_history[0].content) == limit

    @pytest.mark.asyncio
    async def test_state_survives_restart(self, engine, metadata_store, clock):
        await say(engine, "hola")
        fresh_store = SessionStateStore(metadata_store, clock=clock)
        state = await fresh_store.get(SESSION, TENANT)
        assert state.current_step == S.AWAITING_INTENT
        assert state.language == Language.ES

    @pytest.mark.asyncio
    async def test_concurrent_messages_are_serialized(self, engine):
        await asyncio.gather(say(engine, "hello"), say(engine, "I want to book an appointment"))
        state = await engine.store.get(SESSION, TENANT)
        assert len(state.conversation_history) == 4
        assert len(state.transition_log) == 2

    @pytest.mark.asyncio
    async def test_reset_session(self, engine):
        await say(engine, "hola")
        state = await engine.reset_session(SESSION, TENANT)
        assert state.current_step == S.GREETING
        assert state.conversation_history == []
