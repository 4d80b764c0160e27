"""
Conversation engine: the single entry point for inbound chat messages.

Each message is processed under a per-session lock:
1. load state from the session store
2. detect the language and classify the intent
3. hand payment requests (or an active payment stage) to the payment
   orchestrator, which leaves the main step untouched
4. otherwise apply guard rails, validate the intent against the
   transition table, and let the step handler pick the next step from
   the table's candidates
5. persist one merged partial update and return the reply

Nothing raised while handling a message escapes ``process_message``; the
worst case is a reset to a fresh session with a generic apology.

Usage:
    engine = ConversationEngine(store, KeywordIntentClassifier(), gateway)
    reply, state = await engine.process_message("sess-1", "tenant-1", "hola")
"""

import asyncio
import re
import weakref
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Awaitable, Callable, Optional

from flowbot.config import settings
from flowbot.conversation.guardrails import GuardrailPipeline
from flowbot.conversation.language import LanguageDetector
from flowbot.conversation.profile_fields import (
    PROFILE_FIELDS,
    ProfileField,
    field_for_step,
    parse_field,
    retry_variant,
)
from flowbot.conversation.state_store import (
    SessionStateStore,
    merge_payment_context,
    merge_user_data,
    should_ask_for,
)
from flowbot.conversation.transition_table import (
    get_fallback_state,
    get_transition_candidates,
    is_intent_allowed,
    is_transition_allowed,
)
from flowbot.logging_context import bind_session, get_session_logger
from flowbot.payments.gateway import PaymentGateway
from flowbot.payments.matchers import ReplyKind, classify_reply
from flowbot.payments.orchestrator import PaymentFlowOrchestrator
from flowbot.prompts.messages import message
from flowbot.schemas.conversation_schema import (
    ConversationMessage,
    ConversationState,
    ConversationStep,
    DisplayedSlot,
    IntentType,
    MessageRole,
    PendingAction,
    TransitionReason,
    TransitionRecord,
    TransitionSource,
    UserData,
    add_unique,
)
from flowbot.schemas.intent_schema import ClassificationContext, IntentResult
from flowbot.tools.availability import AppointmentScheduler, SlotRecord
from flowbot.tools.intent_classifier import IntentClassifier

logger = get_session_logger(__name__)

COLLECTING_STEPS = frozenset({
    ConversationStep.COLLECTING_NAME,
    ConversationStep.COLLECTING_EMAIL,
    ConversationStep.COLLECTING_PHONE,
})
SLOT_STEPS = frozenset({ConversationStep.SHOWING_SLOTS, ConversationStep.CONFIRMING})

DATE_IN_TEXT = re.compile(r"\b(\d{4}-\d{2}-\d{2})\b")

# Entity keys nested one level deep in a partial update
_NESTED_UPDATE_KEYS = ("user_data", "appointment_data", "attempt_count")


@dataclass
class TurnOutcome:
    """What the main flow decided for one message."""

    response: str
    next_step: ConversationStep
    intent: IntentType
    updates: dict[str, Any] = field(default_factory=dict)
    reason: TransitionReason = TransitionReason.TRANSITION


Handler = Callable[[ConversationState, str, IntentResult, IntentType], Awaitable[TurnOutcome]]


def _combine(base: dict[str, Any], extra: dict[str, Any]) -> dict[str, Any]:
    """Merge two partial updates, combining nested entity dicts."""
    combined = dict(base)
    for key, value in extra.items():
        if key in _NESTED_UPDATE_KEYS and isinstance(combined.get(key), dict) and isinstance(value, dict):
            combined[key] = {**combined[key], **value}
        else:
            combined[key] = value
    return combined


class ConversationEngine:
    """Routes messages through the payment flow or the main step table."""

    def __init__(
        self,
        store: SessionStateStore,
        classifier: IntentClassifier,
        gateway: PaymentGateway,
        scheduler: Optional[AppointmentScheduler] = None,
        language_detector: Optional[LanguageDetector] = None,
        guardrails: Optional[GuardrailPipeline] = None,
        orchestrator: Optional[PaymentFlowOrchestrator] = None,
    ) -> None:
        self._store = store
        self._classifier = classifier
        self._scheduler = scheduler or AppointmentScheduler(clock=store.now)
        self._language = language_detector or LanguageDetector()
        self._guardrails = guardrails or GuardrailPipeline()
        self._payments = orchestrator or PaymentFlowOrchestrator(gateway, clock=store.now)
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._handlers: dict[IntentType, Handler] = {
            IntentType.GREETING: self._on_greeting,
            IntentType.SCHEDULE_APPOINTMENT: self._on_schedule,
            IntentType.PROVIDE_NAME: self._on_profile_input,
            IntentType.PROVIDE_EMAIL: self._on_profile_input,
            IntentType.PROVIDE_PHONE: self._on_profile_input,
            IntentType.DECLINE_PHONE: self._on_decline_phone,
            IntentType.SELECT_TIME_SLOT: self._on_select_slot,
            IntentType.REQUEST_NEXT_WEEK: self._on_next_week,
            IntentType.REQUEST_SPECIFIC_DATE: self._on_specific_date,
            IntentType.CONFIRM_APPOINTMENT: self._on_confirm,
            IntentType.PRICING_QUESTION: self._on_pricing,
            IntentType.ASK_QUESTION: self._on_question,
            IntentType.TECHNICAL_SPECS: self._on_question,
            IntentType.COMPANY_INFO: self._on_question,
            IntentType.UNKNOWN: self._on_unknown,
        }

    @property
    def store(self) -> SessionStateStore:
        return self._store

    async def process_message(
        self,
        session_id: str,
        tenant_id: str,
        message_text: str,
        source: TransitionSource = TransitionSource.LIVE,
    ) -> tuple[str, ConversationState]:
        """Handle one user message and return ``(response_text, state)``."""
        bind_session(session_id, tenant_id)
        async with self._session_lock(session_id, tenant_id):
            try:
                return await self._process(session_id, tenant_id, message_text or "", source)
            except Exception:
                logger.exception("Unhandled error while processing message; resetting session")
                return await self._recover(session_id, tenant_id)

    async def reset_session(self, session_id: str, tenant_id: str) -> ConversationState:
        """Explicit reset hook, mostly for tests and support tooling."""
        async with self._session_lock(session_id, tenant_id):
            return await self._store.reset(session_id, tenant_id)

    def _session_lock(self, session_id: str, tenant_id: str) -> asyncio.Lock:
        key = f"{tenant_id}:{session_id}"
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def _recover(self, session_id: str, tenant_id: str) -> tuple[str, ConversationState]:
        language = None
        try:
            language = (await self._store.get(session_id, tenant_id)).language
            fresh = await self._store.reset(session_id, tenant_id, language=language)
        except Exception:
            logger.exception("Session reset failed during recovery")
            fresh = ConversationState(session_id=session_id, tenant_id=tenant_id)
            if language is not None:
                fresh.language = language
        return message("genericError", fresh.language), fresh

    async def _process(
        self, session_id: str, tenant_id: str, text: str, source: TransitionSource
    ) -> tuple[str, ConversationState]:
        state = await self._store.get(session_id, tenant_id)
        notice = None
        limit = settings.bot.max_input_length
        if len(text) > limit:
            logger.warning("Truncating message of %d characters", len(text))
            text = text[:limit]
            notice = "messageTooLong"

        state.language = await self._language.detect(text, previous=state.language)
        now = self._store.now()
        history = [
            *state.conversation_history,
            ConversationMessage(
                role=MessageRole.USER, content=text, timestamp=now, language=state.language
            ),
        ]
        updates: dict[str, Any] = {"language": state.language}
        result = await self._classify(text, state)

        response: Optional[str] = None
        next_step = state.current_step
        if self._payments.should_handle(state, text, result.intent):
            harmful = self._guardrails.check_harmful(text, result.intent)
            if harmful is not None:
                # Never forwarded as payer data; stage and pending action stay as they were
                logger.info("Harmful input during payment flow; not forwarded")
                response = message(harmful.message_key, state.language)
            else:
                response = await self._handle_payment(state, text, result, updates)

        if response is None:
            outcome = await self._route(state, text, result)
            updates = _combine(_combine(updates, {"pending_action": None}), outcome.updates)
            response = outcome.response
            next_step = outcome.next_step
            if next_step != state.current_step or outcome.reason != TransitionReason.TRANSITION:
                updates["transition_log"] = [
                    *state.transition_log,
                    TransitionRecord(
                        from_step=state.current_step,
                        to_step=next_step,
                        intent=outcome.intent,
                        reason=outcome.reason,
                        timestamp=now,
                        source=source,
                    ),
                ]
            updates["current_step"] = next_step

        if notice:
            response = f"{message(notice, state.language)}\n\n{response}"

        history.append(
            ConversationMessage(
                role=MessageRole.ASSISTANT, content=response, timestamp=now, language=state.language
            )
        )
        updates["conversation_history"] = history
        new_state = await self._store.update(session_id, tenant_id, updates)
        return response, new_state

    async def _handle_payment(
        self, state: ConversationState, text: str, result: IntentResult, updates: dict[str, Any]
    ) -> Optional[str]:
        """Run the payment orchestrator; None means the main flow takes the message."""
        turn = await self._payments.handle(state, text, result.intent)
        if turn.context_update is not None:
            updates["payment_context"] = turn.context_update
        if turn.handled:
            updates["pending_action"] = turn.pending_action
            logger.info("Payment stage now %s", turn.stage.value if turn.stage else "unchanged")
            return turn.response

        state.payment_context = merge_payment_context(state.payment_context, turn.context_update)
        state.pending_action = None
        return None

    async def _classify(self, text: str, state: ConversationState) -> IntentResult:
        last_reply = next(
            (m.content for m in reversed(state.conversation_history) if m.role == MessageRole.ASSISTANT),
            None,
        )
        context = ClassificationContext(
            current_step=state.current_step,
            language=state.language,
            has_name=bool(state.user_data.name),
            has_email=bool(state.user_data.email),
            has_phone=bool(state.user_data.phone),
            last_assistant_message=last_reply,
        )
        try:
            return await self._classifier.classify(text, context)
        except Exception as e:
            logger.warning("Intent classification failed: %s", e)
            return IntentResult(intent=IntentType.UNKNOWN, confidence=0.0)

    # --- Routing ---

    async def _route(self, state: ConversationState, text: str, result: IntentResult) -> TurnOutcome:
        step = state.current_step
        intent = result.intent

        if state.pending_action == PendingAction.SCHEDULE_PROMPT and intent == IntentType.UNKNOWN:
            reply = classify_reply(text, state.language)
            if reply == ReplyKind.AFFIRMATIVE:
                intent = IntentType.SCHEDULE_APPOINTMENT
            elif reply == ReplyKind.NEGATIVE:
                return TurnOutcome(
                    response=message("schedulePromptDecline", state.language),
                    next_step=self._candidate(step, IntentType.UNKNOWN),
                    intent=IntentType.UNKNOWN,
                )

        intent, guard = self._guardrails.apply(text, intent)

        if not is_intent_allowed(step, intent):
            logger.info("Intent %s not allowed in %s", intent.value, step.value)
            return self._recovery(state, intent, TransitionReason.INVALID_INTENT)

        if guard is not None:
            logger.info("Guard rail fired: %s", guard.violation_type)
            return TurnOutcome(
                response=message(guard.message_key, state.language),
                next_step=self._candidate(step, intent),
                intent=intent,
                reason=TransitionReason.GUARD_RAIL,
            )

        handler = self._handlers.get(intent, self._on_unknown)
        outcome = await handler(state, text, result, intent)

        if not is_transition_allowed(step, outcome.next_step, outcome.intent):
            logger.warning(
                "Undeclared transition %s -> %s for %s",
                step.value, outcome.next_step.value, outcome.intent.value,
            )
            return self._recovery(state, outcome.intent, TransitionReason.INVALID_TRANSITION)
        return outcome

    def _recovery(
        self, state: ConversationState, intent: IntentType, reason: TransitionReason
    ) -> TurnOutcome:
        fallback = get_fallback_state(state.current_step) or ConversationStep.AWAITING_INTENT
        return TurnOutcome(
            response=message("stateRecovery", state.language),
            next_step=fallback,
            intent=intent,
            reason=reason,
        )

    @staticmethod
    def _candidate(step: ConversationStep, intent: IntentType) -> ConversationStep:
        candidates = get_transition_candidates(step, intent)
        return candidates[0] if candidates else step

    # --- Main flow handlers ---

    async def _on_greeting(self, state, text, result, intent) -> TurnOutcome:
        return TurnOutcome(
            response=message("greeting", state.language, bot=settings.bot.name),
            next_step=ConversationStep.AWAITING_INTENT,
            intent=intent,
        )

    async def _on_schedule(self, state, text, result, intent) -> TurnOutcome:
        user_updates: dict[str, str] = {}
        for profile_field in PROFILE_FIELDS:
            raw = getattr(result.entities, profile_field.name)
            if raw and should_ask_for(state, profile_field.name):
                ok, value = parse_field(profile_field, raw)
                if ok:
                    user_updates[profile_field.name] = value

        updates: dict[str, Any] = {}
        if user_updates:
            updates["user_data"] = user_updates
        if state.current_step == ConversationStep.COMPLETED:
            updates["appointment_data"] = {
                "selected_slot_id": None,
                "selected_slot_label": None,
                "booking_ref": None,
            }

        outcome = self._next_profile_step(state, merge_user_data(state.user_data, user_updates), intent)
        outcome.updates = _combine(updates, outcome.updates)
        return outcome

    async def _on_profile_input(self, state, text, result, intent) -> TurnOutcome:
        profile_field = field_for_step(state.current_step)
        if profile_field is None:
            return await self._on_unknown(state, text, result, intent)

        raw = getattr(result.entities, profile_field.name) or text
        ok, value = parse_field(profile_field, raw)
        if not ok:
            attempts = getattr(state.attempt_count, profile_field.name) + 1
            logger.info("Rejected %s (attempt %d)", profile_field.name, attempts)
            return TurnOutcome(
                response=message(profile_field.retry_key, state.language, variant=retry_variant(attempts)),
                next_step=state.current_step,
                intent=intent,
                updates={"attempt_count": {profile_field.name: attempts}},
            )

        user_data = merge_user_data(state.user_data, {profile_field.name: value})
        outcome = self._next_profile_step(state, user_data, profile_field.intent)
        outcome.updates = _combine({"user_data": {profile_field.name: value}}, outcome.updates)
        return outcome

    async def _on_decline_phone(self, state, text, result, intent) -> TurnOutcome:
        listing, updates = self._list_slots(state, "current")
        return TurnOutcome(
            response=f"{message('phoneDeclined', state.language)}\n\n{listing}",
            next_step=ConversationStep.SHOWING_SLOTS,
            intent=intent,
            updates=_combine({"phone_declined": True}, updates),
        )

    async def _on_select_slot(self, state, text, result, intent) -> TurnOutcome:
        slot = self._resolve_slot(state, result.entities.slot_id or text.strip())
        if slot is None:
            return TurnOutcome(
                response=f"{message('slotNotFound', state.language)}\n{self._render_displayed(state)}",
                next_step=state.current_step,
                intent=intent,
            )
        return TurnOutcome(
            response=message("confirmSlot", state.language, slot=slot.label),
            next_step=ConversationStep.CONFIRMING,
            intent=intent,
            updates={"appointment_data": {
                "selected_slot_id": slot.id,
                "selected_slot_label": slot.label,
                "preferred_date": slot.start.date().isoformat(),
                "preferred_time": slot.start.strftime("%H:%M"),
            }},
        )

    async def _on_next_week(self, state, text, result, intent) -> TurnOutcome:
        listing, updates = self._list_slots(state, "next")
        return TurnOutcome(
            response=listing,
            next_step=ConversationStep.SHOWING_SLOTS,
            intent=intent,
            updates=updates,
        )

    async def _on_specific_date(self, state, text, result, intent) -> TurnOutcome:
        requested = result.entities.specific_date
        if not requested:
            match = DATE_IN_TEXT.search(text)
            requested = match.group(1) if match else None
        try:
            day = date.fromisoformat(requested) if requested else None
        except ValueError:
            day = None

        if day is None:
            return TurnOutcome(
                response=message("askSpecificDate", state.language),
                next_step=ConversationStep.SHOWING_SLOTS,
                intent=intent,
            )
        listing, updates = self._list_slots(state, "specific", day.isoformat())
        updates = _combine(updates, {"appointment_data": {"preferred_date": day.isoformat()}})
        return TurnOutcome(
            response=listing,
            next_step=ConversationStep.SHOWING_SLOTS,
            intent=intent,
            updates=updates,
        )

    async def _on_confirm(self, state, text, result, intent) -> TurnOutcome:
        appointment = state.appointment_data
        booking = None
        if appointment.selected_slot_id:
            booking = self._scheduler.book(
                appointment.selected_slot_id,
                state.user_data.name or "",
                state.user_data.email or "",
                state.user_data.phone,
            )

        if not booking or not booking.get("success"):
            logger.info("Booking failed: %s", booking.get("message") if booking else "no slot selected")
            listing, updates = self._list_slots(state, "current", prefer_unseen=False)
            return TurnOutcome(
                response=f"{message('slotUnavailable', state.language)}\n{listing}",
                next_step=ConversationStep.SHOWING_SLOTS,
                intent=intent,
                updates=_combine(
                    {"appointment_data": {"selected_slot_id": None, "selected_slot_label": None}},
                    updates,
                ),
            )

        return TurnOutcome(
            response=message(
                "bookingConfirmed",
                state.language,
                name=state.user_data.name or "",
                slot=appointment.selected_slot_label or booking["slot"]["label"],
                email=state.user_data.email or "",
                ref=booking["booking_ref"],
            ),
            next_step=ConversationStep.COMPLETED,
            intent=intent,
            updates={"appointment_data": {"booking_ref": booking["booking_ref"]}},
        )

    async def _on_pricing(self, state, text, result, intent) -> TurnOutcome:
        pricing = message("pricingGuardRail", state.language)
        if state.current_step in COLLECTING_STEPS:
            return TurnOutcome(
                response=f"{pricing}\n\n{self._field_prompt(state, state.user_data)}",
                next_step=state.current_step,
                intent=intent,
            )
        return TurnOutcome(
            response=pricing,
            next_step=ConversationStep.AWAITING_INTENT,
            intent=intent,
            updates={
                "pending_action": PendingAction.SCHEDULE_PROMPT,
                "topics_discussed": add_unique(state.topics_discussed, "pricing"),
            },
        )

    async def _on_question(self, state, text, result, intent) -> TurnOutcome:
        lang = state.language
        updates: dict[str, Any] = {
            "topics_discussed": add_unique(state.topics_discussed, intent.value.lower()),
        }
        if intent == IntentType.TECHNICAL_SPECS:
            response = message("technicalSpecs", lang)
        elif intent == IntentType.COMPANY_INFO:
            response = message("companyInfo", lang, bot=settings.bot.name)
        else:
            question = " ".join(text.lower().split()).strip("?¿!¡. ")
            if question and question in state.questions_asked:
                response = message("questionRepeated", lang)
            else:
                response = message("questionAcknowledge", lang)
            if question:
                updates["questions_asked"] = add_unique(state.questions_asked, question)

        step = state.current_step
        if step in COLLECTING_STEPS:
            response = f"{response}\n\n{self._field_prompt(state, state.user_data)}"
            next_step = step
        elif step == ConversationStep.SHOWING_SLOTS:
            response = f"{response}\n\n{self._render_displayed(state)}"
            next_step = step
        elif step == ConversationStep.CONFIRMING:
            slot = state.appointment_data.selected_slot_label or ""
            response = f"{response}\n\n{message('confirmSlot', lang, slot=slot)}"
            next_step = step
        else:
            next_step = ConversationStep.AWAITING_INTENT
        return TurnOutcome(response=response, next_step=next_step, intent=intent, updates=updates)

    async def _on_unknown(self, state, text, result, intent) -> TurnOutcome:
        step = state.current_step
        if step in COLLECTING_STEPS:
            return await self._on_profile_input(state, text, result, intent)

        if step in SLOT_STEPS:
            if step == ConversationStep.CONFIRMING and classify_reply(text, state.language) == ReplyKind.NEGATIVE:
                lead = message("slotPickHint", state.language)
            else:
                lead = message("slotNotFound", state.language)
            return TurnOutcome(
                response=f"{lead}\n{self._render_displayed(state)}",
                next_step=step,
                intent=intent,
            )

        return TurnOutcome(
            response=message("invalidIntent", state.language),
            next_step=self._candidate(step, IntentType.UNKNOWN),
            intent=intent,
        )

    # --- Helpers ---

    def _next_profile_step(
        self, state: ConversationState, user_data: UserData, intent: IntentType
    ) -> TurnOutcome:
        """Go to the first incomplete profile field, or to the slot list."""
        candidate = state.model_copy(update={"user_data": user_data})
        for profile_field in PROFILE_FIELDS:
            if should_ask_for(candidate, profile_field.name):
                return TurnOutcome(
                    response=self._ask(state, profile_field, user_data),
                    next_step=profile_field.step,
                    intent=intent,
                )
        listing, updates = self._list_slots(state, "current")
        return TurnOutcome(
            response=listing,
            next_step=ConversationStep.SHOWING_SLOTS,
            intent=intent,
            updates=updates,
        )

    def _ask(self, state: ConversationState, profile_field: ProfileField, user_data: UserData) -> str:
        return message(profile_field.ask_key, state.language, name=user_data.name or "")

    def _field_prompt(self, state: ConversationState, user_data: UserData) -> str:
        profile_field = field_for_step(state.current_step)
        if profile_field is None:
            return ""
        return self._ask(state, profile_field, user_data)

    def _list_slots(
        self,
        state: ConversationState,
        week: str,
        specific_date: Optional[str] = None,
        prefer_unseen: bool = True,
    ) -> tuple[str, dict[str, Any]]:
        """Fetch slots, render them, and build the matching state updates."""
        lang = state.language
        if week == "specific":
            slots = self._scheduler.list_date_slots(specific_date or "")
            header = message("showingSpecificDate", lang, date=specific_date or "")
        elif week == "next":
            slots = self._scheduler.list_week_slots(1)
            header = message("showingNextWeek", lang)
        else:
            slots = self._scheduler.list_week_slots(0)
            header = message("showingSlots", lang)

        if prefer_unseen:
            unseen = [s for s in slots if s["id"] not in state.shown_slot_ids]
            slots = unseen or slots

        updates: dict[str, Any] = {"shown_weeks": add_unique(state.shown_weeks, week)}
        if not slots:
            updates["appointment_data"] = {"displayed_slots": []}
            return message("noSlots", lang), updates

        displayed = [self._to_displayed(s) for s in slots]
        updates["appointment_data"] = {"displayed_slots": displayed}
        updates["shown_slot_ids"] = add_unique(state.shown_slot_ids, *(s.id for s in displayed))
        return self._render_slots(header, displayed, lang), updates

    @staticmethod
    def _to_displayed(slot: SlotRecord) -> DisplayedSlot:
        return DisplayedSlot(id=slot["id"], label=slot["label"], start=slot["start"], end=slot["end"])

    @staticmethod
    def _render_slots(header: str, slots: list[DisplayedSlot], lang) -> str:
        lines = [header]
        lines += [f"{i}. {slot.label}" for i, slot in enumerate(slots, start=1)]
        lines.append(message("slotPickHint", lang))
        return "\n".join(lines)

    def _render_displayed(self, state: ConversationState) -> str:
        slots = state.appointment_data.displayed_slots
        if not slots:
            return message("noSlots", state.language)
        return self._render_slots(message("showingSlots", state.language), slots, state.language)

    def _resolve_slot(self, state: ConversationState, raw: str) -> Optional[DisplayedSlot]:
        displayed = state.appointment_data.displayed_slots
        if raw.isdigit():
            index = int(raw)
            if 1 <= index <= len(displayed):
                return displayed[index - 1]
            return None
        for slot in displayed:
            if slot.id == raw:
                return slot
        record = self._scheduler.get_slot(raw)
        return self._to_displayed(record) if record else None
