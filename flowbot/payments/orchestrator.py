"""
Payment sub-flow orchestrator.

A nested state machine layered on top of the main conversation. It
reads raw user input while a payment is in progress (product choice,
payer name, email, yes/no answers), moves the payment stage only
through the declarative stage table, and issues links through the
gateway with ensure semantics.

Usage:
    orchestrator = PaymentFlowOrchestrator(gateway)
    if orchestrator.should_handle(state, message, intent):
        turn = await orchestrator.handle(state, message, intent)
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Union

from flowbot.config import settings
from flowbot.logging_context import get_session_logger
from flowbot.payments.flow_table import (
    ACTIVE_STAGES,
    PaymentEvent,
    next_stage,
    pending_action_for,
)
from flowbot.payments.gateway import PaymentGateway, build_link_route
from flowbot.payments.matchers import (
    ReplyKind,
    classify_reply,
    clean_payer_email,
    clean_payer_name,
    extract_product_selection,
    is_history_more,
    is_history_request,
    is_payment_intent,
    is_valid_payer_email,
    is_valid_payer_name,
)
from flowbot.prompts.messages import get_message, message
from flowbot.schemas.conversation_schema import (
    ConversationState,
    IntentType,
    PaymentContext,
    PaymentStage,
    PendingAction,
)
from flowbot.schemas.payment_schema import PaymentLinkRecord, PaymentLinkRequest, Product
from flowbot.utils import format_amount, utc_now

logger = get_session_logger(__name__)

ContextUpdate = Union[PaymentContext, dict[str, Any]]

_REPLY_EVENTS = {
    ReplyKind.AFFIRMATIVE: PaymentEvent.AFFIRMATIVE,
    ReplyKind.NEGATIVE: PaymentEvent.NEGATIVE,
    ReplyKind.OTHER: PaymentEvent.OTHER,
}


class _CatalogUnavailable(Exception):
    """The gateway could not list products; the turn answers with an error."""


@dataclass
class PaymentTurn:
    """Result of one message handled (or released) by the payment flow.

    ``handled`` is False when the message leaves the history mode and
    belongs to the main conversation; ``context_update`` still applies.
    """

    handled: bool
    response: Optional[str] = None
    context_update: Optional[ContextUpdate] = None
    stage: Optional[PaymentStage] = None
    pending_action: Optional[PendingAction] = None


class PaymentFlowOrchestrator:
    """Drives the payment stages of a single session per call."""

    def __init__(
        self,
        gateway: PaymentGateway,
        history_page_size: Optional[int] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._gateway = gateway
        self._page_size = history_page_size or settings.payments.history_page_size
        self._clock = clock
        self._handlers: dict[
            PaymentStage,
            Callable[[ConversationState, PaymentContext, str, Optional[IntentType]], Awaitable[PaymentTurn]],
        ] = {
            PaymentStage.IDLE: self._on_idle,
            PaymentStage.AWAITING_PRODUCT: self._on_awaiting_product,
            PaymentStage.AWAITING_NAME: self._on_awaiting_name,
            PaymentStage.AWAITING_EMAIL: self._on_awaiting_email,
            PaymentStage.AWAITING_CONFIRMATION: self._on_awaiting_confirmation,
            PaymentStage.COMPLETED: self._on_completed,
            PaymentStage.AWAITING_NEW_LINK_CONFIRMATION: self._on_awaiting_new_link_confirmation,
        }

    def should_handle(
        self, state: ConversationState, text: str, intent: Optional[IntentType] = None
    ) -> bool:
        """True if a payment stage is active or the message asks for payments."""
        if state.payment_context.stage in ACTIVE_STAGES:
            return True
        return self._is_payment_request(text, intent) or self._is_history_request(text, intent)

    async def handle(
        self, state: ConversationState, text: str, intent: Optional[IntentType] = None
    ) -> PaymentTurn:
        ctx = state.payment_context
        text = text.strip()

        if ctx.stage == PaymentStage.HISTORY:
            if is_history_more(text):
                return await self._show_history(
                    state, ctx, ctx.history_offset + ctx.history_page_size, PaymentEvent.HISTORY_MORE
                )
            if self._is_history_request(text, intent):
                return await self._show_history(state, ctx, 0, PaymentEvent.HISTORY_REQUESTED)

            event = (
                PaymentEvent.EXIT_WITH_LINK
                if ctx.link_token and ctx.confirmed
                else PaymentEvent.EXIT
            )
            exit_stage = next_stage(PaymentStage.HISTORY, event)
            exit_update = {"stage": exit_stage}
            if not self._is_payment_request(text, intent):
                return PaymentTurn(handled=False, context_update=exit_update, stage=exit_stage)

            ctx = ctx.model_copy(update=exit_update)
            turn = await self._handlers[exit_stage](state, ctx, text, intent)
            if isinstance(turn.context_update, dict):
                turn.context_update = {**exit_update, **turn.context_update}
            elif turn.context_update is None:
                turn.context_update = exit_update
            return turn

        return await self._handlers[ctx.stage](state, ctx, text, intent)

    # --- Stage handlers ---

    async def _on_idle(self, state, ctx, text, intent) -> PaymentTurn:
        if self._is_history_request(text, intent):
            return await self._show_history(state, ctx, 0, PaymentEvent.HISTORY_REQUESTED)
        return await self._start_product_selection(
            state, ctx.stage, PaymentEvent.PAYMENT_REQUESTED, PaymentContext(stage=PaymentStage.IDLE)
        )

    async def _on_awaiting_product(self, state, ctx, text, intent) -> PaymentTurn:
        try:
            products = await self._list_products(state)
        except _CatalogUnavailable:
            return self._stay(ctx, message("paymentLinkError", state.language))

        if not products:
            return self._no_products(state, ctx.stage)

        product = extract_product_selection(text, products)
        if product is None:
            event = (
                PaymentEvent.PAYMENT_REQUESTED
                if is_payment_intent(text)
                else PaymentEvent.INVALID_INPUT
            )
            stage = next_stage(ctx.stage, event)
            return self._turn(stage, {"stage": stage}, self._product_prompt(state, products))

        stage = next_stage(ctx.stage, PaymentEvent.VALID_INPUT)
        update = {
            "stage": stage,
            "product_id": product.id,
            "product_name": product.name,
            "amount_cents": product.amount_cents,
            "currency": product.currency,
        }
        logger.info("Payment product selected: %s", product.id)
        return self._turn(
            stage, update, message("paymentAskName", state.language, product=product.name)
        )

    async def _on_awaiting_name(self, state, ctx, text, intent) -> PaymentTurn:
        if not is_valid_payer_name(text):
            stage = next_stage(ctx.stage, PaymentEvent.INVALID_INPUT)
            return self._turn(stage, {"stage": stage}, message("paymentAskNameRetry", state.language))

        name = clean_payer_name(text)
        stage = next_stage(ctx.stage, PaymentEvent.VALID_INPUT)
        update = {"stage": stage, "customer_name": name, "name_confirmed": True}
        return self._turn(stage, update, message("paymentAskEmail", state.language, name=name))

    async def _on_awaiting_email(self, state, ctx, text, intent) -> PaymentTurn:
        if not is_valid_payer_email(text):
            stage = next_stage(ctx.stage, PaymentEvent.INVALID_INPUT)
            return self._turn(stage, {"stage": stage}, message("paymentAskEmailRetry", state.language))

        email = clean_payer_email(text)
        stage = next_stage(ctx.stage, PaymentEvent.VALID_INPUT)
        update = {"stage": stage, "customer_email": email, "email_confirmed": True}
        summary_ctx = ctx.model_copy(update=update)
        return self._turn(stage, update, self._summary(state, summary_ctx))

    async def _on_awaiting_confirmation(self, state, ctx, text, intent) -> PaymentTurn:
        event = _REPLY_EVENTS[classify_reply(text, state.language)]

        if event == PaymentEvent.AFFIRMATIVE:
            return await self._issue_link(state, ctx)

        if event == PaymentEvent.NEGATIVE:
            reset = {
                "customer_name": None,
                "customer_email": None,
                "name_confirmed": False,
                "email_confirmed": False,
                "confirmed": False,
            }
            return await self._start_product_selection(
                state, ctx.stage, event, reset, prefix=message("paymentFlowReset", state.language)
            )

        stage = next_stage(ctx.stage, event)
        return self._turn(stage, {"stage": stage}, self._summary(state, ctx))

    async def _on_completed(self, state, ctx, text, intent) -> PaymentTurn:
        if self._is_history_request(text, intent):
            return await self._show_history(state, ctx, 0, PaymentEvent.HISTORY_REQUESTED)

        stage = next_stage(ctx.stage, PaymentEvent.PAYMENT_REQUESTED)
        logger.info("Payment requested with an existing link; asking before replacing it")
        return self._turn(stage, {"stage": stage}, self._new_link_question(state, ctx))

    async def _on_awaiting_new_link_confirmation(self, state, ctx, text, intent) -> PaymentTurn:
        event = _REPLY_EVENTS[classify_reply(text, state.language, new_link=True)]

        if event == PaymentEvent.AFFIRMATIVE:
            return await self._start_product_selection(
                state, ctx.stage, event, PaymentContext(stage=PaymentStage.IDLE)
            )

        if event == PaymentEvent.NEGATIVE:
            stage = next_stage(ctx.stage, event)
            return self._turn(stage, {"stage": stage}, self._link_message(state, ctx, existing=True))

        stage = next_stage(ctx.stage, event)
        return self._turn(stage, {"stage": stage}, self._new_link_question(state, ctx))

    # --- Link issuance ---

    async def _issue_link(self, state: ConversationState, ctx: PaymentContext) -> PaymentTurn:
        try:
            request = PaymentLinkRequest(
                product_id=ctx.product_id,
                session_id=state.session_id,
                tenant_id=state.tenant_id,
                customer_name=ctx.customer_name,
                customer_email=ctx.customer_email,
                amount_cents=ctx.amount_cents,
                currency=ctx.currency,
            )
            result = await self._gateway.ensure_payment_link(request)
            base_url = await self._gateway.resolve_tenant_base_url(state.tenant_id)
        except Exception as e:
            logger.warning("Payment link issuance failed: %s", e)
            stage = next_stage(ctx.stage, PaymentEvent.GATEWAY_ERROR)
            return self._stay(ctx, message("paymentLinkError", state.language), stage)

        stage = next_stage(ctx.stage, PaymentEvent.AFFIRMATIVE)
        route = build_link_route(result.token)
        update = {
            "stage": stage,
            "link_token": result.token,
            "link_route": route,
            "link_url": f"{base_url}{route}",
            "last_generated_at": self._clock(),
            "confirmed": True,
        }
        logger.info(
            "Payment link %s %s", result.token, "reused" if result.existing else "issued"
        )
        issued = ctx.model_copy(update=update)
        return self._turn(stage, update, self._link_message(state, issued, existing=result.existing))

    # --- Product selection ---

    async def _start_product_selection(
        self,
        state: ConversationState,
        from_stage: PaymentStage,
        event: PaymentEvent,
        base: ContextUpdate,
        prefix: Optional[str] = None,
    ) -> PaymentTurn:
        """List the catalog and move to ``awaiting_product``.

        ``base`` is either a fresh context (new request) or the fields to
        clear while keeping the product snapshot (negative confirmation).
        """
        try:
            products = await self._list_products(state)
        except _CatalogUnavailable:
            return PaymentTurn(
                handled=True,
                response=message("paymentLinkError", state.language),
                stage=from_stage,
                pending_action=pending_action_for(from_stage),
            )

        if not products:
            return self._no_products(state, from_stage)

        stage = next_stage(from_stage, event)
        if isinstance(base, PaymentContext):
            update: ContextUpdate = base.model_copy(update={"stage": stage})
        else:
            update = {**base, "stage": stage}

        prompt = self._product_prompt(state, products)
        response = f"{prefix}\n\n{prompt}" if prefix else prompt
        return self._turn(stage, update, response)

    def _no_products(self, state: ConversationState, from_stage: PaymentStage) -> PaymentTurn:
        stage = next_stage(from_stage, PaymentEvent.NO_PRODUCTS)
        logger.warning("No active products for tenant %s", state.tenant_id)
        return self._turn(
            stage, PaymentContext(stage=stage), message("paymentNoProducts", state.language)
        )

    async def _list_products(self, state: ConversationState) -> list[Product]:
        try:
            return await self._gateway.list_active_products(state.tenant_id)
        except Exception as e:
            logger.warning("Could not load product catalog: %s", e)
            raise _CatalogUnavailable() from e

    def _product_prompt(self, state: ConversationState, products: list[Product]) -> str:
        options = "\n".join(
            f"{i}. {p.name} - {format_amount(p.amount_cents, p.currency)}"
            for i, p in enumerate(products, start=1)
        )
        return message("paymentAskProduct", state.language, options=options)

    # --- History ---

    async def _show_history(
        self,
        state: ConversationState,
        ctx: PaymentContext,
        offset: int,
        event: PaymentEvent,
    ) -> PaymentTurn:
        lang = state.language
        try:
            records = await self._gateway.list_payment_links(
                state.tenant_id, offset, self._page_size + 1
            )
        except Exception as e:
            logger.warning("Could not load payment history: %s", e)
            return self._stay(ctx, message("paymentLinkError", lang))

        if not records and offset == 0:
            return self._stay(ctx, message("paymentHistoryEmpty", lang))

        stage = next_stage(ctx.stage, event)
        update = {
            "stage": stage,
            "history_offset": offset,
            "history_page_size": self._page_size,
            "last_viewed_at": self._clock(),
        }
        if not records:
            return self._turn(stage, update, message("paymentHistoryNoMore", lang))

        page = records[:self._page_size]
        has_more = len(records) > self._page_size
        lines = [message("paymentHistoryIntro", lang, count=len(page))]
        lines += [self._history_line(state, offset + i, r) for i, r in enumerate(page, start=1)]
        if has_more:
            lines.append(message("paymentHistoryMorePrompt", lang))
        elif offset > 0:
            lines.append(message("paymentHistoryNoMore", lang))
        return self._turn(stage, update, "\n".join(lines))

    def _history_line(self, state: ConversationState, index: int, record: PaymentLinkRecord) -> str:
        lang = state.language
        status = get_message(f"paymentStatus{record.status.value.capitalize()}", lang)
        customer = record.customer_name or get_message("paymentHistoryFieldNone", lang)
        return (
            f"{index}. {record.product_name} - {format_amount(record.amount_cents, record.currency)}"
            f" | {get_message('paymentHistoryFieldStatus', lang)}: {status}"
            f" | {get_message('paymentHistoryFieldCustomer', lang)}: {customer}"
            f" | {get_message('paymentHistoryFieldLink', lang)}: {record.token}"
        )

    # --- Rendering helpers ---

    def _summary(self, state: ConversationState, ctx: PaymentContext) -> str:
        return message(
            "paymentConfirmDetails",
            state.language,
            product=ctx.product_name,
            amount=self._amount(ctx),
            name=ctx.customer_name,
            email=ctx.customer_email,
        )

    def _link_message(self, state: ConversationState, ctx: PaymentContext, existing: bool) -> str:
        key = "paymentLinkExisting" if existing else "paymentLinkReady"
        return message(
            key, state.language, product=ctx.product_name, amount=self._amount(ctx), link=ctx.link_url
        )

    def _new_link_question(self, state: ConversationState, ctx: PaymentContext) -> str:
        return message(
            "paymentNewLinkConfirmation",
            state.language,
            product=ctx.product_name,
            amount=self._amount(ctx),
            link=ctx.link_url,
        )

    @staticmethod
    def _amount(ctx: PaymentContext) -> str:
        if ctx.amount_cents is None:
            return ""
        return format_amount(ctx.amount_cents, ctx.currency or "")

    @staticmethod
    def _turn(stage: PaymentStage, update: ContextUpdate, response: str) -> PaymentTurn:
        return PaymentTurn(
            handled=True,
            response=response,
            context_update=update,
            stage=stage,
            pending_action=pending_action_for(stage),
        )

    @staticmethod
    def _stay(
        ctx: PaymentContext, response: str, stage: Optional[PaymentStage] = None
    ) -> PaymentTurn:
        stage = stage or ctx.stage
        return PaymentTurn(
            handled=True,
            response=response,
            context_update=None,
            stage=stage,
            pending_action=pending_action_for(stage),
        )

    @staticmethod
    def _is_payment_request(text: str, intent: Optional[IntentType]) -> bool:
        return intent == IntentType.REQUEST_PAYMENT_LINK or is_payment_intent(text)

    @staticmethod
    def _is_history_request(text: str, intent: Optional[IntentType]) -> bool:
        return intent == IntentType.VIEW_PAYMENT_HISTORY or is_history_request(text)
