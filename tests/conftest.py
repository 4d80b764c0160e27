"""Shared test fixtures and helpers."""

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from flowbot.conversation.engine import ConversationEngine
from flowbot.conversation.guardrails import GuardrailPipeline
from flowbot.conversation.state_store import SessionStateStore, create_initial_state
from flowbot.payments.gateway import InMemoryPaymentGateway
from flowbot.payments.orchestrator import PaymentFlowOrchestrator
from flowbot.schemas.conversation_schema import (
    ConversationState,
    ConversationStep,
    Language,
    PaymentContext,
    PaymentStage,
)
from flowbot.schemas.payment_schema import Product
from flowbot.storage.metadata_store import InMemoryMetadataStore
from flowbot.tools.availability import AppointmentScheduler
from flowbot.tools.intent_classifier import KeywordIntentClassifier

# Monday; the first bookable day is Tuesday 2026-03-03
FIXED_NOW = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)
TENANT = "tenant-1"
SESSION = "sess-1"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def metadata_store():
    return InMemoryMetadataStore()


@pytest.fixture
def store(metadata_store, clock):
    return SessionStateStore(metadata_store, timeout=timedelta(minutes=30), clock=clock)


@pytest.fixture
def gateway(clock):
    return InMemoryPaymentGateway(products={TENANT: [make_product()]}, clock=clock)


@pytest.fixture
def orchestrator(gateway, clock):
    return PaymentFlowOrchestrator(gateway, history_page_size=5, clock=clock)


@pytest.fixture
def scheduler(clock):
    return AppointmentScheduler(clock=clock, slot_hours=(9, 10, 11, 14, 15, 16), max_slots=6)


@pytest.fixture
def guardrail_pipeline():
    return GuardrailPipeline()


@pytest.fixture
def engine(store, gateway, scheduler):
    return ConversationEngine(store, KeywordIntentClassifier(), gateway, scheduler=scheduler)


def make_product(
    product_id: str = "prod-1",
    name: str = "Monthly Membership",
    code: str = "MEM-01",
    amount_cents: int = 9900,
    currency: str = "USD",
) -> Product:
    """Helper to create a catalog Product."""
    return Product(
        id=product_id,
        name=name,
        product_code=code,
        amount_cents=amount_cents,
        currency=currency,
    )


def make_state(
    step: ConversationStep = ConversationStep.GREETING,
    language: Language = Language.EN,
    payment: Optional[PaymentContext] = None,
    session_id: str = SESSION,
    tenant_id: str = TENANT,
    **fields,
) -> ConversationState:
    """Helper to create a ConversationState at a given step."""
    state = create_initial_state(session_id, tenant_id, language, now=FIXED_NOW)
    update = {"current_step": step, **fields}
    if payment is not None:
        update["payment_context"] = payment
    return state.model_copy(update=update)


def make_payment_context(stage: PaymentStage = PaymentStage.IDLE, **fields) -> PaymentContext:
    """Helper to create a PaymentContext with the demo product frozen in."""
    product = make_product()
    values = {
        "product_id": product.id,
        "product_name": product.name,
        "amount_cents": product.amount_cents,
        "currency": product.currency,
        **fields,
    }
    return PaymentContext(stage=stage, **values)
