"""Conversation state schemas persisted per session.

Field names are snake_case in Python and camelCase in the persisted
JSON blob. Set-like fields are ordered lists with duplicates dropped,
so a blob always serializes back to the same JSON.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

DEFAULT_HISTORY_PAGE_SIZE = 5


def _dedupe(items: list[str]) -> list[str]:
    return list(dict.fromkeys(items))


def _ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


UniqueList = Annotated[list[str], AfterValidator(_dedupe)]
UtcDatetime = Annotated[datetime, AfterValidator(_ensure_utc)]


def add_unique(items: list[str], *values: str) -> list[str]:
    """Return a copy of ``items`` with ``values`` appended if not already present."""
    result = list(items)
    for value in values:
        if value not in result:
            result.append(value)
    return result


class Language(str, Enum):
    EN = "en"
    ES = "es"


class ConversationStep(str, Enum):
    """Nodes of the main conversation state machine."""
    GREETING = "GREETING"
    AWAITING_INTENT = "AWAITING_INTENT"
    COLLECTING_NAME = "COLLECTING_NAME"
    COLLECTING_EMAIL = "COLLECTING_EMAIL"
    COLLECTING_PHONE = "COLLECTING_PHONE"
    SHOWING_SLOTS = "SHOWING_SLOTS"
    CONFIRMING = "CONFIRMING"
    COMPLETED = "COMPLETED"


class IntentType(str, Enum):
    """Fixed intent taxonomy returned by the intent classifier."""
    GREETING = "GREETING"
    PRICING_QUESTION = "PRICING_QUESTION"
    TECHNICAL_SPECS = "TECHNICAL_SPECS"
    COMPANY_INFO = "COMPANY_INFO"
    SCHEDULE_APPOINTMENT = "SCHEDULE_APPOINTMENT"
    CONFIRM_APPOINTMENT = "CONFIRM_APPOINTMENT"
    SELECT_TIME_SLOT = "SELECT_TIME_SLOT"
    REQUEST_NEXT_WEEK = "REQUEST_NEXT_WEEK"
    REQUEST_SPECIFIC_DATE = "REQUEST_SPECIFIC_DATE"
    PROVIDE_NAME = "PROVIDE_NAME"
    PROVIDE_EMAIL = "PROVIDE_EMAIL"
    PROVIDE_PHONE = "PROVIDE_PHONE"
    DECLINE_PHONE = "DECLINE_PHONE"
    ASK_QUESTION = "ASK_QUESTION"
    VIEW_PAYMENT_HISTORY = "VIEW_PAYMENT_HISTORY"
    REQUEST_PAYMENT_LINK = "REQUEST_PAYMENT_LINK"
    OFF_TOPIC = "OFF_TOPIC"
    HARMFUL_CONTENT = "HARMFUL_CONTENT"
    UNKNOWN = "UNKNOWN"


class TransitionReason(str, Enum):
    TRANSITION = "transition"
    GUARD_RAIL = "guard_rail"
    INVALID_INTENT = "invalid_intent"
    INVALID_TRANSITION = "invalid_transition"


class TransitionSource(str, Enum):
    LIVE = "live"
    TEST = "test"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class PaymentStage(str, Enum):
    """Nodes of the nested payment sub-flow."""
    IDLE = "idle"
    AWAITING_PRODUCT = "awaiting_product"
    AWAITING_NAME = "awaiting_name"
    AWAITING_EMAIL = "awaiting_email"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    AWAITING_NEW_LINK_CONFIRMATION = "awaiting_new_link_confirmation"
    COMPLETED = "completed"
    HISTORY = "history"


class PendingAction(str, Enum):
    """What question is outstanding for the user."""
    SCHEDULE_PROMPT = "schedule_prompt"
    PAYMENT_SELECT_PRODUCT = "payment_select_product"
    PAYMENT_COLLECT_NAME = "payment_collect_name"
    PAYMENT_COLLECT_EMAIL = "payment_collect_email"
    PAYMENT_CONFIRM = "payment_confirm"
    PAYMENT_NEW_LINK_CONFIRM = "payment_new_link_confirm"
    PAYMENT_HISTORY_MORE = "payment_history_more"


class CamelModel(BaseModel):
    """Base model that persists with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ConversationMessage(CamelModel):
    """A single user or assistant message."""

    role: MessageRole
    content: str
    timestamp: UtcDatetime
    language: Language = Language.EN


class UserData(CamelModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class DisplayedSlot(CamelModel):
    """An appointment slot as shown to the user."""

    id: str
    label: str
    start: UtcDatetime
    end: UtcDatetime


class AppointmentData(CamelModel):
    selected_slot_id: Optional[str] = None
    selected_slot_label: Optional[str] = None
    preferred_date: Optional[str] = None
    preferred_time: Optional[str] = None
    displayed_slots: list[DisplayedSlot] = Field(default_factory=list)
    booking_ref: Optional[str] = None


class AttemptCount(CamelModel):
    """Per-field counters of rejected inputs."""

    name: int = 0
    email: int = 0
    phone: int = 0


class TransitionRecord(CamelModel):
    """Audit entry for every change of conversation step."""

    from_step: ConversationStep = Field(alias="from")
    to_step: ConversationStep = Field(alias="to")
    intent: IntentType
    reason: TransitionReason
    timestamp: UtcDatetime
    source: TransitionSource = TransitionSource.LIVE


class PaymentContext(CamelModel):
    """Nested payment sub-flow state, reused across payment attempts."""

    stage: PaymentStage = PaymentStage.IDLE
    product_id: Optional[str] = None
    product_name: Optional[str] = None
    amount_cents: Optional[int] = None
    currency: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    name_confirmed: bool = False
    email_confirmed: bool = False
    link_token: Optional[str] = None
    link_url: Optional[str] = None
    link_route: Optional[str] = None
    last_generated_at: Optional[UtcDatetime] = None
    confirmed: bool = False
    history_offset: int = 0
    history_page_size: int = DEFAULT_HISTORY_PAGE_SIZE
    last_viewed_at: Optional[UtcDatetime] = None

    @model_validator(mode="after")
    def _completed_requires_link(self) -> "PaymentContext":
        if self.stage == PaymentStage.COMPLETED and (not self.link_token or not self.confirmed):
            raise ValueError("a completed payment context needs a link token and confirmation")
        return self


class ConversationState(CamelModel):
    """Canonical per-session conversation state."""

    session_id: str
    tenant_id: str = ""
    current_step: ConversationStep = ConversationStep.GREETING
    language: Language = Language.EN
    user_data: UserData = Field(default_factory=UserData)
    appointment_data: AppointmentData = Field(default_factory=AppointmentData)
    conversation_history: list[ConversationMessage] = Field(default_factory=list)
    attempt_count: AttemptCount = Field(default_factory=AttemptCount)
    shown_weeks: UniqueList = Field(default_factory=list)
    shown_slot_ids: UniqueList = Field(default_factory=list)
    phone_declined: bool = False
    questions_asked: UniqueList = Field(default_factory=list)
    topics_discussed: UniqueList = Field(default_factory=list)
    pending_action: Optional[PendingAction] = None
    payment_context: PaymentContext = Field(default_factory=PaymentContext)
    transition_log: list[TransitionRecord] = Field(default_factory=list)
    last_activity: UtcDatetime = Field(default_factory=lambda: datetime.now(timezone.utc))
