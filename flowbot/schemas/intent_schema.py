"""Intent classifier input and output schemas."""

from typing import Optional

from pydantic import BaseModel, Field

from flowbot.schemas.conversation_schema import ConversationStep, IntentType, Language


class IntentEntities(BaseModel):
    """Values the classifier extracted from the message."""

    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    date_time: Optional[str] = None
    week_preference: Optional[str] = None
    specific_date: Optional[str] = None
    slot_id: Optional[str] = None


class IntentResult(BaseModel):
    """Typed classification of a single user message."""

    intent: IntentType
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    entities: IntentEntities = Field(default_factory=IntentEntities)
    sentiment: str = "neutral"


class ClassificationContext(BaseModel):
    """Conversation context handed to the classifier."""

    current_step: ConversationStep
    language: Language
    has_name: bool = False
    has_email: bool = False
    has_phone: bool = False
    last_assistant_message: Optional[str] = None
