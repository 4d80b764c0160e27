"""
Profile field collection: validate, normalize, and pick retry prompts.

The booking flow collects name, email and phone in that order. Each
field is stored only after it passes validation; a rejected value bumps
the field's attempt counter, which selects the next retry phrasing.

Usage:
    ok, value = parse_field(NAME_FIELD, "  ana   lópez ")
    assert ok and value == "ana lópez"
"""

import logging
import re
from dataclasses import dataclass
from typing import Callable, Optional

from flowbot.schemas.conversation_schema import ConversationStep, IntentType
from flowbot.utils import normalize_phone

logger = logging.getLogger(__name__)

# Validation thresholds
MIN_NAME_LENGTH = 2
MIN_PHONE_DIGITS = 7
MAX_PHONE_DIGITS = 15

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
NUMERIC_PATTERN = re.compile(r"^\d+(\.\d+)?$")


def validate_name(value: str) -> bool:
    """A name has at least two characters and is not a bare number."""
    stripped = value.strip()
    return len(stripped) >= MIN_NAME_LENGTH and not NUMERIC_PATTERN.match(stripped)


def validate_email(value: str) -> bool:
    return bool(EMAIL_PATTERN.match(value.strip()))


def validate_phone(value: str) -> bool:
    digits = re.sub(r"[^\d]", "", value)
    return MIN_PHONE_DIGITS <= len(digits) <= MAX_PHONE_DIGITS


def normalize_name(value: str) -> str:
    return " ".join(value.split())


def normalize_email(value: str) -> str:
    return value.strip().lower()


@dataclass(frozen=True)
class ProfileField:
    """Schema for one piece of profile data the booking flow collects."""

    name: str
    step: ConversationStep
    intent: IntentType
    validator: Callable[[str], bool]
    normalizer: Callable[[str], str]
    ask_key: str
    retry_key: str


NAME_FIELD = ProfileField(
    name="name",
    step=ConversationStep.COLLECTING_NAME,
    intent=IntentType.PROVIDE_NAME,
    validator=validate_name,
    normalizer=normalize_name,
    ask_key="askName",
    retry_key="retryName",
)
EMAIL_FIELD = ProfileField(
    name="email",
    step=ConversationStep.COLLECTING_EMAIL,
    intent=IntentType.PROVIDE_EMAIL,
    validator=validate_email,
    normalizer=normalize_email,
    ask_key="askEmail",
    retry_key="retryEmail",
)
PHONE_FIELD = ProfileField(
    name="phone",
    step=ConversationStep.COLLECTING_PHONE,
    intent=IntentType.PROVIDE_PHONE,
    validator=validate_phone,
    normalizer=normalize_phone,
    ask_key="askPhone",
    retry_key="retryPhone",
)

PROFILE_FIELDS: list[ProfileField] = [NAME_FIELD, EMAIL_FIELD, PHONE_FIELD]

_BY_STEP = {f.step: f for f in PROFILE_FIELDS}


def field_for_step(step: ConversationStep) -> Optional[ProfileField]:
    return _BY_STEP.get(step)


def parse_field(profile_field: ProfileField, raw: Optional[str]) -> tuple[bool, Optional[str]]:
    """Validate and normalize a raw value.

    Returns:
        (True, normalized) on success, (False, None) when rejected.
    """
    if raw is None or not raw.strip():
        return False, None
    if not profile_field.validator(raw):
        logger.debug("Rejected %s value", profile_field.name)
        return False, None
    return True, profile_field.normalizer(raw)


def retry_variant(attempts: int) -> int:
    """Index of the retry phrasing for the given attempt count (1-based)."""
    return max(attempts - 1, 0)
