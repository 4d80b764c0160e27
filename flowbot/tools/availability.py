"""
In-memory appointment calendar.

In production this would integrate with a calendar provider (Google
Calendar, Calendly, or a custom scheduling API via HTTP client). Slots are
generated on weekdays at the configured hours; booked slots disappear from
later listings.
"""

import logging
import uuid
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Optional, Sequence, TypedDict

from flowbot.config import settings
from flowbot.utils import utc_now

logger = logging.getLogger(__name__)

DAYS_PER_WEEK = 7
SLOT_DURATION = timedelta(hours=1)


class SlotRecord(TypedDict):
    """A single bookable slot."""

    id: str
    label: str
    start: datetime
    end: datetime


class BookingResult(TypedDict, total=False):
    """Result from AppointmentScheduler.book."""

    success: bool
    message: str
    booking_ref: str
    slot: SlotRecord


def _slot_id(start: datetime) -> str:
    return start.strftime("%Y-%m-%dT%H:%M")


def _label(start: datetime) -> str:
    return start.strftime("%a %d %b %Y, %H:%M")


class AppointmentScheduler:
    """Generates weekday slots relative to ``clock()`` and records bookings."""

    def __init__(
        self,
        clock: Callable[[], datetime] = utc_now,
        slot_hours: Optional[Sequence[int]] = None,
        max_slots: Optional[int] = None,
    ) -> None:
        self._clock = clock
        self._hours = tuple(slot_hours or settings.scheduling.slot_hours)
        self._max_slots = max_slots or settings.scheduling.max_slots_shown
        self._bookings: dict[str, dict[str, Optional[str]]] = {}

    def list_week_slots(self, week_offset: int = 0, limit: Optional[int] = None) -> list[SlotRecord]:
        """Open slots in the 7-day window starting ``week_offset`` weeks from tomorrow."""
        first_day = self._clock().date() + timedelta(days=1 + DAYS_PER_WEEK * week_offset)
        slots: list[SlotRecord] = []
        for offset in range(DAYS_PER_WEEK):
            slots.extend(self._open_slots(first_day + timedelta(days=offset)))
        return slots[: limit or self._max_slots]

    def list_date_slots(self, date_str: str, limit: Optional[int] = None) -> list[SlotRecord]:
        """Open slots on a YYYY-MM-DD date. Past dates have none.

        Raises:
            ValueError: If ``date_str`` is not a valid YYYY-MM-DD date.
        """
        day = datetime.strptime(date_str.strip(), "%Y-%m-%d").date()
        if day <= self._clock().date():
            return []
        return self._open_slots(day)[: limit or self._max_slots]

    def get_slot(self, slot_id: str) -> Optional[SlotRecord]:
        try:
            start = datetime.strptime(slot_id, "%Y-%m-%dT%H:%M").replace(tzinfo=timezone.utc)
        except ValueError:
            return None
        if start.weekday() >= 5 or start.hour not in self._hours or start.minute != 0:
            return None
        return {"id": slot_id, "label": _label(start), "start": start, "end": start + SLOT_DURATION}

    def book(
        self, slot_id: str, name: str, email: str, phone: Optional[str] = None
    ) -> BookingResult:
        """Book a slot for the given customer."""
        slot = self.get_slot(slot_id)
        if slot is None:
            return {"success": False, "message": f"Unknown slot '{slot_id}'."}
        if slot["start"] <= self._clock():
            return {"success": False, "message": f"Slot '{slot_id}' is in the past."}
        if slot_id in self._bookings:
            return {"success": False, "message": f"Slot '{slot_id}' is already booked."}

        ref = f"AP-{uuid.uuid4().hex[:6].upper()}"
        self._bookings[slot_id] = {"ref": ref, "name": name, "email": email, "phone": phone}
        logger.info("Appointment booked: %s at %s", ref, slot_id)
        return {
            "success": True,
            "message": f"Appointment {ref} booked for {slot['label']}.",
            "booking_ref": ref,
            "slot": slot,
        }

    def reset(self) -> None:
        """Forget all bookings, for tests."""
        self._bookings.clear()

    def _open_slots(self, day: date) -> list[SlotRecord]:
        if day.weekday() >= 5:  # weekends closed
            return []
        slots: list[SlotRecord] = []
        for hour in self._hours:
            start = datetime.combine(day, time(hour=hour), tzinfo=timezone.utc)
            slot_id = _slot_id(start)
            if slot_id in self._bookings:
                continue
            slots.append({"id": slot_id, "label": _label(start), "start": start, "end": start + SLOT_DURATION})
        return slots
