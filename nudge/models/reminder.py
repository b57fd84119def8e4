"""Reminder data model and status lifecycle."""

from datetime import datetime, timedelta
from enum import StrEnum

from pydantic import BaseModel, Field

from nudge.utils.dates import to_iso, utc_now
from nudge.utils.phone import E164_PATTERN


class ReminderStatus(StrEnum):
    """Lifecycle state of a reminder."""

    PENDING = "pending"
    SENT = "sent"
    CANCELLED = "cancelled"


# sent and cancelled are terminal
ALLOWED_TRANSITIONS: dict[ReminderStatus, frozenset[ReminderStatus]] = {
    ReminderStatus.PENDING: frozenset({ReminderStatus.SENT, ReminderStatus.CANCELLED}),
    ReminderStatus.SENT: frozenset(),
    ReminderStatus.CANCELLED: frozenset(),
}


def can_transition(current: ReminderStatus, target: ReminderStatus) -> bool:
    """Whether ``current -> target`` is a legal status change."""
    return target in ALLOWED_TRANSITIONS[current]


class Reminder(BaseModel):
    """A reminder scheduled for SMS delivery."""

    id: str
    user_id: str
    conversation_id: str
    phone_number: str = Field(..., pattern=E164_PATTERN)
    title: str = Field(..., min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=1000)
    scheduled_for: datetime
    status: ReminderStatus = ReminderStatus.PENDING
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    # Delivery lease held by a scheduler tick while it sends the SMS
    claimed_by: str | None = None
    claimed_at: datetime | None = None

    @property
    def is_pending(self) -> bool:
        return self.status == ReminderStatus.PENDING

    def is_due(self, now: datetime) -> bool:
        """Pending and scheduled at or before ``now``."""
        return self.is_pending and self.scheduled_for <= now

    def is_claimable(self, now: datetime, lease: timedelta) -> bool:
        """Due and not held by a live delivery lease."""
        if not self.is_due(now):
            return False
        return self.claimed_by is None or self.claimed_at is None or self.claimed_at <= now - lease

    def summary(self) -> dict[str, str | None]:
        """Compact representation handed back to the model."""
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "scheduled_for": to_iso(self.scheduled_for),
            "status": self.status.value,
            "created_at": to_iso(self.created_at),
        }
