"""Reminder store interface and in-memory implementation."""

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any, Protocol

from cuid2 import cuid_wrapper

from nudge.errors import InvalidTransitionError
from nudge.models.reminder import Reminder, ReminderStatus, can_transition
from nudge.utils.dates import utc_now
from nudge.utils.logging import get_logger

logger = get_logger(__name__)

cuid = cuid_wrapper()

# Fields a caller may change through ``update``
UPDATABLE_FIELDS = frozenset({"title", "description", "scheduled_for"})


def new_reminder_id() -> str:
    return cuid()


class ReminderStore(Protocol):
    """Interface for reminder persistence.

    Every write is a per-record conditional update, so a scheduler tick and a
    concurrent tool call cannot overwrite each other's changes.
    """

    async def create(self, reminder: Reminder) -> Reminder:
        """Persist a new reminder."""
        ...

    async def find_by_id(self, reminder_id: str) -> Reminder | None:
        """Get a reminder by id, or None."""
        ...

    async def find_many(
        self,
        *,
        user_id: str | None = None,
        conversation_id: str | None = None,
        phone_number: str | None = None,
        status: ReminderStatus | None = None,
    ) -> list[Reminder]:
        """Find reminders matching every given filter, by scheduled time ascending."""
        ...

    async def find_by_user_id(self, user_id: str) -> list[Reminder]:
        ...

    async def find_by_conversation_id(self, conversation_id: str) -> list[Reminder]:
        ...

    async def find_by_phone_number(self, phone_number: str) -> list[Reminder]:
        ...

    async def find_due_reminders(self, now: datetime) -> list[Reminder]:
        """Pending reminders scheduled at or before ``now``."""
        ...

    async def update(
        self,
        reminder_id: str,
        changes: dict[str, Any],
        expected_status: ReminderStatus = ReminderStatus.PENDING,
    ) -> Reminder | None:
        """Apply field changes if the reminder is still in ``expected_status``.

        Any delivery claim is dropped, so a tick sending the previous version
        cannot mark the changed reminder sent.

        Returns:
            The updated reminder, or None if it does not exist or its status moved on
        """
        ...

    async def update_status(self, reminder_id: str, status: ReminderStatus) -> Reminder | None:
        """Transition status from pending.

        Raises:
            InvalidTransitionError: If the transition is not legal from pending

        Returns:
            The updated reminder, or None if it is missing or no longer pending
        """
        ...

    async def claim_due(self, now: datetime, tick_id: str, lease: timedelta, limit: int = 100) -> list[Reminder]:
        """Claim due reminders for delivery by one scheduler tick.

        A reminder is claimable when it is due and no live lease holds it.
        """
        ...

    async def mark_sent(self, reminder_id: str, tick_id: str) -> bool:
        """Mark a reminder claimed by ``tick_id`` as sent."""
        ...

    async def release_claim(self, reminder_id: str, tick_id: str) -> bool:
        """Drop the lease held by ``tick_id`` so a later tick retries."""
        ...

    async def delete(self, reminder_id: str) -> bool:
        """Remove a reminder permanently."""
        ...


class InMemoryReminderStore:
    """In-memory reminder store guarded by a single asyncio lock."""

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._reminders: dict[str, Reminder] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    async def create(self, reminder: Reminder) -> Reminder:
        now = self._clock()
        stored = reminder.model_copy(update={"created_at": now, "updated_at": now}, deep=True)
        async with self._lock:
            self._reminders[stored.id] = stored
        logger.info(f"Reminder created with ID: {stored.id}")
        return stored.model_copy(deep=True)

    async def find_by_id(self, reminder_id: str) -> Reminder | None:
        reminder = self._reminders.get(reminder_id)
        return reminder.model_copy(deep=True) if reminder else None

    async def find_many(
        self,
        *,
        user_id: str | None = None,
        conversation_id: str | None = None,
        phone_number: str | None = None,
        status: ReminderStatus | None = None,
    ) -> list[Reminder]:
        matches = [
            r
            for r in self._reminders.values()
            if (user_id is None or r.user_id == user_id)
            and (conversation_id is None or r.conversation_id == conversation_id)
            and (phone_number is None or r.phone_number == phone_number)
            and (status is None or r.status == status)
        ]
        matches.sort(key=lambda r: r.scheduled_for)
        return [r.model_copy(deep=True) for r in matches]

    async def find_by_user_id(self, user_id: str) -> list[Reminder]:
        return await self.find_many(user_id=user_id)

    async def find_by_conversation_id(self, conversation_id: str) -> list[Reminder]:
        return await self.find_many(conversation_id=conversation_id)

    async def find_by_phone_number(self, phone_number: str) -> list[Reminder]:
        return await self.find_many(phone_number=phone_number)

    async def find_due_reminders(self, now: datetime) -> list[Reminder]:
        due = [r for r in self._reminders.values() if r.is_due(now)]
        due.sort(key=lambda r: r.scheduled_for)
        return [r.model_copy(deep=True) for r in due]

    async def update(
        self,
        reminder_id: str,
        changes: dict[str, Any],
        expected_status: ReminderStatus = ReminderStatus.PENDING,
    ) -> Reminder | None:
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update reminder fields: {', '.join(sorted(unknown))}")

        async with self._lock:
            reminder = self._reminders.get(reminder_id)
            if reminder is None or reminder.status != expected_status:
                logger.warning(f"Reminder not updatable: {reminder_id}")
                return None

            # A tick delivering the old version can no longer mark it sent
            fields = {**reminder.model_dump(), **changes, "updated_at": self._clock()}
            updated = Reminder.model_validate({**fields, "claimed_by": None, "claimed_at": None})
            self._reminders[reminder_id] = updated

        logger.info(f"Reminder updated: {reminder_id}")
        return updated.model_copy(deep=True)

    async def update_status(self, reminder_id: str, status: ReminderStatus) -> Reminder | None:
        if not can_transition(ReminderStatus.PENDING, status):
            raise InvalidTransitionError(f"Cannot move a reminder from pending to {status.value}")

        async with self._lock:
            reminder = self._reminders.get(reminder_id)
            if reminder is None or not reminder.is_pending:
                return None

            reminder.status = status
            reminder.updated_at = self._clock()
            reminder.claimed_by = None
            reminder.claimed_at = None

        logger.info(f"Reminder {reminder_id} status set to {status.value}")
        return reminder.model_copy(deep=True)

    async def claim_due(self, now: datetime, tick_id: str, lease: timedelta, limit: int = 100) -> list[Reminder]:
        claimed: list[Reminder] = []
        async with self._lock:
            candidates = sorted(
                (r for r in self._reminders.values() if r.is_claimable(now, lease)),
                key=lambda r: r.scheduled_for,
            )
            for reminder in candidates[:limit]:
                reminder.claimed_by = tick_id
                reminder.claimed_at = now
                claimed.append(reminder.model_copy(deep=True))
        return claimed

    async def mark_sent(self, reminder_id: str, tick_id: str) -> bool:
        async with self._lock:
            reminder = self._reminders.get(reminder_id)
            if reminder is None or not reminder.is_pending or reminder.claimed_by != tick_id:
                return False

            reminder.status = ReminderStatus.SENT
            reminder.updated_at = self._clock()
            reminder.claimed_by = None
            reminder.claimed_at = None
        return True

    async def release_claim(self, reminder_id: str, tick_id: str) -> bool:
        async with self._lock:
            reminder = self._reminders.get(reminder_id)
            if reminder is None or reminder.claimed_by != tick_id:
                return False

            reminder.claimed_by = None
            reminder.claimed_at = None
        return True

    async def delete(self, reminder_id: str) -> bool:
        async with self._lock:
            return self._reminders.pop(reminder_id, None) is not None
