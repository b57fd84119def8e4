"""Periodic delivery of due reminders over SMS."""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from cuid2 import cuid_wrapper

from nudge.clients.sms import NotificationChannel
from nudge.models.reminder import Reminder
from nudge.services.reminder_store import ReminderStore
from nudge.utils.dates import format_human, to_iso, utc_now
from nudge.utils.logging import get_logger

logger = get_logger(__name__)

cuid = cuid_wrapper()

JOB_ID = "reminder-delivery"


def format_reminder_message(reminder: Reminder) -> str:
    """Format the SMS body for a reminder."""
    message = f"🔔 Reminder: {reminder.title}"

    if reminder.description:
        message += f"\n\n{reminder.description}"

    message += f"\n\nScheduled for: {format_human(reminder.scheduled_for)}"
    return message


@dataclass
class TickResult:
    """Summary of one delivery pass."""

    tick_id: str
    started_at: datetime
    claimed: int = 0
    sent: int = 0
    failed: int = 0
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "tick_id": self.tick_id,
            "started_at": to_iso(self.started_at),
            "claimed": self.claimed,
            "sent": self.sent,
            "failed": self.failed,
            "error": self.error,
        }


class ReminderScheduler:
    """Sends due reminders on a fixed interval.

    Every tick claims the reminders it is about to deliver under a unique tick
    id before sending anything, so several replicas (or a manual trigger racing
    the periodic job) never deliver the same reminder twice. A failed send
    releases the claim and the reminder is retried on the next tick.
    """

    def __init__(
        self,
        reminder_store: ReminderStore,
        channel: NotificationChannel,
        interval_seconds: int = 60,
        claim_lease_seconds: int = 300,
        batch_size: int = 100,
        send_timeout_seconds: float = 30.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize the scheduler.

        Args:
            reminder_store: Reminder persistence
            channel: Outbound SMS channel
            interval_seconds: Seconds between ticks
            claim_lease_seconds: How long a claim blocks other ticks before it expires
            batch_size: Maximum reminders claimed per tick
            send_timeout_seconds: Deadline for a single send
            clock: Source of the current instant
        """
        self.reminder_store = reminder_store
        self.channel = channel
        self.interval_seconds = interval_seconds
        self.claim_lease = timedelta(seconds=claim_lease_seconds)
        self.batch_size = batch_size
        self.send_timeout_seconds = send_timeout_seconds
        self._clock = clock
        self._scheduler: AsyncIOScheduler | None = None
        self.last_tick: TickResult | None = None

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        """Start the periodic job on the running event loop."""
        if self.is_running:
            logger.warning("Reminder scheduler is already running")
            return

        logger.info(f"Starting reminder scheduler with interval: {self.interval_seconds}s")
        self._scheduler = AsyncIOScheduler(timezone=UTC)
        # A tick never overlaps itself; a late tick runs once instead of catching up
        self._scheduler.add_job(
            self.check_and_send_reminders,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=JOB_ID,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info("Reminder scheduler started successfully")

    def stop(self) -> None:
        """Stop the periodic job."""
        if not self.is_running or self._scheduler is None:
            logger.warning("Reminder scheduler is not running")
            return

        logger.info("Stopping reminder scheduler...")
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Reminder scheduler stopped")

    def get_status(self) -> dict[str, Any]:
        return {
            "is_running": self.is_running,
            "interval_seconds": self.interval_seconds,
            "last_tick": self.last_tick.as_dict() if self.last_tick else None,
        }

    async def trigger_check(self) -> TickResult:
        """Run one tick now, outside the periodic schedule."""
        logger.info("Manually triggering reminder check")
        return await self.check_and_send_reminders()

    async def check_and_send_reminders(self) -> TickResult:
        """Claim due reminders and deliver each of them independently.

        Never raises: store failures end the tick, per-reminder failures are
        logged and leave the reminder pending.
        """
        now = self._clock()
        result = TickResult(tick_id=cuid(), started_at=now)
        logger.debug(f"Checking for due reminders at {to_iso(now)} (tick {result.tick_id})")

        try:
            claimed = await self.reminder_store.claim_due(now, result.tick_id, self.claim_lease, self.batch_size)
        except Exception as e:
            logger.error(f"Error checking for due reminders: {e}", exc_info=True)
            result.error = str(e)
            self.last_tick = result
            return result

        result.claimed = len(claimed)
        if not claimed:
            logger.info("No due reminders found")
            self.last_tick = result
            return result

        logger.info(f"Found {len(claimed)} due reminder(s)")
        outcomes = await asyncio.gather(*(self._deliver(reminder, result.tick_id) for reminder in claimed))

        result.sent = sum(1 for delivered in outcomes if delivered)
        result.failed = len(outcomes) - result.sent
        logger.info(f"Tick {result.tick_id} finished: {result.sent} sent, {result.failed} failed")
        self.last_tick = result
        return result

    async def _deliver(self, reminder: Reminder, tick_id: str) -> bool:
        """Send one claimed reminder; True if it was marked sent."""
        logger.info(f"Sending reminder {reminder.id} to {reminder.phone_number}")
        try:
            async with asyncio.timeout(self.send_timeout_seconds):
                send_result = await self.channel.send(reminder.phone_number, format_reminder_message(reminder))
        except TimeoutError:
            logger.error(f"Timed out sending reminder {reminder.id} after {self.send_timeout_seconds}s")
            await self._release(reminder.id, tick_id)
            return False
        except Exception as e:
            logger.error(f"Error sending reminder {reminder.id}: {e}", exc_info=True)
            await self._release(reminder.id, tick_id)
            return False

        if not send_result.success:
            logger.error(f"Failed to send reminder {reminder.id}: {send_result.error}")
            await self._release(reminder.id, tick_id)
            return False

        try:
            marked = await self.reminder_store.mark_sent(reminder.id, tick_id)
        except Exception as e:
            # The lease expires and a later tick sends it again
            logger.error(f"Reminder {reminder.id} delivered but not marked sent: {e}", exc_info=True)
            return False

        if not marked:
            logger.warning(f"Reminder {reminder.id} delivered but its claim was lost before marking it sent")
            return False

        logger.info(f"Reminder {reminder.id} marked as sent")
        return True

    async def _release(self, reminder_id: str, tick_id: str) -> None:
        try:
            await self.reminder_store.release_claim(reminder_id, tick_id)
        except Exception as e:
            logger.error(f"Could not release claim on reminder {reminder_id}: {e}", exc_info=True)
