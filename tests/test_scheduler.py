"""Tests for reminder delivery."""

import asyncio
from datetime import timedelta

from fakes import PHONE
from nudge.clients.sms import SendResult
from nudge.models.reminder import Reminder, ReminderStatus
from nudge.services.reminder_store import new_reminder_id
from nudge.services.scheduler import ReminderScheduler, format_reminder_message


async def schedule(reminder_store, clock, seconds=1, phone_number=PHONE, **overrides) -> Reminder:
    fields = {
        "id": new_reminder_id(),
        "user_id": "user-1",
        "conversation_id": "conv-1",
        "phone_number": phone_number,
        "title": "Call mom",
        "scheduled_for": clock.now + timedelta(seconds=seconds),
    }
    fields.update(overrides)
    return await reminder_store.create(Reminder(**fields))


class TestFormatReminderMessage:
    """Tests for the SMS body."""

    def test_with_description(self, clock):
        """Test the full message layout."""
        reminder = Reminder(
            id="r1",
            user_id="u",
            conversation_id="c",
            phone_number=PHONE,
            title="Call mom",
            description="Ask about Sunday dinner",
            scheduled_for=clock.now,
        )
        assert format_reminder_message(reminder) == (
            "🔔 Reminder: Call mom\n\n"
            "Ask about Sunday dinner\n\n"
            "Scheduled for: Saturday, March 01, 2025 at 12:00 PM UTC"
        )

    def test_without_description(self, clock):
        """Test that the description block is omitted when empty."""
        reminder = Reminder(
            id="r1", user_id="u", conversation_id="c", phone_number=PHONE, title="Call mom", scheduled_for=clock.now
        )
        assert format_reminder_message(reminder).count("\n\n") == 1


class TestDelivery:
    """Tests for a delivery tick."""

    async def test_due_reminder_sent_once(self, scheduler, reminder_store, channel, clock):
        """Test that a due reminder is delivered exactly once."""
        reminder = await schedule(reminder_store, clock, seconds=1)

        early = await scheduler.check_and_send_reminders()
        assert early.claimed == 0
        assert channel.sent == []

        clock.advance(seconds=1)
        tick = await scheduler.check_and_send_reminders()
        assert (tick.claimed, tick.sent, tick.failed) == (1, 1, 0)
        assert channel.sent == [(PHONE, format_reminder_message(reminder))]
        assert (await reminder_store.find_by_id(reminder.id)).status == ReminderStatus.SENT

        clock.advance(minutes=10)
        await scheduler.check_and_send_reminders()
        assert len(channel.sent) == 1

    async def test_cancelled_reminder_not_sent(self, scheduler, reminder_store, channel, clock):
        """Test that cancelled reminders are skipped."""
        reminder = await schedule(reminder_store, clock)
        await reminder_store.update_status(reminder.id, ReminderStatus.CANCELLED)
        clock.advance(minutes=1)

        await scheduler.check_and_send_reminders()
        assert channel.sent == []

    async def test_failed_send_is_retried(self, scheduler, reminder_store, channel, clock):
        """Test that a failed send leaves the reminder pending for the next tick."""
        reminder = await schedule(reminder_store, clock)
        channel.failing.add(PHONE)
        clock.advance(minutes=1)

        failed = await scheduler.check_and_send_reminders()
        assert (failed.sent, failed.failed) == (0, 1)
        stored = await reminder_store.find_by_id(reminder.id)
        assert stored.status == ReminderStatus.PENDING
        assert stored.claimed_by is None

        channel.failing.clear()
        clock.advance(minutes=1)
        retried = await scheduler.check_and_send_reminders()
        assert retried.sent == 1
        assert (await reminder_store.find_by_id(reminder.id)).status == ReminderStatus.SENT

    async def test_failures_are_independent(self, scheduler, reminder_store, channel, clock):
        """Test that one failing reminder does not block the others."""
        broken = await schedule(reminder_store, clock, phone_number="+15550000000")
        healthy = await schedule(reminder_store, clock, title="Dentist")
        channel.failing.add("+15550000000")
        clock.advance(minutes=1)

        tick = await scheduler.check_and_send_reminders()

        assert (tick.sent, tick.failed) == (1, 1)
        assert (await reminder_store.find_by_id(healthy.id)).status == ReminderStatus.SENT
        assert (await reminder_store.find_by_id(broken.id)).status == ReminderStatus.PENDING

    async def test_channel_exception_is_contained(self, reminder_store, clock):
        """Test that a raising channel is treated as a failed send."""

        class ExplodingChannel:
            async def send(self, phone_number, text):
                raise ConnectionError("network down")

        scheduler = ReminderScheduler(reminder_store, ExplodingChannel(), clock=clock)
        reminder = await schedule(reminder_store, clock)
        clock.advance(minutes=1)

        tick = await scheduler.check_and_send_reminders()

        assert tick.failed == 1
        assert (await reminder_store.find_by_id(reminder.id)).claimed_by is None

    async def test_slow_send_times_out(self, reminder_store, clock):
        """Test the per-send deadline."""

        class SlowChannel:
            async def send(self, phone_number, text):
                await asyncio.sleep(5)
                return SendResult(success=True)

        scheduler = ReminderScheduler(reminder_store, SlowChannel(), send_timeout_seconds=0.01, clock=clock)
        reminder = await schedule(reminder_store, clock)
        clock.advance(minutes=1)

        tick = await scheduler.check_and_send_reminders()

        assert tick.failed == 1
        assert (await reminder_store.find_by_id(reminder.id)).status == ReminderStatus.PENDING

    async def test_concurrent_ticks_do_not_double_send(self, scheduler, reminder_store, channel, clock):
        """Test that overlapping ticks deliver each reminder once."""
        for _ in range(5):
            await schedule(reminder_store, clock)
        clock.advance(minutes=1)

        ticks = await asyncio.gather(scheduler.check_and_send_reminders(), scheduler.trigger_check())

        assert sum(tick.sent for tick in ticks) == 5
        assert len(channel.sent) == 5

    async def test_reschedule_during_send_is_kept(self, reminder_store, registry, context, clock):
        """Test that a reminder moved while its SMS is in flight stays pending at the new time."""
        sending = asyncio.Event()
        release = asyncio.Event()

        class BlockingChannel:
            async def send(self, phone_number, text):
                sending.set()
                await release.wait()
                return SendResult(success=True)

        scheduler = ReminderScheduler(reminder_store, BlockingChannel(), clock=clock)
        reminder = await schedule(reminder_store, clock)
        clock.advance(seconds=2)

        tick = asyncio.create_task(scheduler.check_and_send_reminders())
        await sending.wait()
        result = await registry.execute(
            "update_reminder", {"reminder_id": reminder.id, "scheduled_for": "2025-03-02T12:00:00Z"}, context
        )
        release.set()
        outcome = await tick

        assert not result.is_error
        assert (outcome.sent, outcome.failed) == (0, 1)
        stored = await reminder_store.find_by_id(reminder.id)
        assert stored.status == ReminderStatus.PENDING
        assert stored.claimed_by is None
        assert stored.scheduled_for.day == 2

    async def test_store_failure_ends_tick(self, scheduler, reminder_store, monkeypatch):
        """Test that a store outage is recorded rather than raised."""

        async def unavailable(*args, **kwargs):
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(reminder_store, "claim_due", unavailable)
        tick = await scheduler.check_and_send_reminders()

        assert tick.error == "database unavailable"
        assert scheduler.get_status()["last_tick"]["error"] == "database unavailable"


class TestLifecycle:
    """Tests for starting and stopping the periodic job."""

    async def test_start_and_stop(self, scheduler):
        """Test the running flag and reported status."""
        assert scheduler.get_status() == {"is_running": False, "interval_seconds": 60, "last_tick": None}

        scheduler.start()
        try:
            assert scheduler.is_running
            assert scheduler.get_status()["is_running"] is True
        finally:
            scheduler.stop()

        assert not scheduler.is_running

    async def test_start_twice_is_harmless(self, scheduler):
        """Test that a second start keeps a single job."""
        scheduler.start()
        try:
            scheduler.start()
            assert scheduler.is_running
        finally:
            scheduler.stop()

    def test_stop_when_not_running(self, scheduler):
        """Test that stopping an idle scheduler does nothing."""
        scheduler.stop()
        assert not scheduler.is_running

    async def test_trigger_records_last_tick(self, scheduler):
        """Test that a manual trigger is reported in the status."""
        tick = await scheduler.trigger_check()
        assert scheduler.get_status()["last_tick"]["tick_id"] == tick.tick_id
