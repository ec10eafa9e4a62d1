"""Tests for medminder.core.notification_scheduler — NotificationScheduler."""

from datetime import datetime
from unittest.mock import MagicMock

import pytest

from medminder.core.notification_scheduler import (
    NotificationScheduler,
    build_reminder_payload,
    in_quiet_hours,
)
from medminder.data.models import NotificationCategory, Preferences
from medminder.data.stores import PreferencesStore


@pytest.fixture
def preferences(kv):
    return PreferencesStore(kv)


@pytest.fixture
def escalation():
    return MagicMock()


@pytest.fixture
def scheduler(notifier, kv, preferences, escalation, clock):
    return NotificationScheduler(notifier, kv, preferences, escalation=escalation, clock=clock)


# ---------------------------------------------------------------------------
# Tests for helpers
# ---------------------------------------------------------------------------


class TestBuildReminderPayload:
    def test_fields(self, metformin):
        payload = build_reminder_payload(metformin, metformin.schedule[0])
        assert payload.medication_id == metformin.id
        assert payload.schedule_id == metformin.schedule[0].id
        assert payload.body == "Time to take Metformin (500mg)"
        assert payload.category is NotificationCategory.REMINDER
        assert payload.escalation_level == 0


class TestInQuietHours:
    def test_enabled(self):
        prefs = Preferences(quiet_hours_enabled=True, quiet_hours_start="22:00", quiet_hours_end="07:00")
        assert in_quiet_hours("23:00", prefs) is True
        assert in_quiet_hours("06:59", prefs) is True
        assert in_quiet_hours("08:00", prefs) is False

    def test_disabled(self):
        prefs = Preferences(quiet_hours_enabled=False)
        assert in_quiet_hours("23:00", prefs) is False


# ---------------------------------------------------------------------------
# Tests for schedule_all_reminders
# ---------------------------------------------------------------------------


class TestScheduleAllReminders:
    @pytest.mark.asyncio
    async def test_one_reminder_per_pending_slot(self, scheduler, notifier, metformin):
        armed = await scheduler.schedule_all_reminders(metformin)
        assert armed == 2
        assert [when for _, when in notifier.timed()] == [
            datetime(2024, 1, 10, 8, 0),
            datetime(2024, 1, 10, 20, 0),
        ]
        assert len(scheduler.tracked(metformin.id)) == 2

    @pytest.mark.asyncio
    async def test_passed_slot_rolls_to_tomorrow(self, scheduler, notifier, metformin, clock):
        clock.set(datetime(2024, 1, 10, 9, 0))
        await scheduler.schedule_all_reminders(metformin)
        assert notifier.timed()[0][1] == datetime(2024, 1, 11, 8, 0)

    @pytest.mark.asyncio
    async def test_resolved_slots_skipped(self, scheduler, notifier, metformin):
        metformin.schedule[0].taken = True
        assert await scheduler.schedule_all_reminders(metformin) == 1
        assert notifier.timed()[0][0].schedule_id == metformin.schedule[1].id

    @pytest.mark.asyncio
    async def test_quiet_hours_suppress(self, scheduler, notifier, preferences):
        from medminder.data.stores import create_medication

        preferences.update(quiet_hours_enabled=True, quiet_hours_start="22:00", quiet_hours_end="07:00")
        med = create_medication("Melatonin", "3", "mg", ["23:00", "12:00"])
        assert await scheduler.schedule_all_reminders(med) == 1
        assert notifier.timed()[0][0].schedule_id == med.schedule[0].id  # 12:00

    @pytest.mark.asyncio
    async def test_notifications_disabled(self, scheduler, notifier, preferences, metformin):
        preferences.update(notifications_enabled=False)
        assert await scheduler.schedule_all_reminders(metformin) == 0
        assert notifier.scheduled == []

    @pytest.mark.asyncio
    async def test_reschedule_cancels_previous(self, scheduler, notifier, metformin):
        await scheduler.schedule_all_reminders(metformin)
        await scheduler.schedule_all_reminders(metformin)
        assert notifier.cancelled == ["h1", "h2"]
        assert len(scheduler.tracked(metformin.id)) == 2

    @pytest.mark.asyncio
    async def test_delivery_failure_leaves_slot_unscheduled(self, scheduler, notifier, metformin):
        notifier.fail = True
        assert await scheduler.schedule_all_reminders(metformin) == 0
        assert scheduler.tracked() == []

    @pytest.mark.asyncio
    async def test_tracked_reloaded_from_store(self, scheduler, notifier, kv, preferences, clock, metformin):
        await scheduler.schedule_all_reminders(metformin)
        reloaded = NotificationScheduler(notifier, kv, preferences, clock=clock)
        assert {n.handle for n in reloaded.tracked()} == {"h1", "h2"}


# ---------------------------------------------------------------------------
# Tests for cancellation
# ---------------------------------------------------------------------------


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_medication_also_cancels_escalation(self, scheduler, notifier, escalation, metformin):
        await scheduler.schedule_all_reminders(metformin)
        escalation.reset_mock()
        await scheduler.cancel_medication_reminders(metformin.id)
        assert scheduler.tracked(metformin.id) == []
        assert set(notifier.cancelled) == {"h1", "h2"}
        escalation.cancel_escalation.assert_called_once_with(metformin.id)

    @pytest.mark.asyncio
    async def test_cancel_all(self, scheduler, notifier, escalation, metformin):
        await scheduler.schedule_all_reminders(metformin)
        await scheduler.cancel_all_notifications()
        assert notifier.cancel_all_calls == 1
        assert scheduler.tracked() == []
        escalation.cancel_all.assert_called_once()


# ---------------------------------------------------------------------------
# Tests for snooze
# ---------------------------------------------------------------------------


class TestSnooze:
    @pytest.mark.asyncio
    async def test_default_minutes(self, scheduler, notifier, escalation, metformin, clock):
        handle = await scheduler.snooze(metformin, metformin.schedule[0].id)
        assert handle == "h1"
        payload, when = notifier.timed()[0]
        assert when == datetime(2024, 1, 10, 7, 15)
        assert payload.snoozed is True
        assert payload.schedule_id == metformin.schedule[0].id
        escalation.cancel_escalation.assert_called_once_with(metformin.id)

    @pytest.mark.asyncio
    async def test_explicit_minutes(self, scheduler, notifier, metformin):
        await scheduler.snooze(metformin, minutes=5)
        assert notifier.timed()[0][1] == datetime(2024, 1, 10, 7, 5)

    @pytest.mark.asyncio
    async def test_failure_returns_none(self, scheduler, notifier, metformin):
        notifier.fail = True
        assert await scheduler.snooze(metformin) is None
