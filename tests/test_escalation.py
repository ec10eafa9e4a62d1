"""Tests for medminder.core.escalation — EscalationManager.

Delays are fractions of a minute so real asyncio timers fire quickly.
"""

import asyncio
from datetime import timedelta

import pytest

from medminder.core.escalation import EscalationManager, escalation_message
from medminder.data.keys import StorageKeys
from medminder.data.models import NotificationCategory, ReminderPayload

FAST = [0.001, 0.005, 0.006]   # 60ms, 300ms, 360ms


def _payload(med_id="m1"):
    return ReminderPayload(
        medication_id=med_id,
        medication_name="Metformin",
        schedule_id="s1",
        title="💊 Medication Reminder",
        body="Time to take Metformin (500mg)",
    )


@pytest.fixture
def manager(notifier, kv, clock):
    return EscalationManager(notifier, kv=kv, delays_minutes=FAST, clock=clock)


class TestEscalationMessage:
    def test_levels(self):
        assert escalation_message("Metformin", 1, 5) == (
            "⚠️ Medication Overdue", "Metformin is 5 minutes overdue",
        )
        assert escalation_message("Metformin", 2, 10) == (
            "🚨 URGENT", "Metformin is 10 minutes overdue!",
        )
        assert escalation_message("Metformin", 3, 15) == (
            "🆘 Emergency", "Metformin critically overdue",
        )


class TestStartEscalation:
    @pytest.mark.asyncio
    async def test_arms_three_levels(self, manager):
        manager.start_escalation(_payload())
        assert manager.armed_levels("m1") == [1, 2, 3]
        manager.cancel_all()

    @pytest.mark.asyncio
    async def test_all_levels_fire_in_order(self, manager, notifier):
        manager.start_escalation(_payload())
        await asyncio.sleep(0.6)

        sent = notifier.immediate()
        assert [p.escalation_level for p in sent] == [1, 2, 3]
        assert sent[0].category is NotificationCategory.REMINDER
        assert sent[1].category is NotificationCategory.URGENT
        assert sent[2].category is NotificationCategory.URGENT
        assert sent[2].title == "🆘 Emergency"
        assert manager.armed_levels("m1") == []

    @pytest.mark.asyncio
    async def test_restart_replaces_existing(self, manager, notifier):
        manager.start_escalation(_payload())
        manager.start_escalation(_payload())
        await asyncio.sleep(0.6)
        assert len(notifier.immediate()) == 3

    @pytest.mark.asyncio
    async def test_without_medication_id_is_ignored(self, manager):
        manager.start_escalation(ReminderPayload())
        assert manager.armed_levels("") == []

    @pytest.mark.asyncio
    async def test_delivery_failure_does_not_raise(self, manager, notifier):
        notifier.fail = True
        manager.start_escalation(_payload())
        await asyncio.sleep(0.6)
        assert manager.armed_levels("m1") == []


class TestCancelEscalation:
    @pytest.mark.asyncio
    async def test_cancel_before_first_level(self, manager, notifier):
        manager.start_escalation(_payload())
        manager.cancel_escalation("m1")
        await asyncio.sleep(0.5)
        assert notifier.immediate() == []

    @pytest.mark.asyncio
    async def test_cancel_after_first_level_stops_the_rest(self, manager, notifier):
        manager.start_escalation(_payload())
        await asyncio.sleep(0.15)
        manager.cancel_escalation("m1")
        await asyncio.sleep(0.5)
        assert [p.escalation_level for p in notifier.immediate()] == [1]

    @pytest.mark.asyncio
    async def test_idempotent(self, manager):
        manager.start_escalation(_payload())
        manager.cancel_escalation("m1")
        manager.cancel_escalation("m1")
        manager.cancel_escalation("never-armed")
        assert manager.armed_levels("m1") == []

    @pytest.mark.asyncio
    async def test_other_medication_unaffected(self, manager):
        manager.start_escalation(_payload("m1"))
        manager.start_escalation(_payload("m2"))
        manager.cancel_escalation("m1")
        assert manager.armed_levels("m2") == [1, 2, 3]
        manager.cancel_all()


class TestPersistence:
    @pytest.mark.asyncio
    async def test_deadlines_persisted_and_cleared(self, manager, kv, clock):
        manager.start_escalation(_payload(), delivered_at=clock())
        stored = kv.get_object(StorageKeys.ESCALATIONS)
        assert set(stored["m1"]["deadlines"]) == {"1", "2", "3"}

        manager.cancel_escalation("m1")
        assert kv.get_object(StorageKeys.ESCALATIONS) == {}

    @pytest.mark.asyncio
    async def test_restore_rearms_future_levels_only(self, notifier, kv, clock):
        delivered = clock() - timedelta(minutes=7)
        kv.set_object(StorageKeys.ESCALATIONS, {
            "m1": {
                "payload": _payload().model_dump(mode="json"),
                "deadlines": {
                    "1": (delivered + timedelta(minutes=5)).isoformat(),
                    "2": (delivered + timedelta(minutes=10)).isoformat(),
                    "3": (delivered + timedelta(minutes=15)).isoformat(),
                },
            },
        })
        manager = EscalationManager(notifier, kv=kv, delays_minutes=[5, 10, 15], clock=clock)
        assert manager.restore() == 2
        assert manager.armed_levels("m1") == [2, 3]
        assert set(kv.get_object(StorageKeys.ESCALATIONS)["m1"]["deadlines"]) == {"2", "3"}
        manager.cancel_all()

    @pytest.mark.asyncio
    async def test_restore_from_snapshot(self, notifier, kv, clock):
        manager = EscalationManager(notifier, kv=kv, delays_minutes=[5, 10, 15], clock=clock)
        manager.start_escalation(_payload(), delivered_at=clock())
        saved = manager.saved_state()
        manager.cancel_all()

        assert manager.restore(saved) == 3
        assert manager.armed_levels("m1") == [1, 2, 3]
        manager.cancel_all()

    @pytest.mark.asyncio
    async def test_restore_skips_unreadable_entries(self, notifier, kv, clock):
        kv.set_object(StorageKeys.ESCALATIONS, {"m1": {"payload": {}}})
        manager = EscalationManager(notifier, kv=kv, delays_minutes=[5], clock=clock)
        assert manager.restore() == 0
