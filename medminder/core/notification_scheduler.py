"""
MedMinder — Notification Scheduler.

Computes the next trigger instant of every pending dose slot and hands it
to the NotificationPort, keeping the returned handles so reminders can be
cancelled when a medication changes or is deleted.

Provider-agnostic: depends on the NotificationPort protocol only. Delivery
failures are logged and leave that one slot unscheduled (fail-open).
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from medminder.core.time_util import is_time_in_range, next_trigger, now_local
from medminder.data.keys import StorageKeys
from medminder.data.models import NotificationCategory, ReminderPayload, ScheduledNotification

if TYPE_CHECKING:
    from medminder.core.escalation import EscalationManager
    from medminder.data.models import DoseSlot, Medication, Preferences
    from medminder.data.stores import PreferencesStore
    from medminder.ports.notification_port import NotificationPort
    from medminder.ports.storage_port import KeyValueStore

logger = logging.getLogger(__name__)


def build_reminder_payload(medication: Medication, slot: DoseSlot) -> ReminderPayload:
    return ReminderPayload(
        medication_id=medication.id,
        medication_name=medication.name,
        schedule_id=slot.id,
        dosage=medication.dosage,
        unit=medication.unit.value,
        instructions=medication.instructions,
        title="💊 Medication Reminder",
        body=f"Time to take {medication.name} ({medication.dosage}{medication.unit.value})",
        category=NotificationCategory.REMINDER,
    )


def in_quiet_hours(slot_time: str, prefs: Preferences) -> bool:
    return prefs.quiet_hours_enabled and is_time_in_range(
        slot_time, prefs.quiet_hours_start, prefs.quiet_hours_end,
    )


class NotificationScheduler:
    """Tracks which reminders are armed with the notification provider."""

    def __init__(
        self,
        notifier: NotificationPort,
        kv: KeyValueStore,
        preferences: PreferencesStore,
        escalation: EscalationManager | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._notifier = notifier
        self._kv = kv
        self._preferences = preferences
        self._escalation = escalation
        self._clock = clock or now_local
        self._scheduled: list[ScheduledNotification] = self._load()

    # ------------------------------------------------------------------
    # Persistence of tracked handles
    # ------------------------------------------------------------------

    def _load(self) -> list[ScheduledNotification]:
        raw = self._kv.get_object(StorageKeys.SCHEDULED_NOTIFICATIONS) or []
        scheduled = [ScheduledNotification.model_validate(item) for item in raw]
        if scheduled:
            logger.info("Loaded %d scheduled notifications", len(scheduled))
        return scheduled

    def _save(self) -> None:
        self._kv.set_object(
            StorageKeys.SCHEDULED_NOTIFICATIONS,
            [n.model_dump(mode="json") for n in self._scheduled],
        )

    def tracked(self, medication_id: str | None = None) -> list[ScheduledNotification]:
        if medication_id is None:
            return list(self._scheduled)
        return [n for n in self._scheduled if n.medication_id == medication_id]

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def schedule_all_reminders(self, medication: Medication) -> int:
        """(Re)arm a reminder for every pending slot. Returns how many were armed."""
        await self.cancel_medication_reminders(medication.id)

        prefs = self._preferences.get()
        if not prefs.notifications_enabled:
            logger.info("Notifications disabled; nothing scheduled for %s", medication.name)
            return 0

        now = self._clock()
        armed = 0
        for slot in medication.schedule:
            if not slot.is_pending:
                continue

            if in_quiet_hours(slot.time, prefs):
                logger.info("Skipping %s at %s - quiet hours", medication.name, slot.time)
                continue

            trigger = next_trigger(slot.time, now)
            if await self._schedule_reminder(medication, slot, trigger):
                armed += 1

        logger.info("Scheduled %d reminders for %s", armed, medication.name)
        return armed

    async def cancel_medication_reminders(self, medication_id: str) -> None:
        """Cancel every tracked reminder of a medication and its escalation."""
        for notif in self.tracked(medication_id):
            try:
                await self._notifier.cancel(notif.handle)
            except Exception as exc:
                logger.warning("Failed to cancel reminder %s: %s", notif.handle, exc)

        self._scheduled = [n for n in self._scheduled if n.medication_id != medication_id]
        self._save()

        if self._escalation is not None:
            self._escalation.cancel_escalation(medication_id)

    async def cancel_all_notifications(self) -> None:
        try:
            await self._notifier.cancel_all()
        except Exception as exc:
            logger.warning("Failed to cancel all notifications: %s", exc)
        self._scheduled = []
        self._save()
        if self._escalation is not None:
            self._escalation.cancel_all()
        logger.info("All notifications cancelled")

    async def snooze(
        self,
        medication: Medication,
        schedule_id: str | None = None,
        minutes: int | None = None,
    ) -> str | None:
        """Re-remind about a medication after `minutes` and stop its escalation."""
        if minutes is None:
            minutes = self._preferences.get().snooze_minutes

        if self._escalation is not None:
            self._escalation.cancel_escalation(medication.id)

        when = self._clock() + timedelta(minutes=minutes)
        payload = ReminderPayload(
            medication_id=medication.id,
            medication_name=medication.name,
            schedule_id=schedule_id,
            dosage=medication.dosage,
            unit=medication.unit.value,
            instructions=medication.instructions,
            snoozed=True,
            title="💊 Snoozed Reminder",
            body=f"Time to take {medication.name}",
            category=NotificationCategory.REMINDER,
        )
        try:
            handle = await self._notifier.schedule(payload, when)
        except Exception as exc:
            logger.error("Failed to snooze %s: %s", medication.name, exc)
            return None

        logger.info("Snoozed %s for %d minutes", medication.name, minutes)
        return handle

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _schedule_reminder(
        self, medication: Medication, slot: DoseSlot, trigger: datetime,
    ) -> bool:
        payload = build_reminder_payload(medication, slot)
        try:
            handle = await self._notifier.schedule(payload, trigger)
        except Exception as exc:
            logger.error(
                "Failed to schedule %s at %s: %s", medication.name, slot.time, exc,
            )
            return False

        self._scheduled.append(ScheduledNotification(
            medication_id=medication.id,
            medication_name=medication.name,
            schedule_id=slot.id,
            time=trigger,
            handle=handle,
        ))
        self._save()
        logger.debug("Reminder for %s armed at %s (%s)", medication.name, trigger, handle)
        return True
