"""Dose state machine — transitions of a single dose slot.

    pending -> taken      (mark_taken)
    pending -> skipped    (mark_skipped)
    taken/skipped -> pending   (undo)

Taking a skipped dose (or skipping a taken one) is a single atomic update
that clears the other flag and its timestamp. Repeating the state a slot is
already in changes nothing and appends no DoseRecord.

Unknown medication or slot ids are logged and ignored (None is returned).
Cancelling escalation after a transition is the caller's responsibility.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING

from medminder.core.time_util import combine, now_local
from medminder.data.models import DoseMethod, DoseRecord, DoseSlot, DoseStatus
from medminder.ports.storage_port import PersistenceError

if TYPE_CHECKING:
    from medminder.data.models import Medication
    from medminder.data.stores import DoseRecordStore, ScheduleStore

logger = logging.getLogger(__name__)


class _NotFound(Exception):
    pass


class _Unchanged(Exception):
    def __init__(self, slot: DoseSlot) -> None:
        super().__init__(slot.id)
        self.slot = slot


class DoseStateMachine:
    def __init__(
        self,
        schedule_store: ScheduleStore,
        record_store: DoseRecordStore,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._schedules = schedule_store
        self._records = record_store
        self._clock = clock or now_local

    def mark_taken(
        self,
        medication_id: str,
        schedule_id: str,
        method: DoseMethod = DoseMethod.MANUAL,
    ) -> DoseSlot | None:
        now = self._clock()

        def apply(slot: DoseSlot) -> None:
            slot.skipped = False
            slot.skipped_at = None
            slot.taken = True
            slot.taken_at = now

        return self._transition(
            medication_id, schedule_id, apply,
            status=DoseStatus.TAKEN, method=method, now=now,
        )

    def mark_skipped(
        self,
        medication_id: str,
        schedule_id: str,
        reason: str | None = None,
        method: DoseMethod = DoseMethod.MANUAL,
    ) -> DoseSlot | None:
        now = self._clock()

        def apply(slot: DoseSlot) -> None:
            slot.taken = False
            slot.taken_at = None
            slot.skipped = True
            slot.skipped_at = now

        return self._transition(
            medication_id, schedule_id, apply,
            status=DoseStatus.SKIPPED, method=method, now=now, notes=reason,
        )

    def undo(self, medication_id: str, schedule_id: str) -> DoseSlot | None:
        """Return the slot to pending. History already recorded is kept as is."""
        return self._transition(medication_id, schedule_id, DoseSlot.reset)

    def _transition(
        self,
        medication_id: str,
        schedule_id: str,
        apply: Callable[[DoseSlot], None],
        status: DoseStatus | None = None,
        method: DoseMethod = DoseMethod.MANUAL,
        now: datetime | None = None,
        notes: str | None = None,
    ) -> DoseSlot | None:
        try:
            with self._schedules.mutate() as meds:
                medication = next((m for m in meds if m.id == medication_id), None)
                if medication is None:
                    raise _NotFound(f"medication {medication_id}")
                slot = medication.find_slot(schedule_id)
                if slot is None:
                    raise _NotFound(f"slot {schedule_id} of {medication.name}")
                if status is not None and slot.status is status:
                    raise _Unchanged(slot.model_copy())
                apply(slot)
                result = slot.model_copy()
        except _NotFound as exc:
            logger.warning("Dose transition ignored: %s not found", exc)
            return None
        except _Unchanged as exc:
            logger.debug("Dose %s already %s, nothing recorded", schedule_id, status.value)
            return exc.slot
        except PersistenceError as exc:
            logger.error("Dose transition for %s/%s not saved: %s", medication_id, schedule_id, exc)
            return None

        if status is not None and now is not None:
            self._record(medication, slot, status, method, now, notes)

        logger.info(
            "Dose %s of %s at %s -> %s",
            schedule_id, medication.name, slot.time, result.status.value,
        )
        return result

    def _record(
        self,
        medication: Medication,
        slot: DoseSlot,
        status: DoseStatus,
        method: DoseMethod,
        now: datetime,
        notes: str | None,
    ) -> None:
        record = DoseRecord(
            medication_id=medication.id,
            medication_name=medication.name,
            schedule_id=slot.id,
            scheduled_time=combine(now.date(), slot.time),
            taken_time=now if status is DoseStatus.TAKEN else None,
            status=status,
            method=method,
            notes=notes,
        )
        try:
            self._records.append(record)
        except PersistenceError as exc:
            logger.error("Failed to record %s dose of %s: %s", status.value, medication.name, exc)
