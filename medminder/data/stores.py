"""
MedMinder — Domain stores over the key-value port.

ScheduleStore owns the live medication list (today's slot state).
DoseRecordStore owns the append-only dose history with bounded retention.
HistoryStore keeps per-day snapshots taken at rollover.
PreferencesStore keeps the user's reminder preferences.

Every write is a whole-collection read-modify-write, serialised by a
per-store lock.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING

from medminder.core.time_util import date_key, normalize_hhmm, now_local
from medminder.data.keys import StorageKeys
from medminder.data.models import DoseRecord, DoseSlot, Medication, Preferences, Unit

if TYPE_CHECKING:
    from medminder.ports.storage_port import KeyValueStore

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


# ---------------------------------------------------------------------------
# Medications
# ---------------------------------------------------------------------------


def build_schedule(times: list[str]) -> list[DoseSlot]:
    """Turn raw "HH:MM" strings into fresh pending slots, sorted and de-duplicated.

    Raises ValueError on a malformed time.
    """
    normalized = sorted({normalize_hhmm(t) for t in times})
    return [DoseSlot(time=t) for t in normalized]


def create_medication(
    name: str,
    dosage: str,
    unit: Unit | str,
    times: list[str],
    purpose: str = "",
    instructions: str | None = None,
    start_date: date | None = None,
    refill_date: date | None = None,
) -> Medication:
    """Build a new Medication with one pending slot per distinct time."""
    if not name.strip():
        raise ValueError("Medication name is required")
    if not times:
        raise ValueError("At least one dose time is required")
    return Medication(
        name=name.strip(),
        dosage=str(dosage).strip(),
        unit=Unit(unit),
        schedule=build_schedule(times),
        purpose=purpose,
        instructions=instructions,
        start_date=start_date or date.today(),
        refill_date=refill_date,
    )


class ScheduleStore:
    """The live set of medications with their embedded dose slots."""

    def __init__(self, kv: KeyValueStore) -> None:
        self._kv = kv
        self._lock = threading.RLock()

    def list_medications(self) -> list[Medication]:
        raw = self._kv.get_object(StorageKeys.MEDICATIONS) or []
        return [Medication.model_validate(item) for item in raw]

    def get_medication(self, medication_id: str) -> Medication | None:
        for med in self.list_medications():
            if med.id == medication_id:
                return med
        return None

    def save_all(self, medications: list[Medication]) -> None:
        self._kv.set_object(
            StorageKeys.MEDICATIONS,
            [m.model_dump(mode="json") for m in medications],
        )

    @contextmanager
    def mutate(self) -> Iterator[list[Medication]]:
        """Lock, load the whole list, let the caller mutate it, write it back.

        Nothing is written if the body raises.
        """
        with self._lock:
            medications = self.list_medications()
            yield medications
            self.save_all(medications)

    def add_medication(self, medication: Medication) -> Medication:
        with self.mutate() as meds:
            if any(m.id == medication.id for m in meds):
                raise ValueError(f"Medication {medication.id} already exists")
            meds.append(medication)
        logger.info("Medication added: %s '%s'", medication.id, medication.name)
        return medication

    def update_medication(self, updated: Medication) -> Medication | None:
        """Replace a medication. Slots are regenerated when the set of times changed."""
        with self.mutate() as meds:
            for index, current in enumerate(meds):
                if current.id != updated.id:
                    continue
                old_times = sorted(s.time for s in current.schedule)
                new_times = sorted(s.time for s in updated.schedule)
                if old_times != new_times:
                    updated = updated.model_copy(
                        update={"schedule": build_schedule(new_times)}
                    )
                meds[index] = updated
                break
            else:
                logger.warning("Update ignored: medication %s not found", updated.id)
                return None
        logger.info("Medication updated: %s '%s'", updated.id, updated.name)
        return updated

    def delete_medication(self, medication_id: str) -> bool:
        with self.mutate() as meds:
            before = len(meds)
            meds[:] = [m for m in meds if m.id != medication_id]
            deleted = len(meds) < before
        if deleted:
            logger.info("Medication %s deleted", medication_id)
        return deleted


# ---------------------------------------------------------------------------
# Dose history
# ---------------------------------------------------------------------------


class DoseRecordStore:
    """Append-only history of resolved doses, pruned past the retention window."""

    def __init__(
        self,
        kv: KeyValueStore,
        retention_days: int | None = None,
        clock: Clock | None = None,
    ) -> None:
        if retention_days is None:
            from medminder.config import settings
            retention_days = settings.DOSE_RETENTION_DAYS

        self._kv = kv
        self._retention = timedelta(days=retention_days)
        self._clock = clock or now_local
        self._lock = threading.RLock()

    def _load(self) -> list[DoseRecord]:
        raw = self._kv.get_object(StorageKeys.DOSE_RECORDS) or []
        return [DoseRecord.model_validate(item) for item in raw]

    def _save(self, records: list[DoseRecord]) -> None:
        self._kv.set_object(
            StorageKeys.DOSE_RECORDS,
            [r.model_dump(mode="json") for r in records],
        )

    def _retained(self, records: list[DoseRecord]) -> list[DoseRecord]:
        cutoff = self._clock() - self._retention
        return [r for r in records if r.scheduled_time > cutoff]

    def append(self, record: DoseRecord) -> None:
        self.extend([record])

    def extend(self, new_records: list[DoseRecord]) -> None:
        with self._lock:
            records = self._load()
            records.extend(new_records)
            self._save(self._retained(records))

    def prune(self) -> int:
        """Drop records older than the retention window; return how many went."""
        with self._lock:
            records = self._load()
            kept = self._retained(records)
            if len(kept) != len(records):
                self._save(kept)
        dropped = len(records) - len(kept)
        if dropped:
            logger.info("Pruned %d dose records past retention", dropped)
        return dropped

    def list_records(
        self,
        medication_id: str | None = None,
        since: datetime | None = None,
    ) -> list[DoseRecord]:
        """Records in insertion order, optionally scoped by medication and start time."""
        records = self._load()
        if medication_id is not None:
            records = [r for r in records if r.medication_id == medication_id]
        if since is not None:
            records = [r for r in records if r.scheduled_time >= since]
        return records


# ---------------------------------------------------------------------------
# Daily snapshots
# ---------------------------------------------------------------------------


class HistoryStore:
    """By-date map of each day's schedule state, written at rollover."""

    def __init__(self, kv: KeyValueStore) -> None:
        self._kv = kv

    def archive(self, day: date, medications: list[Medication]) -> None:
        history = self._kv.get_object(StorageKeys.MEDICATION_HISTORY) or {}
        history[date_key(day)] = [
            {
                "id": med.id,
                "name": med.name,
                "schedule": [
                    slot.model_dump(
                        mode="json",
                        include={"id", "time", "taken", "taken_at", "skipped", "skipped_at"},
                    )
                    for slot in med.schedule
                ],
            }
            for med in medications
        ]
        self._kv.set_object(StorageKeys.MEDICATION_HISTORY, history)
        logger.info("Daily history archived for %s", date_key(day))

    def get_day(self, day: date) -> list[dict] | None:
        history = self._kv.get_object(StorageKeys.MEDICATION_HISTORY) or {}
        return history.get(date_key(day))

    def recent(self, days: int = 30) -> list[tuple[str, list[dict]]]:
        """Newest-first (date, snapshot) pairs."""
        history = self._kv.get_object(StorageKeys.MEDICATION_HISTORY) or {}
        keys = sorted(history, reverse=True)[:days]
        return [(k, history[k]) for k in keys]


# ---------------------------------------------------------------------------
# Preferences
# ---------------------------------------------------------------------------


class PreferencesStore:
    def __init__(self, kv: KeyValueStore) -> None:
        self._kv = kv

    def get(self) -> Preferences:
        raw = self._kv.get_object(StorageKeys.PREFERENCES)
        if raw is None:
            return self.defaults()
        return Preferences.model_validate(raw)

    def update(self, **changes: object) -> Preferences:
        prefs = Preferences.model_validate({**self.get().model_dump(), **changes})
        self._kv.set_object(StorageKeys.PREFERENCES, prefs.model_dump(mode="json"))
        logger.info("Preferences updated: %s", ", ".join(sorted(changes)))
        return prefs

    @staticmethod
    def defaults() -> Preferences:
        from medminder.config import settings

        return Preferences(
            quiet_hours_enabled=settings.QUIET_HOURS_ENABLED,
            quiet_hours_start=settings.QUIET_HOURS_START,
            quiet_hours_end=settings.QUIET_HOURS_END,
            snooze_minutes=settings.SNOOZE_MINUTES,
        )
