"""Daily rollover — turns yesterday's unresolved doses into history.

Runs at most once per calendar day, guarded by the persisted last-reset
date. A missing date counts as a day change that closes yesterday. On a
day change:

1. snapshot every medication's slots into the by-date history map,
2. append a "missed" DoseRecord for every slot still pending,
3. mark the closed day as done,
4. reset every slot to pending and persist the medication list,
5. persist the new last-reset date.

Steps 1-3 only run while the closed-day marker is behind, and step 2
never appends a record that is already stored. A write failing anywhere
leaves the last-reset date untouched, and the next check resumes from
the first step that did not complete.

Rescheduling notifications is not done here; ReminderService's daily
gate handles that separately.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING

from medminder.core.time_util import combine, date_key, now_local
from medminder.data.keys import StorageKeys
from medminder.data.models import DoseMethod, DoseRecord, DoseStatus
from medminder.ports.storage_port import PersistenceError

if TYPE_CHECKING:
    from medminder.core.adherence import AdherenceEngine
    from medminder.data.models import Medication
    from medminder.data.stores import DoseRecordStore, HistoryStore, ScheduleStore
    from medminder.ports.storage_port import KeyValueStore

logger = logging.getLogger(__name__)


class DailyRolloverJob:
    def __init__(
        self,
        kv: KeyValueStore,
        schedule_store: ScheduleStore,
        record_store: DoseRecordStore,
        history_store: HistoryStore,
        adherence: AdherenceEngine | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._kv = kv
        self._schedules = schedule_store
        self._records = record_store
        self._history = history_store
        self._adherence = adherence
        self._clock = clock or now_local

    def last_reset_date(self) -> date | None:
        return self._read_date(StorageKeys.LAST_RESET_DATE)

    def last_closed_date(self) -> date | None:
        return self._read_date(StorageKeys.LAST_CLOSED_DATE)

    def _read_date(self, key: str) -> date | None:
        raw = self._kv.get_string(key)
        if not raw:
            return None
        try:
            return date.fromisoformat(raw)
        except ValueError:
            logger.warning("Ignoring unreadable date %r under %s", raw, key)
            return None

    def check_and_reset_if_new_day(self) -> bool:
        """Roll over if the calendar day changed. Returns True if a rollover ran."""
        today = self._clock().date()
        try:
            last = self.last_reset_date()
            if last == today:
                return False
            closing_day = last if last is not None else today - timedelta(days=1)
            self.reset_daily_schedules(closing_day)
            self._kv.set_string(StorageKeys.LAST_RESET_DATE, date_key(today))
        except PersistenceError as exc:
            logger.error("Daily rollover failed, will retry on next check: %s", exc)
            return False

        logger.info("New day detected (%s -> %s): schedules reset", last, today)
        self._refresh_cached_rates()
        return True

    def reset_daily_schedules(self, closing_day: date) -> int:
        """Archive closing_day, record its misses and reset all slots.

        Returns the number of missed doses recorded by this call.
        """
        recorded = 0
        if self.last_closed_date() != closing_day:
            meds = self._schedules.list_medications()
            self._history.archive(closing_day, meds)
            missed = self._unrecorded_misses(closing_day, meds)
            if missed:
                self._records.extend(missed)
            self._kv.set_string(StorageKeys.LAST_CLOSED_DATE, date_key(closing_day))
            recorded = len(missed)
            logger.info("Closed %s with %d missed doses", date_key(closing_day), recorded)

        with self._schedules.mutate() as meds:
            for med in meds:
                for slot in med.schedule:
                    slot.reset()
        return recorded

    def _unrecorded_misses(self, closing_day: date, meds: list[Medication]) -> list[DoseRecord]:
        already = {
            (r.schedule_id, r.scheduled_time)
            for r in self._records.list_records(since=combine(closing_day, "00:00"))
            if r.status is DoseStatus.MISSED
        }
        missed = []
        for med in meds:
            for slot in med.schedule:
                when = combine(closing_day, slot.time)
                if slot.is_pending and (slot.id, when) not in already:
                    missed.append(DoseRecord(
                        medication_id=med.id,
                        medication_name=med.name,
                        schedule_id=slot.id,
                        scheduled_time=when,
                        status=DoseStatus.MISSED,
                        method=DoseMethod.MANUAL,
                    ))
        return missed

    def _refresh_cached_rates(self) -> None:
        if self._adherence is None:
            return
        try:
            with self._schedules.mutate() as meds:
                for med in meds:
                    med.adherence_rate = self._adherence.get_stats(med.id).rate
        except PersistenceError as exc:
            logger.warning("Could not refresh cached adherence rates: %s", exc)
