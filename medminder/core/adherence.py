"""Adherence statistics — counts, rate and streak from dose history.

No I/O beyond reading the DoseRecordStore; never raises on missing data.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING

from medminder.core.time_util import now_local
from medminder.data.models import AdherenceStats, DoseStatus

if TYPE_CHECKING:
    from medminder.data.models import DoseRecord
    from medminder.data.stores import DoseRecordStore

logger = logging.getLogger(__name__)

_STREAK_LIMIT_DAYS = 365


def adherence_rate(taken: int, total: int) -> int:
    """Percentage of taken doses, rounded half up; 0 for an empty window."""
    if total == 0:
        return 0
    return int(taken * 100 / total + 0.5)


def calculate_streak(records: list[DoseRecord], today: date) -> int:
    """Consecutive days ending today on which every recorded dose was taken.

    A day with no records, or with any missed/skipped record, ends the streak.
    """
    by_day: dict[date, list[DoseRecord]] = defaultdict(list)
    for record in records:
        by_day[record.scheduled_time.date()].append(record)

    streak = 0
    day = today
    for _ in range(_STREAK_LIMIT_DAYS):
        day_records = by_day.get(day)
        if not day_records:
            break
        if any(r.status is not DoseStatus.TAKEN for r in day_records):
            break
        streak += 1
        day -= timedelta(days=1)
    return streak


class AdherenceEngine:
    def __init__(
        self,
        record_store: DoseRecordStore,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._records = record_store
        self._clock = clock or now_local

    def get_stats(self, medication_id: str | None = None, window_days: int = 7) -> AdherenceStats:
        now = self._clock()
        try:
            all_records = self._records.list_records(medication_id=medication_id)
        except Exception as exc:
            logger.error("Adherence stats unavailable: %s", exc)
            return AdherenceStats(medication_id=medication_id)

        since = now - timedelta(days=window_days)
        window = [r for r in all_records if r.scheduled_time >= since]

        taken = sum(1 for r in window if r.status is DoseStatus.TAKEN)
        missed = sum(1 for r in window if r.status is DoseStatus.MISSED)
        skipped = sum(1 for r in window if r.status is DoseStatus.SKIPPED)
        total = len(window)

        return AdherenceStats(
            taken=taken,
            missed=missed,
            skipped=skipped,
            total=total,
            rate=adherence_rate(taken, total),
            streak=calculate_streak(all_records, now.date()),
            medication_id=medication_id,
        )

    def get_overall_rate(self) -> int:
        return self.get_stats().rate
