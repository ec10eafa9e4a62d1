"""
MedMinder — Behaviour analysis over dose history.

Buckets dose records by time of day and day of week, measures the trend of
the adherence rate, and turns miss patterns into plain-language suggestions.

Bucket boundaries are declarative, ordered (label, predicate) tables. The
first bucket in table order wins a tie, which makes the results
deterministic: "morning" for time of day and "Monday" for day of week.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from medminder.core.time_util import now_local
from medminder.data.models import AdherenceInsights, DoseStatus

if TYPE_CHECKING:
    from medminder.data.models import DoseRecord
    from medminder.data.stores import DoseRecordStore

logger = logging.getLogger(__name__)

_Bucket = tuple[str, Callable[["DoseRecord"], bool]]

TIME_OF_DAY_BUCKETS: list[_Bucket] = [
    ("morning", lambda r: 5 <= r.scheduled_time.hour < 12),
    ("afternoon", lambda r: 12 <= r.scheduled_time.hour < 17),
    ("evening", lambda r: 17 <= r.scheduled_time.hour < 21),
    ("night", lambda r: r.scheduled_time.hour >= 21 or r.scheduled_time.hour < 5),
]

# datetime.weekday(): Monday == 0
DAY_OF_WEEK_BUCKETS: list[_Bucket] = [
    (name, (lambda idx: lambda r: r.scheduled_time.weekday() == idx)(idx))
    for idx, name in enumerate(
        ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]
    )
]

TREND_MIN_RECORDS = 14
TREND_THRESHOLD = 0.10
IMPROVEMENT_WINDOW = 7
HEAVY_MISS_COUNT = 5
WEEKEND_MISS_SHARE = 0.3
EXCELLENT_RATE = 0.9

DEFAULT_INSIGHTS = AdherenceInsights(
    best_time_of_day="morning",
    worst_time_of_day="evening",
    best_day_of_week="Monday",
    adherence_trend="stable",
    improvement_score=0,
    suggestions=["Start taking your medications to build good habits"],
)


def _rate(records: list[DoseRecord], status: DoseStatus) -> float:
    if not records:
        return 0.0
    return sum(1 for r in records if r.status is status) / len(records)


def _best_bucket(
    records: list[DoseRecord],
    buckets: list[_Bucket],
    status: DoseStatus,
    default: str,
) -> str:
    """Label of the bucket with the highest share of `status`; strict > keeps ties early."""
    best_label, best_rate = default, 0.0
    for label, predicate in buckets:
        members = [r for r in records if predicate(r)]
        if not members:
            continue
        rate = _rate(members, status)
        if rate > best_rate:
            best_label, best_rate = label, rate
    return best_label


def best_time_of_day(records: list[DoseRecord]) -> str:
    return _best_bucket(records, TIME_OF_DAY_BUCKETS, DoseStatus.TAKEN, "morning")


def worst_time_of_day(records: list[DoseRecord]) -> str:
    return _best_bucket(records, TIME_OF_DAY_BUCKETS, DoseStatus.MISSED, "morning")


def best_day_of_week(records: list[DoseRecord]) -> str:
    return _best_bucket(records, DAY_OF_WEEK_BUCKETS, DoseStatus.TAKEN, "Monday")


def adherence_trend(records: list[DoseRecord]) -> str:
    """Compare the taken-rate of the later half of the window to the earlier half."""
    if len(records) < TREND_MIN_RECORDS:
        return "stable"

    mid = len(records) // 2
    difference = _rate(records[mid:], DoseStatus.TAKEN) - _rate(records[:mid], DoseStatus.TAKEN)

    if difference > TREND_THRESHOLD:
        return "improving"
    if difference < -TREND_THRESHOLD:
        return "declining"
    return "stable"


def improvement_score(records: list[DoseRecord]) -> int:
    """Percentage-point change between the last 7 records and the 7 before them."""
    if len(records) < TREND_MIN_RECORDS:
        return 0

    split = max(0, len(records) - IMPROVEMENT_WINDOW)
    recent = records[split:]
    previous = records[max(0, split - IMPROVEMENT_WINDOW):split]
    if not previous:
        return 0

    change = (_rate(recent, DoseStatus.TAKEN) - _rate(previous, DoseStatus.TAKEN)) * 100
    return math.floor(change + 0.5)


def _count_missed(records: list[DoseRecord], predicate: Callable[[DoseRecord], bool]) -> int:
    return sum(1 for r in records if r.status is DoseStatus.MISSED and predicate(r))


def _bucket(buckets: list[_Bucket], label: str) -> Callable[[DoseRecord], bool]:
    return dict(buckets)[label]


def generate_suggestions(records: list[DoseRecord]) -> list[str]:
    suggestions: list[str] = []

    if _count_missed(records, _bucket(TIME_OF_DAY_BUCKETS, "morning")) > HEAVY_MISS_COUNT:
        suggestions.append("Try placing your morning medications next to your breakfast items")

    if _count_missed(records, _bucket(TIME_OF_DAY_BUCKETS, "evening")) > HEAVY_MISS_COUNT:
        suggestions.append("Consider setting an alarm for evening medications during dinner")

    weekend_misses = _count_missed(records, lambda r: r.scheduled_time.weekday() >= 5)
    if weekend_misses > len(records) * WEEKEND_MISS_SHARE:
        suggestions.append(
            "You tend to miss more doses on weekends. Try weekend-specific reminders"
        )

    if records and _rate(records, DoseStatus.TAKEN) > EXCELLENT_RATE:
        suggestions.append("Excellent work! Keep up your consistent routine")

    return suggestions or ["Continue with your current routine!"]


class BehaviorAnalyzer:
    def __init__(
        self,
        record_store: DoseRecordStore,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._records = record_store
        self._clock = clock or now_local

    def analyze(self, window_days: int = 30) -> AdherenceInsights:
        since = self._clock() - timedelta(days=window_days)
        try:
            records = self._records.list_records(since=since)
        except Exception as exc:
            logger.error("Behaviour analysis unavailable: %s", exc)
            records = []

        if not records:
            return _copy_default()

        records.sort(key=lambda r: r.scheduled_time)
        return AdherenceInsights(
            best_time_of_day=best_time_of_day(records),
            worst_time_of_day=worst_time_of_day(records),
            best_day_of_week=best_day_of_week(records),
            adherence_trend=adherence_trend(records),
            improvement_score=improvement_score(records),
            suggestions=generate_suggestions(records),
        )


def _copy_default() -> AdherenceInsights:
    return AdherenceInsights(
        best_time_of_day=DEFAULT_INSIGHTS.best_time_of_day,
        worst_time_of_day=DEFAULT_INSIGHTS.worst_time_of_day,
        best_day_of_week=DEFAULT_INSIGHTS.best_day_of_week,
        adherence_trend=DEFAULT_INSIGHTS.adherence_trend,
        improvement_score=DEFAULT_INSIGHTS.improvement_score,
        suggestions=list(DEFAULT_INSIGHTS.suggestions),
    )
