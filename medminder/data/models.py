"""
MedMinder — Data Models.

Medications and their dose slots are the live "today" state; dose records
are the immutable history every statistic is computed from. All persisted
models round-trip through JSON via pydantic.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator


def new_id() -> str:
    return uuid.uuid4().hex[:12]


class Unit(str, Enum):
    MG = "mg"
    ML = "ml"
    PILLS = "pills"


class DoseStatus(str, Enum):
    PENDING = "pending"
    TAKEN = "taken"
    SKIPPED = "skipped"
    MISSED = "missed"


class DoseMethod(str, Enum):
    MANUAL = "manual"
    VOICE = "voice"
    NOTIFICATION = "notification"


class NotificationCategory(str, Enum):
    REMINDER = "medication-reminder"
    URGENT = "medication-reminder-urgent"
    CONFIRMATION = "confirmation"


class DoseSlot(BaseModel):
    """One scheduled time-of-day occurrence of a medication, reset daily.

    Exactly one of pending/taken/skipped holds: both flags False is pending.
    """

    id: str = Field(default_factory=new_id)
    time: str                          # "HH:MM", 24-hour
    taken: bool = False
    skipped: bool = False
    taken_at: datetime | None = None
    skipped_at: datetime | None = None

    @model_validator(mode="after")
    def _single_state(self) -> DoseSlot:
        if self.taken and self.skipped:
            raise ValueError(f"Dose slot {self.id} cannot be both taken and skipped")
        return self

    @property
    def status(self) -> DoseStatus:
        if self.taken:
            return DoseStatus.TAKEN
        if self.skipped:
            return DoseStatus.SKIPPED
        return DoseStatus.PENDING

    @property
    def is_pending(self) -> bool:
        return not self.taken and not self.skipped

    def reset(self) -> None:
        self.taken = False
        self.skipped = False
        self.taken_at = None
        self.skipped_at = None


class Medication(BaseModel):
    """A medication with its embedded per-dose schedule."""

    id: str = Field(default_factory=new_id)
    name: str
    dosage: str                        # numeric text, e.g. "500"
    unit: Unit = Unit.MG
    schedule: list[DoseSlot] = Field(default_factory=list)
    purpose: str = ""
    instructions: str | None = None
    start_date: date = Field(default_factory=date.today)
    refill_date: date | None = None
    adherence_rate: int = 0            # cached, advisory only

    def find_slot(self, schedule_id: str) -> DoseSlot | None:
        for slot in self.schedule:
            if slot.id == schedule_id:
                return slot
        return None

    @property
    def label(self) -> str:
        return f"{self.name} ({self.dosage}{self.unit.value})"


class DoseRecord(BaseModel):
    """Immutable historical fact about how one dose slot was resolved."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    medication_id: str
    medication_name: str               # survives medication deletion
    schedule_id: str
    scheduled_time: datetime
    taken_time: datetime | None = None
    status: DoseStatus
    method: DoseMethod = DoseMethod.MANUAL
    notes: str | None = None

    @model_validator(mode="after")
    def _resolved_status(self) -> DoseRecord:
        if self.status is DoseStatus.PENDING:
            raise ValueError("A dose record must be taken, missed or skipped")
        return self


class ScheduledNotification(BaseModel):
    """Maps a medication slot's reminder to the delivery handle that cancels it."""

    id: str = Field(default_factory=new_id)
    medication_id: str
    medication_name: str
    schedule_id: str
    time: datetime
    handle: str


class ReminderPayload(BaseModel):
    """Everything a delivered reminder carries back to us on user action."""

    medication_id: str | None = None
    medication_name: str = ""
    schedule_id: str | None = None
    dosage: str = ""
    unit: str = ""
    instructions: str | None = None
    snoozed: bool = False
    escalation_level: int = 0
    title: str = ""
    body: str = ""
    category: NotificationCategory = NotificationCategory.REMINDER


class Preferences(BaseModel):
    """User-tunable reminder preferences."""

    notifications_enabled: bool = True
    quiet_hours_enabled: bool = True
    quiet_hours_start: str = "22:00"
    quiet_hours_end: str = "07:00"
    snooze_minutes: int = 15


@dataclass
class AdherenceStats:
    """Counts, rate and streak over a window — derived, never stored."""

    taken: int = 0
    missed: int = 0
    skipped: int = 0
    total: int = 0
    rate: int = 0                      # percentage 0-100
    streak: int = 0                    # consecutive all-taken days ending today
    medication_id: str | None = None


@dataclass
class AdherenceInsights:
    """Behavioural patterns derived from dose history."""

    best_time_of_day: str
    worst_time_of_day: str
    best_day_of_week: str
    adherence_trend: str               # "improving" | "declining" | "stable"
    improvement_score: int
    suggestions: list[str] = field(default_factory=list)
