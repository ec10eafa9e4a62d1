"""
MedMinder — UI-Agnostic Reminder Service.

Composition root of the core: wires the stores, the dose state machine,
the rollover job, the notification scheduler, the escalation manager and
the analytics, and exposes the operations UI and voice layers call.

Each UI adapter (Telegram, voice, web) calls this service and renders the
returned objects in its own way.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from medminder.core.adherence import AdherenceEngine
from medminder.core.behavior import BehaviorAnalyzer
from medminder.core.dose_state import DoseStateMachine
from medminder.core.escalation import EscalationManager
from medminder.core.intent import (
    AddMedication,
    QueryAdherence,
    RequestHelp,
    SkipDose,
    TakeDose,
    parse_command,
)
from medminder.core.llm import extract_json
from medminder.core.notification_scheduler import NotificationScheduler
from medminder.core.rollover import DailyRolloverJob
from medminder.core.time_util import date_key, now_local
from medminder.data.keys import StorageKeys
from medminder.data.models import DoseMethod, NotificationCategory, ReminderPayload
from medminder.data.stores import (
    DoseRecordStore,
    HistoryStore,
    PreferencesStore,
    ScheduleStore,
    create_medication,
)

if TYPE_CHECKING:
    from medminder.data.models import AdherenceInsights, AdherenceStats, DoseSlot, Medication
    from medminder.ports.notification_port import NotificationPort
    from medminder.ports.speech_port import SpeechPort
    from medminder.ports.storage_port import KeyValueStore

logger = logging.getLogger(__name__)


class ReminderAction(str, Enum):
    TAKE = "take"
    SNOOZE = "snooze"
    SKIP = "skip"
    EMERGENCY = "emergency"
    OPEN = "open"


@dataclass
class PendingDose:
    medication: Medication
    slot: DoseSlot


EmergencyHandler = Callable[[str, str], Awaitable[None]]

_RETRY = "Something went wrong. Please try again."

_FALLBACK_COACHING = {
    "insights": ["Keep up the good work with your medications!"],
    "suggestions": ["Try setting reminders at consistent times"],
    "encouragement": "You're doing great! Every dose you take matters.",
}


class ReminderService:
    """Everything the outside world may ask of the dose lifecycle."""

    def __init__(
        self,
        kv: KeyValueStore,
        notifier: NotificationPort,
        speech: SpeechPort | None = None,
        on_emergency: EmergencyHandler | None = None,
        clock: Callable[[], datetime] | None = None,
        escalation_minutes: list[float] | None = None,
        retention_days: int | None = None,
    ) -> None:
        self._kv = kv
        self._notifier = notifier
        self._speech = speech
        self._on_emergency = on_emergency
        self._clock = clock or now_local

        self.schedules = ScheduleStore(kv)
        self.records = DoseRecordStore(kv, retention_days=retention_days, clock=self._clock)
        self.history = HistoryStore(kv)
        self.preferences = PreferencesStore(kv)

        self.adherence = AdherenceEngine(self.records, clock=self._clock)
        self.behavior = BehaviorAnalyzer(self.records, clock=self._clock)
        self.doses = DoseStateMachine(self.schedules, self.records, clock=self._clock)
        self.rollover = DailyRolloverJob(
            kv, self.schedules, self.records, self.history,
            adherence=self.adherence, clock=self._clock,
        )
        self.escalation = EscalationManager(
            notifier, kv=kv, delays_minutes=escalation_minutes, clock=self._clock,
        )
        self.scheduler = NotificationScheduler(
            notifier, kv, self.preferences, escalation=self.escalation, clock=self._clock,
        )

    # ------------------------------------------------------------------
    # Medications: explicit user actions, errors propagate to the UI
    # ------------------------------------------------------------------

    def list_medications(self) -> list[Medication]:
        return self.schedules.list_medications()

    def get_medication(self, medication_id: str) -> Medication | None:
        return self.schedules.get_medication(medication_id)

    def find_medication(self, name: str) -> Medication | None:
        """Case-insensitive exact name lookup."""
        wanted = name.strip().lower()
        for med in self.list_medications():
            if med.name.lower() == wanted:
                return med
        return None

    async def add_medication(self, medication: Medication) -> Medication:
        self.schedules.add_medication(medication)
        await self.scheduler.schedule_all_reminders(medication)
        return medication

    async def update_medication(self, medication: Medication) -> Medication | None:
        updated = self.schedules.update_medication(medication)
        if updated is None:
            return None
        await self.scheduler.schedule_all_reminders(updated)
        return updated

    async def delete_medication(self, medication_id: str) -> bool:
        await self.scheduler.cancel_medication_reminders(medication_id)
        return self.schedules.delete_medication(medication_id)

    # ------------------------------------------------------------------
    # Dose actions
    # ------------------------------------------------------------------

    async def mark_taken(
        self, medication_id: str, schedule_id: str, method: DoseMethod = DoseMethod.MANUAL,
    ) -> DoseSlot | None:
        slot = self.doses.mark_taken(medication_id, schedule_id, method=method)
        self.escalation.cancel_escalation(medication_id)
        if slot is not None:
            await self._speak_about(medication_id, "{name} recorded as taken. Great job!")
        return slot

    async def mark_skipped(
        self,
        medication_id: str,
        schedule_id: str,
        reason: str | None = None,
        method: DoseMethod = DoseMethod.MANUAL,
    ) -> DoseSlot | None:
        slot = self.doses.mark_skipped(medication_id, schedule_id, reason=reason, method=method)
        self.escalation.cancel_escalation(medication_id)
        if slot is not None:
            await self._speak_about(medication_id, "{name} marked as skipped.")
        return slot

    async def undo(self, medication_id: str, schedule_id: str) -> DoseSlot | None:
        return self.doses.undo(medication_id, schedule_id)

    async def snooze(
        self, medication_id: str, schedule_id: str | None = None, minutes: int | None = None,
    ) -> str | None:
        medication = self.get_medication(medication_id)
        if medication is None:
            logger.warning("Snooze ignored: medication %s not found", medication_id)
            self.escalation.cancel_escalation(medication_id)
            return None
        return await self.scheduler.snooze(medication, schedule_id, minutes)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_pending_doses(self) -> list[PendingDose]:
        """Every unresolved slot today, earliest first."""
        pending = [
            PendingDose(med, slot)
            for med in self.list_medications()
            for slot in med.schedule
            if slot.is_pending
        ]
        pending.sort(key=lambda p: p.slot.time)
        return pending

    def get_upcoming_doses(self) -> list[PendingDose]:
        """Unresolved slots whose time is still ahead today."""
        current = self._clock().strftime("%H:%M")
        return [p for p in self.get_pending_doses() if p.slot.time > current]

    def get_stats(self, medication_id: str | None = None, window_days: int = 7) -> AdherenceStats:
        return self.adherence.get_stats(medication_id, window_days)

    def analyze_behavior(self, window_days: int = 30) -> AdherenceInsights:
        return self.behavior.analyze(window_days)

    def get_history(self, days: int = 30) -> list[tuple[str, list[dict]]]:
        return self.history.recent(days)

    # ------------------------------------------------------------------
    # Daily maintenance
    # ------------------------------------------------------------------

    def check_and_reset_if_new_day(self) -> bool:
        return self.rollover.check_and_reset_if_new_day()

    async def ensure_daily_reminders(self, force: bool = False) -> bool:
        """Re-arm every medication's reminders at most once per calendar day.

        Returns True if a scheduling pass ran.
        """
        today = date_key(self._clock().date())
        try:
            if not force and self._kv.get_string(StorageKeys.LAST_NOTIFICATION_SCHEDULE) == today:
                return False

            medications = self.list_medications()
            await self.scheduler.cancel_all_notifications()
            for medication in medications:
                await self.scheduler.schedule_all_reminders(medication)

            self._kv.set_string(StorageKeys.LAST_NOTIFICATION_SCHEDULE, today)
        except Exception as exc:
            logger.error("Daily reminder pass failed: %s", exc)
            return False

        logger.info("Reminders scheduled for %d medications", len(medications))
        return True

    async def start(self) -> int:
        """Process start: rollover, a forced reminder pass, then re-arm escalations.

        Provider-side reminders may not survive a restart, so the daily gate
        is bypassed. Escalations are only restored when no rollover ran, since
        they belong to the day that was just closed otherwise. Returns the
        number of escalation levels re-armed.
        """
        rolled = self.check_and_reset_if_new_day()
        saved = self.escalation.saved_state()
        await self.ensure_daily_reminders(force=True)
        if rolled:
            return 0
        return self.escalation.restore(saved)

    async def run_daily_maintenance(self) -> None:
        """Rollover, history pruning, then the reminder pass. Safe to repeat."""
        rolled = self.check_and_reset_if_new_day()
        try:
            self.records.prune()
        except Exception as exc:
            logger.warning("Dose history pruning failed: %s", exc)
        await self.ensure_daily_reminders(force=rolled)

    # ------------------------------------------------------------------
    # Inbound notification events
    # ------------------------------------------------------------------

    def handle_delivered(self, payload: ReminderPayload, delivered_at: datetime | None = None) -> bool:
        """A reminder reached the user: arm escalation if the dose is still open.

        Returns True if escalation was armed.
        """
        if (
            payload.category is not NotificationCategory.REMINDER
            or payload.escalation_level
            or not payload.medication_id
        ):
            return False

        medication = self.get_medication(payload.medication_id)
        if medication is None:
            return False
        if payload.schedule_id:
            slot = medication.find_slot(payload.schedule_id)
            if slot is None or not slot.is_pending:
                return False

        self.escalation.start_escalation(payload, delivered_at)
        return True

    async def handle_user_action(self, action: ReminderAction | str, payload: ReminderPayload) -> bool:
        """Dispatch a button press on a delivered notification.

        Returns False when the action could not be applied (unknown
        medication or slot, or a failed write) so the UI can ask for a retry.
        """
        medication_id = payload.medication_id
        if not medication_id:
            return False

        self.escalation.cancel_escalation(medication_id)
        action = ReminderAction(action)

        if action is ReminderAction.TAKE:
            if not payload.schedule_id:
                return False
            slot = await self.mark_taken(medication_id, payload.schedule_id, DoseMethod.NOTIFICATION)
            if slot is None:
                return False
            await self._confirm("✅ Great Job!", f"{payload.medication_name} recorded as taken")
        elif action is ReminderAction.SKIP:
            if not payload.schedule_id:
                return False
            slot = await self.mark_skipped(
                medication_id, payload.schedule_id, method=DoseMethod.NOTIFICATION,
            )
            if slot is None:
                return False
            await self._confirm("⏭️ Dose Skipped", f"{payload.medication_name} marked as skipped")
        elif action is ReminderAction.SNOOZE:
            return await self.snooze(medication_id, payload.schedule_id) is not None
        elif action is ReminderAction.EMERGENCY:
            logger.warning("Emergency action triggered for %s", payload.medication_name)
            if self._on_emergency is not None:
                await self._on_emergency(medication_id, "Emergency button pressed")
        else:
            logger.info("Reminder for %s opened without an action", payload.medication_name)
        return True

    # ------------------------------------------------------------------
    # Free-text and voice commands
    # ------------------------------------------------------------------

    async def handle_text_command(self, text: str) -> str:
        """Classify a typed or transcribed sentence, act on it, return the reply.

        Dose changes made here are recorded with the voice method.
        """
        try:
            command = await parse_command(text, [m.name for m in self.list_medications()])
        except Exception as exc:
            logger.warning("Command parsing unavailable: %s", exc)
            return "I can't understand free text right now. Please use the buttons or /help."
        if command is None:
            return "Sorry, I didn't understand. Try \"I took my Metformin\" or /help."

        if isinstance(command, (TakeDose, SkipDose)):
            medication = self.find_medication(command.medication)
            if medication is None:
                return f"I couldn't find {command.medication} in your medications."
            slot = self._due_slot(medication)
            if slot is None:
                return f"All of today's {medication.name} doses are already done."
            if isinstance(command, TakeDose):
                done = await self.mark_taken(medication.id, slot.id, DoseMethod.VOICE)
                verb = "taken"
            else:
                done = await self.mark_skipped(
                    medication.id, slot.id, reason=command.reason, method=DoseMethod.VOICE,
                )
                verb = "skipped"
            if done is None:
                return _RETRY
            return f"Marked {medication.name} ({slot.time}) as {verb}."

        if isinstance(command, AddMedication):
            try:
                medication = await self.add_medication(create_medication(
                    command.medication, command.dosage, command.unit, command.times,
                    instructions=command.instructions,
                ))
            except Exception as exc:
                logger.error("Adding %s from a text command failed: %s", command.medication, exc)
                return _RETRY
            times = ", ".join(s.time for s in medication.schedule)
            return f"Added {medication.label} at {times}."

        if isinstance(command, QueryAdherence):
            stats = self.get_stats(window_days=command.days)
            return (
                f"Over the last {command.days} days you took {stats.taken} of "
                f"{stats.total} doses ({stats.rate}%). Current streak: {stats.streak} day(s)."
            )

        if isinstance(command, RequestHelp):
            medication = self.find_medication(command.medication) if command.medication else None
            logger.warning("Emergency requested by text command: %s", command.message)
            if self._on_emergency is not None:
                await self._on_emergency(medication.id if medication else "", command.message)
            return "🆘 Help has been requested."

        return _RETRY

    # ------------------------------------------------------------------
    # Coaching
    # ------------------------------------------------------------------

    async def get_ai_insights(self) -> dict:
        """LLM-written insights, suggestions and encouragement, with a canned fallback.

        The model output is advisory text only; it never drives state.
        """
        from medminder.core.llm import complete

        stats = self.get_stats(window_days=30)
        insights = self.analyze_behavior(30)
        names = ", ".join(m.name for m in self.list_medications()) or "none"
        prompt = (
            "Analyze this medication adherence data:\n"
            f"- Overall rate: {stats.rate}%\n"
            f"- Doses taken: {stats.taken}\n"
            f"- Missed doses: {stats.missed}\n"
            f"- Skipped doses: {stats.skipped}\n"
            f"- Current streak: {stats.streak} days\n"
            f"- Best time of day: {insights.best_time_of_day}\n"
            f"- Most missed time of day: {insights.worst_time_of_day}\n"
            f"- Trend: {insights.adherence_trend}\n"
            f"- Medications: {names}\n\n"
            "Reply with JSON only:\n"
            '{"insights": ["3-5 observations"], "suggestions": ["3-5 practical tips"], '
            '"encouragement": "a warm 2-3 sentence message"}'
        )
        try:
            raw = await complete(
                system=(
                    "You are a supportive health coach helping elderly users "
                    "improve medication adherence. Be warm, constructive and practical."
                ),
                user_message=prompt,
                max_tokens=800,
            )
            return _parse_coaching(raw)
        except Exception as exc:
            logger.warning("AI insights unavailable, using fallback: %s", exc)
            return {
                "insights": list(_FALLBACK_COACHING["insights"]),
                "suggestions": list(insights.suggestions),
                "encouragement": _FALLBACK_COACHING["encouragement"],
            }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _due_slot(self, medication: Medication) -> DoseSlot | None:
        """The latest pending slot already due, else the next pending one."""
        current = self._clock().strftime("%H:%M")
        pending = [s for s in medication.schedule if s.is_pending]
        due = [s for s in pending if s.time <= current]
        if due:
            return due[-1]
        return pending[0] if pending else None

    async def _confirm(self, title: str, body: str) -> None:
        payload = ReminderPayload(title=title, body=body, category=NotificationCategory.CONFIRMATION)
        try:
            await self._notifier.schedule(payload, None)
        except Exception as exc:
            logger.warning("Confirmation not delivered: %s", exc)

    async def _speak_about(self, medication_id: str, template: str) -> None:
        if self._speech is None:
            return
        medication = self.get_medication(medication_id)
        if medication is None:
            return
        try:
            await self._speech.speak(template.format(name=medication.name))
        except Exception as exc:
            logger.warning("Speech output failed: %s", exc)


def _parse_coaching(raw: str) -> dict:
    data = extract_json(raw)
    if not isinstance(data, dict):
        raise ValueError("Coaching reply is not a JSON object")
    return {
        "insights": [str(x) for x in data.get("insights", [])][:5],
        "suggestions": [str(x) for x in data.get("suggestions", [])][:5],
        "encouragement": str(data.get("encouragement", _FALLBACK_COACHING["encouragement"])),
    }
