"""Escalation of unacknowledged reminders.

When a reminder is delivered, three independent timers are armed relative
to the delivery instant (5, 10 and 15 minutes by default). Each one that is
still armed when it expires sends an immediate, more urgent follow-up;
levels 2 and up use the urgent category. Any user action on the medication
cancels whatever is left.

Deadlines are also persisted so that restore() can re-arm the levels that
are still in the future after a process restart. Levels whose deadline
passed while the process was down are dropped rather than sent late.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from medminder.core.time_util import now_local
from medminder.data.keys import StorageKeys
from medminder.data.models import NotificationCategory, ReminderPayload

if TYPE_CHECKING:
    from medminder.ports.notification_port import NotificationPort
    from medminder.ports.storage_port import KeyValueStore

logger = logging.getLogger(__name__)


def escalation_message(medication_name: str, level: int, minutes: float) -> tuple[str, str]:
    """(title, body) of the follow-up sent at a given level."""
    overdue = f"{minutes:g}"
    if level == 1:
        return "⚠️ Medication Overdue", f"{medication_name} is {overdue} minutes overdue"
    if level == 2:
        return "🚨 URGENT", f"{medication_name} is {overdue} minutes overdue!"
    return "🆘 Emergency", f"{medication_name} critically overdue"


class EscalationManager:
    """In-process escalation timers, one set per medication."""

    def __init__(
        self,
        notifier: NotificationPort,
        kv: KeyValueStore | None = None,
        delays_minutes: list[float] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if delays_minutes is None:
            from medminder.config import settings
            delays_minutes = settings.ESCALATION_MINUTES

        self._notifier = notifier
        self._kv = kv
        self._delays = list(delays_minutes)
        self._clock = clock or now_local
        self._timers: dict[tuple[str, int], asyncio.Task] = {}
        # medication_id -> {"payload": {...}, "deadlines": {level: iso}}
        self._pending: dict[str, dict] = {}

    def armed_levels(self, medication_id: str) -> list[int]:
        return sorted(level for (med_id, level) in self._timers if med_id == medication_id)

    def start_escalation(
        self, payload: ReminderPayload, delivered_at: datetime | None = None,
    ) -> None:
        """Arm every level relative to delivered_at. Must run inside an event loop."""
        medication_id = payload.medication_id
        if not medication_id:
            return

        self.cancel_escalation(medication_id)
        delivered_at = delivered_at or self._clock()

        for level, minutes in enumerate(self._delays, start=1):
            deadline = delivered_at + timedelta(minutes=minutes)
            self._arm(payload, level, deadline)

        self._persist()
        logger.info(
            "Escalation armed for %s (%d levels)", payload.medication_name, len(self._delays),
        )

    def cancel_escalation(self, medication_id: str) -> None:
        """Stop every not-yet-fired level. Safe to call repeatedly."""
        keys = [key for key in self._timers if key[0] == medication_id]
        for key in keys:
            self._timers.pop(key).cancel()

        had_pending = self._pending.pop(medication_id, None) is not None
        if keys or had_pending:
            self._persist()
            logger.info("Escalation cancelled for medication %s", medication_id)

    def cancel_all(self) -> None:
        for task in self._timers.values():
            task.cancel()
        self._timers.clear()
        self._pending.clear()
        self._persist()

    def saved_state(self) -> dict:
        """The persisted deadlines, as restore() would read them."""
        if self._kv is None:
            return {}
        return self._kv.get_object(StorageKeys.ESCALATIONS) or {}

    def restore(self, stored: dict | None = None) -> int:
        """Re-arm persisted levels whose deadline is still ahead. Returns how many.

        `stored` defaults to the current persisted state; callers that wipe
        the store before restoring pass a snapshot from saved_state().
        """
        if stored is None:
            stored = self.saved_state()
        now = self._clock()
        restored = 0
        for medication_id, entry in stored.items():
            try:
                payload = ReminderPayload.model_validate(entry["payload"])
                deadlines = {
                    int(level): datetime.fromisoformat(iso)
                    for level, iso in entry["deadlines"].items()
                }
            except (KeyError, ValueError, TypeError) as exc:
                logger.warning("Dropping unreadable escalation for %s: %s", medication_id, exc)
                continue

            for level, deadline in sorted(deadlines.items()):
                if deadline <= now:
                    logger.info(
                        "Dropping stale level %d escalation for %s", level, payload.medication_name,
                    )
                    continue
                self._arm(payload, level, deadline)
                restored += 1

        self._persist()
        if restored:
            logger.info("Restored %d escalation timers", restored)
        return restored

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _arm(self, payload: ReminderPayload, level: int, deadline: datetime) -> None:
        medication_id = payload.medication_id
        delay = max(0.0, (deadline - self._clock()).total_seconds())
        task = asyncio.get_running_loop().create_task(
            self._fire_after(payload, level, delay),
            name=f"escalation:{medication_id}:{level}",
        )
        self._timers[(medication_id, level)] = task

        entry = self._pending.setdefault(
            medication_id,
            {"payload": payload.model_dump(mode="json"), "deadlines": {}},
        )
        entry["deadlines"][str(level)] = deadline.isoformat()

    async def _fire_after(self, payload: ReminderPayload, level: int, delay: float) -> None:
        await asyncio.sleep(delay)

        medication_id = payload.medication_id
        self._timers.pop((medication_id, level), None)
        entry = self._pending.get(medication_id)
        if entry is not None:
            entry["deadlines"].pop(str(level), None)
            if not entry["deadlines"]:
                self._pending.pop(medication_id, None)
        self._persist()

        await self._send(payload, level)

    async def _send(self, payload: ReminderPayload, level: int) -> None:
        minutes = self._delays[level - 1] if level <= len(self._delays) else self._delays[-1]
        title, body = escalation_message(payload.medication_name, level, minutes)
        follow_up = payload.model_copy(update={
            "escalation_level": level,
            "title": title,
            "body": body,
            "category": (
                NotificationCategory.URGENT if level >= 2 else NotificationCategory.REMINDER
            ),
        })
        try:
            await self._notifier.schedule(follow_up, None)
            logger.info("Escalation level %d sent for %s", level, payload.medication_name)
        except Exception as exc:
            logger.error(
                "Escalation level %d for %s not delivered: %s",
                level, payload.medication_name, exc,
            )

    def _persist(self) -> None:
        if self._kv is None:
            return
        try:
            self._kv.set_object(StorageKeys.ESCALATIONS, self._pending)
        except Exception as exc:
            logger.warning("Could not persist escalation deadlines: %s", exc)
