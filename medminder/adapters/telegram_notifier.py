"""Telegram notification adapter — implements NotificationPort.

Timed reminders become one-shot jobs on the application's JobQueue; the
job name is the cancel handle. Delivered reminders carry inline buttons
whose callback data encodes the action plus the medication and slot ids.

Jobs live in memory only: after a restart the bot forces a fresh daily
scheduling pass.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime
from zoneinfo import ZoneInfo

from telegram import InlineKeyboardButton, InlineKeyboardMarkup
from telegram.error import TelegramError
from telegram.ext import Application, ContextTypes
from telegram.helpers import escape_markdown

from medminder.data.models import NotificationCategory, ReminderPayload
from medminder.ports.notification_port import DeliveryError

logger = logging.getLogger(__name__)

HANDLE_PREFIX = "reminder:"
CALLBACK_PREFIX = "dose"


def build_callback_data(action: str, payload: ReminderPayload) -> str:
    """dose:<action>:<medication_id>:<schedule_id or ->  (fits Telegram's 64 bytes)."""
    return f"{CALLBACK_PREFIX}:{action}:{payload.medication_id}:{payload.schedule_id or '-'}"


def parse_callback_data(data: str) -> tuple[str, str, str | None] | None:
    """Inverse of build_callback_data; None for anything else."""
    parts = data.split(":")
    if len(parts) != 4 or parts[0] != CALLBACK_PREFIX or not parts[2]:
        return None
    _, action, medication_id, schedule_id = parts
    return action, medication_id, (None if schedule_id == "-" else schedule_id)


def build_keyboard(payload: ReminderPayload) -> InlineKeyboardMarkup | None:
    if not payload.medication_id:
        return None
    if payload.category is NotificationCategory.URGENT:
        rows = [[
            InlineKeyboardButton("Take Now", callback_data=build_callback_data("take", payload)),
            InlineKeyboardButton("Call for Help", callback_data=build_callback_data("emergency", payload)),
        ]]
    else:
        rows = [[
            InlineKeyboardButton("Take", callback_data=build_callback_data("take", payload)),
            InlineKeyboardButton("Snooze", callback_data=build_callback_data("snooze", payload)),
            InlineKeyboardButton("Skip", callback_data=build_callback_data("skip", payload)),
        ]]
    return InlineKeyboardMarkup(rows)


def format_reminder(payload: ReminderPayload) -> str:
    """Markdown text of a reminder; names and instructions are user input."""
    lines = [f"*{escape_markdown(payload.title)}*" if payload.title else "", escape_markdown(payload.body)]
    if payload.instructions:
        lines.append(f"_{escape_markdown(payload.instructions)}_")
    return "\n".join(line for line in lines if line)


class TelegramNotifier:
    """Telegram implementation of NotificationPort."""

    def __init__(
        self,
        application: Application,
        chat_ids: list[int],
        timezone: str = "UTC",
        on_delivered: Callable[[ReminderPayload], object] | None = None,
    ) -> None:
        self._app = application
        self._chat_ids = chat_ids
        self._tz = ZoneInfo(timezone)
        self.on_delivered = on_delivered

    async def schedule(
        self, payload: ReminderPayload, trigger_time: datetime | None = None
    ) -> str:
        handle = f"{HANDLE_PREFIX}{uuid.uuid4().hex[:12]}"
        if trigger_time is None:
            await self._deliver(payload)
            return handle

        job_queue = self._app.job_queue
        if job_queue is None:
            raise DeliveryError("JobQueue unavailable (install python-telegram-bot[job-queue])")

        when = trigger_time if trigger_time.tzinfo else trigger_time.replace(tzinfo=self._tz)
        job_queue.run_once(
            self._job_callback,
            when=when,
            data=payload.model_dump(mode="json"),
            name=handle,
        )
        return handle

    async def cancel(self, handle: str) -> None:
        job_queue = self._app.job_queue
        if job_queue is None:
            return
        for job in job_queue.get_jobs_by_name(handle):
            job.schedule_removal()

    async def cancel_all(self) -> None:
        job_queue = self._app.job_queue
        if job_queue is None:
            return
        for job in job_queue.jobs():
            if job.name and job.name.startswith(HANDLE_PREFIX):
                job.schedule_removal()

    async def _job_callback(self, context: ContextTypes.DEFAULT_TYPE) -> None:
        payload = ReminderPayload.model_validate(context.job.data)
        try:
            await self._deliver(payload)
        except DeliveryError as exc:
            logger.error("Scheduled reminder for %s not delivered: %s", payload.medication_name, exc)

    async def _deliver(self, payload: ReminderPayload) -> None:
        text = format_reminder(payload)
        keyboard = build_keyboard(payload)
        delivered = False
        for chat_id in self._chat_ids:
            try:
                await self._app.bot.send_message(
                    chat_id=chat_id, text=text, parse_mode="Markdown", reply_markup=keyboard,
                )
                delivered = True
            except TelegramError as exc:
                logger.error("Failed to send reminder to %d: %s", chat_id, exc)

        if not delivered:
            raise DeliveryError(f"Reminder '{payload.title}' reached no chat")

        if self.on_delivered is not None:
            self.on_delivered(payload)
