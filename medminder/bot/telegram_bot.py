"""
MedMinder — Telegram Bot Interface.

Thin UI layer over ReminderService: commands to add/delete medications,
see today's doses and adherence, and inline buttons on every reminder
(Take / Snooze / Skip, or Take Now / Call for Help once escalated).

All business logic lives in medminder.core; this module only parses input
and renders replies.
"""

from __future__ import annotations

import logging
import re
from datetime import time as dt_time
from functools import wraps
from typing import TYPE_CHECKING, Any, Callable, Coroutine
from zoneinfo import ZoneInfo

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.ext import (
    Application,
    ApplicationBuilder,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)
from telegram.helpers import escape_markdown

from medminder.adapters.telegram_notifier import build_keyboard, parse_callback_data
from medminder.config import settings
from medminder.core.notification_scheduler import build_reminder_payload
from medminder.core.reminder_service import ReminderAction
from medminder.core.time_util import normalize_hhmm
from medminder.data.models import ReminderPayload, Unit
from medminder.data.stores import create_medication

if TYPE_CHECKING:
    from medminder.core.reminder_service import ReminderService
    from medminder.ports.storage_port import KeyValueStore

logger = logging.getLogger(__name__)

HELP_TEXT = (
    "*MedMinder commands*\n"
    "/today — today's doses\n"
    "/upcoming — doses still ahead today\n"
    "/add <name> <dosage> <mg|ml|pills> <HH:MM,HH:MM> — add a medication\n"
    "/delete — remove a medication\n"
    "/undo — return a taken/skipped dose to pending\n"
    "/stats [days] — adherence statistics\n"
    "/insights — patterns and suggestions\n"
    "/quiet on|off|HH:MM-HH:MM — quiet hours\n\n"
    "Or just write, e.g. \"I took my Metformin\" or \"how am I doing this week?\""
)

_DOSE_WITH_UNIT = re.compile(r"^(\d+(?:\.\d+)?)(mg|ml|pills)$", re.IGNORECASE)
_QUIET_RANGE = re.compile(r"^\s*(\d{1,2}:\d{2})\s*-\s*(\d{1,2}:\d{2})\s*$")


# ---------------------------------------------------------------------------
# Security: silent-ignore decorator
# ---------------------------------------------------------------------------


def authorized_only(
    func: Callable[..., Coroutine[Any, Any, None]],
) -> Callable[..., Coroutine[Any, Any, None]]:
    """Decorator that silently ignores updates from unauthorized users."""

    @wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        user = update.effective_user
        if user is None or user.id not in settings.ALLOWED_USER_IDS:
            uid = user.id if user else "unknown"
            logger.warning("Unauthorized access attempt from user_id=%s", uid)
            return
        return await func(update, context)

    return wrapper


def _service(context: ContextTypes.DEFAULT_TYPE) -> ReminderService:
    return context.bot_data["service"]


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


def _parse_add_args(args: list[str]) -> tuple[str, str, Unit, list[str]] | None:
    """Parse `/add` arguments into (name, dosage, unit, times).

    Accepts "Metformin 500 mg 08:00,20:00" and "Metformin 500mg 08:00,20:00".
    Returns None when the input doesn't fit either form.
    """
    if len(args) < 3:
        return None

    try:
        times = [normalize_hhmm(t) for t in args[-1].split(",") if t.strip()]
    except ValueError:
        return None
    if not times:
        return None

    combined = _DOSE_WITH_UNIT.match(args[-2])
    if combined:
        dosage, unit_raw, name_parts = combined.group(1), combined.group(2), args[:-2]
    elif len(args) >= 4 and args[-2].lower() in {u.value for u in Unit}:
        dosage, unit_raw, name_parts = args[-3], args[-2], args[:-3]
    else:
        return None

    name = " ".join(name_parts).strip()
    try:
        float(dosage)
    except ValueError:
        return None
    if not name:
        return None
    return name, dosage, Unit(unit_raw.lower()), times


def _parse_quiet_args(args: list[str]) -> dict | None:
    """Map `/quiet` arguments to preference changes, or None if invalid."""
    if not args:
        return None
    arg = " ".join(args).strip().lower()
    if arg == "on":
        return {"quiet_hours_enabled": True}
    if arg == "off":
        return {"quiet_hours_enabled": False}
    match = _QUIET_RANGE.match(arg)
    if not match:
        return None
    try:
        start, end = normalize_hhmm(match.group(1)), normalize_hhmm(match.group(2))
    except ValueError:
        return None
    return {"quiet_hours_enabled": True, "quiet_hours_start": start, "quiet_hours_end": end}


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@authorized_only
async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await update.message.reply_text(
        "Hi! I'll remind you to take your medications.\n\n" + HELP_TEXT,
        parse_mode="Markdown",
    )


@authorized_only
async def cmd_help(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await update.message.reply_text(HELP_TEXT, parse_mode="Markdown")


@authorized_only
async def cmd_today(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /today — every dose of the day with its state."""
    service = _service(context)
    medications = service.list_medications()
    if not medications:
        await update.message.reply_text("No medications yet. Add one with /add.")
        return

    icons = {"pending": "⏳", "taken": "✅", "skipped": "⏭️"}
    doses = sorted(
        ((slot.time, med, slot) for med in medications for slot in med.schedule),
        key=lambda item: item[0],
    )
    lines = ["*Today's doses:*\n"]
    for slot_time, med, slot in doses:
        lines.append(f"{icons[slot.status.value]} {slot_time} — {escape_markdown(med.label)}")
    await update.message.reply_text("\n".join(lines), parse_mode="Markdown")

    for pending in service.get_pending_doses():
        payload = build_reminder_payload(pending.medication, pending.slot)
        await update.message.reply_text(
            f"{pending.slot.time} — {pending.medication.label}",
            reply_markup=build_keyboard(payload),
        )


@authorized_only
async def cmd_upcoming(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    upcoming = _service(context).get_upcoming_doses()
    if not upcoming:
        await update.message.reply_text("Nothing else due today. 🎉")
        return
    lines = ["*Still ahead today:*\n"]
    lines += [f"{p.slot.time} — {escape_markdown(p.medication.label)}" for p in upcoming]
    await update.message.reply_text("\n".join(lines), parse_mode="Markdown")


@authorized_only
async def cmd_add(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /add <name> <dosage> <unit> <times>."""
    parsed = _parse_add_args(context.args or [])
    if parsed is None:
        await update.message.reply_text(
            "Usage: /add <name> <dosage> <mg|ml|pills> <HH:MM,HH:MM>\n"
            "Example: /add Metformin 500 mg 08:00,20:00"
        )
        return

    name, dosage, unit, times = parsed
    service = _service(context)
    try:
        medication = await service.add_medication(create_medication(name, dosage, unit, times))
    except Exception as exc:
        logger.error("/add error: %s", exc)
        await update.message.reply_text("Couldn't add the medication. Please try again.")
        return

    await update.message.reply_text(
        f"Added *{escape_markdown(medication.label)}* at {', '.join(s.time for s in medication.schedule)}.",
        parse_mode="Markdown",
    )


@authorized_only
async def cmd_delete(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /delete — pick a medication from buttons."""
    medications = _service(context).list_medications()
    if not medications:
        await update.message.reply_text("No medications to delete.")
        return
    keyboard = [
        [InlineKeyboardButton(m.label, callback_data=f"delmed:{m.id}")] for m in medications
    ]
    await update.message.reply_text(
        "Which medication do you want to delete?",
        reply_markup=InlineKeyboardMarkup(keyboard),
    )


@authorized_only
async def cmd_undo(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /undo — pick a resolved dose to return to pending."""
    resolved = [
        (med, slot)
        for med in _service(context).list_medications()
        for slot in med.schedule
        if not slot.is_pending
    ]
    if not resolved:
        await update.message.reply_text("Nothing to undo today.")
        return
    keyboard = [
        [InlineKeyboardButton(
            f"{slot.time} {med.name} ({slot.status.value})",
            callback_data=f"undo:{med.id}:{slot.id}",
        )]
        for med, slot in sorted(resolved, key=lambda pair: pair[1].time)
    ]
    await update.message.reply_text(
        "Which dose should go back to pending?",
        reply_markup=InlineKeyboardMarkup(keyboard),
    )


@authorized_only
async def cmd_stats(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /stats [days]."""
    days = 7
    if context.args:
        try:
            days = max(1, int(context.args[0]))
        except ValueError:
            await update.message.reply_text("Usage: /stats [days]")
            return

    service = _service(context)
    overall = service.get_stats(window_days=days)
    lines = [
        f"*Adherence, last {days} days:* {overall.rate}%",
        f"Taken {overall.taken} · Missed {overall.missed} · Skipped {overall.skipped}",
        f"Streak: {overall.streak} day(s)",
    ]
    for med in service.list_medications():
        stats = service.get_stats(med.id, days)
        if stats.total:
            lines.append(f"  {escape_markdown(med.name)}: {stats.rate}% ({stats.taken}/{stats.total})")
    await update.message.reply_text("\n".join(lines), parse_mode="Markdown")


@authorized_only
async def cmd_insights(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /insights — rule-based patterns plus LLM coaching."""
    service = _service(context)
    insights = service.analyze_behavior(30)
    coaching = await service.get_ai_insights()

    lines = [
        "*Your patterns (30 days)*",
        f"Best time of day: {insights.best_time_of_day}",
        f"Most missed: {insights.worst_time_of_day}",
        f"Best day: {insights.best_day_of_week}",
        f"Trend: {insights.adherence_trend} ({insights.improvement_score:+d})",
        "",
        "*Suggestions*",
    ]
    lines += [f"• {escape_markdown(s)}" for s in insights.suggestions]
    lines += [f"• {escape_markdown(s)}" for s in coaching["suggestions"] if s not in insights.suggestions]
    lines += ["", escape_markdown(coaching["encouragement"])]
    await update.message.reply_text("\n".join(lines), parse_mode="Markdown")


@authorized_only
async def cmd_quiet(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    changes = _parse_quiet_args(context.args or [])
    service = _service(context)
    if changes is None:
        prefs = service.preferences.get()
        state = "on" if prefs.quiet_hours_enabled else "off"
        await update.message.reply_text(
            f"Quiet hours are {state} ({prefs.quiet_hours_start}-{prefs.quiet_hours_end}).\n"
            "Usage: /quiet on|off|HH:MM-HH:MM"
        )
        return

    prefs = service.preferences.update(**changes)
    await service.ensure_daily_reminders(force=True)
    state = "on" if prefs.quiet_hours_enabled else "off"
    await update.message.reply_text(
        f"Quiet hours {state} ({prefs.quiet_hours_start}-{prefs.quiet_hours_end})."
    )


# ---------------------------------------------------------------------------
# Free text: "I took my Metformin", "skip my vitamin, I feel sick"
# ---------------------------------------------------------------------------


@authorized_only
async def handle_text(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    text = (update.message.text or "").strip()
    if not text:
        return
    reply = await _service(context).handle_text_command(text)
    await update.message.reply_text(reply)


# ---------------------------------------------------------------------------
# Callback buttons
# ---------------------------------------------------------------------------


def _is_authorized_query(update: Update) -> bool:
    user = update.callback_query.from_user
    return user is not None and user.id in settings.ALLOWED_USER_IDS


async def _handle_dose_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Take / Snooze / Skip / Emergency pressed on a reminder."""
    query = update.callback_query
    await query.answer()
    if not _is_authorized_query(update):
        return

    parsed = parse_callback_data(query.data or "")
    if parsed is None:
        return
    action, medication_id, schedule_id = parsed

    service = _service(context)
    medication = service.get_medication(medication_id)
    if medication is None:
        await query.edit_message_text("This medication no longer exists.")
        return

    payload = ReminderPayload(
        medication_id=medication.id,
        medication_name=medication.name,
        schedule_id=schedule_id,
        dosage=medication.dosage,
        unit=medication.unit.value,
    )
    try:
        applied = await service.handle_user_action(ReminderAction(action), payload)
    except Exception as exc:
        logger.error("Reminder action %s failed: %s", action, exc)
        applied = False
    if not applied:
        await query.edit_message_text("Something went wrong. Please try again.")
        return

    replies = {
        "take": f"✅ {medication.name} recorded as taken",
        "skip": f"⏭️ {medication.name} skipped",
        "snooze": f"⏰ {medication.name} snoozed",
        "emergency": "🆘 Help has been requested",
    }
    await query.edit_message_text(replies.get(action, medication.name))


async def _handle_delete_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    query = update.callback_query
    await query.answer()
    if not _is_authorized_query(update):
        return

    medication_id = query.data.split(":", 1)[1]
    service = _service(context)
    medication = service.get_medication(medication_id)
    try:
        deleted = await service.delete_medication(medication_id)
    except Exception as exc:
        logger.error("Delete of %s failed: %s", medication_id, exc)
        await query.edit_message_text("Couldn't delete the medication. Please try again.")
        return

    if not deleted or medication is None:
        await query.edit_message_text("Medication not found or already deleted.")
        return
    await query.edit_message_text(f"🗑️ Deleted {medication.name}.")


async def _handle_undo_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    query = update.callback_query
    await query.answer()
    if not _is_authorized_query(update):
        return

    _, medication_id, schedule_id = query.data.split(":", 2)
    slot = await _service(context).undo(medication_id, schedule_id)
    if slot is None:
        await query.edit_message_text("That dose no longer exists.")
        return
    await query.edit_message_text(f"↩️ {slot.time} dose is pending again.")


# ---------------------------------------------------------------------------
# Application wiring
# ---------------------------------------------------------------------------


def build_app(kv: KeyValueStore | None = None) -> Application:
    """Build the Telegram Application and wire the reminder engine into it."""
    from medminder.adapters.telegram_notifier import TelegramNotifier
    from medminder.core.reminder_service import ReminderService

    if kv is None:
        from medminder.data.db import SqliteKeyValueStore
        kv = SqliteKeyValueStore()

    app = ApplicationBuilder().token(settings.TELEGRAM_BOT_TOKEN).post_init(_on_startup).build()

    notifier = TelegramNotifier(app, settings.ALLOWED_USER_IDS, timezone=settings.TIMEZONE)

    async def _emergency(medication_id: str, message: str) -> None:
        medication = service.get_medication(medication_id)
        name = medication.name if medication else medication_id
        text = f"🆘 {message}: {name}" if name else f"🆘 {message}"
        for chat_id in settings.ALLOWED_USER_IDS:
            await app.bot.send_message(chat_id=chat_id, text=text)

    service = ReminderService(kv, notifier, on_emergency=_emergency)
    notifier.on_delivered = service.handle_delivered
    app.bot_data["service"] = service

    app.add_handler(CommandHandler("start", cmd_start))
    app.add_handler(CommandHandler("help", cmd_help))
    app.add_handler(CommandHandler("today", cmd_today))
    app.add_handler(CommandHandler("upcoming", cmd_upcoming))
    app.add_handler(CommandHandler("add", cmd_add))
    app.add_handler(CommandHandler("delete", cmd_delete))
    app.add_handler(CommandHandler("undo", cmd_undo))
    app.add_handler(CommandHandler("stats", cmd_stats))
    app.add_handler(CommandHandler("insights", cmd_insights))
    app.add_handler(CommandHandler("quiet", cmd_quiet))
    app.add_handler(CallbackQueryHandler(_handle_dose_callback, pattern=r"^dose:"))
    app.add_handler(CallbackQueryHandler(_handle_delete_callback, pattern=r"^delmed:"))
    app.add_handler(CallbackQueryHandler(_handle_undo_callback, pattern=r"^undo:"))
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, handle_text))

    _setup_daily_maintenance(app, service)

    logger.info("Telegram bot application built with %d handlers", len(app.handlers[0]))
    return app


async def _on_startup(app: Application) -> None:
    """Roll over if needed, re-arm today's reminders and in-flight escalations.

    JobQueue reminders don't survive a restart, so ReminderService.start()
    forces a full scheduling pass.
    """
    service: ReminderService = app.bot_data["service"]
    restored = await service.start()
    logger.info("Startup complete, %d escalation timers restored", restored)


def _setup_daily_maintenance(app: Application, service: ReminderService) -> None:
    """Register the nightly rollover + reschedule job."""
    tz = ZoneInfo(settings.TIMEZONE)
    run_at = dt_time(hour=settings.DAILY_ROLLOVER_HOUR, minute=0, second=30, tzinfo=tz)

    async def _daily_job_callback(context: ContextTypes.DEFAULT_TYPE) -> None:
        await service.run_daily_maintenance()

    app.job_queue.run_daily(_daily_job_callback, time=run_at, name="daily_maintenance")
    logger.info(
        "Daily maintenance scheduled at %02d:00 %s", settings.DAILY_ROLLOVER_HOUR, settings.TIMEZONE,
    )


def main() -> None:
    """Entry point: build the app and start polling."""
    import sys

    if not settings.TELEGRAM_BOT_TOKEN or settings.TELEGRAM_BOT_TOKEN.startswith("your-"):
        print("ERROR: TELEGRAM_BOT_TOKEN is missing or not set in .env", file=sys.stderr)
        sys.exit(1)

    logger.info("Starting MedMinder bot...")
    app = build_app()
    app.run_polling()


if __name__ == "__main__":
    main()
