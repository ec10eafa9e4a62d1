"""
MedMinder — Centralized configuration.

Loads all settings from .env and validates them.
Every other module reads its tunables from here.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

# Load .env from project root (two levels up from medminder/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Telegram (only required when the bot is started)
    TELEGRAM_BOT_TOKEN: str = ""

    # Security: chats that receive reminders and may issue commands
    ALLOWED_USER_IDS: list[int] = []

    # LLM: gemini, anthropic or openai
    LLM_PROVIDER: str = "gemini"
    LLM_MODEL: str = ""          # empty → smart default per provider
    LLM_API_KEY: str = ""

    # SQLite key-value store
    DATABASE_PATH: str = "data/medminder.db"

    TIMEZONE: str = "UTC"

    # Reminder behaviour
    QUIET_HOURS_ENABLED: bool = True
    QUIET_HOURS_START: str = "22:00"
    QUIET_HOURS_END: str = "07:00"
    SNOOZE_MINUTES: int = 15
    ESCALATION_MINUTES: list[int] = [5, 10, 15]

    # History
    DOSE_RETENTION_DAYS: int = 90

    # Hour of the nightly rollover + reschedule job
    DAILY_ROLLOVER_HOUR: int = 0

    @field_validator("ALLOWED_USER_IDS", "ESCALATION_MINUTES", mode="before")
    @classmethod
    def parse_int_list(cls, v: str | list[int]) -> list[int]:
        if isinstance(v, list):
            return v
        if isinstance(v, str) and v.strip():
            return [int(part.strip()) for part in v.split(",") if part.strip()]
        return []

    @field_validator("SNOOZE_MINUTES", "DOSE_RETENTION_DAYS", "DAILY_ROLLOVER_HOUR", mode="before")
    @classmethod
    def parse_int(cls, v: str | int) -> int:
        return int(v)

    @field_validator("QUIET_HOURS_ENABLED", mode="before")
    @classmethod
    def parse_bool(cls, v: str | bool) -> bool:
        if isinstance(v, bool):
            return v
        return str(v).strip().lower() in ("1", "true", "yes", "on")


def _load_settings() -> Settings:
    """Load settings from environment."""
    return Settings(
        TELEGRAM_BOT_TOKEN=os.getenv("TELEGRAM_BOT_TOKEN", ""),
        ALLOWED_USER_IDS=os.getenv("ALLOWED_USER_IDS", ""),
        LLM_PROVIDER=os.getenv("LLM_PROVIDER", "gemini"),
        LLM_MODEL=os.getenv("LLM_MODEL", ""),
        LLM_API_KEY=os.getenv("LLM_API_KEY", ""),
        DATABASE_PATH=os.getenv("DATABASE_PATH", "data/medminder.db"),
        TIMEZONE=os.getenv("TIMEZONE", "UTC"),
        QUIET_HOURS_ENABLED=os.getenv("QUIET_HOURS_ENABLED", "true"),
        QUIET_HOURS_START=os.getenv("QUIET_HOURS_START", "22:00"),
        QUIET_HOURS_END=os.getenv("QUIET_HOURS_END", "07:00"),
        SNOOZE_MINUTES=os.getenv("SNOOZE_MINUTES", "15"),
        ESCALATION_MINUTES=os.getenv("ESCALATION_MINUTES", "5,10,15"),
        DOSE_RETENTION_DAYS=os.getenv("DOSE_RETENTION_DAYS", "90"),
        DAILY_ROLLOVER_HOUR=os.getenv("DAILY_ROLLOVER_HOUR", "0"),
    )


# Singleton, imported by all other modules as:
#   from medminder.config import settings
settings = _load_settings()
