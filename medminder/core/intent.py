"""
MedMinder — Free-text command parser.

Turns a typed or transcribed sentence ("I took my metformin", "skip the
evening vitamin, I feel sick") into one structured command using the
configured LLM provider. Replies are validated against the models below
before anything acts on them; the reminder service does the acting.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field, ValidationError, field_validator

from medminder.core import llm
from medminder.core.time_util import normalize_hhmm
from medminder.data.models import Unit

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Command contract
# ---------------------------------------------------------------------------


class TakeDose(BaseModel):
    """{"intent": "take", "medication": "Metformin"}"""
    intent: str = "take"
    medication: str


class SkipDose(BaseModel):
    """{"intent": "skip", "medication": "Metformin", "reason": "nausea"}"""
    intent: str = "skip"
    medication: str
    reason: str | None = None


class AddMedication(BaseModel):
    """Structured request to start a new medication.

    JSON example:
    {
        "intent": "add",
        "medication": "Vitamin D",
        "dosage": "1000",
        "unit": "mg",
        "times": ["09:00"],
        "instructions": "with breakfast"
    }
    """
    intent: str = "add"
    medication: str
    dosage: str
    unit: Unit
    times: list[str] = Field(min_length=1)
    instructions: str | None = None

    @field_validator("dosage", mode="before")
    @classmethod
    def _dosage_as_text(cls, value: object) -> str:
        return str(value)

    @field_validator("times")
    @classmethod
    def _normalize_times(cls, value: list[str]) -> list[str]:
        return [normalize_hhmm(t) for t in value]


class QueryAdherence(BaseModel):
    intent: str = "adherence"
    days: int = Field(default=7, ge=1, le=365)


class RequestHelp(BaseModel):
    intent: str = "emergency"
    medication: str | None = None
    message: str = "Help requested"


Command = TakeDose | SkipDose | AddMedication | QueryAdherence | RequestHelp

_INTENTS: dict[str, type[BaseModel]] = {
    "take": TakeDose,
    "skip": SkipDose,
    "add": AddMedication,
    "adherence": QueryAdherence,
    "emergency": RequestHelp,
}

# ---------------------------------------------------------------------------
# System prompt for LLM
# ---------------------------------------------------------------------------

_SYSTEM_PROMPT = """\
You are the command interpreter of a medication reminder assistant used by
elderly people. Classify the user's message into exactly ONE command.

The user's medications are: {medications}

**take** — the user says they took (or are taking) a medication:
{{"intent": "take", "medication": "string"}}

**skip** — the user will not take a dose, optionally saying why:
{{"intent": "skip", "medication": "string", "reason": "string or null"}}

**add** — the user wants to start a new medication:
{{"intent": "add", "medication": "string", "dosage": "string", "unit": "mg|ml|pills", "times": ["HH:MM"], "instructions": "string or null"}}

**adherence** — the user asks how well they have been taking their medication:
{{"intent": "adherence", "days": integer}}

**emergency** — the user feels unwell, asks for help, or mentions an emergency:
{{"intent": "emergency", "medication": "string or null", "message": "short summary"}}

**Rules:**
- For take and skip, "medication" must be copied exactly from the list above.
- Times are 24-hour "HH:MM". "days" defaults to 7.
- If the message matches none of the commands, return exactly: {{"intent": "unknown"}}
- Return ONLY the JSON object. No markdown, no explanation.
"""


def _instantiate_command(data: dict) -> Command | None:
    """Validate one decoded reply into its typed command, or None if unknown."""
    intent = data.get("intent")
    model = _INTENTS.get(intent)
    if model is None:
        if intent != "unknown":
            logger.warning("LLM returned unknown intent: '%s'", intent)
        return None
    command = model(**data)
    logger.info("Parsed %s command: %s", intent, command.model_dump(exclude={"intent"}))
    return command


async def parse_command(text: str, medication_names: list[str]) -> Command | None:
    """Classify a free-text message into a Command.

    Returns None when the reply is unusable or matches no command.
    Errors reaching the provider propagate so the caller can tell
    "not understood" apart from "assistant unavailable".
    """
    system_prompt = _SYSTEM_PROMPT.format(medications=", ".join(medication_names) or "none yet")
    raw = await llm.complete(system=system_prompt, user_message=text, max_tokens=256)
    logger.debug("LLM raw command reply: %s", raw)

    try:
        data = llm.extract_json(raw)
    except ValueError as exc:
        logger.error("Failed to parse LLM command reply as JSON: %s (raw: '%s')", exc, raw)
        return None
    if isinstance(data, list):
        data = data[0] if data else {}
    if not isinstance(data, dict):
        logger.warning("LLM returned unexpected type: %s", type(data).__name__)
        return None

    try:
        return _instantiate_command(data)
    except ValidationError as exc:
        logger.warning("LLM command failed validation: %s", exc)
        return None
