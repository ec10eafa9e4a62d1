"""Speech port — fire-and-forget text-to-speech."""

from __future__ import annotations

from typing import Protocol


class SpeechPort(Protocol):
    async def speak(self, text: str) -> None: ...
