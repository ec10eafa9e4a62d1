"""Notification port — abstract interface for delivering reminders.

Core modules depend on this protocol, never on a specific messaging provider.
Inbound events (a reminder was delivered, the user pressed an action) flow
the other way: adapters call ReminderService.handle_delivered /
handle_user_action.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from medminder.data.models import ReminderPayload


class DeliveryError(Exception):
    """Raised when the provider rejects a schedule or cancel request."""


class NotificationPort(Protocol):
    """Abstract notification interface used by core modules."""

    async def schedule(
        self, payload: ReminderPayload, trigger_time: datetime | None = None
    ) -> str:
        """Deliver at trigger_time (None = immediately); return a cancel handle."""
        ...

    async def cancel(self, handle: str) -> None: ...

    async def cancel_all(self) -> None: ...
