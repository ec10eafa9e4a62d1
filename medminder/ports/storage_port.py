"""Storage port — abstract key-value persistence.

Stores and services depend on this protocol, never on a specific backend.
Values are JSON-serialisable structures; the store owns the encoding.
"""

from __future__ import annotations

from typing import Any, Protocol


class PersistenceError(Exception):
    """Raised when the backing store cannot read or write a key."""


class KeyValueStore(Protocol):
    """Synchronous get/set/remove-by-key store used by the core."""

    def get_string(self, key: str) -> str | None: ...

    def set_string(self, key: str, value: str) -> None: ...

    def get_object(self, key: str) -> Any | None: ...

    def set_object(self, key: str, value: Any) -> None: ...

    def remove(self, key: str) -> None: ...
