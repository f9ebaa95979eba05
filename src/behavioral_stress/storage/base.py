"""Key-value persistence contract shared by every stateful component."""

from __future__ import annotations

import copy
import json
from abc import ABC, abstractmethod
from typing import Any


class StorageUnavailableError(RuntimeError):
    """The backing store could not be reached or refused the operation.

    Callers treat this as transient: state is kept in memory and the
    failure is logged.
    """


class KeyValueStore(ABC):
    """Contract for an async key-value store holding JSON-compatible values.

    Implementations raise :class:`StorageUnavailableError` on backend
    failure and return ``None`` / ``False`` for missing keys.
    """

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Return the value stored under *key*, or ``None`` when absent."""

    @abstractmethod
    async def set(self, key: str, value: Any) -> bool:
        """Store *value* under *key*.  Returns ``True`` once persisted."""

    @abstractmethod
    async def remove(self, key: str) -> bool:
        """Delete *key*.  Returns ``True`` if something was removed."""

    async def close(self) -> None:
        """Release any resources held by the store."""


class MemoryStore(KeyValueStore):
    """Process-local store; values are deep-copied so callers never alias.

    Several components may share one instance to simulate multiple
    browser tabs or windows backed by the same storage.
    """

    def __init__(self) -> None:
        self._data: dict[str, Any] = {}

    async def get(self, key: str) -> Any | None:
        if key not in self._data:
            return None
        return copy.deepcopy(self._data[key])

    async def set(self, key: str, value: Any) -> bool:
        try:
            json.dumps(value)
        except (TypeError, ValueError) as exc:
            raise StorageUnavailableError(f"value for {key!r} is not JSON-serialisable") from exc
        self._data[key] = copy.deepcopy(value)
        return True

    async def remove(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    async def keys(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self._data if k.startswith(prefix))
