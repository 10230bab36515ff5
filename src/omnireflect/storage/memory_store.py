"""In-process key-value substrate."""

from __future__ import annotations

import asyncio
import copy
from typing import Any


class InMemoryKeyValueStore:
    """Dict-backed ``KeyValueStore``.

    Values are deep-copied on the way in and out so callers never alias
    persisted state; every call yields to the event loop like a real
    asynchronous backend would.
    """

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = copy.deepcopy(initial) if initial else {}

    async def get(self, key: str) -> Any | None:
        await asyncio.sleep(0)
        if key not in self._data:
            return None
        return copy.deepcopy(self._data[key])

    async def set(self, key: str, value: Any) -> None:
        await asyncio.sleep(0)
        self._data[key] = copy.deepcopy(value)

    async def keys(self) -> list[str]:
        await asyncio.sleep(0)
        return list(self._data)

    async def delete(self, key: str) -> None:
        await asyncio.sleep(0)
        self._data.pop(key, None)

    async def clear(self) -> None:
        self._data.clear()
