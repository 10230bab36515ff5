"""Persistence substrate contract and keyed async locks."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any
from typing import Protocol
from typing import runtime_checkable


@runtime_checkable
class KeyValueStore(Protocol):
    """Asynchronous key-value substrate.

    Values are JSON-compatible Python structures (dicts, lists, strings,
    numbers, booleans, ``None``).  These four primitives are everything the
    fact store, the entity collections and the reflection store need.
    """

    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any) -> None: ...

    async def keys(self) -> list[str]: ...

    async def delete(self, key: str) -> None: ...


class KeyedLocks:
    """Per-key ``asyncio.Lock`` registry.

    Locks are created on first use and dropped once nobody holds or waits
    for them, so the registry does not grow with the number of ids ever seen.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
