"""Redis-backed key-value substrate.

Values are stored as JSON strings keyed by ``{namespace}:{key}``.
``keys()`` walks the namespace with ``SCAN`` and strips the prefix, so
the stores built on top only ever see their own logical keys.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from redis.asyncio import Redis  # type: ignore[import-untyped]
from redis.exceptions import RedisError  # type: ignore[import-untyped]

from omnireflect.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

_CLEAR_BATCH_SIZE = 100


def _decode(raw: bytes | str) -> str:
    return raw.decode() if isinstance(raw, bytes) else raw


class RedisKeyValueStore:
    """``KeyValueStore`` over an async Redis client."""

    def __init__(self, redis: Redis, *, namespace: str = "omnireflect") -> None:
        self._redis = redis
        self._prefix = f"{namespace}:"

    @classmethod
    def from_url(cls, url: str, *, namespace: str = "omnireflect") -> RedisKeyValueStore:
        return cls(Redis.from_url(url), namespace=namespace)

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def get(self, key: str) -> Any | None:
        try:
            raw = await self._redis.get(self._key(key))
        except (RedisError, OSError) as exc:
            raise StoreUnavailableError(f"get {key!r} failed: {exc}") from exc
        if raw is None:
            return None
        return json.loads(_decode(raw))

    async def set(self, key: str, value: Any) -> None:
        data = json.dumps(value)
        try:
            await self._redis.set(self._key(key), data)
        except (RedisError, OSError) as exc:
            raise StoreUnavailableError(f"set {key!r} failed: {exc}") from exc

    async def keys(self) -> list[str]:
        found: list[str] = []
        try:
            async for raw in self._redis.scan_iter(match=f"{self._prefix}*"):
                found.append(_decode(raw)[len(self._prefix) :])
        except (RedisError, OSError) as exc:
            raise StoreUnavailableError(f"key listing failed: {exc}") from exc
        return found

    async def delete(self, key: str) -> None:
        try:
            await self._redis.delete(self._key(key))
        except (RedisError, OSError) as exc:
            raise StoreUnavailableError(f"delete {key!r} failed: {exc}") from exc

    async def clear(self) -> None:
        """Remove every key in the namespace.

        Deletes in batches to avoid loading all keys into memory at once.
        """
        batch: list = []
        async for key in self._redis.scan_iter(match=f"{self._prefix}*"):
            batch.append(key)
            if len(batch) >= _CLEAR_BATCH_SIZE:
                await self._redis.delete(*batch)
                batch.clear()
        if batch:
            await self._redis.delete(*batch)

    async def close(self) -> None:
        await self._redis.aclose()
