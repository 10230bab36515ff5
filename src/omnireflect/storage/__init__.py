"""Storage domain: the asynchronous key-value substrate."""

from omnireflect.storage.base import KeyedLocks
from omnireflect.storage.base import KeyValueStore
from omnireflect.storage.memory_store import InMemoryKeyValueStore
from omnireflect.storage.redis_store import RedisKeyValueStore

__all__ = [
    "InMemoryKeyValueStore",
    "KeyValueStore",
    "KeyedLocks",
    "RedisKeyValueStore",
]
