"""Fact domain: sharded fact store and its read-side aggregator."""

from omnireflect.facts.aggregator import FactAggregator
from omnireflect.facts.aggregator import normalize_content
from omnireflect.facts.schemas import Fact
from omnireflect.facts.schemas import FactChange
from omnireflect.facts.schemas import FactChangeKind
from omnireflect.facts.schemas import FactScope
from omnireflect.facts.store import CHARACTER_SHARD_PREFIX
from omnireflect.facts.store import CONVERSATION_SHARD_PREFIX
from omnireflect.facts.store import FactStore
from omnireflect.facts.store import GLOBAL_SHARD_KEY
from omnireflect.facts.store import SHARD_INDEX_KEY
from omnireflect.facts.store import shard_key_for

__all__ = [
    "CHARACTER_SHARD_PREFIX",
    "CONVERSATION_SHARD_PREFIX",
    "Fact",
    "FactAggregator",
    "FactChange",
    "FactChangeKind",
    "FactScope",
    "FactStore",
    "GLOBAL_SHARD_KEY",
    "SHARD_INDEX_KEY",
    "normalize_content",
    "shard_key_for",
]
