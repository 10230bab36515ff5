"""Sharded fact store over the key-value substrate.

Facts live in JSON arrays, one array per owner:

* ``global_memories`` holds every global fact,
* ``memories_character_{id}`` holds the facts of one character,
* ``memories_conversation_{id}`` holds the facts of one conversation.

An owner's facts are therefore one read away, while enumerating every fact
needs a key listing.  Update and delete do not know which shard holds an
id, so they locate it first.  ``fact_shard_index`` maps ids to shard keys
to turn that lookup into a single read; the index is only a hint and a
miss (or a stale entry) falls back to scanning every shard.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING
from typing import Any

from pydantic import ValidationError

from omnireflect.audit import AuditEvent
from omnireflect.audit import AuditEventType
from omnireflect.audit import AuditLogger
from omnireflect.errors import NotFoundError
from omnireflect.errors import ProposalValidationError
from omnireflect.errors import StoreUnavailableError
from omnireflect.facts.schemas import Fact
from omnireflect.facts.schemas import FactChange
from omnireflect.facts.schemas import FactChangeKind
from omnireflect.facts.schemas import FactScope
from omnireflect.models import utcnow
from omnireflect.observability import track_latency
from omnireflect.storage import KeyedLocks
from omnireflect.storage import KeyValueStore

if TYPE_CHECKING:
    from omnireflect.facts.aggregator import FactAggregator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Key layout
# ---------------------------------------------------------------------------

GLOBAL_SHARD_KEY = "global_memories"
CHARACTER_SHARD_PREFIX = "memories_character_"
CONVERSATION_SHARD_PREFIX = "memories_conversation_"
SHARD_INDEX_KEY = "fact_shard_index"


def shard_key_for(scope: FactScope, owner_id: str | None = None) -> str:
    """Return the shard key holding facts of *scope* owned by *owner_id*."""
    if scope is FactScope.global_:
        return GLOBAL_SHARD_KEY
    if not owner_id:
        raise ProposalValidationError(
            f"A {scope.value}-scoped fact needs an owner id."
        )
    if scope is FactScope.character:
        return f"{CHARACTER_SHARD_PREFIX}{owner_id}"
    return f"{CONVERSATION_SHARD_PREFIX}{owner_id}"


def is_fact_shard_key(key: str) -> bool:
    return (
        key == GLOBAL_SHARD_KEY
        or key.startswith(CHARACTER_SHARD_PREFIX)
        or key.startswith(CONVERSATION_SHARD_PREFIX)
    )


def _index_of(records: list[dict[str, Any]], fact_id: str) -> int | None:
    for position, record in enumerate(records):
        if isinstance(record, dict) and record.get("id") == fact_id:
            return position
    return None


# ---------------------------------------------------------------------------
# FactStore
# ---------------------------------------------------------------------------


class FactStore:
    """Create, locate, update and delete facts across scope shards."""

    def __init__(
        self,
        kv: KeyValueStore,
        *,
        use_shard_index: bool = True,
        cache: FactAggregator | None = None,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        self._kv = kv
        self._use_shard_index = use_shard_index
        self._cache = cache
        self._audit = audit_logger
        self._id_locks = KeyedLocks()
        self._shard_locks = KeyedLocks()

    def attach_cache(self, cache: FactAggregator) -> None:
        """Route every committed change into *cache*."""
        self._cache = cache

    # -- enumeration --

    async def shard_keys(self) -> list[str]:
        """Return every fact shard key, global first.

        The global key is always included, even before anything was written
        to it, so callers can treat it as a fixed shard.
        """
        keys = await self._kv.keys()
        character = sorted(k for k in keys if k.startswith(CHARACTER_SHARD_PREFIX))
        conversation = sorted(
            k for k in keys if k.startswith(CONVERSATION_SHARD_PREFIX)
        )
        return [GLOBAL_SHARD_KEY, *character, *conversation]

    async def iter_shards(
        self, *, abort: asyncio.Event | None = None
    ) -> AsyncIterator[tuple[str, list[Fact]]]:
        """Yield ``(shard_key, facts)`` one shard at a time.

        Stops early, between two shard reads, once *abort* is set.
        """
        for key in await self.shard_keys():
            if abort is not None and abort.is_set():
                logger.info("Shard iteration aborted before %s", key)
                return
            yield key, await self.read_shard(key)

    async def read_shard(self, key: str) -> list[Fact]:
        """Parse one shard, skipping records that fail validation."""
        raw = await self._kv.get(key)
        if raw is None:
            return []
        if not isinstance(raw, list):
            logger.warning("Ignoring fact shard %s: expected a list", key)
            return []
        facts: list[Fact] = []
        for position, record in enumerate(raw):
            try:
                facts.append(Fact.model_validate(record))
            except ValidationError:
                logger.warning(
                    "Skipping malformed fact record %d in shard %s", position, key
                )
        return facts

    async def list_facts(
        self, scope: FactScope | None = None, owner_id: str | None = None
    ) -> list[Fact]:
        """Return one owner's facts (one read) or every fact (full pass)."""
        if scope is not None:
            return await self.read_shard(shard_key_for(scope, owner_id))
        facts: list[Fact] = []
        async for _, shard in self.iter_shards():
            facts.extend(shard)
        return facts

    # -- write --

    async def create_fact(
        self,
        content: str,
        scope: FactScope,
        owner_id: str | None = None,
        *,
        character_name: str | None = None,
        conversation_preview: str | None = None,
        fact_id: str | None = None,
    ) -> Fact:
        """Append a new fact to its owner's shard and return it.

        When *fact_id* is given and already present in the shard, the
        existing fact is returned unchanged, so replaying the same create
        never produces a second copy.
        """
        if not content.strip():
            raise ProposalValidationError("Fact content cannot be empty.")
        key = shard_key_for(scope, owner_id)
        fields: dict[str, Any] = {
            "content": content,
            "scope": scope,
            "character_name": character_name,
            "conversation_preview": conversation_preview,
        }
        if fact_id:
            fields["id"] = fact_id
        if scope is FactScope.character:
            fields["character_id"] = owner_id
        elif scope is FactScope.conversation:
            fields["conversation_id"] = owner_id
        try:
            fact = Fact(**fields)
        except ValidationError as exc:
            raise ProposalValidationError(str(exc)) from exc

        with track_latency("facts.create"):
            async with self._id_locks.hold(fact.id), self._shard_locks.hold(key):
                records = await self._raw_shard(key)
                existing = _index_of(records, fact.id)
                if existing is not None:
                    logger.info("Fact %s already present in %s", fact.id, key)
                    return Fact.model_validate(records[existing])
                records.append(fact.to_record())
                await self._kv.set(key, records)
                await self._index_put(fact.id, key)

        await self._publish(FactChangeKind.created, fact, key)
        return fact

    async def get_fact(self, fact_id: str) -> Fact:
        key = await self._locate(fact_id)
        records = await self._raw_shard(key)
        position = _index_of(records, fact_id)
        if position is None:
            raise NotFoundError("Memory", fact_id)
        return Fact.model_validate(records[position])

    async def update_fact(self, fact_id: str, content: str) -> Fact:
        """Rewrite the content (and timestamp) of an existing fact."""
        if not content.strip():
            raise ProposalValidationError("Fact content cannot be empty.")
        with track_latency("facts.update"):
            async with self._id_locks.hold(fact_id):
                key = await self._locate(fact_id)
                async with self._shard_locks.hold(key):
                    records = await self._raw_shard(key)
                    position = _index_of(records, fact_id)
                    if position is None:
                        raise NotFoundError("Memory", fact_id)
                    current = Fact.model_validate(records[position])
                    updated = current.model_copy(
                        update={"content": content, "timestamp": utcnow()}
                    )
                    records[position] = updated.to_record()
                    await self._kv.set(key, records)

        await self._publish(FactChangeKind.updated, updated, key)
        return updated

    async def delete_fact(self, fact_id: str) -> Fact:
        """Remove a fact and return the removed record.

        A second delete of the same id raises ``NotFoundError``.
        """
        with track_latency("facts.delete"):
            async with self._id_locks.hold(fact_id):
                key = await self._locate(fact_id)
                async with self._shard_locks.hold(key):
                    records = await self._raw_shard(key)
                    position = _index_of(records, fact_id)
                    if position is None:
                        raise NotFoundError("Memory", fact_id)
                    removed = Fact.model_validate(records.pop(position))
                    await self._kv.set(key, records)
                    await self._index_drop(fact_id)

        await self._publish(FactChangeKind.deleted, removed, key)
        return removed

    # -- internal --

    async def _raw_shard(self, key: str) -> list[dict[str, Any]]:
        raw = await self._kv.get(key)
        if raw is None:
            return []
        if not isinstance(raw, list):
            raise StoreUnavailableError(
                f"Fact shard {key!r} is corrupt; refusing to overwrite it."
            )
        return raw

    async def _locate(self, fact_id: str) -> str:
        """Return the key of the shard holding *fact_id*.

        A shard that lacks the id is not an error, only "not here"; the
        search stops at the first shard that has it.
        """
        hinted: str | None = None
        if self._use_shard_index:
            index = await self._read_index()
            hinted = index.get(fact_id)
            if hinted is not None:
                raw = await self._kv.get(hinted)
                if isinstance(raw, list) and _index_of(raw, fact_id) is not None:
                    return hinted
                logger.debug("Stale shard index entry for %s -> %s", fact_id, hinted)

        for key in await self.shard_keys():
            if key == hinted:
                continue
            raw = await self._kv.get(key)
            if isinstance(raw, list) and _index_of(raw, fact_id) is not None:
                if self._use_shard_index:
                    await self._index_put(fact_id, key)
                return key
        raise NotFoundError("Memory", fact_id)

    async def _read_index(self) -> dict[str, str]:
        raw = await self._kv.get(SHARD_INDEX_KEY)
        return raw if isinstance(raw, dict) else {}

    async def _index_put(self, fact_id: str, key: str) -> None:
        if not self._use_shard_index:
            return
        async with self._shard_locks.hold(SHARD_INDEX_KEY):
            index = await self._read_index()
            if index.get(fact_id) == key:
                return
            index[fact_id] = key
            await self._kv.set(SHARD_INDEX_KEY, index)

    async def _index_drop(self, fact_id: str) -> None:
        if not self._use_shard_index:
            return
        async with self._shard_locks.hold(SHARD_INDEX_KEY):
            index = await self._read_index()
            if index.pop(fact_id, None) is not None:
                await self._kv.set(SHARD_INDEX_KEY, index)

    async def _publish(self, kind: FactChangeKind, fact: Fact, key: str) -> None:
        if self._cache is not None:
            self._cache.apply(FactChange(kind=kind, fact=fact, shard_key=key))
        if self._audit is not None:
            await self._audit.log(
                AuditEvent(
                    event_type=_AUDIT_TYPES[kind],
                    payload={"fact_id": fact.id, "shard": key},
                )
            )


_AUDIT_TYPES = {
    FactChangeKind.created: AuditEventType.FACT_CREATED,
    FactChangeKind.updated: AuditEventType.FACT_UPDATED,
    FactChangeKind.deleted: AuditEventType.FACT_DELETED,
}
