"""Read-side working set of every fact.

The aggregator flattens all fact shards into one in-memory list for
display and search.  It is a cache: the shards in the key-value substrate
stay authoritative and nothing here is consulted for conflict detection.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging

from omnireflect.facts.schemas import Fact
from omnireflect.facts.schemas import FactChange
from omnireflect.facts.schemas import FactChangeKind
from omnireflect.facts.schemas import FactScope
from omnireflect.facts.store import FactStore
from omnireflect.observability import track_latency

logger = logging.getLogger(__name__)


class FactAggregator:
    """In-memory flattened view over a ``FactStore``."""

    def __init__(self, store: FactStore) -> None:
        self._store = store
        self._facts: list[Fact] = []
        self._loading = False
        self._ready = asyncio.Event()
        self._task: asyncio.Task[list[Fact]] | None = None
        # One buffer per running load; changes committed meanwhile are
        # replayed over that load's snapshot.
        self._buffers: list[list[FactChange]] = []
        store.attach_cache(self)

    # -- loading --

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def ready(self) -> bool:
        return self._ready.is_set()

    def start(self) -> asyncio.Task[list[Fact]]:
        """Schedule ``load_all`` in the background and return its task."""
        if self._task is None or self._task.done():
            self._loading = True
            self._task = asyncio.create_task(self._background_load())
        return self._task

    async def _background_load(self) -> list[Fact]:
        try:
            return await self.load_all()
        except Exception:
            logger.exception("Failed to fetch all facts")
            return []

    async def stop(self) -> None:
        """Cancel a background load that is still running."""
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def wait_ready(self) -> list[Fact]:
        if self._task is None:
            self.start()
        await self._ready.wait()
        return self.facts

    async def load_all(self) -> list[Fact]:
        """Read every shard concurrently and replace the working set.

        Store changes that arrive while the shards are read are buffered and
        replayed over the snapshot, so a write made during the load is never
        lost from the working set.  On failure the working set is emptied
        (consumers then show no facts rather than a partial list) and the
        error propagates.
        """
        self._loading = True
        buffer: list[FactChange] = []
        self._buffers.append(buffer)
        try:
            with track_latency("facts.load_all"):
                keys = await self._store.shard_keys()
                shards = await asyncio.gather(
                    *(self._store.read_shard(key) for key in keys)
                )
            self._facts = [fact for shard in shards for fact in shard]
            for change in buffer:
                self._fold(change)
        except Exception:
            self._facts = []
            raise
        finally:
            self._buffers.remove(buffer)
            self._loading = bool(self._buffers)
            self._ready.set()
        logger.info("Loaded %d facts from %d shards", len(self._facts), len(keys))
        return self.facts

    # -- local mutators --

    def append(self, fact: Fact) -> None:
        if any(existing.id == fact.id for existing in self._facts):
            self.replace_by_id(fact)
            return
        self._facts.append(fact)

    def replace_by_id(self, fact: Fact) -> bool:
        for position, existing in enumerate(self._facts):
            if existing.id == fact.id:
                self._facts[position] = fact
                return True
        return False

    def remove_by_id(self, fact_id: str) -> bool:
        before = len(self._facts)
        self._facts = [fact for fact in self._facts if fact.id != fact_id]
        return len(self._facts) < before

    def apply(self, change: FactChange) -> None:
        """Fold one committed store mutation into the working set."""
        for buffer in self._buffers:
            buffer.append(change)
        self._fold(change)

    def _fold(self, change: FactChange) -> None:
        if change.kind is FactChangeKind.created:
            self.append(change.fact)
        elif change.kind is FactChangeKind.updated:
            if not self.replace_by_id(change.fact):
                self._facts.append(change.fact)
        else:
            self.remove_by_id(change.fact.id)

    # -- read --

    @property
    def facts(self) -> list[Fact]:
        return list(self._facts)

    def __len__(self) -> int:
        return len(self._facts)

    def by_scope(self, scope: FactScope, owner_id: str | None = None) -> list[Fact]:
        return [
            fact
            for fact in self._facts
            if fact.scope is scope and (owner_id is None or fact.owner_id == owner_id)
        ]

    def search(self, text: str) -> list[Fact]:
        """Case-insensitive substring match over content and owner labels."""
        needle = text.strip().lower()
        if not needle:
            return self.facts
        return [
            fact
            for fact in self._facts
            if needle in fact.content.lower()
            or needle in (fact.character_name or "").lower()
            or needle in (fact.conversation_preview or "").lower()
        ]

    def contains_content(self, content: str) -> bool:
        """True if some cached fact has the same normalized content."""
        normalized = normalize_content(content)
        return any(normalize_content(fact.content) == normalized for fact in self._facts)


def normalize_content(text: str) -> str:
    """Lowercase, trim and collapse whitespace."""
    return " ".join(text.lower().split())
