"""Offline maintenance sweep over the fact shards.

Both scans are read-only and walk the store one shard at a time, so a long
sweep can be stopped between two shard reads without leaving anything half
written.  Removing what they flag goes through ``FactStore.delete_fact``.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable
from collections.abc import Callable
from collections.abc import Iterable
from dataclasses import dataclass

from pydantic import BaseModel
from pydantic import Field

from omnireflect.config import MaintenanceConfig
from omnireflect.entities import EntityRepository
from omnireflect.errors import ReflectError
from omnireflect.facts import Fact
from omnireflect.facts import FactScope
from omnireflect.facts import FactStore
from omnireflect.facts import normalize_content
from omnireflect.observability import track_latency

logger = logging.getLogger(__name__)

Similarity = Callable[[str, str], float | Awaitable[float]]


def exact_similarity(a: str, b: str) -> float:
    """1.0 when the normalized contents are equal, else 0.0."""
    return 1.0 if normalize_content(a) == normalize_content(b) else 0.0


def token_jaccard(a: str, b: str) -> float:
    """Jaccard similarity on normalized content tokens."""
    tokens_a = set(normalize_content(a).split())
    tokens_b = set(normalize_content(b).split())
    if not tokens_a and not tokens_b:
        return 0.0
    return len(tokens_a & tokens_b) / len(tokens_a | tokens_b)


@dataclass(frozen=True)
class DuplicatePair:
    """Two facts of the same shard that look like the same statement."""

    first: Fact
    second: Fact
    score: float
    shard_key: str


class FactDeletionResult(BaseModel):
    deleted: list[str] = Field(
        default_factory=list,
        description="Fact ids removed from their shard.",
    )
    failed: dict[str, str] = Field(
        default_factory=dict,
        description="Fact id -> error code for ids left in place.",
    )


class MaintenanceScanner:
    """Find orphaned and duplicate facts, and delete the ones flagged."""

    def __init__(
        self,
        facts: FactStore,
        entities: EntityRepository,
        config: MaintenanceConfig | None = None,
    ) -> None:
        self._facts = facts
        self._entities = entities
        self.config = config or MaintenanceConfig()

    async def find_orphans(self, *, abort: asyncio.Event | None = None) -> list[Fact]:
        """Facts whose owning character or conversation no longer exists."""
        with track_latency("maintenance.find_orphans"):
            characters = await self._entities.characters.ids()
            conversations = await self._entities.conversations.ids()
            orphans: list[Fact] = []
            async for _, shard in self._facts.iter_shards(abort=abort):
                for fact in shard:
                    if fact.scope is FactScope.character:
                        live = fact.character_id in characters
                    elif fact.scope is FactScope.conversation:
                        live = fact.conversation_id in conversations
                    else:
                        live = True
                    if not live:
                        orphans.append(fact)
        logger.info("Orphan scan flagged %d fact(s)", len(orphans))
        return orphans

    async def find_duplicates(
        self,
        similarity: Similarity | None = None,
        threshold: float | None = None,
        *,
        abort: asyncio.Event | None = None,
    ) -> list[DuplicatePair]:
        """Pairs of facts in the same shard scoring at least *threshold*.

        *similarity* may be a plain function or a coroutine function, for
        example one backed by an embedding service.  Defaults to exact
        normalized-content equality.
        """
        compare = similarity or exact_similarity
        limit = self.config.duplicate_threshold if threshold is None else threshold
        pairs: list[DuplicatePair] = []
        with track_latency("maintenance.find_duplicates"):
            async for key, shard in self._facts.iter_shards(abort=abort):
                for i, first in enumerate(shard):
                    for second in shard[i + 1 :]:
                        score = compare(first.content, second.content)
                        if inspect.isawaitable(score):
                            score = await score
                        if score >= limit:
                            pairs.append(
                                DuplicatePair(
                                    first=first,
                                    second=second,
                                    score=float(score),
                                    shard_key=key,
                                )
                            )
        logger.info("Duplicate scan flagged %d pair(s)", len(pairs))
        return pairs

    async def delete_facts(self, fact_ids: Iterable[str]) -> FactDeletionResult:
        result = FactDeletionResult()
        for fact_id in dict.fromkeys(fact_ids):
            try:
                await self._facts.delete_fact(fact_id)
            except ReflectError as exc:
                logger.warning("Could not delete fact %s: %s", fact_id, exc)
                result.failed[fact_id] = exc.error_code
            else:
                result.deleted.append(fact_id)
        return result
