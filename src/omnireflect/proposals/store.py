"""Reflection persistence, one shard per conversation.

Reflections (and the proposals they own) are stored as JSON arrays under
``reflections_{conversationId}``.  Proposal status changes are
read-modify-write cycles on the owning shard, serialized per shard key.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from typing import Any

from pydantic import ValidationError

from omnireflect.errors import NotFoundError
from omnireflect.errors import ProposalStateError
from omnireflect.errors import StoreUnavailableError
from omnireflect.observability import track_latency
from omnireflect.proposals.schemas import BatchRejectResult
from omnireflect.proposals.schemas import FlatProposal
from omnireflect.proposals.schemas import ProposalStatus
from omnireflect.proposals.schemas import Reflection
from omnireflect.storage import KeyedLocks
from omnireflect.storage import KeyValueStore

logger = logging.getLogger(__name__)

REFLECTION_SHARD_PREFIX = "reflections_"
PROPOSAL_NOT_FOUND = "proposal_not_found"
APPLIED_MARKER_PREFIX = "applied_proposal_"


def reflection_key(conversation_id: str) -> str:
    return f"{REFLECTION_SHARD_PREFIX}{conversation_id}"


def applied_marker_key(proposal_id: str) -> str:
    return f"{APPLIED_MARKER_PREFIX}{proposal_id}"


class ReflectionStore:
    """Save, find and decide proposals across conversation shards."""

    def __init__(self, kv: KeyValueStore) -> None:
        self._kv = kv
        self._locks = KeyedLocks()

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def shard_keys(self) -> list[str]:
        keys = await self._kv.keys()
        return sorted(k for k in keys if k.startswith(REFLECTION_SHARD_PREFIX))

    async def _records(self, key: str) -> list[dict[str, Any]]:
        raw = await self._kv.get(key)
        if raw is None:
            return []
        if not isinstance(raw, list):
            raise StoreUnavailableError(f"Reflection shard {key!r} is corrupt.")
        return raw

    async def _read(self, key: str) -> list[Reflection]:
        reflections, _ = await self._load(key)
        return reflections

    async def _load(self, key: str) -> tuple[list[Reflection], list[Any]]:
        """Split a shard into parsed reflections and the records that failed."""
        reflections: list[Reflection] = []
        malformed: list[Any] = []
        for record in await self._records(key):
            try:
                reflections.append(Reflection.model_validate(record))
            except ValidationError:
                logger.warning("Skipping malformed reflection record in %s", key)
                malformed.append(record)
        return reflections, malformed

    async def list_reflections(
        self, conversation_id: str | None = None
    ) -> list[Reflection]:
        """Return reflections newest first, optionally for one conversation."""
        if conversation_id is not None:
            keys = [reflection_key(conversation_id)]
        else:
            keys = await self.shard_keys()
        shards = await asyncio.gather(*(self._read(key) for key in keys))
        reflections = [r for shard in shards for r in shard]
        reflections.sort(key=lambda r: r.timestamp, reverse=True)
        return reflections

    async def get_reflection(self, reflection_id: str) -> Reflection:
        for reflection in await self.list_reflections():
            if reflection.id == reflection_id:
                return reflection
        raise NotFoundError("Reflection", reflection_id)

    async def find_proposal(self, proposal_id: str) -> FlatProposal:
        for reflection in await self.list_reflections():
            for proposal in reflection.proposals:
                if proposal.id == proposal_id:
                    return FlatProposal(proposal=proposal, parent=reflection)
        raise NotFoundError("Proposal", proposal_id)

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    async def save_reflection(self, reflection: Reflection) -> Reflection:
        """Persist *reflection*; saving the same id again replaces it."""
        key = reflection_key(reflection.conversation_id)
        async with self._locks.hold(key):
            records = [
                r
                for r in await self._records(key)
                if not (isinstance(r, dict) and r.get("id") == reflection.id)
            ]
            records.append(reflection.to_record())
            await self._kv.set(key, records)
        logger.info(
            "Saved reflection %s with %d proposal(s) for conversation %s",
            reflection.id,
            len(reflection.proposals),
            reflection.conversation_id,
        )
        return reflection

    async def delete_reflection(self, reflection_id: str) -> Reflection:
        """Remove a reflection together with every proposal it owns."""
        for key in await self.shard_keys():
            async with self._locks.hold(key):
                records = await self._records(key)
                for position, record in enumerate(records):
                    if isinstance(record, dict) and record.get("id") == reflection_id:
                        removed = Reflection.model_validate(records.pop(position))
                        if records:
                            await self._kv.set(key, records)
                        else:
                            await self._kv.delete(key)
                        return removed
        raise NotFoundError("Reflection", reflection_id)

    async def decide_proposal(
        self,
        proposal_id: str,
        status: ProposalStatus,
        rejection_reason: str | None = None,
    ) -> FlatProposal:
        """Flip one pending proposal to *status* and persist the shard."""
        located = await self.find_proposal(proposal_id)
        key = reflection_key(located.parent.conversation_id)
        with track_latency("proposals.decide"):
            async with self._locks.hold(key):
                reflections, malformed = await self._load(key)
                decided = _decide_in(reflections, {proposal_id}, status, rejection_reason)
                if proposal_id not in decided:
                    raise NotFoundError("Proposal", proposal_id)
                await self._write(key, reflections, malformed)
        return decided[proposal_id]

    async def amend_rejection_reason(self, proposal_id: str, reason: str) -> FlatProposal:
        """Change the reason of an already rejected proposal."""
        located = await self.find_proposal(proposal_id)
        key = reflection_key(located.parent.conversation_id)
        async with self._locks.hold(key):
            reflections, malformed = await self._load(key)
            for reflection in reflections:
                for position, proposal in enumerate(reflection.proposals):
                    if proposal.id != proposal_id:
                        continue
                    if proposal.status is not ProposalStatus.rejected:
                        raise ProposalStateError(
                            f"Proposal {proposal_id} is {proposal.status.value}; "
                            "only a rejection reason can be amended."
                        )
                    amended = proposal.model_copy(update={"rejection_reason": reason})
                    reflection.proposals[position] = amended
                    await self._write(key, reflections, malformed)
                    return FlatProposal(proposal=amended, parent=reflection)
        raise NotFoundError("Proposal", proposal_id)

    async def decide_many(
        self, proposal_ids: Iterable[str], reason: str
    ) -> BatchRejectResult:
        """Reject every id in *proposal_ids* with the same *reason*.

        Ids are grouped by shard and the shards are written concurrently.
        A failing shard does not stop the others; every id that could not be
        rejected is reported with its error code.
        """
        wanted = set(proposal_ids)
        result = BatchRejectResult(reason=reason)
        if not wanted:
            return result

        by_shard: dict[str, set[str]] = {}
        for reflection in await self.list_reflections():
            for proposal in reflection.proposals:
                if proposal.id in wanted:
                    key = reflection_key(reflection.conversation_id)
                    by_shard.setdefault(key, set()).add(proposal.id)
        located = set().union(*by_shard.values()) if by_shard else set()
        for missing in sorted(wanted - located):
            result.failed[missing] = PROPOSAL_NOT_FOUND

        shards = sorted(by_shard)
        outcomes = await asyncio.gather(
            *(self._reject_in_shard(key, by_shard[key], reason) for key in shards),
            return_exceptions=True,
        )
        for key, outcome in zip(shards, outcomes):
            if isinstance(outcome, BaseException):
                code = getattr(outcome, "error_code", StoreUnavailableError.error_code)
                logger.error("Batch reject failed for shard %s: %s", key, outcome)
                for proposal_id in by_shard[key]:
                    result.failed[proposal_id] = code
                continue
            succeeded, failed = outcome
            result.succeeded.extend(succeeded)
            result.failed.update(failed)
        result.succeeded.sort()
        return result

    async def reject_pending_for_character(
        self, character_id: str, reason: str
    ) -> list[str]:
        """Reject every pending proposal of reflections bound to *character_id*."""
        rejected: list[str] = []
        for key in await self.shard_keys():
            async with self._locks.hold(key):
                reflections, malformed = await self._load(key)
                ids = {
                    p.id
                    for r in reflections
                    if r.character_id == character_id
                    for p in r.proposals
                    if p.is_pending
                }
                if not ids:
                    continue
                decided = _decide_in(reflections, ids, ProposalStatus.rejected, reason)
                await self._write(key, reflections, malformed)
                rejected.extend(decided)
        return sorted(rejected)

    # ------------------------------------------------------------------
    # Applied markers
    # ------------------------------------------------------------------

    async def mark_applied(self, proposal_id: str, details: dict[str, Any]) -> None:
        """Record that the target of *proposal_id* has been written.

        The marker lives only between the target write and the status flip.
        A marker found on a pending proposal means an earlier approval was
        interrupted after its write, so the flip can be finished without
        writing the target again.
        """
        await self._kv.set(applied_marker_key(proposal_id), details)

    async def applied_details(self, proposal_id: str) -> dict[str, Any] | None:
        raw = await self._kv.get(applied_marker_key(proposal_id))
        return raw if isinstance(raw, dict) else None

    async def clear_applied(self, proposal_id: str) -> None:
        await self._kv.delete(applied_marker_key(proposal_id))

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _write(
        self, key: str, reflections: list[Reflection], malformed: list[Any]
    ) -> None:
        """Persist *reflections* and carry the unparsed records over as they were."""
        if malformed:
            logger.warning(
                "Rewriting %s with %d malformed record(s) left untouched",
                key,
                len(malformed),
            )
        await self._kv.set(key, [r.to_record() for r in reflections] + malformed)

    async def _reject_in_shard(
        self, key: str, ids: set[str], reason: str
    ) -> tuple[list[str], dict[str, str]]:
        async with self._locks.hold(key):
            reflections, malformed = await self._load(key)
            failed: dict[str, str] = {}
            pending_ids: set[str] = set()
            seen: set[str] = set()
            for reflection in reflections:
                for proposal in reflection.proposals:
                    if proposal.id not in ids:
                        continue
                    seen.add(proposal.id)
                    if proposal.is_pending:
                        pending_ids.add(proposal.id)
                    else:
                        failed[proposal.id] = "already_decided"
            for missing in ids - seen:
                failed[missing] = PROPOSAL_NOT_FOUND
            decided = _decide_in(
                reflections, pending_ids, ProposalStatus.rejected, reason
            )
            if decided:
                await self._write(key, reflections, malformed)
            return sorted(decided), failed


def _decide_in(
    reflections: list[Reflection],
    ids: set[str],
    status: ProposalStatus,
    reason: str | None,
) -> dict[str, FlatProposal]:
    """Decide the proposals of *ids* in place; returns what was decided."""
    decided: dict[str, FlatProposal] = {}
    for reflection in reflections:
        for position, proposal in enumerate(reflection.proposals):
            if proposal.id in ids:
                updated = proposal.decide(status, reason)
                reflection.proposals[position] = updated
                decided[proposal.id] = FlatProposal(proposal=updated, parent=reflection)
    return decided
