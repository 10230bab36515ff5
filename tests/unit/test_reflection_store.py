"""Unit tests for reflection persistence and proposal status changes."""

from __future__ import annotations

from datetime import datetime
from datetime import timezone

import pytest

from omnireflect.errors import NotFoundError
from omnireflect.errors import ProposalStateError
from omnireflect.errors import StoreUnavailableError
from omnireflect.proposals import ProposalStatus
from omnireflect.proposals.store import reflection_key


def _memory_delete(target: str, proposal_id: str) -> dict:
    return {
        "id": proposal_id,
        "type": "memory",
        "action": "delete",
        "targetId": target,
        "rationale": "Outdated.",
    }


class TestSaveAndRead:
    async def test_save_writes_conversation_shard(self, make_reflection, kv):
        reflection = await make_reflection([_memory_delete("f1", "p1")])

        raw = await kv.get(reflection_key("conv-1"))
        assert [r["id"] for r in raw] == [reflection.id]
        assert raw[0]["proposals"][0]["targetId"] == "f1"

    async def test_save_same_id_replaces(self, make_reflection, reflections):
        reflection = await make_reflection([])
        await reflections.save_reflection(
            reflection.model_copy(update={"thoughts": "changed"})
        )

        stored = await reflections.list_reflections("conv-1")
        assert [r.thoughts for r in stored] == ["changed"]

    async def test_list_is_newest_first(self, make_reflection, reflections):
        old = await make_reflection(
            [], timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc)
        )
        new = await make_reflection(
            [],
            conversation_id="conv-2",
            timestamp=datetime(2024, 6, 1, tzinfo=timezone.utc),
        )

        assert [r.id for r in await reflections.list_reflections()] == [new.id, old.id]
        assert [r.id for r in await reflections.list_reflections("conv-1")] == [old.id]

    async def test_find_proposal_returns_parent(self, make_reflection, reflections):
        reflection = await make_reflection([_memory_delete("f1", "p1")])

        found = await reflections.find_proposal("p1")
        assert found.id == "p1"
        assert found.parent.id == reflection.id

        with pytest.raises(NotFoundError):
            await reflections.find_proposal("missing")

    async def test_malformed_reflection_is_skipped(self, make_reflection, reflections, kv):
        await make_reflection([])
        raw = await kv.get(reflection_key("conv-1"))
        raw.append({"id": "broken"})
        await kv.set(reflection_key("conv-1"), raw)

        assert len(await reflections.list_reflections()) == 1

    async def test_decide_keeps_malformed_siblings(
        self, make_reflection, reflections, kv, caplog
    ):
        await make_reflection([_memory_delete("f1", "p1")])
        raw = await kv.get(reflection_key("conv-1"))
        raw.append({"id": "broken"})
        await kv.set(reflection_key("conv-1"), raw)

        with caplog.at_level("WARNING", logger="omnireflect.proposals.store"):
            await reflections.decide_proposal("p1", ProposalStatus.approved)

        stored = await kv.get(reflection_key("conv-1"))
        assert stored[-1] == {"id": "broken"}
        assert stored[0]["proposals"][0]["status"] == "approved"
        assert "1 malformed record(s)" in caplog.text

    async def test_corrupt_shard_raises(self, reflections, kv):
        await kv.set(reflection_key("conv-1"), "garbage")
        with pytest.raises(StoreUnavailableError):
            await reflections.list_reflections()

    async def test_delete_reflection_removes_its_proposals(
        self, make_reflection, reflections, kv
    ):
        reflection = await make_reflection([_memory_delete("f1", "p1")])

        await reflections.delete_reflection(reflection.id)

        assert await kv.get(reflection_key("conv-1")) is None
        with pytest.raises(NotFoundError):
            await reflections.find_proposal("p1")
        with pytest.raises(NotFoundError):
            await reflections.delete_reflection(reflection.id)


class TestDecide:
    async def test_decide_persists_status(self, make_reflection, reflections):
        await make_reflection([_memory_delete("f1", "p1")])

        decided = await reflections.decide_proposal("p1", ProposalStatus.rejected, "no")

        assert decided.proposal.status is ProposalStatus.rejected
        stored = await reflections.find_proposal("p1")
        assert stored.proposal.rejection_reason == "no"

    async def test_decide_twice_raises(self, make_reflection, reflections):
        await make_reflection([_memory_delete("f1", "p1")])
        await reflections.decide_proposal("p1", ProposalStatus.approved)

        with pytest.raises(ProposalStateError):
            await reflections.decide_proposal("p1", ProposalStatus.rejected, "late")
        assert (await reflections.find_proposal("p1")).proposal.status is (
            ProposalStatus.approved
        )

    async def test_decide_leaves_siblings_pending(self, make_reflection, reflections):
        await make_reflection([_memory_delete("f1", "p1"), _memory_delete("f2", "p2")])

        await reflections.decide_proposal("p1", ProposalStatus.approved)

        assert (await reflections.find_proposal("p2")).proposal.is_pending

    async def test_amend_rejection_reason(self, make_reflection, reflections):
        await make_reflection([_memory_delete("f1", "p1"), _memory_delete("f2", "p2")])
        await reflections.decide_proposal("p1", ProposalStatus.rejected, "first")

        amended = await reflections.amend_rejection_reason("p1", "second")
        assert amended.proposal.rejection_reason == "second"

        with pytest.raises(ProposalStateError):
            await reflections.amend_rejection_reason("p2", "pending one")


class TestDecideMany:
    async def test_rejects_across_shards(self, make_reflection, reflections):
        await make_reflection([_memory_delete("f1", "p1")])
        await make_reflection([_memory_delete("f2", "p2")], conversation_id="conv-2")

        result = await reflections.decide_many(["p1", "p2"], "Not needed")

        assert result.succeeded == ["p1", "p2"]
        assert result.ok
        for pid in ("p1", "p2"):
            proposal = (await reflections.find_proposal(pid)).proposal
            assert proposal.status is ProposalStatus.rejected
            assert proposal.rejection_reason == "Not needed"

    async def test_partitions_failures(self, make_reflection, reflections):
        await make_reflection([_memory_delete("f1", "p1"), _memory_delete("f2", "p2")])
        await reflections.decide_proposal("p2", ProposalStatus.approved)

        result = await reflections.decide_many(["p1", "p2", "ghost"], "batch")

        assert result.succeeded == ["p1"]
        assert result.failed == {"p2": "already_decided", "ghost": "proposal_not_found"}
        assert result.succeeded_count + result.failed_count == 3

    async def test_failing_shard_does_not_block_others(
        self, make_reflection, reflections, kv
    ):
        await make_reflection([_memory_delete("f1", "p1")])
        await make_reflection([_memory_delete("f2", "p2")], conversation_id="conv-2")

        original_set = kv.set

        async def flaky_set(key, value):
            if key == reflection_key("conv-2"):
                raise StoreUnavailableError("write failed")
            await original_set(key, value)

        kv.set = flaky_set

        result = await reflections.decide_many(["p1", "p2"], "batch")

        assert result.succeeded == ["p1"]
        assert result.failed == {"p2": "store_unavailable"}
        assert (await reflections.find_proposal("p2")).proposal.is_pending

    async def test_empty_batch(self, reflections):
        result = await reflections.decide_many([], "nothing")
        assert result.succeeded == []
        assert result.failed == {}


class TestCharacterCascade:
    async def test_rejects_only_pending_of_character(self, make_reflection, reflections):
        await make_reflection([_memory_delete("f1", "p1"), _memory_delete("f2", "p2")])
        await make_reflection(
            [_memory_delete("f3", "p3")], conversation_id="conv-2", character_id="char-2"
        )
        await reflections.decide_proposal("p2", ProposalStatus.approved)

        rejected = await reflections.reject_pending_for_character("char-1", "gone")

        assert rejected == ["p1"]
        assert (await reflections.find_proposal("p2")).proposal.status is (
            ProposalStatus.approved
        )
        assert (await reflections.find_proposal("p3")).proposal.is_pending
