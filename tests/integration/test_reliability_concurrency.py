"""Integration tests for concurrent reviewer actions against Redis."""

from __future__ import annotations

import asyncio

import pytest

from omnireflect.audit import AuditLogger
from omnireflect.config import AuditConfig
from omnireflect.entities import EntityRepository
from omnireflect.facts import FactScope
from omnireflect.facts import FactStore
from omnireflect.proposals import Inbox
from omnireflect.proposals import Proposal
from omnireflect.proposals import ProposalStatus
from omnireflect.proposals import Reconciler
from omnireflect.proposals import Reflection
from omnireflect.proposals import ReflectionStore
from omnireflect.storage import RedisKeyValueStore


@pytest.fixture()
def services(redis_client, tmp_path):
    kv = RedisKeyValueStore(redis_client, namespace="reliability")
    audit = AuditLogger(AuditConfig(file_path=str(tmp_path / "audit.jsonl")))
    facts = FactStore(kv, audit_logger=audit)
    entities = EntityRepository(kv)
    reflections = ReflectionStore(kv)
    reconciler = Reconciler(facts, entities, reflections, audit_logger=audit)
    return facts, reflections, reconciler, Inbox(reflections, entities)


def _memory_add(pid: str, content: str) -> Proposal:
    return Proposal.model_validate(
        {
            "id": pid,
            "type": "memory",
            "action": "add",
            "content": content,
            "scope": "global",
            "rationale": "Stated by the user.",
        }
    )


async def _save(reflections: ReflectionStore, *proposals: Proposal, conversation="v1"):
    return await reflections.save_reflection(
        Reflection(
            conversation_id=conversation,
            character_id="c1",
            thoughts="t",
            proposals=list(proposals),
        )
    )


class TestConcurrentReview:
    async def test_concurrent_approvals_apply_once(self, services):
        facts, reflections, reconciler, _ = services
        await _save(reflections, _memory_add("p1", "Owns a boat"))

        results = await asyncio.gather(*(reconciler.approve("p1") for _ in range(5)))

        assert [r.status for r in results].count("applied") == 1
        assert len(await facts.list_facts()) == 1

    async def test_parallel_approvals_in_one_shard_keep_every_status(self, services):
        facts, reflections, reconciler, _ = services
        await _save(
            reflections, *(_memory_add(f"p{i}", f"fact number {i}") for i in range(6))
        )

        results = await asyncio.gather(
            *(reconciler.approve(f"p{i}") for i in range(6))
        )

        assert all(r.status == "applied" for r in results)
        assert len(await facts.list_facts()) == 6
        for i in range(6):
            proposal = (await reflections.find_proposal(f"p{i}")).proposal
            assert proposal.status is ProposalStatus.approved

    async def test_concurrent_fact_edits_are_not_lost(self, services):
        facts, *_ = services
        created = [
            await facts.create_fact(f"fact {i}", FactScope.character, "c1")
            for i in range(5)
        ]

        await asyncio.gather(
            *(facts.update_fact(fact.id, f"edited {i}") for i, fact in enumerate(created))
        )

        contents = sorted(f.content for f in await facts.list_facts())
        assert contents == [f"edited {i}" for i in range(5)]

    async def test_batch_reject_races_with_approve(self, services):
        _, reflections, reconciler, inbox = services
        await _save(reflections, _memory_add("p1", "a"), _memory_add("p2", "b"))

        approval, batch = await asyncio.gather(
            reconciler.approve("p1"), inbox.batch_reject(["p1", "p2"], "batch")
        )

        # Each id ends up decided exactly once.
        p1 = (await reflections.find_proposal("p1")).proposal
        if approval.status == "applied":
            assert p1.status is ProposalStatus.approved
            assert batch.failed == {"p1": "already_decided"}
        else:
            assert p1.status is ProposalStatus.rejected
            assert "p1" in batch.succeeded
        assert "p2" in batch.succeeded
