"""Unit tests for the sharded fact store."""

from __future__ import annotations

import asyncio

import pytest
from pydantic import ValidationError

from omnireflect.audit import AuditEventType
from omnireflect.errors import NotFoundError
from omnireflect.errors import ProposalValidationError
from omnireflect.errors import StoreUnavailableError
from omnireflect.facts import Fact
from omnireflect.facts import FactScope
from omnireflect.facts import FactStore
from omnireflect.facts import GLOBAL_SHARD_KEY
from omnireflect.facts import SHARD_INDEX_KEY
from omnireflect.facts import shard_key_for


# ---------------------------------------------------------------------------
# Model
# ---------------------------------------------------------------------------


class TestFactOwnership:
    def test_global_fact_has_no_owner(self):
        fact = Fact(content="The sky is green here", scope=FactScope.global_)
        assert fact.owner_id is None

    def test_global_fact_with_owner_is_invalid(self):
        with pytest.raises(ValidationError):
            Fact(content="x", scope=FactScope.global_, character_id="c1")

    def test_character_fact_needs_character_id(self):
        with pytest.raises(ValidationError):
            Fact(content="x", scope=FactScope.character)

    def test_character_fact_cannot_carry_conversation(self):
        with pytest.raises(ValidationError):
            Fact(
                content="x",
                scope=FactScope.character,
                character_id="c1",
                conversation_id="v1",
            )

    def test_conversation_fact_needs_conversation_id(self):
        with pytest.raises(ValidationError):
            Fact(content="x", scope=FactScope.conversation)

    def test_serialized_form_uses_camel_case(self):
        fact = Fact(content="x", scope=FactScope.character, character_id="c1")
        record = fact.to_record()
        assert record["characterId"] == "c1"
        assert "conversationId" not in record
        assert Fact.model_validate(record) == fact


class TestShardKeys:
    def test_global_key(self):
        assert shard_key_for(FactScope.global_) == "global_memories"

    def test_owner_keys(self):
        assert shard_key_for(FactScope.character, "c1") == "memories_character_c1"
        assert shard_key_for(FactScope.conversation, "v1") == "memories_conversation_v1"

    def test_owner_required(self):
        with pytest.raises(ProposalValidationError):
            shard_key_for(FactScope.character)


# ---------------------------------------------------------------------------
# Create / read
# ---------------------------------------------------------------------------


class TestCreate:
    async def test_create_global_fact(self, fact_store, kv):
        fact = await fact_store.create_fact("User's name is Boris", FactScope.global_)

        raw = await kv.get(GLOBAL_SHARD_KEY)
        assert [r["id"] for r in raw] == [fact.id]
        assert raw[0]["scope"] == "global"

    async def test_create_owned_facts_land_in_owner_shards(self, fact_store, kv):
        c = await fact_store.create_fact("likes tea", FactScope.character, "c1")
        v = await fact_store.create_fact("met at dawn", FactScope.conversation, "v1")

        assert c.character_id == "c1"
        assert v.conversation_id == "v1"
        assert [r["id"] for r in await kv.get("memories_character_c1")] == [c.id]
        assert [r["id"] for r in await kv.get("memories_conversation_v1")] == [v.id]

    async def test_create_rejects_empty_content(self, fact_store):
        with pytest.raises(ProposalValidationError):
            await fact_store.create_fact("   ", FactScope.global_)

    async def test_create_with_same_id_is_idempotent(self, fact_store, kv):
        first = await fact_store.create_fact("a", FactScope.global_, fact_id="fixed")
        again = await fact_store.create_fact("a", FactScope.global_, fact_id="fixed")

        assert again.id == first.id
        assert len(await kv.get(GLOBAL_SHARD_KEY)) == 1

    async def test_create_updates_shard_index(self, fact_store, kv):
        fact = await fact_store.create_fact("x", FactScope.character, "c1")
        index = await kv.get(SHARD_INDEX_KEY)
        assert index[fact.id] == "memories_character_c1"

    async def test_shard_keys_global_first(self, fact_store):
        await fact_store.create_fact("v", FactScope.conversation, "v1")
        await fact_store.create_fact("c", FactScope.character, "c2")
        await fact_store.create_fact("c", FactScope.character, "c1")

        assert await fact_store.shard_keys() == [
            "global_memories",
            "memories_character_c1",
            "memories_character_c2",
            "memories_conversation_v1",
        ]

    async def test_list_facts_by_owner_and_all(self, fact_store):
        await fact_store.create_fact("g", FactScope.global_)
        await fact_store.create_fact("c", FactScope.character, "c1")

        owned = await fact_store.list_facts(FactScope.character, "c1")
        assert [f.content for f in owned] == ["c"]
        assert sorted(f.content for f in await fact_store.list_facts()) == ["c", "g"]

    async def test_malformed_records_are_skipped(self, fact_store, kv):
        good = await fact_store.create_fact("good", FactScope.global_)
        raw = await kv.get(GLOBAL_SHARD_KEY)
        raw.append({"id": "bad", "scope": "global"})
        await kv.set(GLOBAL_SHARD_KEY, raw)

        assert [f.id for f in await fact_store.read_shard(GLOBAL_SHARD_KEY)] == [good.id]

    async def test_get_fact_not_found(self, fact_store):
        with pytest.raises(NotFoundError):
            await fact_store.get_fact("missing")


# ---------------------------------------------------------------------------
# Update / delete
# ---------------------------------------------------------------------------


class TestUpdate:
    async def test_cross_shard_update_leaves_other_shards_untouched(self, fact_store):
        fact_c1 = await fact_store.create_fact("old", FactScope.character, "C1")
        fact_v1 = await fact_store.create_fact("keep me", FactScope.conversation, "V1")

        updated = await fact_store.update_fact(fact_c1.id, "new content")

        assert updated.content == "new content"
        assert (await fact_store.get_fact(fact_c1.id)).content == "new content"
        assert await fact_store.get_fact(fact_v1.id) == fact_v1

    async def test_update_refreshes_timestamp(self, fact_store):
        fact = await fact_store.create_fact("old", FactScope.global_)
        updated = await fact_store.update_fact(fact.id, "new")
        assert updated.timestamp >= fact.timestamp

    async def test_update_missing_raises_not_found(self, fact_store):
        with pytest.raises(NotFoundError):
            await fact_store.update_fact("missing", "x")

    async def test_update_without_index_scans_shards(self, kv):
        store = FactStore(kv, use_shard_index=False)
        fact = await store.create_fact("old", FactScope.character, "c1")

        await store.update_fact(fact.id, "new")

        assert await kv.get(SHARD_INDEX_KEY) is None
        assert (await store.get_fact(fact.id)).content == "new"

    async def test_stale_index_falls_back_to_scan(self, fact_store, kv):
        fact = await fact_store.create_fact("x", FactScope.character, "c1")
        await kv.set(SHARD_INDEX_KEY, {fact.id: "memories_character_other"})

        await fact_store.update_fact(fact.id, "y")

        assert (await kv.get(SHARD_INDEX_KEY))[fact.id] == "memories_character_c1"

    async def test_concurrent_updates_are_serialized(self, fact_store):
        fact = await fact_store.create_fact("v0", FactScope.global_)
        other = await fact_store.create_fact("other", FactScope.global_)

        await asyncio.gather(
            fact_store.update_fact(fact.id, "v1"),
            fact_store.update_fact(other.id, "other-1"),
        )

        # Both writes target the same shard; neither may be lost.
        assert (await fact_store.get_fact(fact.id)).content == "v1"
        assert (await fact_store.get_fact(other.id)).content == "other-1"


class TestDelete:
    async def test_delete_twice_raises_not_found(self, fact_store):
        fact = await fact_store.create_fact("x", FactScope.global_)

        removed = await fact_store.delete_fact(fact.id)
        assert removed.id == fact.id
        with pytest.raises(NotFoundError):
            await fact_store.delete_fact(fact.id)

    async def test_delete_drops_index_entry(self, fact_store, kv):
        fact = await fact_store.create_fact("x", FactScope.conversation, "v1")
        await fact_store.delete_fact(fact.id)
        assert fact.id not in (await kv.get(SHARD_INDEX_KEY))

    async def test_corrupt_shard_is_not_overwritten(self, fact_store, kv):
        await kv.set(GLOBAL_SHARD_KEY, {"not": "a list"})
        with pytest.raises(StoreUnavailableError):
            await fact_store.create_fact("x", FactScope.global_)
        assert await kv.get(GLOBAL_SHARD_KEY) == {"not": "a list"}


class TestSideEffects:
    async def test_mutations_are_audited(self, fact_store, audit_logger):
        fact = await fact_store.create_fact("x", FactScope.global_)
        await fact_store.update_fact(fact.id, "y")
        await fact_store.delete_fact(fact.id)

        events = await audit_logger.read_events()
        assert [e.event_type for e in events] == [
            AuditEventType.FACT_CREATED,
            AuditEventType.FACT_UPDATED,
            AuditEventType.FACT_DELETED,
        ]
        assert events[0].payload == {"fact_id": fact.id, "shard": GLOBAL_SHARD_KEY}
