"""Key-value backed entity collections.

Each collection is one JSON array under a fixed key (``characters``,
``lorebooks``...).  Writes are read-modify-write cycles serialized per key.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any
from typing import Generic
from typing import TypeVar

from pydantic import ValidationError

from omnireflect.entities.schemas import AppSettings
from omnireflect.entities.schemas import Character
from omnireflect.entities.schemas import Conversation
from omnireflect.entities.schemas import LibraryItem
from omnireflect.entities.schemas import Lorebook
from omnireflect.entities.schemas import LorebookEntry
from omnireflect.entities.schemas import Persona
from omnireflect.entities.schemas import PromptTemplate
from omnireflect.entities.schemas import StylePreference
from omnireflect.entities.schemas import World
from omnireflect.errors import NotFoundError
from omnireflect.errors import StoreUnavailableError
from omnireflect.models import CamelModel
from omnireflect.models import utcnow
from omnireflect.storage import KeyedLocks
from omnireflect.storage import KeyValueStore

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=CamelModel)

SETTINGS_KEY = "app_settings"


class EntityCollection(Generic[T]):
    """A list of ``T`` records stored under a single key."""

    def __init__(
        self,
        kv: KeyValueStore,
        key: str,
        model: type[T],
        *,
        kind: str,
        locks: KeyedLocks | None = None,
    ) -> None:
        self._kv = kv
        self.key = key
        self.model = model
        self.kind = kind
        self._locks = locks or KeyedLocks()

    async def _records(self) -> list[dict[str, Any]]:
        raw = await self._kv.get(self.key)
        if raw is None:
            return []
        if not isinstance(raw, list):
            raise StoreUnavailableError(f"Collection {self.key!r} is corrupt.")
        return raw

    def _parse(self, record: dict[str, Any]) -> T | None:
        try:
            return self.model.model_validate(record)
        except ValidationError:
            logger.warning("Skipping malformed %s record in %s", self.kind, self.key)
            return None

    async def list(self) -> list[T]:
        parsed = (self._parse(record) for record in await self._records())
        return [entity for entity in parsed if entity is not None]

    async def find(self, entity_id: str) -> T | None:
        for record in await self._records():
            if isinstance(record, dict) and record.get("id") == entity_id:
                return self._parse(record)
        return None

    async def get(self, entity_id: str) -> T:
        entity = await self.find(entity_id)
        if entity is None:
            raise NotFoundError(self.kind, entity_id)
        return entity

    async def ids(self) -> set[str]:
        return {
            record["id"]
            for record in await self._records()
            if isinstance(record, dict) and "id" in record
        }

    async def _mutate(
        self, change: Callable[[list[dict[str, Any]]], T]
    ) -> T:
        async with self._locks.hold(self.key):
            records = await self._records()
            result = change(records)
            await self._kv.set(self.key, records)
            return result

    async def add(self, entity: T) -> T:
        """Append *entity*; an entity with the same id is returned as is."""

        def change(records: list[dict[str, Any]]) -> T:
            for record in records:
                if isinstance(record, dict) and record.get("id") == entity.id:
                    logger.info("%s %s already exists", self.kind, entity.id)
                    return self.model.model_validate(record)
            records.append(entity.to_record())
            return entity

        return await self._mutate(change)

    async def replace(self, entity: T) -> T:
        def change(records: list[dict[str, Any]]) -> T:
            for position, record in enumerate(records):
                if isinstance(record, dict) and record.get("id") == entity.id:
                    records[position] = entity.to_record()
                    return entity
            raise NotFoundError(self.kind, entity.id)

        return await self._mutate(change)

    async def update(self, entity_id: str, edit: Callable[[T], T]) -> T:
        """Replace an entity with ``edit(current)`` under the collection lock.

        Exceptions raised by *edit* leave the collection untouched.
        """

        def change(records: list[dict[str, Any]]) -> T:
            for position, record in enumerate(records):
                if isinstance(record, dict) and record.get("id") == entity_id:
                    updated = edit(self.model.model_validate(record))
                    records[position] = updated.to_record()
                    return updated
            raise NotFoundError(self.kind, entity_id)

        return await self._mutate(change)

    async def delete(self, entity_id: str) -> T:
        def change(records: list[dict[str, Any]]) -> T:
            for position, record in enumerate(records):
                if isinstance(record, dict) and record.get("id") == entity_id:
                    return self.model.model_validate(records.pop(position))
            raise NotFoundError(self.kind, entity_id)

        return await self._mutate(change)


class LorebookCollection(EntityCollection[Lorebook]):
    """Lorebooks plus addressing of the entries nested inside them."""

    async def find_entry(self, entry_id: str) -> tuple[Lorebook, LorebookEntry]:
        for lorebook in await self.list():
            for entry in lorebook.entries:
                if entry.id == entry_id:
                    return lorebook, entry
        raise NotFoundError("LorebookEntry", entry_id)

    async def _mutate_entries(
        self,
        lorebook_id: str | None,
        entry_id: str | None,
        change: Callable[[Lorebook], LorebookEntry],
    ) -> LorebookEntry:
        """Apply *change* to the owning lorebook and bump its timestamp.

        The owner is *lorebook_id* when given, otherwise the lorebook that
        contains *entry_id*.
        """

        def locate(records: list[dict[str, Any]]) -> LorebookEntry:
            for position, record in enumerate(records):
                if not isinstance(record, dict):
                    continue
                if lorebook_id is not None and record.get("id") != lorebook_id:
                    continue
                if entry_id is not None and not any(
                    entry.get("id") == entry_id for entry in record.get("entries", [])
                ):
                    continue
                lorebook = Lorebook.model_validate(record)
                result = change(lorebook)
                lorebook.timestamp = utcnow()
                records[position] = lorebook.to_record()
                return result
            if lorebook_id is not None:
                raise NotFoundError("Lorebook", lorebook_id)
            raise NotFoundError("LorebookEntry", entry_id or "")

        return await self._mutate(locate)

    async def add_entry(self, lorebook_id: str, entry: LorebookEntry) -> LorebookEntry:
        def change(lorebook: Lorebook) -> LorebookEntry:
            for existing in lorebook.entries:
                if existing.id == entry.id:
                    return existing
            lorebook.entries.append(entry)
            return entry

        return await self._mutate_entries(lorebook_id, None, change)

    async def update_entry(
        self, entry_id: str, edit: Callable[[LorebookEntry], LorebookEntry]
    ) -> LorebookEntry:
        def change(lorebook: Lorebook) -> LorebookEntry:
            for position, existing in enumerate(lorebook.entries):
                if existing.id == entry_id:
                    updated = edit(existing)
                    lorebook.entries[position] = updated
                    return updated
            raise NotFoundError("LorebookEntry", entry_id)

        return await self._mutate_entries(None, entry_id, change)

    async def delete_entry(self, entry_id: str) -> LorebookEntry:
        def change(lorebook: Lorebook) -> LorebookEntry:
            removed = next(e for e in lorebook.entries if e.id == entry_id)
            lorebook.entries = [e for e in lorebook.entries if e.id != entry_id]
            return removed

        return await self._mutate_entries(None, entry_id, change)


class SettingsStore:
    """The single ``app_settings`` document."""

    def __init__(self, kv: KeyValueStore, *, locks: KeyedLocks | None = None) -> None:
        self._kv = kv
        self._locks = locks or KeyedLocks()

    async def get(self) -> AppSettings:
        raw = await self._kv.get(SETTINGS_KEY)
        if raw is None:
            return AppSettings()
        return AppSettings.model_validate(raw)

    async def update(self, change: Callable[[AppSettings], AppSettings]) -> AppSettings:
        async with self._locks.hold(SETTINGS_KEY):
            updated = change(await self.get())
            await self._kv.set(SETTINGS_KEY, updated.to_record())
            return updated

    async def save(self, settings: AppSettings) -> AppSettings:
        return await self.update(lambda _: settings)


class EntityRepository:
    """Every non-fact collection a proposal can target, over one substrate."""

    def __init__(self, kv: KeyValueStore) -> None:
        locks = KeyedLocks()
        self.characters = EntityCollection(
            kv, "characters", Character, kind="Character", locks=locks
        )
        self.lorebooks = LorebookCollection(
            kv, "lorebooks", Lorebook, kind="Lorebook", locks=locks
        )
        self.personas = EntityCollection(
            kv, "personas", Persona, kind="Persona", locks=locks
        )
        self.prompts = EntityCollection(
            kv, "prompt_templates", PromptTemplate, kind="Prompt", locks=locks
        )
        self.style_preferences = EntityCollection(
            kv,
            "style_preferences",
            StylePreference,
            kind="StylePreference",
            locks=locks,
        )
        self.items = EntityCollection(
            kv, "library_items", LibraryItem, kind="Item", locks=locks
        )
        self.worlds = EntityCollection(kv, "worlds", World, kind="World", locks=locks)
        self.conversations = EntityCollection(
            kv, "conversations", Conversation, kind="Conversation", locks=locks
        )
        self.settings = SettingsStore(kv, locks=locks)
