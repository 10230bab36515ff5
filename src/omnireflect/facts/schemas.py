"""Fact domain data models."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from pydantic import Field
from pydantic import model_validator

from omnireflect.models import CamelModel
from omnireflect.models import utcnow


class FactScope(str, Enum):
    """Who a fact belongs to."""

    global_ = "global"
    character = "character"
    conversation = "conversation"


class Fact(CamelModel):
    """An atomic piece of knowledge (a "memory")."""

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique identifier (UUID4).",
    )
    content: str = Field(
        description="The remembered statement as free text.",
    )
    timestamp: datetime = Field(
        default_factory=utcnow,
        description="Creation time, rewritten on every edit.",
    )
    scope: FactScope = Field(
        description="Global, character or conversation scope.",
    )
    character_id: str | None = Field(
        default=None,
        description="Owning character for character-scoped facts.",
    )
    conversation_id: str | None = Field(
        default=None,
        description="Owning conversation for conversation-scoped facts.",
    )
    conversation_preview: str | None = Field(
        default=None,
        description="Conversation title captured when the fact was created.",
    )
    character_name: str | None = Field(
        default=None,
        description="Character display name captured when the fact was created.",
    )

    @model_validator(mode="after")
    def _check_owner(self) -> Fact:
        if self.scope is FactScope.global_:
            if self.character_id or self.conversation_id:
                raise ValueError("global facts cannot carry an owner id")
        elif self.scope is FactScope.character:
            if not self.character_id or self.conversation_id:
                raise ValueError("character facts need characterId and no conversationId")
        elif not self.conversation_id or self.character_id:
            raise ValueError("conversation facts need conversationId and no characterId")
        return self

    @property
    def owner_id(self) -> str | None:
        return self.character_id or self.conversation_id


class FactChangeKind(str, Enum):
    created = "created"
    updated = "updated"
    deleted = "deleted"


@dataclass(frozen=True)
class FactChange:
    """One committed fact mutation, pushed to the read-side cache."""

    kind: FactChangeKind
    fact: Fact
    shard_key: str
