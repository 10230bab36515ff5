"""Knowledge-base entities a proposal can target (besides facts).

Field names mirror the persisted documents of the chat client.  Items and
worlds accept unknown fields because authors send their whole object
structure; every other entity rejects fields it does not declare.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from pydantic import ConfigDict
from pydantic import Field

from omnireflect.models import CamelModel
from omnireflect.models import utcnow


def _new_id() -> str:
    return str(uuid.uuid4())


class Character(CamelModel):
    id: str = Field(default_factory=_new_id)
    name: str = "New Character"
    avatar: str = ""
    chat_background: str = ""
    tagline: str = ""
    core: str = ""
    personality: str = ""
    background: str = ""
    kinks: str = ""
    summary: str | None = None
    scenario: str = ""
    first_message: str = ""
    example_message: str = ""
    location: str = ""
    appearance: str = ""
    position: str = ""
    active_lorebook_ids: list[str] = Field(default_factory=list)
    initial_relationship_score: int = 0
    initial_dominance_score: int = 0
    timestamp: datetime | None = None


class LorebookEntry(CamelModel):
    id: str = Field(default_factory=_new_id)
    keywords: list[str] = Field(default_factory=list)
    content: str
    summary: str | None = None
    enabled: bool = True
    timestamp: datetime = Field(default_factory=utcnow)


class Lorebook(CamelModel):
    id: str = Field(default_factory=_new_id)
    name: str = "New Lorebook"
    description: str = ""
    entries: list[LorebookEntry] = Field(default_factory=list)
    enabled: bool = True
    timestamp: datetime = Field(default_factory=utcnow)


class Persona(CamelModel):
    id: str = Field(default_factory=_new_id)
    name: str = "New Persona"
    avatar: str = ""
    persona: str = ""
    timestamp: datetime | None = None


class PromptTemplate(CamelModel):
    id: str = Field(default_factory=_new_id)
    name: str = "New Prompt"
    prompt: str = ""
    timestamp: datetime | None = None


class InstructionalPrompt(CamelModel):
    """A system prompt shipped with the application (edit-only)."""

    id: str
    name: str
    description: str = ""
    prompt: str = ""
    usage_context: str | None = None
    timestamp: datetime | None = None


class StylePreference(CamelModel):
    """A learned writing-style rule."""

    id: str = Field(default_factory=_new_id)
    content: str
    timestamp: datetime = Field(default_factory=utcnow)
    character_name: str = ""


class Conversation(CamelModel):
    model_config = ConfigDict(extra="allow")

    id: str
    character_id: str
    persona_id: str | None = None
    preview: str = ""
    has_custom_title: bool = False
    last_message_at: datetime | None = None


class LibraryItem(CamelModel):
    """An RPG library item."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(default_factory=_new_id)
    name: str = "New Item"
    type: str = "misc"
    description: str | None = None
    quantity: int = 1
    rarity: str | None = None
    stats: dict[str, Any] | None = None


def _default_mechanics() -> dict[str, Any]:
    return {
        "useDice": True,
        "statSystem": "dnd5e",
        "attributes": ["STR", "DEX", "CON", "INT", "WIS", "CHA"],
    }


def _default_theme() -> dict[str, Any]:
    return {
        "font": "serif",
        "primaryColor": "#d97706",
        "secondaryColor": "#78350f",
        "uiSoundPack": "fantasy",
    }


class World(CamelModel):
    """An RPG world definition."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(default_factory=_new_id)
    name: str = "New World"
    description: str = ""
    genre: str = "custom"
    mechanics: dict[str, Any] = Field(default_factory=_default_mechanics)
    theme: dict[str, Any] = Field(default_factory=_default_theme)
    lorebook_ids: list[str] = Field(default_factory=list)
    starting_scenarios: list[dict[str, Any]] = Field(default_factory=list)
    game_master_notes: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class AppSettings(CamelModel):
    """Global application settings (a single document)."""

    model_config = ConfigDict(extra="allow")

    active_persona_id: str | None = None
    temperature: float = 0.8
    max_tokens: int = 1024
    min_tokens: int = 0
    context_size: int = 32768
    vector_top_k: int = 10
    instructional_prompts: list[InstructionalPrompt] = Field(default_factory=list)
    enable_relationship_progression: bool = True
    enable_dominance_progression: bool = True
    enable_lust_progression: bool = False
    enable_global_memories: bool = True
    enable_automatic_memory_generation: bool = True
    enable_learned_style: bool = True
    enable_associative_memory: bool = False
    enable_short_term_memory: bool = True
    enable_reflection: bool = True
    ai_provider: str = "gemini"
    ai_model: str = ""
    sfw_mode: bool = False
    enable_tts: bool = False

    @classmethod
    def reserved_keys(cls) -> set[str]:
        """Serialized keys an ``appSetting`` proposal may not write.

        Instructional prompts are edited one at a time through their own
        proposals.  Any other key, declared or not, is writable.
        """
        field = cls.model_fields["instructional_prompts"]
        return {field.alias or "instructional_prompts"}
