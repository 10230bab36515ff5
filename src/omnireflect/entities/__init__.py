"""Entity domain: characters, lorebooks, personas and the other targets."""

from omnireflect.entities.collections import EntityCollection
from omnireflect.entities.collections import EntityRepository
from omnireflect.entities.collections import LorebookCollection
from omnireflect.entities.collections import SettingsStore
from omnireflect.entities.schemas import AppSettings
from omnireflect.entities.schemas import Character
from omnireflect.entities.schemas import Conversation
from omnireflect.entities.schemas import InstructionalPrompt
from omnireflect.entities.schemas import LibraryItem
from omnireflect.entities.schemas import Lorebook
from omnireflect.entities.schemas import LorebookEntry
from omnireflect.entities.schemas import Persona
from omnireflect.entities.schemas import PromptTemplate
from omnireflect.entities.schemas import StylePreference
from omnireflect.entities.schemas import World

__all__ = [
    "AppSettings",
    "Character",
    "Conversation",
    "EntityCollection",
    "EntityRepository",
    "InstructionalPrompt",
    "LibraryItem",
    "Lorebook",
    "LorebookCollection",
    "LorebookEntry",
    "Persona",
    "PromptTemplate",
    "SettingsStore",
    "StylePreference",
    "World",
]
