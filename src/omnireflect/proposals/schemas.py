"""Proposal, reflection and review-outcome models."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field

from omnireflect.errors import ProposalStateError
from omnireflect.facts.schemas import FactScope
from omnireflect.models import CamelModel
from omnireflect.models import utcnow

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ProposalType(str, Enum):
    """Entity kind a proposal targets."""

    memory = "memory"
    lorebook_entry = "lorebookEntry"
    lorebook = "lorebook"
    character = "character"
    persona = "persona"
    prompt = "prompt"
    app_setting = "appSetting"
    conversation = "conversation"
    instructional_prompt = "instructionalPrompt"
    style_preference = "stylePreference"
    item = "item"
    world = "world"


class ProposalAction(str, Enum):
    add = "add"
    edit = "edit"
    delete = "delete"


class ProposalStatus(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"


_ALL_ACTIONS = frozenset(ProposalAction)
_EDIT_ONLY = frozenset({ProposalAction.edit})

# Closed type/action matrix.
ALLOWED_ACTIONS: dict[ProposalType, frozenset[ProposalAction]] = {
    ProposalType.memory: _ALL_ACTIONS,
    ProposalType.lorebook_entry: _ALL_ACTIONS,
    ProposalType.lorebook: _ALL_ACTIONS,
    ProposalType.character: _ALL_ACTIONS,
    ProposalType.persona: _ALL_ACTIONS,
    ProposalType.prompt: _ALL_ACTIONS,
    ProposalType.app_setting: _EDIT_ONLY,
    ProposalType.conversation: _EDIT_ONLY,
    ProposalType.instructional_prompt: _EDIT_ONLY,
    ProposalType.style_preference: _ALL_ACTIONS,
    ProposalType.item: _ALL_ACTIONS,
    ProposalType.world: _ALL_ACTIONS,
}


# ---------------------------------------------------------------------------
# Proposal / Reflection
# ---------------------------------------------------------------------------


class Proposal(CamelModel):
    """A reviewable patch against one entity of the knowledge base."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique identifier of this proposal instance.",
    )
    type: ProposalType = Field(
        description="Target entity kind.",
    )
    action: ProposalAction = Field(
        description="add, edit or delete.",
    )
    rationale: str = Field(
        default="",
        description="Why the author thinks the change helps.",
    )
    target_id: str | None = Field(
        default=None,
        description="Entity to edit or delete.",
    )
    content: str | None = Field(
        default=None,
        description="Full text for memory, lorebookEntry and stylePreference.",
    )
    keywords: list[str] | None = Field(
        default=None,
        description="Trigger keywords for a lorebookEntry.",
    )
    lorebook_id: str | None = Field(
        default=None,
        description="Parent lorebook when adding a lorebookEntry.",
    )
    scope: FactScope | None = Field(
        default=None,
        description="Scope of a memory add.",
    )
    character_id: str | None = Field(
        default=None,
        description="Owner of a character-scoped memory, or a character target.",
    )
    updated_fields: dict[str, Any] | None = Field(
        default=None,
        description="Fields to set on add/edit of structured entities.",
    )
    key: str | None = Field(
        default=None,
        description="AppSettings key for an appSetting proposal.",
    )
    value: Any = Field(
        default=None,
        description="Proposed AppSettings value (JSON-decoded when possible).",
    )
    status: ProposalStatus = Field(
        default=ProposalStatus.pending,
        description="Review status.",
    )
    rejection_reason: str | None = Field(
        default=None,
        description="Why the reviewer (or the system) rejected it.",
    )

    @property
    def is_pending(self) -> bool:
        return self.status is ProposalStatus.pending

    @property
    def effective_target_id(self) -> str | None:
        if self.target_id:
            return self.target_id
        if self.type is ProposalType.character:
            return self.character_id
        return None

    def decide(
        self, status: ProposalStatus, rejection_reason: str | None = None
    ) -> Proposal:
        """Return a decided copy; a proposal is decided exactly once."""
        if status is ProposalStatus.pending:
            raise ProposalStateError("A decision must approve or reject.")
        if not self.is_pending:
            raise ProposalStateError(
                f"Proposal {self.id} is already {self.status.value}."
            )
        return self.model_copy(
            update={
                "status": status,
                "rejection_reason": (
                    rejection_reason if status is ProposalStatus.rejected else None
                ),
            }
        )

    def label(self) -> str:
        return f"{self.action.value} {self.type.value}"


class Reflection(CamelModel):
    """One analysis pass over a conversation turn and its proposals."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    conversation_id: str
    conversation_preview: str = ""
    character_id: str
    character_name: str = ""
    thoughts: str
    proposals: list[Proposal] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utcnow)

    def pending(self) -> list[Proposal]:
        return [p for p in self.proposals if p.is_pending]


@dataclass(frozen=True)
class FlatProposal:
    """A proposal together with the reflection it came from."""

    proposal: Proposal
    parent: Reflection

    @property
    def id(self) -> str:
        return self.proposal.id


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


class ApplicationResult(BaseModel):
    """Outcome of one approve/reject decision."""

    proposal_id: str = Field(
        description="Proposal the decision was about.",
    )
    status: str = Field(
        description="applied, rejected or failed.",
    )
    error_code: str | None = Field(
        default=None,
        description="Machine-readable failure or auto-rejection cause.",
    )
    message: str | None = Field(
        default=None,
        description="Human-readable explanation.",
    )
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Type-specific details (target ids, created ids...).",
    )

    @property
    def ok(self) -> bool:
        return self.status != "failed"


class BatchRejectResult(BaseModel):
    """Aggregate outcome of a batch reject."""

    reason: str = Field(
        description="Rejection reason applied to every succeeded id.",
    )
    succeeded: list[str] = Field(
        default_factory=list,
        description="Proposal ids now rejected.",
    )
    failed: dict[str, str] = Field(
        default_factory=dict,
        description="Proposal id -> error code for ids left unchanged.",
    )

    @property
    def succeeded_count(self) -> int:
        return len(self.succeeded)

    @property
    def failed_count(self) -> int:
        return len(self.failed)

    @property
    def ok(self) -> bool:
        return not self.failed
