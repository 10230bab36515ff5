"""Pydantic models for the MCP tool surface.

Input models validate tool arguments; output models shape responses.
FastMCP v2 serializes Pydantic models automatically.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel
from pydantic import Field

from omnireflect.proposals import GroupBy

# ---------------------------------------------------------------------------
# Input models
# ---------------------------------------------------------------------------


class SubmitReflectionInput(BaseModel):
    """Input for submit_reflection tool."""

    payload: dict[str, Any] = Field(
        description="Author output: {'thoughts': str, 'proposals': [...]}.",
    )
    conversation_id: str = Field(
        min_length=1,
        description="Conversation the analysed turn belongs to.",
    )
    conversation_preview: str = Field(
        default="",
        description="Conversation title at analysis time.",
    )
    character_id: str = Field(
        min_length=1,
        description="Character the conversation is with.",
    )
    character_name: str = Field(
        default="",
        description="Character display name at analysis time.",
    )


class ListPendingInput(BaseModel):
    """Input for list_pending_proposals tool."""

    group_by: GroupBy = Field(
        default=GroupBy.none,
        description="character, conversation, date, proposalType or none.",
    )
    search: str | None = Field(
        default=None,
        description="Case-insensitive filter over names, titles and rationale.",
    )


class BatchRejectInput(BaseModel):
    """Input for batch_reject_proposals tool."""

    proposal_ids: list[str] = Field(
        description="Selected proposal ids.",
    )
    reason: str = Field(
        min_length=1,
        description="Rejection reason applied to every id.",
    )


# ---------------------------------------------------------------------------
# Output models: reflections
# ---------------------------------------------------------------------------


class IngestionIssueOut(BaseModel):
    """A proposal refused at ingestion."""

    index: int = Field(
        description="Position of the proposal in the payload.",
    )
    type: str | None = Field(
        default=None,
        description="Proposal type as sent by the author.",
    )
    action: str | None = Field(
        default=None,
        description="Proposal action as sent by the author.",
    )
    message: str = Field(
        description="Why the proposal was refused.",
    )


class SubmitReflectionResult(BaseModel):
    """Response from submit_reflection."""

    status: str = Field(
        default="accepted",
        description="accepted or rejected.",
    )
    reflection_id: str = Field(
        default="",
        description="ID of the stored reflection.",
    )
    accepted: int = Field(
        default=0,
        description="Number of proposals now pending review.",
    )
    issues: list[IngestionIssueOut] = Field(
        default_factory=list,
        description="Proposals excluded from the inbox, with reasons.",
    )
    error_code: str | None = Field(
        default=None,
        description="Machine-readable error when the whole payload was refused.",
    )
    message: str | None = Field(
        default=None,
        description="Human-readable explanation.",
    )


# ---------------------------------------------------------------------------
# Output models: inbox
# ---------------------------------------------------------------------------


class PendingProposalOut(BaseModel):
    """A pending proposal with the context of its reflection."""

    proposal: dict[str, Any] = Field(
        description="Proposal record in its serialized (camelCase) form.",
    )
    reflection_id: str
    conversation_id: str
    conversation_preview: str
    character_id: str
    character_name: str
    timestamp: str = Field(
        description="Reflection timestamp, ISO-8601.",
    )


class InboxGroupOut(BaseModel):
    key: str
    label: str
    count: int
    items: list[PendingProposalOut] = Field(default_factory=list)


class ListPendingResult(BaseModel):
    """Response from list_pending_proposals."""

    status: str = Field(
        default="ok",
        description="ok or error.",
    )
    group_by: str = Field(
        default=GroupBy.none.value,
        description="Grouping applied.",
    )
    total: int = Field(
        default=0,
        description="Pending proposals across all groups.",
    )
    groups: list[InboxGroupOut] = Field(default_factory=list)
    error_code: str | None = None
    message: str | None = None


class ProposalStatsResult(BaseModel):
    """Response from proposal_stats."""

    total: int
    approved: int
    rejected: int
    pending: int
    approval_rate: float | None = Field(
        default=None,
        description="approved / (approved + rejected); None before any review.",
    )
    by_type: dict[str, int] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Output models: maintenance
# ---------------------------------------------------------------------------


class FactListResult(BaseModel):
    """Response from find_orphaned_facts."""

    status: str = "ok"
    count: int = 0
    facts: list[dict[str, Any]] = Field(
        default_factory=list,
        description="Fact records in their serialized (camelCase) form.",
    )
    error_code: str | None = None
    message: str | None = None


class DuplicatePairOut(BaseModel):
    first_id: str
    second_id: str
    first_content: str
    second_content: str
    score: float
    shard_key: str


class DuplicateListResult(BaseModel):
    """Response from find_duplicate_facts."""

    status: str = "ok"
    count: int = 0
    pairs: list[DuplicatePairOut] = Field(default_factory=list)
    error_code: str | None = None
    message: str | None = None
