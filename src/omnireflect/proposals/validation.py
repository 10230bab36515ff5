"""Structural proposal checks shared by ingestion and the reconciler.

These checks need no store access: they enforce the closed type/action
matrix and the fields each kind requires.  Whether a target id actually
resolves is decided later, when the proposal is applied.
"""

from __future__ import annotations

import re

from omnireflect.errors import ProposalValidationError
from omnireflect.facts.schemas import FactScope
from omnireflect.proposals.schemas import ALLOWED_ACTIONS
from omnireflect.proposals.schemas import Proposal
from omnireflect.proposals.schemas import ProposalAction
from omnireflect.proposals.schemas import ProposalType

# Structured kinds carry their payload in ``updatedFields``.
STRUCTURED_TYPES = frozenset(
    {
        ProposalType.lorebook,
        ProposalType.character,
        ProposalType.persona,
        ProposalType.prompt,
        ProposalType.item,
        ProposalType.world,
        ProposalType.instructional_prompt,
    }
)

_TITLE_PATTERNS = [
    re.compile(r"changing it to '([^']+)'", re.IGNORECASE),
    re.compile(r'changing it to "([^"]+)"', re.IGNORECASE),
    re.compile(r"propose a new title: '([^']+)'", re.IGNORECASE),
    re.compile(r'propose a new title: "([^"]+)"', re.IGNORECASE),
    re.compile(r"title to '([^']+)'", re.IGNORECASE),
    re.compile(r'title to "([^"]+)"', re.IGNORECASE),
]


def title_from_rationale(rationale: str) -> str | None:
    """Recover a proposed conversation title quoted in the rationale."""
    for pattern in _TITLE_PATTERNS:
        match = pattern.search(rationale)
        if match and match.group(1).strip():
            return match.group(1).strip()
    return None


def proposed_title(proposal: Proposal) -> str | None:
    fields = proposal.updated_fields or {}
    title = fields.get("preview")
    if isinstance(title, str) and title.strip():
        return title.strip()
    return title_from_rationale(proposal.rationale)


def _has_text(value: str | None) -> bool:
    return bool(value and value.strip())


def proposal_problems(proposal: Proposal) -> list[str]:
    """Return every structural problem with *proposal* (empty when valid)."""
    problems: list[str] = []
    kind, action = proposal.type, proposal.action

    if action not in ALLOWED_ACTIONS[kind]:
        allowed = ", ".join(sorted(a.value for a in ALLOWED_ACTIONS[kind]))
        return [f"'{action.value}' is not allowed for {kind.value}; allowed: {allowed}."]

    if not _has_text(proposal.rationale):
        problems.append("rationale is required.")

    if action in (ProposalAction.edit, ProposalAction.delete):
        if kind is not ProposalType.app_setting and not proposal.effective_target_id:
            problems.append(f"targetId is required to {action.value} a {kind.value}.")
        if action is ProposalAction.delete:
            return problems

    if kind is ProposalType.memory:
        if not _has_text(proposal.content):
            problems.append("content is required for a memory.")
        if action is ProposalAction.add and proposal.scope is None:
            problems.append("scope is required when adding a memory.")
    elif kind is ProposalType.style_preference:
        if not _has_text(proposal.content):
            problems.append("content is required for a stylePreference.")
    elif kind is ProposalType.lorebook_entry:
        if action is ProposalAction.add:
            if not _has_text(proposal.content):
                problems.append("content is required when adding a lorebookEntry.")
            if not proposal.keywords:
                problems.append("keywords are required when adding a lorebookEntry.")
            if not proposal.lorebook_id:
                problems.append("lorebookId is required when adding a lorebookEntry.")
        elif not _has_text(proposal.content) and not proposal.keywords:
            problems.append("an edit to a lorebookEntry needs content or keywords.")
    elif kind is ProposalType.conversation:
        if proposed_title(proposal) is None:
            problems.append("updatedFields.preview (the new title) is required.")
    elif kind is ProposalType.app_setting:
        if not _has_text(proposal.key):
            problems.append("key is required for an appSetting.")
        if proposal.value is None:
            problems.append("value is required for an appSetting.")
    elif kind in STRUCTURED_TYPES:
        if not proposal.updated_fields:
            problems.append(f"updatedFields is required to {action.value} a {kind.value}.")
    return problems


def ensure_valid(proposal: Proposal) -> None:
    """Raise ``ProposalValidationError`` listing every problem found."""
    problems = proposal_problems(proposal)
    if problems:
        raise ProposalValidationError(
            f"Invalid {proposal.label()} proposal: {' '.join(problems)}",
            issues=problems,
        )


def memory_owner(
    proposal: Proposal, *, character_id: str | None, conversation_id: str | None
) -> str | None:
    """Owner id of a memory add, falling back to the reflection's context."""
    if proposal.scope is FactScope.character:
        return proposal.character_id or character_id
    if proposal.scope is FactScope.conversation:
        return conversation_id
    return None
