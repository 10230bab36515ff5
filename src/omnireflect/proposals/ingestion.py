"""Author interface: turn a raw reflection payload into a stored Reflection.

The author (a language model) returns ``{"thoughts": str, "proposals": [...]}``
per analysed turn.  Every proposal is screened here before it can reach the
inbox; invalid ones are excluded and reported, never silently dropped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from dataclasses import field
from typing import Any

from pydantic import ValidationError

from omnireflect.config import IngestionConfig
from omnireflect.errors import ProposalValidationError
from omnireflect.facts.aggregator import FactAggregator
from omnireflect.facts.aggregator import normalize_content
from omnireflect.proposals.schemas import Proposal
from omnireflect.proposals.schemas import ProposalAction
from omnireflect.proposals.schemas import ProposalType
from omnireflect.proposals.schemas import Reflection
from omnireflect.proposals.validation import memory_owner
from omnireflect.proposals.validation import proposal_problems

logger = logging.getLogger(__name__)

# Review-state fields the author is not allowed to set.
_AUTHOR_STRIPPED = ("id", "status", "rejectionReason", "rejection_reason")


@dataclass(frozen=True)
class IngestionIssue:
    """Why one proposal of a payload was refused."""

    index: int
    type: str | None
    action: str | None
    message: str


@dataclass
class IngestionReport:
    reflection: Reflection
    issues: list[IngestionIssue] = field(default_factory=list)

    @property
    def accepted_count(self) -> int:
        return len(self.reflection.proposals)


def _validation_message(exc: ValidationError) -> str:
    err = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in err.get("loc", ()))
    message = str(err.get("msg", "Invalid proposal"))
    return f"{location}: {message}" if location else message


class ReflectionIngestor:
    """Validate author payloads and mint pending proposals."""

    def __init__(
        self,
        config: IngestionConfig | None = None,
        *,
        aggregator: FactAggregator | None = None,
    ) -> None:
        self.config = config or IngestionConfig()
        self._aggregator = aggregator

    def ingest(
        self,
        payload: Any,
        *,
        conversation_id: str,
        conversation_preview: str,
        character_id: str,
        character_name: str,
    ) -> IngestionReport:
        if not isinstance(payload, dict):
            raise ProposalValidationError("Reflection payload must be a JSON object.")
        thoughts = payload.get("thoughts")
        if not isinstance(thoughts, str) or not thoughts.strip():
            raise ProposalValidationError("Reflection payload needs non-empty 'thoughts'.")
        raw_proposals = payload.get("proposals", [])
        if raw_proposals is None:
            raw_proposals = []
        if not isinstance(raw_proposals, list):
            raise ProposalValidationError("'proposals' must be a list.")

        accepted: list[Proposal] = []
        issues: list[IngestionIssue] = []
        for index, raw in enumerate(raw_proposals):
            proposal, problem = self._screen(
                index,
                raw,
                character_id=character_id,
                conversation_id=conversation_id,
            )
            if problem is not None:
                issues.append(problem)
            elif proposal is not None:
                accepted.append(proposal)

        if issues:
            for issue in issues:
                logger.warning(
                    "Refused proposal #%d (%s %s) for conversation %s: %s",
                    issue.index,
                    issue.action,
                    issue.type,
                    conversation_id,
                    issue.message,
                )
            if self.config.strict:
                raise ProposalValidationError(
                    f"{len(issues)} invalid proposal(s) in reflection payload.",
                    issues=[f"#{i.index}: {i.message}" for i in issues],
                )

        reflection = Reflection(
            conversation_id=conversation_id,
            conversation_preview=conversation_preview,
            character_id=character_id,
            character_name=character_name,
            thoughts=thoughts,
            proposals=accepted,
        )
        return IngestionReport(reflection=reflection, issues=issues)

    def _screen(
        self,
        index: int,
        raw: Any,
        *,
        character_id: str,
        conversation_id: str,
    ) -> tuple[Proposal | None, IngestionIssue | None]:
        if not isinstance(raw, dict):
            return None, IngestionIssue(index, None, None, "proposal must be an object.")
        kind = raw.get("type")
        action = raw.get("action")
        cleaned = {k: v for k, v in raw.items() if k not in _AUTHOR_STRIPPED}
        try:
            proposal = Proposal.model_validate(cleaned)
        except ValidationError as exc:
            return None, IngestionIssue(index, kind, action, _validation_message(exc))

        problems = proposal_problems(proposal)
        if problems:
            return None, IngestionIssue(index, kind, action, " ".join(problems))

        if proposal.type is ProposalType.memory and proposal.action is ProposalAction.add:
            owner = memory_owner(
                proposal, character_id=character_id, conversation_id=conversation_id
            )
            if proposal.scope is not None and proposal.scope.value != "global" and not owner:
                return None, IngestionIssue(
                    index, kind, action, "memory owner could not be resolved."
                )
            if (
                self.config.reject_known_facts
                and self._aggregator is not None
                and self._aggregator.contains_content(proposal.content or "")
            ):
                return None, IngestionIssue(
                    index,
                    kind,
                    action,
                    "an identical memory already exists: "
                    f"{normalize_content(proposal.content or '')[:60]!r}",
                )
        return proposal, None
