"""Reviewer inbox: pending proposals, grouping, selection and batch reject."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from datetime import timedelta
from enum import Enum
from typing import Any

from omnireflect.audit import AuditEventType
from omnireflect.audit import AuditLogger
from omnireflect.entities import EntityRepository
from omnireflect.observability import track_latency
from omnireflect.proposals.schemas import BatchRejectResult
from omnireflect.proposals.schemas import FlatProposal
from omnireflect.proposals.schemas import ProposalStatus
from omnireflect.proposals.store import ReflectionStore

logger = logging.getLogger(__name__)

ALL_PENDING_LABEL = "All Pending Proposals"
DATE_BUCKETS = ("Today", "Yesterday", "This Week", "Older")


class GroupBy(str, Enum):
    character = "character"
    conversation = "conversation"
    date = "date"
    proposal_type = "proposalType"
    none = "none"


@dataclass
class InboxGroup:
    """One accordion of the inbox."""

    key: str
    label: str
    items: list[FlatProposal] = field(default_factory=list)

    @property
    def ids(self) -> list[str]:
        return [item.id for item in self.items]

    @property
    def latest(self) -> datetime:
        return max(item.parent.timestamp for item in self.items)


class ProposalSelection:
    """The reviewer's set of selected proposal ids."""

    def __init__(self, ids: Iterable[str] = ()) -> None:
        self._ids: set[str] = set(ids)

    def toggle(self, proposal_id: str) -> bool:
        """Flip one id; returns whether it is now selected."""
        if proposal_id in self._ids:
            self._ids.discard(proposal_id)
            return False
        self._ids.add(proposal_id)
        return True

    def select_all(self, ids: Iterable[str]) -> None:
        self._ids |= set(ids)

    def deselect_all(self, ids: Iterable[str]) -> None:
        self._ids -= set(ids)

    def clear(self) -> None:
        self._ids.clear()

    @property
    def ids(self) -> frozenset[str]:
        return frozenset(self._ids)

    def __contains__(self, proposal_id: object) -> bool:
        return proposal_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)


def date_bucket(timestamp: datetime, now: datetime) -> str:
    """Name the relative-date bucket of *timestamp*, in local time.

    Days start at local midnight and weeks start on Monday.
    """
    day = timestamp.astimezone().date() if timestamp.tzinfo else timestamp.date()
    today = now.astimezone().date() if now.tzinfo else now.date()
    if day == today:
        return "Today"
    if day == today - timedelta(days=1):
        return "Yesterday"
    if day >= today - timedelta(days=today.weekday()):
        return "This Week"
    return "Older"


def _matches(item: FlatProposal, term: str) -> bool:
    haystack = (
        item.parent.character_name,
        item.parent.conversation_preview,
        item.proposal.rationale,
        item.proposal.type.value,
        item.proposal.action.value,
    )
    return any(term in value.lower() for value in haystack)


class Inbox:
    """Read model and batch operations over pending proposals."""

    def __init__(
        self,
        reflections: ReflectionStore,
        entities: EntityRepository | None = None,
        *,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        self._reflections = reflections
        self._entities = entities
        self._audit = audit_logger

    async def list_pending(self, search: str | None = None) -> list[FlatProposal]:
        """Flatten every pending proposal with its parent, newest first."""
        items = [
            FlatProposal(proposal=proposal, parent=reflection)
            for reflection in await self._reflections.list_reflections()
            for proposal in reflection.pending()
        ]
        term = (search or "").strip().lower()
        if term:
            items = [item for item in items if _matches(item, term)]
        items.sort(key=lambda item: item.parent.timestamp, reverse=True)
        return items

    async def group_by(
        self,
        key: GroupBy | str,
        *,
        search: str | None = None,
        now: datetime | None = None,
    ) -> list[InboxGroup]:
        grouping = GroupBy(key)
        items = await self.list_pending(search)
        if grouping is GroupBy.none:
            return [InboxGroup(key="all", label=ALL_PENDING_LABEL, items=items)]

        names = await self._character_names() if grouping is GroupBy.character else {}
        reference = now or datetime.now().astimezone()
        groups: dict[str, InboxGroup] = {}
        for item in items:
            parent = item.parent
            if grouping is GroupBy.character:
                group_key = parent.character_id
                label = names.get(parent.character_id) or parent.character_name
            elif grouping is GroupBy.conversation:
                group_key = parent.conversation_id
                label = f'Chat: "{parent.conversation_preview}"'
            elif grouping is GroupBy.date:
                group_key = label = date_bucket(parent.timestamp, reference)
            else:
                group_key = f"{item.proposal.action.value}-{item.proposal.type.value}"
                label = item.proposal.label()
            group = groups.setdefault(group_key, InboxGroup(key=group_key, label=label))
            group.items.append(item)

        # Items arrive newest first and stay that way inside each group.
        ordered = list(groups.values())
        if grouping is GroupBy.conversation:
            ordered.sort(key=lambda g: g.latest, reverse=True)
        elif grouping is GroupBy.date:
            ordered.sort(key=lambda g: DATE_BUCKETS.index(g.key))
        else:
            ordered.sort(key=lambda g: g.label.casefold())
        return ordered

    async def batch_reject(
        self, ids: Iterable[str], reason: str
    ) -> BatchRejectResult:
        """Reject every selected id with one reason and report per-id outcomes."""
        wanted = sorted(set(ids))
        with track_latency("inbox.batch_reject"):
            result = await self._reflections.decide_many(wanted, reason)
        if result.failed:
            logger.warning(
                "Batch reject left %d of %d proposal(s) unchanged: %s",
                result.failed_count,
                len(wanted),
                result.failed,
            )
        if self._audit is not None:
            await self._audit.record(
                AuditEventType.BATCH_REJECT,
                reason=reason,
                succeeded=result.succeeded,
                failed=result.failed,
            )
        return result

    async def proposal_stats(self) -> dict[str, Any]:
        """Totals per status and type over every proposal ever stored."""
        proposals = [
            proposal
            for reflection in await self._reflections.list_reflections()
            for proposal in reflection.proposals
        ]
        approved = sum(p.status is ProposalStatus.approved for p in proposals)
        rejected = sum(p.status is ProposalStatus.rejected for p in proposals)
        reviewed = approved + rejected
        by_type: dict[str, int] = {}
        for proposal in proposals:
            by_type[proposal.type.value] = by_type.get(proposal.type.value, 0) + 1
        return {
            "total": len(proposals),
            "approved": approved,
            "rejected": rejected,
            "pending": len(proposals) - reviewed,
            "approval_rate": round(approved / reviewed, 4) if reviewed else None,
            "by_type": dict(sorted(by_type.items())),
        }

    async def _character_names(self) -> dict[str, str]:
        if self._entities is None:
            return {}
        return {c.id: c.name for c in await self._entities.characters.list()}
