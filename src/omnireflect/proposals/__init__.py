"""Proposal domain: ingestion, persistence, reconciliation and review."""

from omnireflect.proposals.inbox import GroupBy
from omnireflect.proposals.inbox import Inbox
from omnireflect.proposals.inbox import InboxGroup
from omnireflect.proposals.inbox import ProposalSelection
from omnireflect.proposals.ingestion import IngestionIssue
from omnireflect.proposals.ingestion import IngestionReport
from omnireflect.proposals.ingestion import ReflectionIngestor
from omnireflect.proposals.reconciler import CASCADE_REASON
from omnireflect.proposals.reconciler import Reconciler
from omnireflect.proposals.schemas import ALLOWED_ACTIONS
from omnireflect.proposals.schemas import ApplicationResult
from omnireflect.proposals.schemas import BatchRejectResult
from omnireflect.proposals.schemas import FlatProposal
from omnireflect.proposals.schemas import Proposal
from omnireflect.proposals.schemas import ProposalAction
from omnireflect.proposals.schemas import ProposalStatus
from omnireflect.proposals.schemas import ProposalType
from omnireflect.proposals.schemas import Reflection
from omnireflect.proposals.store import ReflectionStore
from omnireflect.proposals.validation import ensure_valid
from omnireflect.proposals.validation import proposal_problems

__all__ = [
    "ALLOWED_ACTIONS",
    "ApplicationResult",
    "BatchRejectResult",
    "CASCADE_REASON",
    "FlatProposal",
    "GroupBy",
    "Inbox",
    "InboxGroup",
    "IngestionIssue",
    "IngestionReport",
    "Proposal",
    "ProposalAction",
    "ProposalSelection",
    "ProposalStatus",
    "ProposalType",
    "Reconciler",
    "Reflection",
    "ReflectionIngestor",
    "ReflectionStore",
    "ensure_valid",
    "proposal_problems",
]
