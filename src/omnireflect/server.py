"""OmniReflect: FastMCP v2 server exposing the proposal workflow as tools.

Author tool: ``submit_reflection``.  Reviewer tools: listing, approving,
rejecting and batch-rejecting proposals.  Maintenance tools: orphan and
duplicate fact scans and fact deletion.  Call ``configure()`` before using
the server.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from time import perf_counter

from fastmcp import FastMCP
from pydantic import ValidationError

from omnireflect.audit import AuditEventType
from omnireflect.audit import AuditLogger
from omnireflect.config import AuditConfig
from omnireflect.config import IngestionConfig
from omnireflect.config import MaintenanceConfig
from omnireflect.config import StoreConfig
from omnireflect.entities import EntityRepository
from omnireflect.errors import ProposalValidationError
from omnireflect.errors import StoreUnavailableError
from omnireflect.facts import FactAggregator
from omnireflect.facts import FactStore
from omnireflect.maintenance import FactDeletionResult
from omnireflect.maintenance import MaintenanceScanner
from omnireflect.maintenance import token_jaccard
from omnireflect.observability import record_latency
from omnireflect.proposals import ApplicationResult
from omnireflect.proposals import BatchRejectResult
from omnireflect.proposals import Inbox
from omnireflect.proposals import Reconciler
from omnireflect.proposals import ReflectionIngestor
from omnireflect.proposals import ReflectionStore
from omnireflect.schemas import BatchRejectInput
from omnireflect.schemas import DuplicateListResult
from omnireflect.schemas import DuplicatePairOut
from omnireflect.schemas import FactListResult
from omnireflect.schemas import InboxGroupOut
from omnireflect.schemas import IngestionIssueOut
from omnireflect.schemas import ListPendingInput
from omnireflect.schemas import ListPendingResult
from omnireflect.schemas import PendingProposalOut
from omnireflect.schemas import ProposalStatsResult
from omnireflect.schemas import SubmitReflectionInput
from omnireflect.schemas import SubmitReflectionResult
from omnireflect.storage import InMemoryKeyValueStore
from omnireflect.storage import KeyValueStore
from omnireflect.storage import RedisKeyValueStore

logger = logging.getLogger(__name__)

mcp = FastMCP("OmniReflect")

# ---------------------------------------------------------------------------
# Services (set via configure())
# ---------------------------------------------------------------------------


@dataclass
class _Services:
    kv: KeyValueStore
    facts: FactStore
    aggregator: FactAggregator
    entities: EntityRepository
    reflections: ReflectionStore
    ingestor: ReflectionIngestor
    reconciler: Reconciler
    inbox: Inbox
    maintenance: MaintenanceScanner
    audit_logger: AuditLogger


_services: _Services | None = None


async def configure(
    redis_url: str | None = None,
    *,
    kv_store: KeyValueStore | None = None,
    store_config: StoreConfig | None = None,
    ingestion_config: IngestionConfig | None = None,
    maintenance_config: MaintenanceConfig | None = None,
    audit_config: AuditConfig | None = None,
) -> None:
    """Wire the stores and services behind the tools.

    Uses *kv_store* when given, otherwise a Redis substrate at *redis_url*
    (or ``store_config.redis_url``).  Must be called before the MCP tools
    can function.  The fact cache starts loading in the background.
    """
    global _services
    if _services is not None:
        try:
            await shutdown()
        except RuntimeError:
            # Tests may reconfigure across event loops.
            _services = None

    store_cfg = store_config or StoreConfig()
    if kv_store is None:
        kv_store = RedisKeyValueStore.from_url(
            redis_url or store_cfg.redis_url, namespace=store_cfg.namespace
        )

    audit_logger = AuditLogger(audit_config or AuditConfig())
    facts = FactStore(
        kv_store,
        use_shard_index=store_cfg.use_shard_index,
        audit_logger=audit_logger,
    )
    aggregator = FactAggregator(facts)
    entities = EntityRepository(kv_store)
    reflections = ReflectionStore(kv_store)
    _services = _Services(
        kv=kv_store,
        facts=facts,
        aggregator=aggregator,
        entities=entities,
        reflections=reflections,
        ingestor=ReflectionIngestor(
            ingestion_config or IngestionConfig(), aggregator=aggregator
        ),
        reconciler=Reconciler(
            facts, entities, reflections, audit_logger=audit_logger
        ),
        inbox=Inbox(reflections, entities, audit_logger=audit_logger),
        maintenance=MaintenanceScanner(facts, entities, maintenance_config),
        audit_logger=audit_logger,
    )
    aggregator.start()


async def shutdown() -> None:
    """Close the substrate client and release server resources."""
    global _services
    services = _services
    _services = None
    if services is None:
        return
    await services.aggregator.stop()
    if isinstance(services.kv, RedisKeyValueStore):
        await services.kv.close()


async def _reset_store() -> None:
    """Clear every key of the configured substrate (test cleanup helper)."""
    if _services is None:
        return
    kv = _services.kv
    if isinstance(kv, (InMemoryKeyValueStore, RedisKeyValueStore)):
        await kv.clear()
    await _services.aggregator.load_all()


def _get_services() -> _Services:
    """Return the configured services or raise."""
    if _services is None:
        raise RuntimeError("OmniReflect not configured. Call configure() first.")
    return _services


def _validation_message(exc: ValidationError) -> str:
    err = exc.errors()[0] if exc.errors() else {}
    return str(err.get("msg", "Invalid input"))


def _record(operation: str, start: float, ok: bool) -> None:
    record_latency(
        operation=f"mcp.{operation}",
        duration_ms=(perf_counter() - start) * 1000,
        ok=ok,
    )


# ---------------------------------------------------------------------------
# Author tool
# ---------------------------------------------------------------------------


@mcp.tool
async def submit_reflection(
    payload: dict,
    conversation_id: str,
    character_id: str,
    conversation_preview: str = "",
    character_name: str = "",
) -> SubmitReflectionResult:
    """Submit one reflection (thoughts + proposals) for human review.

    Args:
        payload: Author output, ``{"thoughts": str, "proposals": [...]}``.
        conversation_id: Conversation the analysed turn belongs to.
        character_id: Character of that conversation.
        conversation_preview: Conversation title at analysis time.
        character_name: Character display name at analysis time.
    """
    start = perf_counter()
    ok = False
    try:
        services = _get_services()
        try:
            validated = SubmitReflectionInput.model_validate(
                {
                    "payload": payload,
                    "conversation_id": conversation_id,
                    "conversation_preview": conversation_preview,
                    "character_id": character_id,
                    "character_name": character_name,
                }
            )
        except ValidationError as exc:
            return SubmitReflectionResult(
                status="rejected",
                error_code="validation_error",
                message=_validation_message(exc),
            )

        try:
            report = services.ingestor.ingest(
                validated.payload,
                conversation_id=validated.conversation_id,
                conversation_preview=validated.conversation_preview,
                character_id=validated.character_id,
                character_name=validated.character_name,
            )
        except ProposalValidationError as exc:
            return SubmitReflectionResult(
                status="rejected",
                error_code=exc.error_code,
                message=str(exc),
                issues=[
                    IngestionIssueOut(index=-1, message=issue) for issue in exc.issues
                ],
            )

        try:
            reflection = await services.reflections.save_reflection(report.reflection)
        except StoreUnavailableError as exc:
            return SubmitReflectionResult(
                status="rejected", error_code=exc.error_code, message=str(exc)
            )
        await services.audit_logger.record(
            AuditEventType.REFLECTION_INGESTED,
            reflection_id=reflection.id,
            conversation_id=reflection.conversation_id,
            accepted=report.accepted_count,
            refused=len(report.issues),
        )
        ok = True
        return SubmitReflectionResult(
            reflection_id=reflection.id,
            accepted=report.accepted_count,
            issues=[
                IngestionIssueOut(
                    index=issue.index,
                    type=issue.type,
                    action=issue.action,
                    message=issue.message,
                )
                for issue in report.issues
            ],
        )
    finally:
        _record("submit_reflection", start, ok)


# ---------------------------------------------------------------------------
# Reviewer tools
# ---------------------------------------------------------------------------


@mcp.tool
async def list_pending_proposals(
    group_by: str = "none",
    search: str | None = None,
) -> ListPendingResult:
    """List pending proposals, grouped for review.

    Args:
        group_by: character, conversation, date, proposalType or none.
        search: Optional case-insensitive filter.
    """
    start = perf_counter()
    ok = False
    try:
        services = _get_services()
        try:
            validated = ListPendingInput.model_validate(
                {"group_by": group_by, "search": search}
            )
        except ValidationError as exc:
            return ListPendingResult(
                status="error",
                group_by=group_by,
                error_code="validation_error",
                message=_validation_message(exc),
            )

        try:
            groups = await services.inbox.group_by(
                validated.group_by, search=validated.search
            )
        except StoreUnavailableError as exc:
            return ListPendingResult(
                status="error",
                group_by=validated.group_by.value,
                error_code=exc.error_code,
                message=str(exc),
            )
        out = [
            InboxGroupOut(
                key=group.key,
                label=group.label,
                count=len(group.items),
                items=[
                    PendingProposalOut(
                        proposal=item.proposal.to_record(),
                        reflection_id=item.parent.id,
                        conversation_id=item.parent.conversation_id,
                        conversation_preview=item.parent.conversation_preview,
                        character_id=item.parent.character_id,
                        character_name=item.parent.character_name,
                        timestamp=item.parent.timestamp.isoformat(),
                    )
                    for item in group.items
                ],
            )
            for group in groups
        ]
        ok = True
        return ListPendingResult(
            group_by=validated.group_by.value,
            total=sum(group.count for group in out),
            groups=out,
        )
    finally:
        _record("list_pending_proposals", start, ok)


@mcp.tool
async def approve_proposal(proposal_id: str) -> ApplicationResult:
    """Apply a pending proposal to the knowledge base.

    Args:
        proposal_id: ID of the proposal to approve.
    """
    start = perf_counter()
    ok = False
    try:
        services = _get_services()
        try:
            result = await services.reconciler.approve(proposal_id)
        except StoreUnavailableError as exc:
            return ApplicationResult(
                proposal_id=proposal_id,
                status="failed",
                error_code=exc.error_code,
                message=str(exc),
            )
        ok = result.ok
        return result
    finally:
        _record("approve_proposal", start, ok)


@mcp.tool
async def reject_proposal(
    proposal_id: str, reason: str | None = None
) -> ApplicationResult:
    """Reject a pending proposal; nothing else changes.

    Args:
        proposal_id: ID of the proposal to reject.
        reason: Optional rejection reason shown to the author.
    """
    start = perf_counter()
    ok = False
    try:
        services = _get_services()
        try:
            result = await services.reconciler.reject(proposal_id, reason)
        except StoreUnavailableError as exc:
            return ApplicationResult(
                proposal_id=proposal_id,
                status="failed",
                error_code=exc.error_code,
                message=str(exc),
            )
        ok = result.ok
        return result
    finally:
        _record("reject_proposal", start, ok)


@mcp.tool
async def batch_reject_proposals(
    proposal_ids: list[str], reason: str
) -> BatchRejectResult:
    """Reject many proposals with one reason.

    Ids that could not be rejected are listed in ``failed`` with an error
    code so the caller can retry exactly that subset.

    Args:
        proposal_ids: Selected proposal ids.
        reason: Rejection reason applied to every id.
    """
    start = perf_counter()
    ok = False
    try:
        services = _get_services()
        try:
            validated = BatchRejectInput.model_validate(
                {"proposal_ids": proposal_ids, "reason": reason}
            )
        except ValidationError as exc:
            logger.warning("Batch reject refused: %s", _validation_message(exc))
            return BatchRejectResult(
                reason=reason,
                failed={pid: "validation_error" for pid in proposal_ids},
            )
        try:
            result = await services.inbox.batch_reject(
                validated.proposal_ids, validated.reason
            )
        except StoreUnavailableError as exc:
            logger.error("Batch reject aborted: %s", exc)
            return BatchRejectResult(
                reason=validated.reason,
                failed={pid: exc.error_code for pid in validated.proposal_ids},
            )
        ok = result.ok
        return result
    finally:
        _record("batch_reject_proposals", start, ok)


@mcp.tool
async def proposal_stats() -> ProposalStatsResult:
    """Totals of proposals per status and per type."""
    start = perf_counter()
    ok = False
    try:
        stats = await _get_services().inbox.proposal_stats()
        ok = True
        return ProposalStatsResult(**stats)
    finally:
        _record("proposal_stats", start, ok)


# ---------------------------------------------------------------------------
# Maintenance tools
# ---------------------------------------------------------------------------


@mcp.tool
async def find_orphaned_facts() -> FactListResult:
    """Facts whose character or conversation no longer exists."""
    start = perf_counter()
    ok = False
    try:
        services = _get_services()
        try:
            orphans = await services.maintenance.find_orphans()
        except StoreUnavailableError as exc:
            return FactListResult(
                status="error", error_code=exc.error_code, message=str(exc)
            )
        ok = True
        return FactListResult(
            count=len(orphans), facts=[fact.to_record() for fact in orphans]
        )
    finally:
        _record("find_orphaned_facts", start, ok)


_COMPARATORS = {
    "jaccard": token_jaccard,
}


@mcp.tool
async def find_duplicate_facts(
    method: str = "exact",
    threshold: float | None = None,
) -> DuplicateListResult:
    """Candidate duplicate facts within the same scope and owner.

    Args:
        method: ``exact`` (normalized content) or ``jaccard`` (token overlap).
        threshold: Minimum similarity; defaults to the configured threshold.
    """
    start = perf_counter()
    ok = False
    try:
        services = _get_services()
        if method != "exact" and method not in _COMPARATORS:
            return DuplicateListResult(
                status="error",
                error_code="validation_error",
                message=f"Unknown method {method!r}; use exact or jaccard.",
            )
        if threshold is not None and not 0.0 <= threshold <= 1.0:
            return DuplicateListResult(
                status="error",
                error_code="validation_error",
                message="threshold must be between 0 and 1.",
            )
        try:
            pairs = await services.maintenance.find_duplicates(
                _COMPARATORS.get(method), threshold
            )
        except StoreUnavailableError as exc:
            return DuplicateListResult(
                status="error", error_code=exc.error_code, message=str(exc)
            )
        ok = True
        return DuplicateListResult(
            count=len(pairs),
            pairs=[
                DuplicatePairOut(
                    first_id=pair.first.id,
                    second_id=pair.second.id,
                    first_content=pair.first.content,
                    second_content=pair.second.content,
                    score=pair.score,
                    shard_key=pair.shard_key,
                )
                for pair in pairs
            ],
        )
    finally:
        _record("find_duplicate_facts", start, ok)


@mcp.tool
async def delete_facts(fact_ids: list[str]) -> FactDeletionResult:
    """Delete flagged facts; missing ids are reported, not ignored.

    Args:
        fact_ids: IDs of the facts to delete.
    """
    start = perf_counter()
    ok = False
    try:
        result = await _get_services().maintenance.delete_facts(fact_ids)
        ok = not result.failed
        return result
    finally:
        _record("delete_facts", start, ok)
