"""Proposal application.

Approving a proposal runs a fixed sequence: validate, mutate the target
store, then flip the proposal status.  If anything fails before the flip the
proposal is still pending and can simply be presented again.  An applied
marker is kept between the target write and the flip, so approving an
interrupted proposal again finishes the flip without a second write.
Rejecting only touches the proposal itself.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Awaitable
from collections.abc import Callable
from functools import partial
from typing import Any
from typing import TypeVar

from pydantic import ValidationError

from omnireflect.audit import AuditEventType
from omnireflect.audit import AuditLogger
from omnireflect.entities import AppSettings
from omnireflect.entities import Conversation
from omnireflect.entities import EntityCollection
from omnireflect.entities import EntityRepository
from omnireflect.entities import InstructionalPrompt
from omnireflect.entities import LorebookEntry
from omnireflect.entities import StylePreference
from omnireflect.errors import NoOpEditError
from omnireflect.errors import NotFoundError
from omnireflect.errors import ProposalStateError
from omnireflect.errors import ProposalValidationError
from omnireflect.facts import FactScope
from omnireflect.facts import FactStore
from omnireflect.facts.aggregator import normalize_content
from omnireflect.models import CamelModel
from omnireflect.models import utcnow
from omnireflect.observability import track_latency
from omnireflect.proposals.schemas import ALLOWED_ACTIONS
from omnireflect.proposals.schemas import ApplicationResult
from omnireflect.proposals.schemas import Proposal
from omnireflect.proposals.schemas import ProposalAction
from omnireflect.proposals.schemas import ProposalStatus
from omnireflect.proposals.schemas import ProposalType
from omnireflect.proposals.schemas import Reflection
from omnireflect.proposals.store import PROPOSAL_NOT_FOUND
from omnireflect.proposals.store import ReflectionStore
from omnireflect.proposals.validation import ensure_valid
from omnireflect.proposals.validation import memory_owner
from omnireflect.proposals.validation import proposed_title
from omnireflect.storage import KeyedLocks

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=CamelModel)

Handler = Callable[[Proposal, Reflection], Awaitable[dict[str, Any]]]

CASCADE_REASON = "Parent character was deleted."

# Namespace for ids of entities created by approved adds.
_CREATED_ID_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "omnireflect/proposal-created")

# Fields bumped on every successful edit, when the model has them.
_EDIT_STAMP_FIELDS = ("timestamp", "updated_at")


def created_id(proposal: Proposal) -> str:
    """Stable id of the entity an add proposal creates."""
    return str(uuid.uuid5(_CREATED_ID_NAMESPACE, proposal.id))


def decode_setting_value(value: Any) -> Any:
    """JSON-decode string values when they parse, else keep them as text."""
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except ValueError:
        return value


def _alias(model: type[CamelModel], key: str) -> str:
    field = model.model_fields.get(key)
    if field is not None and field.alias:
        return field.alias
    return key


def _invalid(kind: str, exc: ValidationError) -> ProposalValidationError:
    issues = [
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}"
        for err in exc.errors()
    ]
    return ProposalValidationError(
        f"Resulting {kind} would be invalid: {'; '.join(issues)}", issues=issues
    )


def build_entity(model: type[M], kind: str, fields: dict[str, Any]) -> M:
    try:
        return model.model_validate(fields)
    except ValidationError as exc:
        raise _invalid(kind, exc) from exc


def merge_fields(
    model: type[M], kind: str, current: M, updated: dict[str, Any] | None
) -> M:
    """Shallow-merge *updated* over *current* and re-validate the result.

    Keys may be given in camelCase or snake_case.  Raises ``NoOpEditError``
    when nothing would change and ``ProposalValidationError`` when the
    merged record is invalid or tries to change the id.
    """
    record = current.to_record()
    changes = {_alias(model, key): value for key, value in (updated or {}).items()}
    if "id" in changes and changes["id"] != record.get("id"):
        raise ProposalValidationError(f"The id of a {kind} cannot be changed.")
    changes.pop("id", None)
    if all(record.get(key) == value for key, value in changes.items()):
        target = getattr(current, "id", None)
        suffix = f" {target!r}" if target else ""
        raise NoOpEditError(f"The edit would not change {kind}{suffix}.")
    record.update(changes)
    for name in _EDIT_STAMP_FIELDS:
        if name in model.model_fields:
            record[_alias(model, name)] = utcnow().isoformat()
    return build_entity(model, kind, record)


def _empty_edit(proposal: Proposal) -> bool:
    kind = proposal.type
    if kind in (ProposalType.memory, ProposalType.style_preference):
        return not (proposal.content or "").strip()
    if kind is ProposalType.lorebook_entry:
        return not (proposal.content or "").strip() and not proposal.keywords
    if kind is ProposalType.conversation:
        return proposed_title(proposal) is None
    if kind is ProposalType.app_setting:
        return proposal.value is None
    return not proposal.updated_fields


class Reconciler:
    """Apply reviewer decisions to the knowledge base.

    Dispatch goes through a handler table keyed by ``(type, action)``.  The
    table must cover the whole type/action matrix; a gap is a programming
    error and is refused at construction time.
    """

    def __init__(
        self,
        facts: FactStore,
        entities: EntityRepository,
        reflections: ReflectionStore,
        *,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        self._facts = facts
        self._entities = entities
        self._reflections = reflections
        self._audit = audit_logger
        self._locks = KeyedLocks()
        self._handlers = self._build_handlers()

        expected = {
            (kind, action)
            for kind, actions in ALLOWED_ACTIONS.items()
            for action in actions
        }
        missing = expected - set(self._handlers)
        if missing:
            labels = ", ".join(sorted(f"{a.value} {k.value}" for k, a in missing))
            raise RuntimeError(f"Reconciler has no handler for: {labels}")

    # ------------------------------------------------------------------
    # Reviewer entry points
    # ------------------------------------------------------------------

    async def apply_proposal(
        self,
        proposal_id: str,
        decision: ProposalStatus,
        rejection_reason: str | None = None,
    ) -> ApplicationResult:
        if decision is ProposalStatus.approved:
            return await self.approve(proposal_id)
        if decision is ProposalStatus.rejected:
            return await self.reject(proposal_id, rejection_reason)
        return _failed(
            proposal_id,
            "validation_error",
            "A decision must approve or reject the proposal.",
        )

    async def approve(self, proposal_id: str) -> ApplicationResult:
        """Apply a pending proposal to its target, then mark it approved."""
        with track_latency("reconciler.approve"):
            async with self._locks.hold(proposal_id):
                return await self._approve_locked(proposal_id)

    async def reject(
        self, proposal_id: str, reason: str | None = None
    ) -> ApplicationResult:
        """Mark a pending proposal rejected; no target store is touched."""
        with track_latency("reconciler.reject"):
            async with self._locks.hold(proposal_id):
                try:
                    located = await self._reflections.decide_proposal(
                        proposal_id, ProposalStatus.rejected, reason
                    )
                except NotFoundError:
                    return _failed(
                        proposal_id,
                        PROPOSAL_NOT_FOUND,
                        f"Proposal with ID {proposal_id!r} not found.",
                    )
                except ProposalStateError as exc:
                    return _failed(proposal_id, exc.error_code, str(exc))

        await self._record(
            AuditEventType.PROPOSAL_REJECTED,
            proposal_id=proposal_id,
            type=located.proposal.type.value,
            action=located.proposal.action.value,
            reason=reason,
            automatic=False,
        )
        return ApplicationResult(
            proposal_id=proposal_id, status="rejected", message=reason
        )

    # ------------------------------------------------------------------
    # Approval
    # ------------------------------------------------------------------

    async def _approve_locked(self, proposal_id: str) -> ApplicationResult:
        try:
            located = await self._reflections.find_proposal(proposal_id)
        except NotFoundError:
            return _failed(
                proposal_id,
                PROPOSAL_NOT_FOUND,
                f"Proposal with ID {proposal_id!r} not found.",
            )
        proposal, parent = located.proposal, located.parent
        if not proposal.is_pending:
            return _failed(
                proposal_id,
                ProposalStateError.error_code,
                f"Proposal {proposal_id} is already {proposal.status.value}.",
            )

        details = await self._reflections.applied_details(proposal_id)
        if details is not None:
            logger.info(
                "Finishing interrupted approval of %s proposal %s",
                proposal.label(),
                proposal_id,
            )
        else:
            try:
                if proposal.action is ProposalAction.edit and _empty_edit(proposal):
                    raise NoOpEditError(
                        f"The {proposal.type.value} edit carries no changes."
                    )
                ensure_valid(proposal)
                handler = self._handlers[(proposal.type, proposal.action)]
                details = await handler(proposal, parent)
            except NoOpEditError as exc:
                return await self._auto_reject(proposal, exc)
            except (ProposalValidationError, NotFoundError) as exc:
                logger.warning(
                    "Could not apply %s proposal %s: %s",
                    proposal.label(),
                    proposal_id,
                    exc,
                )
                await self._record(
                    AuditEventType.PROPOSAL_FAILED,
                    proposal_id=proposal_id,
                    type=proposal.type.value,
                    action=proposal.action.value,
                    error_code=exc.error_code,
                )
                issues = (
                    {"issues": exc.issues}
                    if isinstance(exc, ProposalValidationError)
                    else {}
                )
                return _failed(proposal_id, exc.error_code, str(exc), issues)
            await self._reflections.mark_applied(proposal_id, details)

        try:
            await self._reflections.decide_proposal(proposal_id, ProposalStatus.approved)
        except (ProposalStateError, NotFoundError) as exc:
            # Decided or removed elsewhere while the target was being written.
            logger.warning("Proposal %s changed state during approval: %s", proposal_id, exc)
            await self._reflections.clear_applied(proposal_id)
            return _failed(proposal_id, exc.error_code, str(exc), details)
        await self._reflections.clear_applied(proposal_id)

        if proposal.type is ProposalType.character and proposal.action is ProposalAction.delete:
            details["cascade_rejected"] = await self._cascade_character_delete(
                details["target_id"]
            )

        logger.info("Applied %s proposal %s", proposal.label(), proposal_id)
        await self._record(
            AuditEventType.PROPOSAL_APPROVED,
            proposal_id=proposal_id,
            type=proposal.type.value,
            action=proposal.action.value,
            details=details,
        )
        return ApplicationResult(
            proposal_id=proposal_id, status="applied", details=details
        )

    async def _auto_reject(
        self, proposal: Proposal, exc: NoOpEditError
    ) -> ApplicationResult:
        reason = f"Automatically rejected: {exc}"
        try:
            await self._reflections.decide_proposal(
                proposal.id, ProposalStatus.rejected, reason
            )
        except (ProposalStateError, NotFoundError) as state_exc:
            logger.warning(
                "Proposal %s changed state before its auto-rejection: %s",
                proposal.id,
                state_exc,
            )
            return _failed(proposal.id, state_exc.error_code, str(state_exc))
        logger.info("Auto-rejected no-op %s proposal %s", proposal.label(), proposal.id)
        await self._record(
            AuditEventType.PROPOSAL_REJECTED,
            proposal_id=proposal.id,
            type=proposal.type.value,
            action=proposal.action.value,
            reason=reason,
            automatic=True,
        )
        return ApplicationResult(
            proposal_id=proposal.id,
            status="rejected",
            error_code=exc.error_code,
            message=reason,
        )

    async def _cascade_character_delete(self, character_id: str) -> list[str]:
        rejected = await self._reflections.reject_pending_for_character(
            character_id, CASCADE_REASON
        )
        if rejected:
            logger.info(
                "Rejected %d pending proposal(s) of deleted character %s",
                len(rejected),
                character_id,
            )
            await self._record(
                AuditEventType.CASCADE_REJECT,
                character_id=character_id,
                proposal_ids=rejected,
            )
        return rejected

    async def _record(self, event_type: AuditEventType, **payload: Any) -> None:
        if self._audit is not None:
            await self._audit.record(event_type, **payload)

    # ------------------------------------------------------------------
    # Handler table
    # ------------------------------------------------------------------

    def _build_handlers(self) -> dict[tuple[ProposalType, ProposalAction], Handler]:
        entities = self._entities
        handlers: dict[tuple[ProposalType, ProposalAction], Handler] = {
            (ProposalType.memory, ProposalAction.add): self._add_memory,
            (ProposalType.memory, ProposalAction.edit): self._edit_memory,
            (ProposalType.memory, ProposalAction.delete): self._delete_memory,
            (ProposalType.lorebook_entry, ProposalAction.add): self._add_lorebook_entry,
            (ProposalType.lorebook_entry, ProposalAction.edit): self._edit_lorebook_entry,
            (ProposalType.lorebook_entry, ProposalAction.delete): self._delete_lorebook_entry,
            (ProposalType.style_preference, ProposalAction.add): self._add_style_preference,
            (ProposalType.style_preference, ProposalAction.edit): self._edit_style_preference,
            (ProposalType.style_preference, ProposalAction.delete): partial(
                self._delete_entity, entities.style_preferences
            ),
            (ProposalType.app_setting, ProposalAction.edit): self._edit_app_setting,
            (ProposalType.conversation, ProposalAction.edit): self._edit_conversation,
            (ProposalType.instructional_prompt, ProposalAction.edit): (
                self._edit_instructional_prompt
            ),
        }
        structured: dict[ProposalType, EntityCollection[Any]] = {
            ProposalType.lorebook: entities.lorebooks,
            ProposalType.character: entities.characters,
            ProposalType.persona: entities.personas,
            ProposalType.prompt: entities.prompts,
            ProposalType.item: entities.items,
            ProposalType.world: entities.worlds,
        }
        for kind, collection in structured.items():
            handlers[(kind, ProposalAction.add)] = partial(self._add_entity, collection)
            handlers[(kind, ProposalAction.edit)] = partial(self._edit_entity, collection)
            handlers[(kind, ProposalAction.delete)] = partial(
                self._delete_entity, collection
            )
        return handlers

    # -- memory --

    async def _add_memory(self, proposal: Proposal, parent: Reflection) -> dict[str, Any]:
        scope = proposal.scope or FactScope.global_
        owner = memory_owner(
            proposal,
            character_id=parent.character_id,
            conversation_id=parent.conversation_id,
        )
        fact = await self._facts.create_fact(
            proposal.content or "",
            scope,
            owner,
            character_name=(
                parent.character_name or None if scope is FactScope.character else None
            ),
            conversation_preview=(
                parent.conversation_preview or None
                if scope is FactScope.conversation
                else None
            ),
            fact_id=created_id(proposal),
        )
        return {"target_id": fact.id, "scope": scope.value, "owner_id": owner}

    async def _edit_memory(self, proposal: Proposal, parent: Reflection) -> dict[str, Any]:
        target_id = proposal.effective_target_id or ""
        current = await self._facts.get_fact(target_id)
        content = proposal.content or ""
        if normalize_content(current.content) == normalize_content(content):
            raise NoOpEditError(f"The edit would not change memory {target_id!r}.")
        await self._facts.update_fact(target_id, content)
        return {"target_id": target_id}

    async def _delete_memory(self, proposal: Proposal, parent: Reflection) -> dict[str, Any]:
        removed = await self._facts.delete_fact(proposal.effective_target_id or "")
        return {"target_id": removed.id}

    # -- lorebook entries --

    async def _add_lorebook_entry(
        self, proposal: Proposal, parent: Reflection
    ) -> dict[str, Any]:
        entry = build_entity(
            LorebookEntry,
            "LorebookEntry",
            {
                "id": created_id(proposal),
                "keywords": proposal.keywords or [],
                "content": proposal.content or "",
            },
        )
        lorebook_id = proposal.lorebook_id or ""
        created = await self._entities.lorebooks.add_entry(lorebook_id, entry)
        return {"target_id": created.id, "lorebook_id": lorebook_id}

    async def _edit_lorebook_entry(
        self, proposal: Proposal, parent: Reflection
    ) -> dict[str, Any]:
        target_id = proposal.effective_target_id or ""

        def edit(current: LorebookEntry) -> LorebookEntry:
            content = proposal.content if proposal.content else current.content
            keywords = proposal.keywords if proposal.keywords else current.keywords
            if content == current.content and keywords == current.keywords:
                raise NoOpEditError(
                    f"The edit would not change lorebook entry {target_id!r}."
                )
            return current.model_copy(
                update={"content": content, "keywords": keywords, "timestamp": utcnow()}
            )

        await self._entities.lorebooks.update_entry(target_id, edit)
        return {"target_id": target_id}

    async def _delete_lorebook_entry(
        self, proposal: Proposal, parent: Reflection
    ) -> dict[str, Any]:
        removed = await self._entities.lorebooks.delete_entry(
            proposal.effective_target_id or ""
        )
        return {"target_id": removed.id}

    # -- style preferences --

    async def _add_style_preference(
        self, proposal: Proposal, parent: Reflection
    ) -> dict[str, Any]:
        preference = build_entity(
            StylePreference,
            "StylePreference",
            {
                "id": created_id(proposal),
                "content": proposal.content or "",
                "character_name": parent.character_name,
            },
        )
        created = await self._entities.style_preferences.add(preference)
        return {"target_id": created.id}

    async def _edit_style_preference(
        self, proposal: Proposal, parent: Reflection
    ) -> dict[str, Any]:
        target_id = proposal.effective_target_id or ""
        content = proposal.content or ""

        def edit(current: StylePreference) -> StylePreference:
            if normalize_content(current.content) == normalize_content(content):
                raise NoOpEditError(
                    f"The edit would not change style preference {target_id!r}."
                )
            return current.model_copy(update={"content": content, "timestamp": utcnow()})

        await self._entities.style_preferences.update(target_id, edit)
        return {"target_id": target_id}

    # -- structured collections --

    async def _add_entity(
        self, collection: EntityCollection[Any], proposal: Proposal, parent: Reflection
    ) -> dict[str, Any]:
        fields = dict(proposal.updated_fields or {})
        fields.pop("id", None)
        fields["id"] = created_id(proposal)
        if "timestamp" in collection.model.model_fields and "timestamp" not in fields:
            fields["timestamp"] = utcnow()
        entity = build_entity(collection.model, collection.kind, fields)
        created = await collection.add(entity)
        return {"target_id": created.id}

    async def _edit_entity(
        self, collection: EntityCollection[Any], proposal: Proposal, parent: Reflection
    ) -> dict[str, Any]:
        target_id = proposal.effective_target_id or ""
        await collection.update(
            target_id,
            lambda current: merge_fields(
                collection.model, collection.kind, current, proposal.updated_fields
            ),
        )
        return {"target_id": target_id, "fields": sorted(proposal.updated_fields or {})}

    async def _delete_entity(
        self, collection: EntityCollection[Any], proposal: Proposal, parent: Reflection
    ) -> dict[str, Any]:
        removed = await collection.delete(proposal.effective_target_id or "")
        return {"target_id": removed.id}

    # -- single-document targets --

    async def _edit_app_setting(
        self, proposal: Proposal, parent: Reflection
    ) -> dict[str, Any]:
        key = _alias(AppSettings, proposal.key or "")
        if key in AppSettings.reserved_keys():
            raise ProposalValidationError(
                f"{key} cannot be changed through an appSetting proposal."
            )
        value = decode_setting_value(proposal.value)

        def edit(current: AppSettings) -> AppSettings:
            return merge_fields(AppSettings, "AppSettings", current, {key: value})

        await self._entities.settings.update(edit)
        return {"key": key, "value": value}

    async def _edit_conversation(
        self, proposal: Proposal, parent: Reflection
    ) -> dict[str, Any]:
        target_id = proposal.effective_target_id or ""
        title = proposed_title(proposal) or ""
        await self._entities.conversations.update(
            target_id,
            lambda current: merge_fields(
                Conversation,
                "Conversation",
                current,
                {"preview": title, "has_custom_title": True},
            ),
        )
        return {"target_id": target_id, "preview": title}

    async def _edit_instructional_prompt(
        self, proposal: Proposal, parent: Reflection
    ) -> dict[str, Any]:
        target_id = proposal.effective_target_id or ""

        def edit(settings: AppSettings) -> AppSettings:
            prompts = list(settings.instructional_prompts)
            for position, current in enumerate(prompts):
                if current.id == target_id:
                    prompts[position] = merge_fields(
                        InstructionalPrompt,
                        "InstructionalPrompt",
                        current,
                        proposal.updated_fields,
                    )
                    return settings.model_copy(update={"instructional_prompts": prompts})
            raise NotFoundError("InstructionalPrompt", target_id)

        await self._entities.settings.update(edit)
        return {"target_id": target_id, "fields": sorted(proposal.updated_fields or {})}


def _failed(
    proposal_id: str,
    error_code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> ApplicationResult:
    return ApplicationResult(
        proposal_id=proposal_id,
        status="failed",
        error_code=error_code,
        message=message,
        details=details or {},
    )
