"""JSONL audit trail of reviewer decisions and fact writes."""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from omnireflect.audit.schemas import AuditEvent
from omnireflect.audit.schemas import AuditEventType
from omnireflect.config import AuditConfig

logger = logging.getLogger(__name__)


def mentions_proposal(payload: dict[str, Any], proposal_id: str) -> bool:
    """True if an event payload concerns *proposal_id*.

    Single decisions carry ``proposal_id``; cascades carry ``proposal_ids``;
    batch rejects carry ``succeeded`` and a ``failed`` mapping.
    """
    if payload.get("proposal_id") == proposal_id:
        return True
    for key in ("proposal_ids", "succeeded", "failed"):
        if proposal_id in (payload.get(key) or ()):
            return True
    return False


class AuditLogger:
    """Append-only audit log, one JSON event per line.

    File I/O runs in ``asyncio.to_thread``; an ``asyncio.Lock`` keeps
    appends and reads from interleaving.
    """

    def __init__(self, config: AuditConfig) -> None:
        self.config = config
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    async def log(self, event: AuditEvent) -> None:
        if not self.config.enabled:
            return
        line = event.model_dump_json() + "\n"
        async with self._lock:
            await asyncio.to_thread(partial(self._append, self.config.file_path, line))

    async def record(self, event_type: AuditEventType, **payload: Any) -> None:
        """Log an event of *event_type* whose payload is the keyword arguments."""
        await self.log(AuditEvent(event_type=event_type, payload=payload))

    @staticmethod
    def _append(path: str, line: str) -> None:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("a") as fh:
            fh.write(line)

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def read_events(
        self,
        *,
        event_type: AuditEventType | None = None,
        since: float | None = None,
        proposal_id: str | None = None,
        fact_id: str | None = None,
    ) -> list[AuditEvent]:
        """Read events back in the order they were written.

        Every given filter must match.  ``proposal_id`` also matches batch
        and cascade events that list the proposal among others.
        """
        events: list[AuditEvent] = []
        for evt in await self._load():
            if event_type is not None and evt.event_type != event_type:
                continue
            if since is not None and evt.timestamp < since:
                continue
            if proposal_id is not None and not mentions_proposal(evt.payload, proposal_id):
                continue
            if fact_id is not None and evt.payload.get("fact_id") != fact_id:
                continue
            events.append(evt)
        return events

    async def proposal_history(self, proposal_id: str) -> list[AuditEventType]:
        """Event types recorded for one proposal, oldest first."""
        return [evt.event_type for evt in await self.read_events(proposal_id=proposal_id)]

    async def _load(self) -> list[AuditEvent]:
        path = Path(self.config.file_path)
        if not path.exists():
            return []
        async with self._lock:
            raw = await asyncio.to_thread(path.read_text)
        events: list[AuditEvent] = []
        for line_no, line in enumerate(raw.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                events.append(AuditEvent.model_validate_json(line))
            except ValidationError:
                logger.warning("Skipping malformed audit line %d in %s", line_no, path)
        return events
