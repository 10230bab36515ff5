"""Audit event types and data models."""

from __future__ import annotations

import time
from enum import Enum
from typing import Any

from pydantic import BaseModel
from pydantic import Field


class AuditEventType(str, Enum):
    """Categories of auditable events."""

    REFLECTION_INGESTED = "REFLECTION_INGESTED"
    PROPOSAL_APPROVED = "PROPOSAL_APPROVED"
    PROPOSAL_REJECTED = "PROPOSAL_REJECTED"
    PROPOSAL_FAILED = "PROPOSAL_FAILED"
    BATCH_REJECT = "BATCH_REJECT"
    CASCADE_REJECT = "CASCADE_REJECT"
    FACT_CREATED = "FACT_CREATED"
    FACT_UPDATED = "FACT_UPDATED"
    FACT_DELETED = "FACT_DELETED"


class AuditEvent(BaseModel):
    """A single immutable audit log entry."""

    model_config = {"frozen": True}

    timestamp: float = Field(
        default_factory=time.time,
        description="Unix epoch when the event occurred.",
    )
    event_type: AuditEventType = Field(
        description="Category of the audited action.",
    )
    payload: dict[str, Any] = Field(
        default_factory=dict,
        description="Event-specific data (ids, statuses, error codes).",
    )
