"""Audit subsystem: async JSONL event logging."""

from omnireflect.audit.schemas import AuditEvent
from omnireflect.audit.schemas import AuditEventType
from omnireflect.audit.store import AuditLogger

__all__ = [
    "AuditEvent",
    "AuditEventType",
    "AuditLogger",
]
