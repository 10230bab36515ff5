"""Shared pydantic base for persisted records.

Records are addressed with snake_case attributes in Python and serialized
with camelCase keys, which is the shape the author payloads and the
persisted documents use.
"""

from __future__ import annotations

from datetime import datetime
from datetime import timezone
from typing import Any

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Base model with camelCase aliases and by-name population."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )

    def to_record(self) -> dict[str, Any]:
        """Serialize to the JSON-compatible persisted form."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
