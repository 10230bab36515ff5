"""Error taxonomy shared by the stores, the reconciler and the tool surface."""

from __future__ import annotations


class ReflectError(Exception):
    """Base class for every domain error raised by omnireflect."""

    error_code = "error"


class ProposalValidationError(ReflectError):
    """A proposal (or a record it would produce) is malformed or incomplete."""

    error_code = "validation_error"

    def __init__(self, message: str, *, issues: list[str] | None = None) -> None:
        super().__init__(message)
        self.issues = list(issues or [])


class NotFoundError(ReflectError):
    """An edit/delete target (or a proposal) does not exist."""

    error_code = "not_found"

    def __init__(self, kind: str, target_id: str) -> None:
        super().__init__(f"{kind} with ID {target_id!r} not found.")
        self.kind = kind
        self.target_id = target_id


class NoOpEditError(ReflectError):
    """An edit whose payload would leave the target unchanged."""

    error_code = "no_op_edit"


class ProposalStateError(ReflectError):
    """A proposal was asked to change status after it had been decided."""

    error_code = "already_decided"


class StoreUnavailableError(ReflectError):
    """The key-value substrate failed; the operation is safe to retry."""

    error_code = "store_unavailable"
