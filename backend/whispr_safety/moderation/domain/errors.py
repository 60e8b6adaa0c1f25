"""Error taxonomy and result wrapper for the safety engine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar, cast

T = TypeVar("T")


class SafetyError(Exception):
    """Base class for trust & safety errors."""

    reason: str = "safety_error"

    def __init__(self, reason: str | None = None) -> None:
        super().__init__(reason or self.reason)
        if reason:
            self.reason = reason


class ValidationError(SafetyError):
    """Malformed input; recoverable and never retried automatically."""

    reason = "validation_error"


class InvalidTransition(ValidationError):
    reason = "invalid_transition"


class PermissionDenied(SafetyError):
    """Terminal refusal, e.g. a banned user trying to post or report."""

    reason = "permission_denied"


class NotFoundError(SafetyError):
    reason = "not_found"


class PersistenceError(SafetyError):
    """Collaborator read/write failure, tagged with the failed operation."""

    reason = "persistence_error"

    def __init__(self, operation: str, detail: str | None = None) -> None:
        message = f"{operation} failed"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.operation = operation


class ConcurrentUpdateError(PersistenceError):
    """Raised by repositories when an optimistic write loses a race."""

    def __init__(self, operation: str, key: str) -> None:
        super().__init__(operation, f"stale version for {key}")
        self.key = key


class DuplicateReportError(ConcurrentUpdateError):
    """An open report for the same reporter, content and category already exists."""

    def __init__(self, existing_id: str) -> None:
        super().__init__("save_report", existing_id)
        self.existing_id = existing_id


@dataclass(frozen=True, slots=True)
class Outcome(Generic[T]):
    """Value-or-error result for decisions callers branch on."""

    value: T | None = None
    error: SafetyError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return cast(T, self.value)

    @classmethod
    def success(cls, value: T) -> "Outcome[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: SafetyError) -> "Outcome[T]":
        return cls(error=error)
