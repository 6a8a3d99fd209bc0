"""Typed error taxonomy for identity and access operations.

Every failure raised to callers is an AccessError subclass tagged with an
ErrorKind. Errors carry structured context (user, key, repositories) and
render the historical human-readable message through ``str()``, so HTTP
handlers and CLIs can either match on the kind or print the text.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any, ClassVar


class ErrorKind(StrEnum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    PERSISTENCE = "persistence"


class AccessError(Exception):
    """Base exception for identity and access failures.

    Attributes:
        reason: Human-readable description of what went wrong.
        operation: Operation being attempted (e.g. "remove user"), used as
            the message prefix when set.
        context: Structured fields describing the failure (user, key, ...).

    """

    kind: ClassVar[ErrorKind]

    def __init__(self, *, reason: str, operation: str | None = None, **context: Any) -> None:  # noqa: ANN401
        self.reason = reason
        self.operation = operation
        self.context = context
        super().__init__(self._render())

    def _render(self) -> str:
        if self.operation:
            return f"Could not {self.operation}: {self.reason}"
        return self.reason


class ValidationError(AccessError):
    """Input rejected before any store or file mutation. Not retryable as-is."""

    kind = ErrorKind.VALIDATION

    def _render(self) -> str:
        if self.operation:
            return super()._render()
        return f"Validation Error: {self.reason}"


class NotFoundError(AccessError):
    """Referenced user, key, or repository does not exist."""

    kind = ErrorKind.NOT_FOUND


class ConflictError(AccessError):
    """Mutation conflicts with existing state (duplicate, or would strand a repository)."""

    kind = ErrorKind.CONFLICT


class PersistenceError(AccessError):
    """Store or authorized-keys file I/O failed. Safe to retry after re-reading state."""

    kind = ErrorKind.PERSISTENCE
