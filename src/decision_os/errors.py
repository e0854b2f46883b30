"""Typed failures raised by the store.

Every error is raised synchronously to the immediate caller. Nothing is
retried; the caller re-invokes the operation.
"""

from __future__ import annotations

from pathlib import Path


class DecisionOSError(Exception):
    """Base for all decision-os errors."""

    pass


class NotFoundError(DecisionOSError):
    """A case, pressure owner, foundation or layer root is missing."""

    pass


class NoActiveCaseError(DecisionOSError):
    """An operation needed the active case and none was set or given."""

    pass


class NoLayerFoundError(DecisionOSError):
    """Layer discovery found no .decision-os directory."""

    pass


class InvariantViolation(DecisionOSError):
    """The request contradicts the shape of the layer hierarchy.

    E.g. elevating a foundation when no global layer exists.
    """

    pass


class ValidationFailure(DecisionOSError):
    """A persisted document or an operation input failed its schema."""

    def __init__(
        self,
        label: str,
        issues: list[tuple[str, str]],
        path: Path | None = None,
    ) -> None:
        self.label = label
        self.issues = issues
        self.path = path
        detail = "; ".join(f"{field}: {reason}" for field, reason in issues)
        where = f" in {path}" if path else ""
        super().__init__(f"Invalid {label}{where}: {detail}")
