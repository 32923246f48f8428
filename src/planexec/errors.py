"""Exception hierarchy raised by the plan execution engine."""

from __future__ import annotations

from typing import Sequence

__all__ = [
    "ApprovalRejected",
    "ApprovalTimeout",
    "PersistenceError",
    "PlanExecError",
    "PlanValidationError",
    "SnapshotMismatchError",
    "StepExecutionError",
    "VerificationFailure",
]


class PlanExecError(RuntimeError):
    """Base error for every failure surfaced by the engine."""


class PlanValidationError(PlanExecError):
    """Raised when a plan is rejected before any step executes.

    ``cycle_members`` lists every step that sits on a dependency cycle (in
    declaration order) and ``cycles`` keeps each strongly connected group
    separately. ``problems`` carries the human readable reasons.
    """

    def __init__(
        self,
        message: str,
        *,
        problems: Sequence[str] = (),
        cycles: Sequence[Sequence[str]] = (),
    ) -> None:
        super().__init__(message)
        self.problems: list[str] = list(problems) or [message]
        self.cycles: list[list[str]] = [list(group) for group in cycles]
        members: list[str] = []
        for group in self.cycles:
            for step_id in group:
                if step_id not in members:
                    members.append(step_id)
        self.cycle_members: list[str] = members


class SnapshotMismatchError(PlanValidationError):
    """Raised when a stored snapshot no longer matches the live plan definition."""


class StepExecutionError(PlanExecError):
    """Action executor or oracle failure handled by the self-correction loop."""

    def __init__(self, message: str, *, category: str | None = None) -> None:
        super().__init__(message)
        self.category = category


class VerificationFailure(StepExecutionError):
    """The action reported success but one or more criteria did not pass."""


class ApprovalTimeout(PlanExecError):
    """No approval signal arrived before the configured deadline."""


class ApprovalRejected(PlanExecError):
    """An approval signal explicitly rejected the step."""


class PersistenceError(PlanExecError):
    """Snapshot storage failed; the in-memory run continues."""
