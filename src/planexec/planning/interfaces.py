"""Narrow interfaces to the collaborators the engine drives but does not own."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from pydantic import ValidationError

from ..errors import PlanValidationError, StepExecutionError
from ..memory.schema import FailureCategory, Outcome, Plan, PlanSnapshot, Step
from .actions import ACTION_ADAPTER, BaseAction
from .cancellation import CancellationToken


@dataclass(slots=True)
class CriterionResult:
    """Verdict for a single verification criterion."""

    criterion: str
    passed: bool
    diagnostic: str = ""


@dataclass(slots=True)
class ApprovalDecision:
    """Approval signal delivered for a step."""

    step_id: str
    approved: bool
    note: str = ""


@dataclass(slots=True)
class AttemptRecord:
    """History entry handed to the oracle when requesting a fix."""

    attempt: int
    category: FailureCategory
    diagnostics: str
    fix: str | None = None


@runtime_checkable
class ReasoningOracle(Protocol):
    def propose_plan(self, goal: str, context: Mapping[str, Any]) -> Plan | Mapping[str, Any]:
        ...

    def propose_fix(
        self,
        step: Step,
        failure_category: FailureCategory,
        diagnostics: str,
        prior_attempts: Sequence[AttemptRecord],
    ) -> BaseAction | Mapping[str, Any]:
        ...


@runtime_checkable
class ActionExecutor(Protocol):
    def perform(self, step: Step, cancel: CancellationToken) -> Outcome:
        ...

    def apply_fix(self, step: Step, action: BaseAction, cancel: CancellationToken) -> Outcome:
        ...


@runtime_checkable
class CriterionChecker(Protocol):
    def check(self, criterion: str, outcome: Outcome) -> CriterionResult:
        ...


@runtime_checkable
class ApprovalSource(Protocol):
    def wait_for(
        self,
        step_id: str,
        timeout: float | None,
        cancel: CancellationToken,
    ) -> ApprovalDecision | None:
        ...


@runtime_checkable
class SnapshotStore(Protocol):
    def save(self, snapshot: PlanSnapshot) -> None:
        ...

    def load(self, plan_id: str) -> PlanSnapshot | None:
        ...


def coerce_plan(payload: Any) -> Plan:
    """Validate an oracle-produced plan into a detached :class:`Plan`."""
    if isinstance(payload, Plan):
        return payload.model_copy(deep=True)
    if not isinstance(payload, Mapping):
        raise PlanValidationError(
            f"Oracle returned {type(payload).__name__} instead of a plan mapping."
        )
    try:
        return Plan.model_validate(dict(payload))
    except ValidationError as error:
        raise PlanValidationError(f"Plan payload did not validate: {error}") from error


def coerce_action(payload: Any) -> BaseAction:
    """Validate an oracle-produced fix into one of the action variants."""
    if isinstance(payload, BaseAction) and hasattr(payload, "kind"):
        return payload
    if not isinstance(payload, Mapping):
        raise StepExecutionError(
            f"Oracle returned {type(payload).__name__} instead of an action mapping."
        )
    try:
        return ACTION_ADAPTER.validate_python(dict(payload))
    except ValidationError as error:
        raise StepExecutionError(f"Fix payload did not validate: {error}") from error


__all__ = [
    "ActionExecutor",
    "ApprovalDecision",
    "ApprovalSource",
    "AttemptRecord",
    "CriterionChecker",
    "CriterionResult",
    "ReasoningOracle",
    "SnapshotStore",
    "coerce_action",
    "coerce_plan",
]
