"""Typed records describing plans, steps, and their persisted snapshots."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class RecordModel(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=False)


class PlanStatus(str, Enum):
    """Lifecycle states for a plan."""

    DRAFT = "DRAFT"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class StepStatus(str, Enum):
    """Lifecycle states for a step."""

    PENDING = "PENDING"
    READY = "READY"
    RUNNING = "RUNNING"
    RETRYING = "RETRYING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STEP_STATUSES


TERMINAL_STEP_STATUSES = frozenset({StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.SKIPPED})


class ActionKind(str, Enum):
    """Closed set of effects a step can perform."""

    EDIT = "edit"
    CREATE = "create"
    DELETE = "delete"
    RUN = "run"
    TEST = "test"


class FailureCategory(str, Enum):
    """Failure taxonomy used by the self-correction controller."""

    SYNTAX = "syntax"
    MISSING_DEPENDENCY = "missing-dependency"
    ASSERTION_FAILURE = "assertion-failure"
    TIMEOUT_OR_RESOURCE = "timeout-or-resource"
    UNKNOWN = "unknown"


class StepError(RecordModel):
    """Last observed failure for a step."""

    category: FailureCategory = FailureCategory.UNKNOWN
    message: str = ""
    cancelled: bool = False


class Step(RecordModel):
    """Single schedulable unit of work within a plan."""

    id: str
    action_kind: ActionKind
    targets: List[str] = Field(default_factory=list)
    description: str = ""
    verification_criteria: List[str] = Field(default_factory=list)
    depends_on: List[str] = Field(default_factory=list)
    status: StepStatus = StepStatus.PENDING
    attempts: int = 0
    resource_attempts: int = 0
    last_error: Optional[StepError] = None
    skip_tolerant: bool = False
    risk_score: Optional[float] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def terminal(self) -> bool:
        return self.status.terminal

    def definition_signature(self) -> tuple[Any, ...]:
        """Return the structural identity of the step, ignoring runtime state."""
        return (
            self.id,
            self.action_kind.value,
            tuple(self.targets),
            self.description,
            tuple(self.verification_criteria),
            tuple(self.depends_on),
        )

    def action(self) -> Any:
        """Build the tagged action variant describing this step's effect."""
        from ..planning.actions import action_for_step

        return action_for_step(self)


class Plan(RecordModel):
    """Goal plus the dependency graph of steps that achieves it."""

    id: str
    goal: str
    version: int = 1
    status: PlanStatus = PlanStatus.DRAFT
    steps: List[Step] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def step_ids(self) -> list[str]:
        return [step.id for step in self.steps]

    def get_step(self, step_id: str) -> Step:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(step_id)

    def derive_status(self) -> PlanStatus:
        """Compute the plan status purely from its step statuses."""
        if self.status == PlanStatus.CANCELLED:
            return PlanStatus.CANCELLED
        if any(step.status == StepStatus.FAILED for step in self.steps):
            return PlanStatus.FAILED
        if all(
            step.status == StepStatus.SUCCEEDED
            or (step.status == StepStatus.SKIPPED and step.skip_tolerant)
            for step in self.steps
        ):
            return PlanStatus.COMPLETED
        if self.status == PlanStatus.DRAFT and all(
            step.status == StepStatus.PENDING for step in self.steps
        ):
            return PlanStatus.DRAFT
        return PlanStatus.RUNNING

    def failures(self) -> list["StepFailure"]:
        """Return every terminal step failure with its categorised cause."""
        failures: list[StepFailure] = []
        for step in self.steps:
            if step.status != StepStatus.FAILED:
                continue
            error = step.last_error or StepError()
            failures.append(
                StepFailure(
                    step_id=step.id,
                    category=error.category,
                    message=error.message,
                    attempts=step.attempts,
                )
            )
        return failures


class StepFailure(RecordModel):
    """Terminal failure reported to the caller alongside a failed plan."""

    step_id: str
    category: FailureCategory
    message: str = ""
    attempts: int = 0


class Outcome(RecordModel):
    """Structured result returned by the action executor."""

    success: bool
    artifacts: Dict[str, Any] = Field(default_factory=dict)
    diagnostics: str = ""
    category_hint: Optional[FailureCategory] = None


class PlanSnapshot(RecordModel):
    """Durable copy of a plan and its step states used for resume."""

    plan_id: str
    version: int
    plan: Plan
    saved_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def capture(cls, plan: Plan) -> "PlanSnapshot":
        return cls(plan_id=plan.id, version=plan.version, plan=plan.model_copy(deep=True))
