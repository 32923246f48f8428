"""Level-by-level plan scheduler with verification and self-correction.

The scheduler owns the plan. It levels the dependency graph, hands each
eligible step of a level to a bounded worker pool, and waits for every step in
the level to reach a terminal status before moving on. Workers never touch the
plan: they run against a private copy of their step and report each
transition as a :class:`StepEvent` through a queue, which the scheduler applies
and snapshots one at a time.
"""

from __future__ import annotations

import logging
import queue
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

from ..errors import (
    ApprovalRejected,
    ApprovalTimeout,
    PlanValidationError,
    StepExecutionError,
)
from ..memory.schema import (
    FailureCategory,
    Outcome,
    Plan,
    PlanStatus,
    Step,
    StepError,
    StepFailure,
    StepStatus,
    utc_now,
)
from .actions import BaseAction
from .approval import ApprovalGate
from .cancellation import CancellationToken
from .correction import SelfCorrectionController
from .interfaces import (
    ActionExecutor,
    AttemptRecord,
    CriterionChecker,
    ReasoningOracle,
    coerce_plan,
)
from .resolver import DependencyResolver
from .state import StateTracker
from .verification import VerificationGate

LOGGER = logging.getLogger(__name__)

DEFAULT_PARALLELISM = 4
DEFAULT_POLL_INTERVAL = 0.2

ReplanHook = Callable[[Plan, Sequence[StepFailure]], "Plan | Mapping[str, Any] | None"]


@dataclass(slots=True)
class StepEvent:
    """Transition reported by a worker back to the scheduler."""

    step_id: str
    plan_version: int
    status: StepStatus
    attempts: int
    resource_attempts: int = 0
    error: StepError | None = None
    final: bool = False


@dataclass(slots=True)
class PlanExecutionSummary:
    """Aggregated result of executing or resuming a plan."""

    plan: Plan
    levels: list[list[str]] = field(default_factory=list)
    failures: list[StepFailure] = field(default_factory=list)
    dispatched: list[str] = field(default_factory=list)
    resumable: bool = True
    replans: int = 0
    stale_events: int = 0

    @property
    def completed(self) -> bool:
        return self.plan.status == PlanStatus.COMPLETED

    @property
    def exit_code(self) -> int:
        return 0 if self.completed else 1


class OracleReplanner:
    """Replan hook asking the reasoning oracle for a revised plan."""

    def __init__(self, oracle: ReasoningOracle) -> None:
        self._oracle = oracle

    def __call__(self, plan: Plan, failures: Sequence[StepFailure]) -> Plan | Mapping[str, Any] | None:
        context = {
            "plan_id": plan.id,
            "version": plan.version,
            "failures": [failure.model_dump(mode="json") for failure in failures],
            "steps": [
                {"id": step.id, "status": step.status.value, "attempts": step.attempts}
                for step in plan.steps
            ],
        }
        return self._oracle.propose_plan(plan.goal, context)


class _StepWorker:
    """Runs one step inside the pool and reports transitions as events."""

    def __init__(
        self,
        *,
        step: Step,
        plan_version: int,
        events: "queue.Queue[StepEvent]",
        action_executor: ActionExecutor,
        gate: VerificationGate,
        controller: SelfCorrectionController,
        approval: ApprovalGate,
        cancel: CancellationToken,
    ) -> None:
        self._step = step
        self._version = plan_version
        self._events = events
        self._executor = action_executor
        self._gate = gate
        self._controller = controller
        self._approval = approval
        self._cancel = cancel
        self._attempts = step.attempts
        self._resource_attempts = step.resource_attempts

    def __call__(self) -> None:
        try:
            self._run()
        except Exception as error:  # noqa: BLE001 - a worker must always report back
            LOGGER.exception("Worker for step %s crashed", self._step.id)
            self._emit(
                StepStatus.FAILED,
                StepError(category=FailureCategory.UNKNOWN, message=f"worker crashed: {error}"),
                final=True,
            )

    def _emit(self, status: StepStatus, error: StepError | None = None, *, final: bool = False) -> None:
        self._events.put(
            StepEvent(
                step_id=self._step.id,
                plan_version=self._version,
                status=status,
                attempts=self._attempts,
                resource_attempts=self._resource_attempts,
                error=error,
                final=final,
            )
        )

    def _cancelled(self, *, started: bool) -> None:
        error = StepError(
            category=FailureCategory.UNKNOWN,
            message=self._cancel.reason or "cancelled",
            cancelled=True,
        )
        self._emit(StepStatus.FAILED if started else StepStatus.SKIPPED, error, final=True)

    def _run(self) -> None:
        step = self._step
        if self._cancel.cancelled:
            self._cancelled(started=False)
            return

        try:
            self._approval.await_approval(step, self._cancel)
        except (ApprovalTimeout, ApprovalRejected) as error:
            self._emit(
                StepStatus.FAILED,
                StepError(category=FailureCategory.UNKNOWN, message=str(error)),
                final=True,
            )
            return
        if self._cancel.cancelled:
            self._cancelled(started=False)
            return

        max_retries = self._controller.policy.max_retries
        if self._attempts >= max_retries:
            self._emit(
                StepStatus.FAILED,
                step.last_error
                or StepError(category=FailureCategory.UNKNOWN, message="retry budget exhausted"),
                final=True,
            )
            return

        history: list[AttemptRecord] = []
        pending_fix: BaseAction | None = None
        while True:
            self._attempts += 1
            self._emit(StepStatus.RUNNING)
            outcome = self._attempt(pending_fix)
            if self._cancel.cancelled:
                self._cancelled(started=True)
                return

            report = self._gate.verify(step, outcome)
            if report.passed:
                self._emit(StepStatus.SUCCEEDED, final=True)
                return

            category = self._controller.classify(outcome, report)
            diagnostics = report.format_summary()
            decision = self._controller.decide(
                category,
                attempts=self._attempts,
                resource_attempts=self._resource_attempts,
            )
            error = StepError(category=category, message=diagnostics)
            history.append(
                AttemptRecord(
                    attempt=self._attempts,
                    category=category,
                    diagnostics=diagnostics,
                    fix=pending_fix.summary() if pending_fix else None,
                )
            )
            if not decision.retry:
                LOGGER.info("Step %s failed (%s): %s", step.id, category.value, decision.reason)
                self._emit(StepStatus.FAILED, error, final=True)
                return

            LOGGER.info(
                "Step %s attempt %d failed (%s); retrying",
                step.id,
                self._attempts,
                category.value,
            )
            self._emit(StepStatus.RETRYING, error)
            pending_fix = None
            if decision.request_fix:
                try:
                    pending_fix = self._controller.request_fix(step, category, diagnostics, history)
                except StepExecutionError as fix_error:
                    LOGGER.warning("Discarding fix for step %s: %s", step.id, fix_error)
                    history[-1].fix = f"rejected: {fix_error}"
            else:
                self._resource_attempts += 1
                backoff = self._controller.policy.backoff_seconds
                if backoff > 0:
                    self._cancel.wait(backoff)
            if self._cancel.cancelled:
                self._cancelled(started=True)
                return

    def _attempt(self, fix: BaseAction | None) -> Outcome:
        step = self._step
        if fix is not None:
            fix_outcome = self._invoke(lambda: fix.execute(self._executor, step, self._cancel))
            if not fix_outcome.success:
                return fix_outcome
        return self._invoke(lambda: self._executor.perform(step, self._cancel))

    def _invoke(self, call: Callable[[], Any]) -> Outcome:
        try:
            result = call()
        except StepExecutionError as error:
            return Outcome(
                success=False,
                diagnostics=str(error),
                category_hint=_category_or_none(error.category),
            )
        except Exception as error:  # noqa: BLE001 - executor faults become step failures
            return Outcome(success=False, diagnostics=f"{type(error).__name__}: {error}")
        if isinstance(result, Outcome):
            return result
        if isinstance(result, Mapping):
            try:
                return Outcome.model_validate(dict(result))
            except ValueError as error:
                return Outcome(success=False, diagnostics=f"Malformed outcome: {error}")
        return Outcome(success=False, diagnostics=f"Action executor returned {type(result).__name__}")


def _category_or_none(value: str | None) -> FailureCategory | None:
    if value is None:
        return None
    try:
        return FailureCategory(value)
    except ValueError:
        return None


class PlanExecutor:
    """Drive a plan to a terminal status."""

    def __init__(
        self,
        action_executor: ActionExecutor,
        *,
        checker: CriterionChecker | None = None,
        oracle: ReasoningOracle | None = None,
        controller: SelfCorrectionController | None = None,
        approval_gate: ApprovalGate | None = None,
        tracker: StateTracker | None = None,
        parallelism: int = DEFAULT_PARALLELISM,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        replan_hook: ReplanHook | None = None,
        max_replans: int = 0,
    ) -> None:
        if checker is None:
            from ..tools.criteria import BuiltinCriterionChecker

            checker = BuiltinCriterionChecker()
        self._action_executor = action_executor
        self._gate = VerificationGate(checker)
        self._controller = controller or SelfCorrectionController(oracle)
        self._approval = approval_gate or ApprovalGate()
        self._tracker = tracker or StateTracker()
        self._parallelism = max(int(parallelism), 1)
        self._poll_interval = max(float(poll_interval), 0.01)
        if replan_hook is None and oracle is not None and max_replans > 0:
            replan_hook = OracleReplanner(oracle)
        self._replan_hook = replan_hook
        self._max_replans = max(int(max_replans), 0)
        self._cancel = CancellationToken()

    @property
    def tracker(self) -> StateTracker:
        return self._tracker

    @property
    def cancellation(self) -> CancellationToken:
        return self._cancel

    # ------------------------------------------------------------------ public
    def cancel(self, reason: str = "cancelled") -> None:
        """Cancel the running plan; in-flight steps fail, the rest are skipped.

        The token is replaced at the start of every run, so a cancelled
        executor can execute or resume again.
        """
        LOGGER.info("Cancellation requested: %s", reason)
        self._cancel.cancel(reason)

    def execute(self, plan: Plan) -> PlanExecutionSummary:
        """Validate and run ``plan``.

        Raises :class:`PlanValidationError` before anything is dispatched when
        the dependency graph is malformed. Every other failure is reported
        through the returned summary.
        """
        DependencyResolver(plan).validate()
        self._cancel = CancellationToken()
        return self._run(plan.model_copy(deep=True))

    def resume(self, live_plan: Plan | None = None, *, plan_id: str | None = None) -> PlanExecutionSummary:
        """Continue a plan from its last snapshot."""
        if live_plan is not None:
            DependencyResolver(live_plan).validate()
        restored = self._tracker.resume(live_plan, plan_id=plan_id)
        DependencyResolver(restored).validate()
        self._tracker.clear_cancellation(restored.id)
        self._cancel = CancellationToken()
        return self._run(restored)

    # ----------------------------------------------------------------- helpers
    def _run(self, plan: Plan) -> PlanExecutionSummary:
        resolver = DependencyResolver(plan)
        levels = resolver.levels()
        summary = PlanExecutionSummary(plan=plan, levels=levels)
        plan.status = PlanStatus.RUNNING
        self._record(plan)
        LOGGER.info(
            "Executing plan %s (version %d): %d step(s) in %d level(s)",
            plan.id,
            plan.version,
            len(plan.steps),
            len(levels),
        )

        events: "queue.Queue[StepEvent]" = queue.Queue()
        with ThreadPoolExecutor(
            max_workers=self._parallelism,
            thread_name_prefix="planexec-step",
        ) as pool:
            index = 0
            while index < len(levels):
                self._poll_external_cancel(plan)
                if self._cancel.cancelled:
                    break
                self._run_level(plan, resolver, levels[index], index, pool, events, summary)
                if self._cancel.cancelled:
                    break
                level_failed = any(plan.get_step(step_id).status == StepStatus.FAILED for step_id in levels[index])
                if level_failed and self._replan_hook is not None and summary.replans < self._max_replans:
                    replacement = self._replan(plan)
                    if replacement is not None:
                        summary.replans += 1
                        plan = replacement
                        summary.plan = plan
                        resolver = DependencyResolver(plan)
                        levels = resolver.levels()
                        summary.levels = levels
                        index = 0
                        continue
                index += 1

        if self._cancel.cancelled:
            self._finish_cancelled(plan)
        else:
            plan.status = plan.derive_status()
            plan.updated_at = utc_now()
            self._record(plan)

        summary.failures = plan.failures()
        summary.resumable = self._tracker.resumable
        LOGGER.info("Plan %s finished with status %s", plan.id, plan.status.value)
        return summary

    def _run_level(
        self,
        plan: Plan,
        resolver: DependencyResolver,
        level: Sequence[str],
        index: int,
        pool: ThreadPoolExecutor,
        events: "queue.Queue[StepEvent]",
        summary: PlanExecutionSummary,
    ) -> None:
        outstanding: set[str] = set()
        for step_id in level:
            step = plan.get_step(step_id)
            if step.terminal:
                continue
            blocker = self._unsatisfied_dependency(plan, step)
            if blocker is not None:
                self._transition(
                    plan,
                    step,
                    StepStatus.SKIPPED,
                    StepError(
                        category=FailureCategory.UNKNOWN,
                        message=f"dependency '{blocker}' did not succeed",
                    ),
                )
                continue
            self._transition(plan, step, StepStatus.READY)
            worker = _StepWorker(
                step=step.model_copy(deep=True),
                plan_version=plan.version,
                events=events,
                action_executor=self._action_executor,
                gate=self._gate,
                controller=self._controller,
                approval=self._approval,
                cancel=self._cancel,
            )
            pool.submit(worker)
            outstanding.add(step_id)
            summary.dispatched.append(step_id)

        if outstanding:
            LOGGER.info("Level %d: dispatched %s", index, ", ".join(sorted(outstanding)))

        while outstanding:
            try:
                event = events.get(timeout=self._poll_interval)
            except queue.Empty:
                self._poll_external_cancel(plan)
                continue
            if event.plan_version != plan.version:
                summary.stale_events += 1
                LOGGER.warning(
                    "Discarding event for step %s from plan version %d (live version %d)",
                    event.step_id,
                    event.plan_version,
                    plan.version,
                )
                continue
            self._apply_event(plan, resolver, event)
            if event.final:
                outstanding.discard(event.step_id)
            self._poll_external_cancel(plan)

    def _apply_event(self, plan: Plan, resolver: DependencyResolver, event: StepEvent) -> None:
        step = plan.get_step(event.step_id)
        if step.terminal:
            LOGGER.debug("Ignoring %s event for terminal step %s", event.status.value, step.id)
            return
        step.attempts = event.attempts
        step.resource_attempts = event.resource_attempts
        self._transition(plan, step, event.status, event.error)
        if event.status == StepStatus.FAILED and not (event.error and event.error.cancelled):
            self._propagate_skips(plan, resolver, step)

    def _transition(
        self,
        plan: Plan,
        step: Step,
        status: StepStatus,
        error: StepError | None = None,
    ) -> None:
        LOGGER.debug("Step %s: %s -> %s (attempts=%d)", step.id, step.status.value, status.value, step.attempts)
        step.status = status
        if error is not None:
            step.last_error = error
        elif status == StepStatus.SUCCEEDED:
            step.last_error = None
        # Terminal plan status is derived only once the run ends.
        if plan.status != PlanStatus.CANCELLED:
            plan.status = PlanStatus.RUNNING
        plan.updated_at = utc_now()
        self._record(plan)

    def _propagate_skips(self, plan: Plan, resolver: DependencyResolver, failed: Step) -> None:
        frontier = [failed.id]
        visited: set[str] = set()
        while frontier:
            current = frontier.pop(0)
            for dependent_id in resolver.dependents(current):
                if dependent_id in visited:
                    continue
                dependent = plan.get_step(dependent_id)
                if current not in dependent.depends_on:
                    continue
                visited.add(dependent_id)
                if dependent.status != StepStatus.PENDING:
                    continue
                self._transition(
                    plan,
                    dependent,
                    StepStatus.SKIPPED,
                    StepError(
                        category=FailureCategory.UNKNOWN,
                        message=f"dependency '{current}' did not succeed",
                    ),
                )
                if not dependent.skip_tolerant:
                    frontier.append(dependent_id)

    @staticmethod
    def _unsatisfied_dependency(plan: Plan, step: Step) -> str | None:
        for dependency_id in step.depends_on:
            dependency = plan.get_step(dependency_id)
            if dependency.status == StepStatus.SUCCEEDED:
                continue
            if dependency.status == StepStatus.SKIPPED and dependency.skip_tolerant:
                continue
            return dependency_id
        return None

    def _poll_external_cancel(self, plan: Plan) -> None:
        if self._cancel.cancelled:
            return
        if self._tracker.cancellation_requested(plan.id):
            self.cancel("cancellation requested")

    def _finish_cancelled(self, plan: Plan) -> None:
        reason = self._cancel.reason or "cancelled"
        for step in plan.steps:
            if step.terminal:
                continue
            step.status = StepStatus.SKIPPED
            step.last_error = StepError(category=FailureCategory.UNKNOWN, message=reason, cancelled=True)
        plan.status = PlanStatus.CANCELLED
        plan.updated_at = utc_now()
        self._record(plan)

    def _replan(self, plan: Plan) -> Plan | None:
        assert self._replan_hook is not None  # Narrow for type checkers.
        failures = plan.failures()
        try:
            proposal = self._replan_hook(plan.model_copy(deep=True), failures)
        except Exception as error:  # noqa: BLE001 - the hook is an untrusted collaborator
            LOGGER.warning("Replan hook failed for plan %s: %s", plan.id, error)
            return None
        if proposal is None:
            return None
        try:
            candidate = coerce_plan(proposal)
            DependencyResolver(candidate).validate()
        except PlanValidationError as error:
            LOGGER.warning("Rejected replacement plan for %s: %s", plan.id, error)
            return None

        previous = {step.id: step for step in plan.steps}
        for step in candidate.steps:
            prior = previous.get(step.id)
            carried = (
                prior is not None
                and prior.status == StepStatus.SUCCEEDED
                and prior.definition_signature() == step.definition_signature()
            )
            if carried:
                step.status = prior.status
                step.attempts = prior.attempts
                step.resource_attempts = prior.resource_attempts
                step.last_error = None
            else:
                step.status = StepStatus.PENDING
                step.attempts = 0
                step.resource_attempts = 0
                step.last_error = None

        candidate.id = plan.id
        candidate.goal = candidate.goal or plan.goal
        candidate.version = plan.version + 1
        candidate.created_at = plan.created_at
        candidate.status = PlanStatus.RUNNING
        candidate.updated_at = utc_now()
        LOGGER.info("Adopted replacement plan %s version %d", candidate.id, candidate.version)
        self._record(candidate)
        return candidate

    def _record(self, plan: Plan) -> None:
        self._tracker.record(plan)


__all__ = [
    "OracleReplanner",
    "PlanExecutionSummary",
    "PlanExecutor",
    "ReplanHook",
    "StepEvent",
]
