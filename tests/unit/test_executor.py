from __future__ import annotations

import queue
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from conftest import ArtifactChecker, RecordingOracle, ScriptedExecutor, build_plan
from planexec.errors import PersistenceError, PlanValidationError, StepExecutionError
from planexec.memory.schema import (
    FailureCategory,
    Outcome,
    PlanSnapshot,
    PlanStatus,
    StepStatus,
)
from planexec.memory.snapshots import FileSnapshotStore
from planexec.memory.store import MemoryStore
from planexec.planning.approval import ApprovalGate, ApprovalInbox, ApprovalPolicy, ApprovalSettings
from planexec.planning.correction import CorrectionPolicy, SelfCorrectionController
from planexec.planning.executor import PlanExecutionSummary, PlanExecutor, StepEvent
from planexec.planning.resolver import DependencyResolver
from planexec.planning.state import StateTracker


class RecordingStore:
    """Snapshot store keeping every saved snapshot in memory."""

    def __init__(self) -> None:
        self.snapshots: list[PlanSnapshot] = []

    def save(self, snapshot: PlanSnapshot) -> None:
        self.snapshots.append(snapshot)

    def load(self, plan_id: str) -> PlanSnapshot | None:
        for snapshot in reversed(self.snapshots):
            if snapshot.plan_id == plan_id:
                return snapshot
        return None


class FailingStore:
    def save(self, snapshot: PlanSnapshot) -> None:
        raise PersistenceError("read-only filesystem")

    def load(self, plan_id: str) -> PlanSnapshot | None:
        return None


def _executor(action_executor: ScriptedExecutor, **kwargs) -> PlanExecutor:
    kwargs.setdefault("checker", ArtifactChecker())
    kwargs.setdefault("poll_interval", 0.02)
    return PlanExecutor(action_executor, **kwargs)


def _blocking(started: threading.Event):
    def perform(step, cancel) -> Outcome:
        started.set()
        cancel.wait(5)
        return Outcome(success=True)

    return perform


def test_retries_until_verification_passes() -> None:
    plan = build_plan("example-c", [("S", [])], criteria={"S": ["tests green"]})
    actions = ScriptedExecutor(
        {
            "S": [
                Outcome(success=True, artifacts={"tests green": False}),
                Outcome(success=True, artifacts={"tests green": False}),
                Outcome(success=True, artifacts={"tests green": True}),
            ]
        }
    )

    summary = _executor(actions).execute(plan)

    step = summary.plan.get_step("S")
    assert summary.plan.status == PlanStatus.COMPLETED
    assert summary.exit_code == 0
    assert step.status == StepStatus.SUCCEEDED
    assert step.attempts == 3
    assert step.last_error is None
    assert actions.count("S") == 3


def test_unknown_failure_skips_dependents() -> None:
    plan = build_plan("example-d", [("A", []), ("B", ["A"])])
    actions = ScriptedExecutor({"A": [Outcome(success=False, diagnostics="worker crashed with signal 11")]})

    summary = _executor(actions).execute(plan)

    a_step = summary.plan.get_step("A")
    b_step = summary.plan.get_step("B")
    assert a_step.status == StepStatus.FAILED
    assert a_step.attempts == 1
    assert a_step.last_error is not None
    assert a_step.last_error.category == FailureCategory.UNKNOWN
    assert b_step.status == StepStatus.SKIPPED
    assert actions.calls == ["A"]
    assert summary.dispatched == ["A"]
    assert summary.plan.status == PlanStatus.FAILED
    assert summary.exit_code == 1
    assert [(failure.step_id, failure.category) for failure in summary.failures] == [
        ("A", FailureCategory.UNKNOWN)
    ]


def test_skips_propagate_transitively() -> None:
    plan = build_plan("chain", [("A", []), ("B", ["A"]), ("C", ["B"]), ("D", [])])
    actions = ScriptedExecutor({"A": [Outcome(success=False, diagnostics="fatal")]})

    summary = _executor(actions).execute(plan)

    assert summary.plan.get_step("B").status == StepStatus.SKIPPED
    assert summary.plan.get_step("C").status == StepStatus.SKIPPED
    assert summary.plan.get_step("D").status == StepStatus.SUCCEEDED
    assert "B" not in actions.calls and "C" not in actions.calls


def test_skip_tolerant_step_lets_dependents_run() -> None:
    plan = build_plan(
        "tolerant",
        [("A", []), ("B", ["A"]), ("C", ["B"])],
        B={"skip_tolerant": True},
    )
    actions = ScriptedExecutor({"A": [Outcome(success=False, diagnostics="fatal")]})

    summary = _executor(actions).execute(plan)

    assert summary.plan.get_step("B").status == StepStatus.SKIPPED
    assert summary.plan.get_step("C").status == StepStatus.SUCCEEDED
    assert summary.plan.status == PlanStatus.FAILED


def test_no_step_runs_before_its_dependencies_succeed() -> None:
    plan = build_plan("diamond", [("A", []), ("B", ["A"]), ("C", ["A"]), ("D", ["B", "C"])])
    store = RecordingStore()

    summary = _executor(ScriptedExecutor(delay=0.01), tracker=StateTracker(store)).execute(plan)

    assert summary.plan.status == PlanStatus.COMPLETED
    assert store.snapshots
    for snapshot in store.snapshots:
        for step in snapshot.plan.steps:
            if step.status in {StepStatus.READY, StepStatus.RUNNING}:
                for dependency in step.depends_on:
                    assert snapshot.plan.get_step(dependency).status == StepStatus.SUCCEEDED
    assert store.snapshots[-1].plan.status == PlanStatus.COMPLETED


def test_worker_pool_respects_parallelism() -> None:
    plan = build_plan("wide", [(f"S{index}", []) for index in range(6)])
    actions = ScriptedExecutor(delay=0.05)

    summary = _executor(actions, parallelism=2).execute(plan)

    assert summary.plan.status == PlanStatus.COMPLETED
    assert 1 <= actions.max_active <= 2
    assert sorted(actions.calls) == sorted(plan.step_ids)


def test_retry_budget_is_bounded() -> None:
    plan = build_plan("stubborn", [("S", [])], criteria={"S": ["tests green"]})
    actions = ScriptedExecutor({"S": [Outcome(success=True, artifacts={"tests green": False})]})
    controller = SelfCorrectionController(policy=CorrectionPolicy(max_retries=3))

    summary = _executor(actions, controller=controller).execute(plan)

    step = summary.plan.get_step("S")
    assert step.status == StepStatus.FAILED
    assert step.attempts == 3
    assert step.last_error is not None
    assert step.last_error.category == FailureCategory.ASSERTION_FAILURE
    assert actions.count("S") == 3


def test_resource_failures_back_off_without_fixes() -> None:
    plan = build_plan("slow", [("S", [])])
    timeout = Outcome(
        success=False,
        diagnostics="Command timed out",
        category_hint=FailureCategory.TIMEOUT_OR_RESOURCE,
    )
    actions = ScriptedExecutor({"S": [timeout]})
    oracle = RecordingOracle(fix={"kind": "run", "command": ["true"]})
    controller = SelfCorrectionController(
        oracle,
        policy=CorrectionPolicy(max_retries=5, max_resource_retries=2, backoff_seconds=0.01),
    )

    summary = _executor(actions, controller=controller).execute(plan)

    step = summary.plan.get_step("S")
    assert step.status == StepStatus.FAILED
    assert step.attempts == 3
    assert step.resource_attempts == 2
    assert oracle.fix_requests == []
    assert actions.fixes == []


def test_oracle_fix_is_applied_before_the_retry() -> None:
    plan = build_plan("fixable", [("S", [])])
    actions = ScriptedExecutor(
        {"S": [Outcome(success=False, diagnostics="SyntaxError: invalid syntax"), Outcome(success=True)]}
    )
    oracle = RecordingOracle(fix={"kind": "edit", "targets": ["app.py"], "content": "x = 1\n"})

    summary = _executor(actions, oracle=oracle).execute(plan)

    step = summary.plan.get_step("S")
    assert step.status == StepStatus.SUCCEEDED
    assert step.attempts == 2
    assert len(oracle.fix_requests) == 1
    assert oracle.fix_requests[0][1] == FailureCategory.SYNTAX
    assert [(step_id, action.kind) for step_id, action in actions.fixes] == [("S", "edit")]


def test_malformed_fix_consumes_the_attempt() -> None:
    plan = build_plan("malformed", [("S", [])])
    actions = ScriptedExecutor(
        {"S": [Outcome(success=False, diagnostics="SyntaxError: invalid syntax"), Outcome(success=True)]}
    )
    oracle = RecordingOracle(fix={"kind": "teleport"})

    summary = _executor(actions, oracle=oracle).execute(plan)

    step = summary.plan.get_step("S")
    assert step.status == StepStatus.SUCCEEDED
    assert step.attempts == 2
    assert actions.fixes == []


def test_failed_fix_counts_as_the_attempt_outcome() -> None:
    plan = build_plan("bad-fix", [("S", [])])
    actions = ScriptedExecutor(
        {"S": [Outcome(success=False, diagnostics="SyntaxError: invalid syntax")]},
        fix_outcome=Outcome(success=False, diagnostics="SyntaxError: still broken"),
    )
    oracle = RecordingOracle(fix={"kind": "edit", "targets": ["app.py"], "content": "x ="})

    summary = _executor(actions, oracle=oracle).execute(plan)

    step = summary.plan.get_step("S")
    assert step.status == StepStatus.FAILED
    assert step.attempts == 3
    assert actions.count("S") == 1
    assert len(actions.fixes) == 2


def test_executor_exceptions_become_step_failures() -> None:
    plan = build_plan("raising", [("A", []), ("B", [])])
    actions = ScriptedExecutor(
        {
            "A": [RuntimeError("kaboom")],
            "B": [StepExecutionError("tool missing", category="missing-dependency"), Outcome(success=True)],
        }
    )

    summary = _executor(actions).execute(plan)

    a_step = summary.plan.get_step("A")
    assert a_step.status == StepStatus.FAILED
    assert a_step.last_error is not None
    assert "kaboom" in a_step.last_error.message
    assert summary.plan.get_step("B").status == StepStatus.SUCCEEDED
    assert summary.plan.get_step("B").attempts == 2


def test_approval_timeout_fails_without_attempts() -> None:
    plan = build_plan("guarded", [("deploy", []), ("notify", ["deploy"])])
    gate = ApprovalGate(
        ApprovalSettings(policy=ApprovalPolicy.MANUAL, timeout_seconds=0.05),
        source=ApprovalInbox(),
    )
    actions = ScriptedExecutor()

    summary = _executor(actions, approval_gate=gate).execute(plan)

    deploy = summary.plan.get_step("deploy")
    assert deploy.status == StepStatus.FAILED
    assert deploy.attempts == 0
    assert deploy.last_error is not None
    assert deploy.last_error.category == FailureCategory.UNKNOWN
    assert summary.plan.get_step("notify").status == StepStatus.SKIPPED
    assert actions.calls == []


def test_risk_based_approval_only_blocks_risky_steps() -> None:
    plan = build_plan("risky", [("safe", []), ("danger", [])], danger={"risk_score": 0.9})
    inbox = ApprovalInbox()
    inbox.submit("danger", False, "no")
    gate = ApprovalGate(
        ApprovalSettings(policy=ApprovalPolicy.RISK_BASED, risk_threshold=0.5, timeout_seconds=1),
        source=inbox,
    )
    actions = ScriptedExecutor()

    summary = _executor(actions, approval_gate=gate).execute(plan)

    assert summary.plan.get_step("safe").status == StepStatus.SUCCEEDED
    assert summary.plan.get_step("danger").status == StepStatus.FAILED
    assert actions.calls == ["safe"]


def test_cancel_fails_in_flight_and_skips_the_rest() -> None:
    plan = build_plan("cancelled", [("A", []), ("B", ["A"])])
    started = threading.Event()
    actions = ScriptedExecutor({"A": [_blocking(started)]})
    executor = _executor(actions)
    result: dict[str, PlanExecutionSummary] = {}

    runner = threading.Thread(target=lambda: result.setdefault("summary", executor.execute(plan)))
    runner.start()
    assert started.wait(5)
    executor.cancel("operator request")
    runner.join(10)

    summary = result["summary"]
    a_step = summary.plan.get_step("A")
    assert summary.plan.status == PlanStatus.CANCELLED
    assert summary.exit_code == 1
    assert a_step.status == StepStatus.FAILED
    assert a_step.last_error is not None and a_step.last_error.cancelled
    assert summary.plan.get_step("B").status == StepStatus.SKIPPED
    assert actions.calls == ["A"]


def test_cancellation_requested_through_the_store(tmp_path) -> None:
    plan = build_plan("remote-cancel", [("A", []), ("B", ["A"])])
    started = threading.Event()
    actions = ScriptedExecutor({"A": [_blocking(started)]})

    with MemoryStore(tmp_path / "planexec.sqlite") as store:
        executor = _executor(actions, tracker=StateTracker(store))
        result: dict[str, PlanExecutionSummary] = {}
        runner = threading.Thread(target=lambda: result.setdefault("summary", executor.execute(plan)))
        runner.start()
        assert started.wait(5)
        assert store.request_cancel(plan.id)
        runner.join(10)

        stored = store.load(plan.id)

    assert result["summary"].plan.status == PlanStatus.CANCELLED
    assert stored is not None
    assert stored.plan.status == PlanStatus.CANCELLED


def test_resume_skips_succeeded_steps(tmp_path) -> None:
    edges = [("A", []), ("B", ["A"]), ("C", ["B"])]
    store = FileSnapshotStore(tmp_path)
    started = threading.Event()
    first = ScriptedExecutor({"B": [_blocking(started)]})
    interrupted = _executor(first, tracker=StateTracker(store))
    result: dict[str, PlanExecutionSummary] = {}

    runner = threading.Thread(
        target=lambda: result.setdefault("summary", interrupted.execute(build_plan("resumable", edges)))
    )
    runner.start()
    assert started.wait(5)
    interrupted.cancel()
    runner.join(10)
    assert result["summary"].plan.status == PlanStatus.CANCELLED

    second = ScriptedExecutor()
    resumed = _executor(second, tracker=StateTracker(store)).resume(build_plan("resumable", edges))
    uninterrupted = _executor(ScriptedExecutor()).execute(build_plan("resumable", edges))

    assert second.calls == ["B", "C"]
    assert resumed.plan.status == PlanStatus.COMPLETED
    assert [step.status for step in resumed.plan.steps] == [step.status for step in uninterrupted.plan.steps]
    assert resumed.plan.get_step("B").attempts == 1


def test_persistence_failure_does_not_abort_the_run() -> None:
    plan = build_plan("volatile", [("A", []), ("B", ["A"])])

    summary = _executor(ScriptedExecutor(), tracker=StateTracker(FailingStore())).execute(plan)

    assert summary.plan.status == PlanStatus.COMPLETED
    assert summary.resumable is False


def test_invalid_plan_is_rejected_before_dispatch() -> None:
    plan = build_plan("cyclic", [("A", ["B"]), ("B", ["A"])])
    actions = ScriptedExecutor()

    with pytest.raises(PlanValidationError) as excinfo:
        _executor(actions).execute(plan)

    assert excinfo.value.cycle_members == ["A", "B"]
    assert actions.calls == []


def test_stale_version_events_are_discarded() -> None:
    plan = build_plan("fenced", [("A", [])])
    plan.version = 2
    executor = _executor(ScriptedExecutor())
    events: queue.Queue[StepEvent] = queue.Queue()
    events.put(StepEvent(step_id="A", plan_version=1, status=StepStatus.FAILED, attempts=1, final=True))
    summary = PlanExecutionSummary(plan=plan)

    with ThreadPoolExecutor(max_workers=1) as pool:
        executor._run_level(plan, DependencyResolver(plan), ["A"], 0, pool, events, summary)

    assert summary.stale_events == 1
    assert plan.get_step("A").status == StepStatus.SUCCEEDED


def test_replan_replaces_failed_steps_and_keeps_finished_work() -> None:
    plan = build_plan("replanned", [("A", []), ("B", ["A"])])
    replacement = build_plan("replanned", [("A", []), ("B2", ["A"])]).model_dump(mode="json")
    seen_failures: list[list[str]] = []

    def hook(current, failures):
        seen_failures.append([failure.step_id for failure in failures])
        return replacement

    actions = ScriptedExecutor({"B": [Outcome(success=False, diagnostics="fatal")]})

    summary = _executor(actions, replan_hook=hook, max_replans=1).execute(plan)

    assert seen_failures == [["B"]]
    assert summary.replans == 1
    assert summary.plan.version == 2
    assert summary.plan.step_ids == ["A", "B2"]
    assert summary.plan.status == PlanStatus.COMPLETED
    assert actions.count("A") == 1
    assert actions.count("B2") == 1


def test_invalid_replan_is_ignored() -> None:
    plan = build_plan("bad-replan", [("A", [])])
    actions = ScriptedExecutor({"A": [Outcome(success=False, diagnostics="fatal")]})

    summary = _executor(
        actions,
        replan_hook=lambda current, failures: {"id": "bad-replan", "goal": "x", "steps": "nope"},
        max_replans=2,
    ).execute(plan)

    assert summary.replans == 0
    assert summary.plan.version == 1
    assert summary.plan.status == PlanStatus.FAILED


def test_plan_stays_running_until_the_replan_settles() -> None:
    plan = build_plan("recovering", [("A", []), ("X", [])])
    replacement = build_plan("recovering", [("A2", []), ("X", [])]).model_dump(mode="json")
    store = RecordingStore()
    actions = ScriptedExecutor({"A": [Outcome(success=False, diagnostics="fatal")]})

    summary = _executor(
        actions,
        tracker=StateTracker(store),
        replan_hook=lambda current, failures: replacement,
        max_replans=1,
    ).execute(plan)

    assert summary.plan.status == PlanStatus.COMPLETED
    assert store.snapshots[-1].plan.status == PlanStatus.COMPLETED
    assert all(snapshot.plan.status == PlanStatus.RUNNING for snapshot in store.snapshots[:-1])
    assert any(
        snapshot.version == 1 and snapshot.plan.get_step("A").status == StepStatus.FAILED
        for snapshot in store.snapshots
    )


def test_failed_status_is_persisted_only_when_the_run_ends() -> None:
    plan = build_plan("sibling", [("A", []), ("X", [])])
    store = RecordingStore()
    actions = ScriptedExecutor({"A": [Outcome(success=False, diagnostics="fatal")]}, delay=0.05)

    summary = _executor(actions, tracker=StateTracker(store)).execute(plan)

    assert summary.plan.status == PlanStatus.FAILED
    assert store.snapshots[-1].plan.status == PlanStatus.FAILED
    assert [snapshot.plan.status for snapshot in store.snapshots[:-1]] == [PlanStatus.RUNNING] * (
        len(store.snapshots) - 1
    )


def test_cancelled_executor_can_resume_the_same_plan(tmp_path) -> None:
    edges = [("A", []), ("B", ["A"])]
    started = threading.Event()
    actions = ScriptedExecutor({"A": [_blocking(started), Outcome(success=True)]})
    executor = _executor(actions, tracker=StateTracker(FileSnapshotStore(tmp_path)))
    result: dict[str, PlanExecutionSummary] = {}

    runner = threading.Thread(
        target=lambda: result.setdefault("summary", executor.execute(build_plan("again", edges)))
    )
    runner.start()
    assert started.wait(5)
    executor.cancel("operator request")
    runner.join(10)
    assert result["summary"].plan.status == PlanStatus.CANCELLED

    resumed = executor.resume(build_plan("again", edges))

    assert resumed.plan.status == PlanStatus.COMPLETED
    assert [step.status for step in resumed.plan.steps] == [StepStatus.SUCCEEDED, StepStatus.SUCCEEDED]
    assert actions.calls == ["A", "A", "B"]


def test_cancelled_executor_runs_a_new_plan() -> None:
    started = threading.Event()
    actions = ScriptedExecutor({"A": [_blocking(started), Outcome(success=True)]})
    executor = _executor(actions)
    result: dict[str, PlanExecutionSummary] = {}

    runner = threading.Thread(
        target=lambda: result.setdefault("summary", executor.execute(build_plan("first", [("A", [])])))
    )
    runner.start()
    assert started.wait(5)
    executor.cancel()
    runner.join(10)

    summary = executor.execute(build_plan("second", [("A", []), ("B", ["A"])]))

    assert result["summary"].plan.status == PlanStatus.CANCELLED
    assert summary.plan.status == PlanStatus.COMPLETED
