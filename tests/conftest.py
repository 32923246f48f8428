from __future__ import annotations

import sys
import threading
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Sequence

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from planexec.memory.schema import Outcome, Plan, Step  # noqa: E402
from planexec.planning.interfaces import CriterionResult  # noqa: E402

ScriptItem = Outcome | Exception | Callable[..., Outcome]


def build_plan(
    plan_id: str,
    edges: Iterable[tuple[str, Sequence[str]]],
    *,
    criteria: Mapping[str, Sequence[str]] | None = None,
    **step_overrides: Mapping[str, Any],
) -> Plan:
    """Create a plan of ``run`` steps from ``(step_id, depends_on)`` pairs."""
    steps = []
    for step_id, depends_on in edges:
        payload: dict[str, Any] = {
            "id": step_id,
            "action_kind": "run",
            "description": f"step {step_id}",
            "depends_on": list(depends_on),
            "verification_criteria": list((criteria or {}).get(step_id, [])),
        }
        payload.update(step_overrides.get(step_id, {}))
        steps.append(Step.model_validate(payload))
    return Plan(id=plan_id, goal=f"goal for {plan_id}", steps=steps)


class ScriptedExecutor:
    """Action executor that replays scripted outcomes per step.

    The last scripted item repeats once the script runs out; unscripted steps
    succeed.
    """

    def __init__(
        self,
        scripts: Mapping[str, Sequence[ScriptItem]] | None = None,
        *,
        delay: float = 0.0,
        fix_outcome: Outcome | None = None,
    ) -> None:
        self.scripts = {key: list(value) for key, value in (scripts or {}).items()}
        self.delay = delay
        self.fix_outcome = fix_outcome or Outcome(success=True)
        self.calls: list[str] = []
        self.fixes: list[tuple[str, Any]] = []
        self.active = 0
        self.max_active = 0
        self.started = threading.Event()
        self._lock = threading.Lock()

    def perform(self, step: Step, cancel) -> Outcome:
        with self._lock:
            self.calls.append(step.id)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            script = self.scripts.get(step.id)
            item: ScriptItem | None = None
            if script:
                item = script.pop(0) if len(script) > 1 else script[0]
        self.started.set()
        try:
            if self.delay:
                cancel.wait(self.delay)
            if item is None:
                return Outcome(success=True)
            if isinstance(item, Exception):
                raise item
            if isinstance(item, Outcome):
                return item
            return item(step, cancel)
        finally:
            with self._lock:
                self.active -= 1

    def apply_fix(self, step: Step, action, cancel) -> Outcome:
        with self._lock:
            self.fixes.append((step.id, action))
        return self.fix_outcome

    def count(self, step_id: str) -> int:
        return self.calls.count(step_id)


class ArtifactChecker:
    """Criterion checker reading verdicts from ``outcome.artifacts``."""

    def check(self, criterion: str, outcome: Outcome) -> CriterionResult:
        passed = bool(outcome.artifacts.get(criterion, outcome.success))
        return CriterionResult(
            criterion=criterion,
            passed=passed,
            diagnostic="" if passed else "criterion not met",
        )


class RecordingOracle:
    """Oracle returning canned fixes and plans while recording every request."""

    def __init__(self, fix: Any = None, plan: Any = None) -> None:
        self.fix = fix
        self.plan = plan
        self.fix_requests: list[tuple[str, Any, str, int]] = []
        self.plan_requests: list[Mapping[str, Any]] = []

    def propose_plan(self, goal: str, context: Mapping[str, Any]) -> Any:
        self.plan_requests.append(context)
        return self.plan

    def propose_fix(self, step, failure_category, diagnostics, prior_attempts) -> Any:
        self.fix_requests.append((step.id, failure_category, diagnostics, len(prior_attempts)))
        if isinstance(self.fix, Exception):
            raise self.fix
        return self.fix


@pytest.fixture()
def checker() -> ArtifactChecker:
    return ArtifactChecker()
