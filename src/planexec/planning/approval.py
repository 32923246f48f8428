"""Human checkpoint evaluated before a step is dispatched."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from ..errors import ApprovalRejected, ApprovalTimeout
from ..memory.schema import Step
from .cancellation import CancellationToken
from .interfaces import ApprovalDecision, ApprovalSource

if TYPE_CHECKING:
    from ..memory.store import MemoryStore

LOGGER = logging.getLogger(__name__)

RiskScorer = Callable[[Step], float]

_WAIT_SLICE_SECONDS = 0.1


class ApprovalPolicy(str, Enum):
    """When the gate blocks a step pending an approval signal."""

    AUTO = "auto"
    MANUAL = "manual"
    RISK_BASED = "risk-based"


@dataclass(slots=True)
class ApprovalSettings:
    """Runtime configuration for the approval gate."""

    policy: ApprovalPolicy = ApprovalPolicy.AUTO
    risk_threshold: float = 0.5
    timeout_seconds: float | None = None


class ApprovalInbox:
    """In-process approval source fed by :meth:`submit`."""

    def __init__(self) -> None:
        self._condition = threading.Condition()
        self._decisions: dict[str, ApprovalDecision] = {}
        self._waiting: set[str] = set()

    def submit(self, step_id: str, approved: bool, note: str = "") -> None:
        with self._condition:
            self._decisions[step_id] = ApprovalDecision(step_id=step_id, approved=approved, note=note)
            self._condition.notify_all()

    def pending(self) -> list[str]:
        """Return the steps currently blocked on a decision."""
        with self._condition:
            return sorted(self._waiting)

    def wait_for(
        self,
        step_id: str,
        timeout: float | None,
        cancel: CancellationToken,
    ) -> ApprovalDecision | None:
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._condition:
            self._waiting.add(step_id)
            try:
                while step_id not in self._decisions:
                    if cancel.cancelled:
                        return None
                    remaining = _WAIT_SLICE_SECONDS
                    if deadline is not None:
                        left = deadline - time.monotonic()
                        if left <= 0:
                            return None
                        remaining = min(remaining, left)
                    self._condition.wait(remaining)
                return self._decisions.pop(step_id)
            finally:
                self._waiting.discard(step_id)


class StoreApprovalSource:
    """Approval source that polls decisions recorded in the SQLite store.

    Lets a separate process (``planexec approve``) release a blocked step.
    """

    def __init__(self, store: "MemoryStore", plan_id: str, *, poll_interval: float = 0.2) -> None:
        self._store = store
        self._plan_id = plan_id
        self._poll_interval = max(poll_interval, 0.01)

    def wait_for(
        self,
        step_id: str,
        timeout: float | None,
        cancel: CancellationToken,
    ) -> ApprovalDecision | None:
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            decision = self._store.pop_approval(self._plan_id, step_id)
            if decision is not None:
                return decision
            if cancel.cancelled:
                return None
            interval = self._poll_interval
            if deadline is not None:
                left = deadline - time.monotonic()
                if left <= 0:
                    return None
                interval = min(interval, left)
            cancel.wait(interval)


class ApprovalGate:
    """Decide whether a step needs approval and wait for the signal."""

    def __init__(
        self,
        settings: ApprovalSettings | None = None,
        *,
        source: ApprovalSource | None = None,
        risk_scorer: RiskScorer | None = None,
    ) -> None:
        self.settings = settings or ApprovalSettings()
        self._source = source
        self._risk_scorer = risk_scorer
        if self.settings.policy != ApprovalPolicy.AUTO and source is None:
            raise ValueError(f"Approval policy '{self.settings.policy.value}' requires an approval source.")

    def risk_of(self, step: Step) -> float:
        if self._risk_scorer is not None:
            return float(self._risk_scorer(step))
        if step.risk_score is not None:
            return float(step.risk_score)
        return 0.0

    def requires_approval(self, step: Step) -> bool:
        policy = self.settings.policy
        if policy == ApprovalPolicy.AUTO:
            return False
        if policy == ApprovalPolicy.MANUAL:
            return True
        return self.risk_of(step) > self.settings.risk_threshold

    def await_approval(self, step: Step, cancel: CancellationToken) -> ApprovalDecision | None:
        """Block until ``step`` may be dispatched.

        Returns ``None`` when no approval is needed or the wait was cancelled.
        Raises :class:`ApprovalRejected` or :class:`ApprovalTimeout` otherwise.
        """
        if not self.requires_approval(step):
            return None
        assert self._source is not None  # Narrow for type checkers.

        timeout = self.settings.timeout_seconds
        LOGGER.info("Step %s is waiting for approval (timeout=%s)", step.id, timeout)
        decision = self._source.wait_for(step.id, timeout, cancel)
        if decision is None:
            if cancel.cancelled:
                return None
            raise ApprovalTimeout(f"No approval for step '{step.id}' within {timeout} second(s).")
        if not decision.approved:
            detail = f": {decision.note}" if decision.note else ""
            raise ApprovalRejected(f"Step '{step.id}' was rejected{detail}")
        LOGGER.info("Step %s approved", step.id)
        return decision


__all__ = [
    "ApprovalGate",
    "ApprovalInbox",
    "ApprovalPolicy",
    "ApprovalSettings",
    "RiskScorer",
    "StoreApprovalSource",
]
