"""Crash-safe progress tracking and resume support."""

from __future__ import annotations

import logging

from ..errors import PersistenceError, SnapshotMismatchError
from ..memory.schema import Plan, PlanSnapshot, PlanStatus, StepStatus
from .interfaces import SnapshotStore

LOGGER = logging.getLogger(__name__)

_IN_FLIGHT = frozenset({StepStatus.READY, StepStatus.RUNNING, StepStatus.RETRYING})


class StateTracker:
    """Snapshot a plan after every transition and restore it on restart.

    Persistence failures never stop a run: they are logged, collected in
    :attr:`errors`, and flip :attr:`resumable` to ``False``.
    """

    def __init__(self, store: SnapshotStore | None = None) -> None:
        self._store = store
        self.resumable = store is not None
        self.errors: list[str] = []
        self.saves = 0

    @property
    def store(self) -> SnapshotStore | None:
        return self._store

    def record(self, plan: Plan) -> bool:
        """Persist a snapshot of ``plan``; return ``False`` when the write failed."""
        if self._store is None:
            return False
        try:
            self._store.save(PlanSnapshot.capture(plan))
        except (PersistenceError, OSError) as error:
            if self.resumable:
                LOGGER.warning(
                    "Snapshot for plan %s failed; the run continues but cannot be resumed: %s",
                    plan.id,
                    error,
                )
            else:
                LOGGER.debug("Snapshot for plan %s failed again: %s", plan.id, error)
            self.resumable = False
            self.errors.append(str(error))
            return False
        self.saves += 1
        return True

    def load(self, plan_id: str) -> PlanSnapshot | None:
        if self._store is None:
            return None
        return self._store.load(plan_id)

    def cancellation_requested(self, plan_id: str) -> bool:
        """Return ``True`` when another process asked to cancel ``plan_id``."""
        lookup = getattr(self._store, "cancel_requested", None)
        if lookup is None:
            return False
        try:
            return bool(lookup(plan_id))
        except PersistenceError as error:
            LOGGER.debug("Cancellation check for %s failed: %s", plan_id, error)
            return False

    def clear_cancellation(self, plan_id: str) -> None:
        clear = getattr(self._store, "clear_cancel", None)
        if clear is None:
            return
        try:
            clear(plan_id)
        except PersistenceError as error:
            LOGGER.warning("Could not clear cancellation flag for %s: %s", plan_id, error)

    def resume(self, live_plan: Plan | None = None, *, plan_id: str | None = None) -> Plan:
        """Rebuild the execution state of a plan from its last snapshot.

        ``live_plan`` is the current plan definition; when omitted the stored
        definition is used. Steps that already succeeded keep their status so
        they are never dispatched again. Work that was in flight or cut short by
        cancellation goes back to ``PENDING``.
        """
        target_id = live_plan.id if live_plan is not None else plan_id
        if target_id is None:
            raise ValueError("resume() needs a live plan or a plan_id")
        snapshot = self.load(target_id)
        if snapshot is None:
            if live_plan is None:
                raise SnapshotMismatchError(f"No snapshot stored for plan '{target_id}'.")
            LOGGER.info("No snapshot for plan %s; starting from scratch", target_id)
            return live_plan.model_copy(deep=True)

        stored = snapshot.plan
        live = live_plan if live_plan is not None else stored
        if snapshot.version != live.version:
            raise SnapshotMismatchError(
                f"Snapshot for plan '{target_id}' has version {snapshot.version}, "
                f"live plan has version {live.version}."
            )
        stored_signature = [step.definition_signature() for step in stored.steps]
        live_signature = [step.definition_signature() for step in live.steps]
        if stored_signature != live_signature:
            raise SnapshotMismatchError(
                f"Snapshot for plan '{target_id}' does not match the live plan definition."
            )

        restored = live.model_copy(deep=True)
        progressed = False
        for step, saved in zip(restored.steps, stored.steps):
            step.status = saved.status
            step.attempts = saved.attempts
            step.resource_attempts = saved.resource_attempts
            step.last_error = saved.last_error.model_copy() if saved.last_error else None
            cancelled = bool(saved.last_error and saved.last_error.cancelled)
            if saved.status == StepStatus.RUNNING or (saved.status == StepStatus.FAILED and cancelled):
                # The interrupted attempt never finished.
                step.attempts = max(step.attempts - 1, 0)
            if saved.status in _IN_FLIGHT or (saved.status.terminal and cancelled):
                step.status = StepStatus.PENDING
                if cancelled:
                    step.last_error = None
            if step.status != StepStatus.PENDING:
                progressed = True

        restored.status = PlanStatus.RUNNING if progressed else PlanStatus.DRAFT
        if progressed:
            restored.status = restored.derive_status()
        LOGGER.info(
            "Resuming plan %s (version %d) with %d step(s) already terminal",
            restored.id,
            restored.version,
            sum(1 for step in restored.steps if step.terminal),
        )
        return restored


__all__ = ["StateTracker"]
