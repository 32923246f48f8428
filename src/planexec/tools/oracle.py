"""Offline reasoning oracle driven by hints embedded in the plan."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from ..memory.schema import FailureCategory, Plan, Step
from ..planning.interfaces import AttemptRecord

LOGGER = logging.getLogger(__name__)


class OfflineOracle:
    """Deterministic oracle that needs no model access.

    Fixes come from ``step.metadata["fixes"]`` (a list consumed one entry per
    attempt) or ``step.metadata["fix"]`` (reused for every attempt). Replans
    return the ``replacement`` plan given at construction, if any.
    """

    def __init__(self, replacement: Plan | Mapping[str, Any] | None = None) -> None:
        self._replacement = replacement

    def propose_plan(self, goal: str, context: Mapping[str, Any]) -> Plan | Mapping[str, Any] | None:
        if self._replacement is None:
            LOGGER.debug("No replacement plan available for goal %r", goal)
        return self._replacement

    def propose_fix(
        self,
        step: Step,
        failure_category: FailureCategory,
        diagnostics: str,
        prior_attempts: Sequence[AttemptRecord],
    ) -> Mapping[str, Any] | None:
        metadata = step.metadata or {}
        fixes = metadata.get("fixes")
        if isinstance(fixes, list) and fixes:
            index = len(prior_attempts) - 1
            if 0 <= index < len(fixes):
                return fixes[index]
            return None
        fix = metadata.get("fix")
        if isinstance(fix, Mapping):
            return fix
        return None


__all__ = ["OfflineOracle"]
