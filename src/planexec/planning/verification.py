"""Verification gate evaluating a step's declared success criteria."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ..errors import VerificationFailure
from ..memory.schema import FailureCategory, Outcome, Step
from .interfaces import CriterionChecker, CriterionResult

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class VerificationReport:
    """Aggregated verdict for an action outcome plus its criteria."""

    step_id: str
    action_ok: bool
    results: list[CriterionResult] = field(default_factory=list)
    action_diagnostics: str = ""

    @property
    def passed(self) -> bool:
        return self.action_ok and all(result.passed for result in self.results)

    @property
    def failed_criteria(self) -> list[CriterionResult]:
        return [result for result in self.results if not result.passed]

    def format_summary(self) -> str:
        if self.passed:
            return f"{self.step_id}: verified ({len(self.results)} criteria)"
        lines: list[str] = []
        if not self.action_ok:
            detail = self.action_diagnostics.strip() or "action reported failure"
            lines.append(f"action failed: {detail}")
        for result in self.failed_criteria:
            detail = result.diagnostic.strip() or "criterion not met"
            lines.append(f"{result.criterion}: {detail}")
        return "\n".join(lines)

    def to_error(self) -> VerificationFailure | None:
        """Return the verification failure for a passing action, if any."""
        if not self.action_ok or self.passed:
            return None
        return VerificationFailure(
            self.format_summary(),
            category=FailureCategory.ASSERTION_FAILURE.value,
        )


class VerificationGate:
    """Invoke the external checker for every criterion declared on a step."""

    def __init__(self, checker: CriterionChecker) -> None:
        self._checker = checker

    def verify(self, step: Step, outcome: Outcome) -> VerificationReport:
        report = VerificationReport(
            step_id=step.id,
            action_ok=outcome.success,
            action_diagnostics=outcome.diagnostics,
        )
        if not outcome.success:
            return report

        for criterion in step.verification_criteria:
            report.results.append(self._check(criterion, outcome))

        if not report.passed:
            LOGGER.debug("Step %s failed verification: %s", step.id, report.format_summary())
        return report

    def _check(self, criterion: str, outcome: Outcome) -> CriterionResult:
        try:
            result = self._checker.check(criterion, outcome)
        except Exception as error:  # noqa: BLE001 - checker faults count as failed criteria
            LOGGER.warning("Criterion %r raised during evaluation: %s", criterion, error)
            return CriterionResult(criterion=criterion, passed=False, diagnostic=f"checker error: {error}")
        if not isinstance(result, CriterionResult):
            return CriterionResult(
                criterion=criterion,
                passed=False,
                diagnostic=f"checker returned {type(result).__name__}",
            )
        return result


__all__ = ["VerificationGate", "VerificationReport"]
