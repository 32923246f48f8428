"""Failure classification and bounded retry policy for steps."""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Pattern

from ..errors import StepExecutionError
from ..memory.schema import FailureCategory, Outcome, Step
from .actions import BaseAction
from .interfaces import AttemptRecord, ReasoningOracle, coerce_action
from .verification import VerificationReport

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_MAX_RESOURCE_RETRIES = 2

LOGIC_CATEGORIES = frozenset(
    {
        FailureCategory.SYNTAX,
        FailureCategory.MISSING_DEPENDENCY,
        FailureCategory.ASSERTION_FAILURE,
    }
)

# Checked in order; the first category with a matching pattern wins.
_BUILTIN_PATTERNS: tuple[tuple[FailureCategory, tuple[str, ...]], ...] = (
    (
        FailureCategory.SYNTAX,
        (
            r"\bSyntaxError\b",
            r"\bIndentationError\b",
            r"\bTabError\b",
            r"invalid syntax",
            r"unexpected (?:EOF|token|indent)",
            r"\bparse error\b",
        ),
    ),
    (
        FailureCategory.MISSING_DEPENDENCY,
        (
            r"\bModuleNotFoundError\b",
            r"\bImportError\b",
            r"No module named",
            r"command not found",
            r"Executable not available",
            r"\bFileNotFoundError\b",
            r"No such file or directory",
            r"Cannot find module",
        ),
    ),
    (
        FailureCategory.TIMEOUT_OR_RESOURCE,
        (
            r"\btimed?[ -]?out\b",
            r"\bTimeoutError\b",
            r"\bTimeoutExpired\b",
            r"\bMemoryError\b",
            r"[Oo]ut of memory",
            r"\bKilled\b",
            r"Resource temporarily unavailable",
            r"Too many open files",
            r"No space left on device",
        ),
    ),
    (
        FailureCategory.ASSERTION_FAILURE,
        (
            r"\bAssertionError\b",
            r"^FAILED\b",
            r"\d+ failed\b",
            r"\bassert\b",
        ),
    ),
)


class FailureClassifier:
    """Map an outcome's diagnostics onto the failure taxonomy."""

    def __init__(self, extra_patterns: Mapping[str, Sequence[str]] | None = None) -> None:
        compiled: dict[FailureCategory, list[Pattern[str]]] = {}
        for category, patterns in _BUILTIN_PATTERNS:
            compiled[category] = [re.compile(pattern, re.MULTILINE) for pattern in patterns]
        for raw_category, patterns in (extra_patterns or {}).items():
            try:
                category = FailureCategory(raw_category)
            except ValueError:
                LOGGER.warning("Ignoring patterns for unknown failure category %r", raw_category)
                continue
            if isinstance(patterns, str):
                patterns = [patterns]
            bucket = compiled.setdefault(category, [])
            for pattern in patterns:
                try:
                    bucket.insert(0, re.compile(str(pattern), re.MULTILINE))
                except re.error as error:
                    LOGGER.warning("Ignoring invalid %s pattern %r: %s", category.value, pattern, error)
        self._patterns = compiled

    def classify(self, outcome: Outcome, report: VerificationReport | None = None) -> FailureCategory:
        if outcome.category_hint is not None:
            return outcome.category_hint
        failure = report.to_error() if report is not None else None
        if failure is not None:
            return self._match(str(failure)) or FailureCategory(failure.category)
        return self._match(outcome.diagnostics) or FailureCategory.UNKNOWN

    def _match(self, text: str) -> FailureCategory | None:
        if not text:
            return None
        for category in (
            FailureCategory.SYNTAX,
            FailureCategory.MISSING_DEPENDENCY,
            FailureCategory.TIMEOUT_OR_RESOURCE,
            FailureCategory.ASSERTION_FAILURE,
        ):
            for pattern in self._patterns.get(category, ()):
                if pattern.search(text):
                    return category
        return None


@dataclass(slots=True)
class CorrectionPolicy:
    """Retry budget applied by the controller."""

    max_retries: int = DEFAULT_MAX_RETRIES
    max_resource_retries: int = DEFAULT_MAX_RESOURCE_RETRIES
    backoff_seconds: float = 0.0
    retryable: frozenset[FailureCategory] = field(default_factory=lambda: LOGIC_CATEGORIES)


@dataclass(slots=True)
class CorrectionDecision:
    """What the controller wants done after a failed attempt."""

    category: FailureCategory
    retry: bool
    request_fix: bool = False
    reason: str = ""


class SelfCorrectionController:
    """Classify step failures and decide whether and how to retry them."""

    def __init__(
        self,
        oracle: ReasoningOracle | None = None,
        *,
        policy: CorrectionPolicy | None = None,
        classifier: FailureClassifier | None = None,
    ) -> None:
        self._oracle = oracle
        self.policy = policy or CorrectionPolicy()
        self._classifier = classifier or FailureClassifier()

    def classify(self, outcome: Outcome, report: VerificationReport | None = None) -> FailureCategory:
        return self._classifier.classify(outcome, report)

    def decide(
        self,
        category: FailureCategory,
        *,
        attempts: int,
        resource_attempts: int = 0,
    ) -> CorrectionDecision:
        policy = self.policy
        if category == FailureCategory.UNKNOWN:
            return CorrectionDecision(category, retry=False, reason="unknown failures are terminal")
        if attempts >= policy.max_retries:
            return CorrectionDecision(
                category,
                retry=False,
                reason=f"retry budget exhausted after {attempts} attempt(s)",
            )
        if category == FailureCategory.TIMEOUT_OR_RESOURCE:
            if resource_attempts >= policy.max_resource_retries:
                return CorrectionDecision(
                    category,
                    retry=False,
                    reason=f"resource retry budget exhausted after {resource_attempts} retry(ies)",
                )
            return CorrectionDecision(category, retry=True, request_fix=False, reason="transient failure")
        if category in policy.retryable:
            return CorrectionDecision(category, retry=True, request_fix=True, reason="retryable failure")
        return CorrectionDecision(category, retry=False, reason=f"{category.value} is not retryable")

    def request_fix(
        self,
        step: Step,
        category: FailureCategory,
        diagnostics: str,
        history: Sequence[AttemptRecord],
    ) -> BaseAction | None:
        """Ask the oracle for a corrective action and validate its shape.

        Returns ``None`` when no oracle is configured. Oracle faults and
        malformed payloads surface as :class:`StepExecutionError` so the caller
        can count the attempt without trusting the raw response.
        """
        if self._oracle is None:
            return None
        try:
            payload: Any = self._oracle.propose_fix(
                step.model_copy(deep=True),
                category,
                diagnostics,
                tuple(history),
            )
        except StepExecutionError:
            raise
        except Exception as error:  # noqa: BLE001 - oracle is an untrusted collaborator
            raise StepExecutionError(f"Oracle failed to propose a fix: {error}", category=category.value) from error
        if payload is None:
            return None
        action = coerce_action(payload)
        LOGGER.debug("Oracle proposed fix for %s: %s", step.id, action.summary())
        return action


__all__ = [
    "CorrectionDecision",
    "CorrectionPolicy",
    "FailureClassifier",
    "LOGIC_CATEGORIES",
    "SelfCorrectionController",
]
