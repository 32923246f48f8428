"""
Plan resolution, verification, self-correction and scheduling.
"""

from importlib import import_module
from typing import Any

_EXPORTS = {
    "ApprovalGate": "approval",
    "ApprovalInbox": "approval",
    "ApprovalPolicy": "approval",
    "ApprovalSettings": "approval",
    "CancellationToken": "cancellation",
    "DependencyResolver": "resolver",
    "FailureClassifier": "correction",
    "OracleReplanner": "executor",
    "PlanExecutionSummary": "executor",
    "PlanExecutor": "executor",
    "SelfCorrectionController": "correction",
    "StateTracker": "state",
    "VerificationGate": "verification",
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> Any:
    """Lazily import planning components so leaf modules stay cheap to load."""
    if name in _EXPORTS:
        module = import_module(f"{__name__}.{_EXPORTS[name]}")
        return getattr(module, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
