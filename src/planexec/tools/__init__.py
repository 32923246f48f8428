"""Local collaborators used when the engine runs from the command line."""

from .criteria import BuiltinCriterionChecker
from .local_executor import LocalActionExecutor
from .oracle import OfflineOracle

__all__ = [
    "BuiltinCriterionChecker",
    "LocalActionExecutor",
    "OfflineOracle",
]
