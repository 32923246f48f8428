"""Built-in verification criteria.

Criteria are plain strings. A ``prefix:argument`` form selects a machine
check; anything else is descriptive and is accepted once the action itself
succeeded.

* ``file_exists:<path>`` / ``file_absent:<path>``
* ``file_contains:<path>::<text>``
* ``output_contains:<text>`` searches the captured stdout/stderr
* ``exit_code:<n>`` compares the recorded command exit code
* ``command:<cmd>`` runs ``cmd`` in the repository and expects status 0
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from pathlib import Path
from typing import Callable, Dict

from ..memory.schema import Outcome
from ..planning.interfaces import CriterionResult

LOGGER = logging.getLogger(__name__)


class BuiltinCriterionChecker:
    """Evaluate prefixed criteria against the filesystem and an outcome."""

    def __init__(self, repo_root: Path | str = ".", *, command_timeout: float | None = 120.0) -> None:
        self.repo_root = Path(repo_root)
        self.command_timeout = command_timeout
        self._handlers: Dict[str, Callable[[str, Outcome], tuple[bool, str]]] = {
            "file_exists": self._file_exists,
            "file_absent": self._file_absent,
            "file_contains": self._file_contains,
            "output_contains": self._output_contains,
            "exit_code": self._exit_code,
            "command": self._command,
        }

    def check(self, criterion: str, outcome: Outcome) -> CriterionResult:
        prefix, sep, argument = criterion.partition(":")
        handler = self._handlers.get(prefix.strip()) if sep else None
        if handler is None:
            LOGGER.debug("Criterion %r is descriptive; accepting on action success", criterion)
            return CriterionResult(criterion=criterion, passed=outcome.success)
        passed, diagnostic = handler(argument.strip(), outcome)
        return CriterionResult(criterion=criterion, passed=passed, diagnostic=diagnostic)

    def _path(self, raw: str) -> Path:
        path = Path(raw)
        return path if path.is_absolute() else self.repo_root / path

    def _file_exists(self, argument: str, outcome: Outcome) -> tuple[bool, str]:
        if self._path(argument).exists():
            return True, ""
        return False, f"No such file or directory: {argument}"

    def _file_absent(self, argument: str, outcome: Outcome) -> tuple[bool, str]:
        if not self._path(argument).exists():
            return True, ""
        return False, f"{argument} still exists"

    def _file_contains(self, argument: str, outcome: Outcome) -> tuple[bool, str]:
        raw_path, _, needle = argument.partition("::")
        path = self._path(raw_path.strip())
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as error:
            return False, f"Cannot read {raw_path.strip()}: {error}"
        if needle in text:
            return True, ""
        return False, f"assert {needle!r} in {raw_path.strip()}"

    @staticmethod
    def _output_contains(argument: str, outcome: Outcome) -> tuple[bool, str]:
        artifacts = outcome.artifacts or {}
        haystack = "\n".join(
            str(artifacts.get(key) or "") for key in ("stdout", "stderr")
        )
        if argument in haystack or argument in outcome.diagnostics:
            return True, ""
        return False, f"assert {argument!r} in command output"

    @staticmethod
    def _exit_code(argument: str, outcome: Outcome) -> tuple[bool, str]:
        try:
            expected = int(argument)
        except ValueError:
            return False, f"Invalid exit code {argument!r}"
        actual = (outcome.artifacts or {}).get("exit_code")
        if actual == expected:
            return True, ""
        return False, f"assert exit code {actual} == {expected}"

    def _command(self, argument: str, outcome: Outcome) -> tuple[bool, str]:
        command = shlex.split(argument)
        if not command:
            return False, "Empty command criterion"
        try:
            process = subprocess.run(  # noqa: S603 - command comes from the plan definition
                command,
                cwd=self.repo_root,
                check=False,
                capture_output=True,
                text=True,
                timeout=self.command_timeout,
            )
        except FileNotFoundError:
            return False, f"Executable not available: {command[0]}"
        except subprocess.TimeoutExpired:
            return False, f"Criterion command timed out after {self.command_timeout} second(s)"
        if process.returncode == 0:
            return True, ""
        output = "\n".join(part for part in (process.stderr.strip(), process.stdout.strip()) if part)
        return False, output or f"{command[0]} exited with status {process.returncode}"


__all__ = ["BuiltinCriterionChecker"]
