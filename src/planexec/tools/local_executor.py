"""Subprocess and filesystem backed action executor."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import sys
import time
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any, Dict, List

from ..memory.schema import FailureCategory, Outcome, Step
from ..planning.actions import (
    BaseAction,
    CreateAction,
    DeleteAction,
    EditAction,
    RunAction,
    TestAction,
)
from ..planning.cancellation import CancellationToken

LOGGER = logging.getLogger(__name__)

_POLL_SECONDS = 0.1
_DIAGNOSTIC_TAIL = 4000


def _merge_env(extra: Mapping[str, str] | None) -> Dict[str, str]:
    env: Dict[str, str] = os.environ.copy()
    if extra:
        env.update({str(key): str(value) for key, value in extra.items()})
    return env


def _tail(text: str, limit: int = _DIAGNOSTIC_TAIL) -> str:
    if len(text) <= limit:
        return text
    return "..." + text[-limit:]


class LocalActionExecutor:
    """Apply step actions inside ``repo_root``.

    ``edit``/``create`` write the action content to each target, ``delete``
    removes targets, and ``run``/``test`` execute a command. Commands honour a
    per-step timeout and the cancellation token; a timeout is reported with a
    ``timeout-or-resource`` hint so the controller backs off instead of asking
    for a fix.
    """

    def __init__(
        self,
        repo_root: Path | str = ".",
        *,
        timeout: float | None = 600.0,
        env: Mapping[str, str] | None = None,
        test_command: Sequence[str] | None = None,
    ) -> None:
        self.repo_root = Path(repo_root).resolve()
        self.timeout = timeout if timeout and timeout > 0 else None
        self._env = dict(env or {})
        self._test_command = list(test_command) if test_command else [sys.executable, "-m", "pytest", "-q"]

    def perform(self, step: Step, cancel: CancellationToken) -> Outcome:
        return self._apply(step.action(), cancel)

    def apply_fix(self, step: Step, action: BaseAction, cancel: CancellationToken) -> Outcome:
        LOGGER.debug("Applying fix for step %s: %s", step.id, action.summary())
        return self._apply(action, cancel)

    # ----------------------------------------------------------------- helpers
    def _apply(self, action: BaseAction, cancel: CancellationToken) -> Outcome:
        if isinstance(action, (EditAction, CreateAction)):
            return self._write(action)
        if isinstance(action, DeleteAction):
            return self._delete(action)
        if isinstance(action, TestAction):
            command = list(action.command) or [*self._test_command, *action.selectors]
            return self._run_command(command, cancel)
        if isinstance(action, RunAction):
            if not action.command:
                return Outcome(success=False, diagnostics="Run action has no command.")
            return self._run_command(list(action.command), cancel)
        return Outcome(success=False, diagnostics=f"Unsupported action {type(action).__name__}")

    def _resolve(self, target: str) -> Path:
        candidate = Path(target)
        if not candidate.is_absolute():
            candidate = self.repo_root / candidate
        resolved = candidate.resolve()
        if resolved != self.repo_root and self.repo_root not in resolved.parents:
            raise ValueError(f"Target {target!r} is outside {self.repo_root}")
        return resolved

    def _write(self, action: EditAction | CreateAction) -> Outcome:
        if not action.targets:
            return Outcome(success=False, diagnostics=f"{action.kind} action has no targets.")
        written: List[str] = []
        for target in action.targets:
            try:
                path = self._resolve(target)
            except ValueError as error:
                return Outcome(success=False, diagnostics=str(error))
            if action.content is None:
                if not path.exists():
                    return Outcome(
                        success=False,
                        diagnostics=f"No such file or directory: {target}",
                    )
                written.append(target)
                continue
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(action.content, encoding="utf-8")
                if isinstance(action, CreateAction) and action.executable:
                    path.chmod(path.stat().st_mode | 0o111)
            except OSError as error:
                return Outcome(success=False, diagnostics=f"Failed to write {target}: {error}")
            written.append(target)
        return Outcome(success=True, artifacts={"paths": written})

    def _delete(self, action: DeleteAction) -> Outcome:
        removed: List[str] = []
        for target in action.targets:
            try:
                path = self._resolve(target)
                if path.is_dir():
                    shutil.rmtree(path)
                elif path.exists():
                    path.unlink()
                else:
                    continue
            except (OSError, ValueError) as error:
                return Outcome(success=False, diagnostics=f"Failed to delete {target}: {error}")
            removed.append(target)
        return Outcome(success=True, artifacts={"paths": removed})

    def _run_command(self, command: List[str], cancel: CancellationToken) -> Outcome:
        executable = command[0]
        if shutil.which(executable) is None and not Path(executable).exists():
            return Outcome(
                success=False,
                diagnostics=f"Executable not available: {executable}",
                category_hint=FailureCategory.MISSING_DEPENDENCY,
            )

        artifacts: Dict[str, Any] = {"command": list(command)}
        deadline = None if self.timeout is None else time.monotonic() + self.timeout
        try:
            process = subprocess.Popen(  # noqa: S603 - command comes from the plan definition
                command,
                cwd=self.repo_root,
                env=_merge_env(self._env),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except OSError as error:
            return Outcome(success=False, diagnostics=f"Failed to start {executable}: {error}", artifacts=artifacts)

        while True:
            try:
                stdout, stderr = process.communicate(timeout=_POLL_SECONDS)
                break
            except subprocess.TimeoutExpired:
                if cancel.cancelled:
                    process.kill()
                    process.communicate()
                    return Outcome(success=False, diagnostics="Command cancelled.", artifacts=artifacts)
                if deadline is not None and time.monotonic() >= deadline:
                    process.kill()
                    stdout, stderr = process.communicate()
                    artifacts.update(stdout=stdout, stderr=stderr, exit_code=None)
                    return Outcome(
                        success=False,
                        diagnostics=f"Command timed out after {self.timeout} second(s): {' '.join(command)}",
                        artifacts=artifacts,
                        category_hint=FailureCategory.TIMEOUT_OR_RESOURCE,
                    )

        artifacts.update(stdout=stdout, stderr=stderr, exit_code=process.returncode)
        if process.returncode == 0:
            return Outcome(success=True, artifacts=artifacts)
        combined = "\n".join(part for part in (stderr.strip(), stdout.strip()) if part)
        return Outcome(
            success=False,
            diagnostics=_tail(combined) or f"{executable} exited with status {process.returncode}",
            artifacts=artifacts,
        )


__all__ = ["LocalActionExecutor"]
