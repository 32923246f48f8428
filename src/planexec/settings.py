"""Configuration template and typed runtime settings."""

from __future__ import annotations

import copy
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List

from .planning.approval import ApprovalPolicy, ApprovalSettings
from .planning.correction import DEFAULT_MAX_RESOURCE_RETRIES, DEFAULT_MAX_RETRIES, CorrectionPolicy

DEFAULT_CONFIG_NAME = "config.yaml"

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "project": {
        "name": "",
        "description": "",
        "repo_root": ".",
    },
    "execution": {
        "parallelism": 4,
        "max_retries": DEFAULT_MAX_RETRIES,
        "max_resource_retries": DEFAULT_MAX_RESOURCE_RETRIES,
        "backoff_ms": 0,
        "step_timeout": 600,
        "max_replans": 0,
        "poll_interval_ms": 200,
    },
    "approval": {
        "policy": "auto",
        "risk_threshold": 0.5,
        "timeout": None,
    },
    "correction": {
        "patterns": {},
    },
    "paths": {
        "data": "data",
        "db_path": "data/planexec.sqlite",
        "snapshots": "",
        "config": DEFAULT_CONFIG_NAME,
    },
}


def copy_config_template() -> Dict[str, Any]:
    """Return a deep copy of the default configuration template."""
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def _as_int(value: Any, *, minimum: int | None = None) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        candidate = int(value)
    except (TypeError, ValueError):
        return None
    if minimum is not None and candidate < minimum:
        return minimum
    return candidate


def _as_float(value: Any, *, minimum: float | None = None) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        candidate = float(value)
    except (TypeError, ValueError):
        return None
    if minimum is not None and candidate < minimum:
        return minimum
    return candidate


def _section(config: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    section = config.get(name)
    return section if isinstance(section, Mapping) else {}


@dataclass(slots=True)
class ExecutionSettings:
    """Runtime configuration for the scheduler and its retry loop."""

    parallelism: int = 4
    max_retries: int = DEFAULT_MAX_RETRIES
    max_resource_retries: int = DEFAULT_MAX_RESOURCE_RETRIES
    backoff_seconds: float = 0.0
    step_timeout: float | None = 600.0
    max_replans: int = 0
    poll_interval: float = 0.2

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "ExecutionSettings":
        settings = cls()
        section = _section(config, "execution")

        parallelism = _as_int(section.get("parallelism"), minimum=1)
        if parallelism is not None:
            settings.parallelism = parallelism

        max_retries = _as_int(section.get("max_retries"), minimum=1)
        if max_retries is not None:
            settings.max_retries = max_retries

        resource_retries = _as_int(section.get("max_resource_retries"), minimum=0)
        if resource_retries is not None:
            settings.max_resource_retries = resource_retries

        backoff_ms = _as_float(section.get("backoff_ms"), minimum=0.0)
        if backoff_ms is not None:
            settings.backoff_seconds = backoff_ms / 1000.0

        if "step_timeout" in section:
            timeout = _as_float(section.get("step_timeout"))
            settings.step_timeout = timeout if timeout is not None and timeout > 0 else None

        max_replans = _as_int(section.get("max_replans"), minimum=0)
        if max_replans is not None:
            settings.max_replans = max_replans

        poll_ms = _as_float(section.get("poll_interval_ms"), minimum=10.0)
        if poll_ms is not None:
            settings.poll_interval = poll_ms / 1000.0

        env_parallelism = _as_int(os.getenv("PLANEXEC_PARALLELISM"), minimum=1)
        if env_parallelism is not None:
            settings.parallelism = env_parallelism
        return settings

    def correction_policy(self) -> CorrectionPolicy:
        return CorrectionPolicy(
            max_retries=self.max_retries,
            max_resource_retries=self.max_resource_retries,
            backoff_seconds=self.backoff_seconds,
        )


def approval_settings_from_config(config: Mapping[str, Any]) -> ApprovalSettings:
    """Resolve the approval gate configuration, ignoring malformed entries."""
    settings = ApprovalSettings()
    section = _section(config, "approval")

    raw_policy = section.get("policy")
    if isinstance(raw_policy, str) and raw_policy.strip():
        try:
            settings.policy = ApprovalPolicy(raw_policy.strip().lower())
        except ValueError:
            pass

    threshold = _as_float(section.get("risk_threshold"))
    if threshold is not None:
        settings.risk_threshold = min(max(threshold, 0.0), 1.0)

    timeout = _as_float(section.get("timeout"))
    if timeout is not None and timeout > 0:
        settings.timeout_seconds = timeout
    return settings


def correction_patterns_from_config(config: Mapping[str, Any]) -> Dict[str, List[str]]:
    """Return extra classifier patterns keyed by failure category."""
    patterns = _section(config, "correction").get("patterns")
    if not isinstance(patterns, Mapping):
        return {}
    resolved: Dict[str, List[str]] = {}
    for category, values in patterns.items():
        if isinstance(values, str):
            values = [values]
        if not isinstance(values, (list, tuple)):
            continue
        resolved[str(category)] = [str(value) for value in values if str(value).strip()]
    return resolved


def resolve_snapshot_root(config: Mapping[str, Any], config_path: Path | None = None) -> Path | None:
    """Return the JSON snapshot directory when one is configured."""
    raw = _section(config, "paths").get("snapshots")
    if not isinstance(raw, str) or not raw.strip():
        return None
    root = Path(raw.strip())
    if not root.is_absolute() and config_path is not None:
        root = config_path.resolve().parent / root
    return root


__all__ = [
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_CONFIG_TEMPLATE",
    "ExecutionSettings",
    "approval_settings_from_config",
    "copy_config_template",
    "correction_patterns_from_config",
    "resolve_snapshot_root",
]
