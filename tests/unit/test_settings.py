from __future__ import annotations

from pathlib import Path

from planexec.planning.approval import ApprovalPolicy
from planexec.settings import (
    ExecutionSettings,
    approval_settings_from_config,
    copy_config_template,
    correction_patterns_from_config,
    resolve_snapshot_root,
)


def test_defaults_match_template() -> None:
    settings = ExecutionSettings.from_config(copy_config_template())

    assert settings.parallelism == 4
    assert settings.max_retries == 3
    assert settings.max_resource_retries == 2
    assert settings.backoff_seconds == 0.0
    assert settings.step_timeout == 600.0
    assert settings.poll_interval == 0.2


def test_malformed_values_fall_back_to_defaults() -> None:
    config = {
        "execution": {
            "parallelism": "lots",
            "max_retries": 0,
            "backoff_ms": 250,
            "step_timeout": 0,
            "max_replans": "2",
        }
    }

    settings = ExecutionSettings.from_config(config)

    assert settings.parallelism == 4
    assert settings.max_retries == 1
    assert settings.backoff_seconds == 0.25
    assert settings.step_timeout is None
    assert settings.max_replans == 2
    assert settings.correction_policy().backoff_seconds == 0.25


def test_approval_settings_are_clamped() -> None:
    settings = approval_settings_from_config(
        {"approval": {"policy": "Risk-Based", "risk_threshold": 7, "timeout": 30}}
    )
    fallback = approval_settings_from_config({"approval": {"policy": "sometimes", "timeout": -1}})

    assert settings.policy == ApprovalPolicy.RISK_BASED
    assert settings.risk_threshold == 1.0
    assert settings.timeout_seconds == 30.0
    assert fallback.policy == ApprovalPolicy.AUTO
    assert fallback.timeout_seconds is None


def test_correction_patterns_and_paths(tmp_path: Path) -> None:
    config = {
        "correction": {"patterns": {"syntax": "Unexpected token", "unknown": ["x", 3], "bad": 4}},
        "paths": {"snapshots": "snaps"},
    }

    assert correction_patterns_from_config(config) == {"syntax": ["Unexpected token"], "unknown": ["x", "3"]}
    assert resolve_snapshot_root(config, tmp_path / "config.yaml") == tmp_path.resolve() / "snaps"
    assert resolve_snapshot_root({}, None) is None
