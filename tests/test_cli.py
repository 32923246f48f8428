from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from planexec.cli import app
from planexec.memory.schema import PlanStatus, StepStatus
from planexec.memory.store import MemoryStore

runner = CliRunner()


@pytest.fixture()
def workspace(tmp_path: Path) -> Path:
    config = {
        "project": {"name": "demo", "repo_root": "repo"},
        "execution": {"parallelism": 2, "max_retries": 2, "poll_interval_ms": 20},
        "approval": {"policy": "auto"},
        "paths": {
            "data": str(tmp_path / "data"),
            "db_path": str(tmp_path / "data" / "planexec.sqlite"),
            "snapshots": "snapshots",
        },
    }
    (tmp_path / "repo").mkdir()
    with (tmp_path / "config.yaml").open("w", encoding="utf-8") as handle:
        yaml.safe_dump(config, handle)
    return tmp_path


def _write_plan(root: Path, payload: dict, name: str = "plan.yaml") -> Path:
    path = root / name
    if path.suffix == ".json":
        path.write_text(json.dumps(payload), encoding="utf-8")
    else:
        with path.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(payload, handle)
    return path


def _happy_plan() -> dict:
    return {
        "id": "demo",
        "goal": "Create a module and import it",
        "steps": [
            {
                "id": "write",
                "action_kind": "create",
                "targets": ["greet.py"],
                "metadata": {"content": "def greet():\n    return 'hi'\n"},
                "verification_criteria": ["file_exists:greet.py"],
            },
            {
                "id": "check",
                "action_kind": "run",
                "depends_on": ["write"],
                "metadata": {
                    "command": [sys.executable, "-c", "import greet; print(greet.greet())"],
                },
                "verification_criteria": ["output_contains:hi", "exit_code:0"],
            },
        ],
    }


def _store(workspace: Path) -> MemoryStore:
    return MemoryStore(workspace / "data" / "planexec.sqlite")


def test_validate_prints_levels(workspace: Path) -> None:
    plan_path = _write_plan(workspace, _happy_plan(), "plan.json")

    result = runner.invoke(app, ["validate", str(plan_path)])

    assert result.exit_code == 0, result.output
    assert "level 0: write" in result.output
    assert "level 1: check" in result.output


def test_validate_rejects_cycles_with_exit_code_2(workspace: Path) -> None:
    plan = {
        "id": "cyclic",
        "goal": "never runs",
        "steps": [
            {"id": "A", "action_kind": "run"},
            {"id": "B", "action_kind": "run", "depends_on": ["C"]},
            {"id": "C", "action_kind": "run", "depends_on": ["B"]},
        ],
    }
    plan_path = _write_plan(workspace, plan)

    result = runner.invoke(app, ["validate", str(plan_path)])

    assert result.exit_code == 2
    assert "Steps on a dependency cycle: B, C" in result.output


def test_malformed_plan_document_is_rejected(workspace: Path) -> None:
    plan_path = workspace / "plan.yaml"
    plan_path.write_text("id: x\nsteps: [\n", encoding="utf-8")

    result = runner.invoke(app, ["validate", str(plan_path)])

    assert result.exit_code == 2


def test_submit_completes_and_persists(workspace: Path) -> None:
    plan_path = _write_plan(workspace, _happy_plan())
    config_path = workspace / "config.yaml"

    result = runner.invoke(app, ["submit", str(plan_path), "--config", str(config_path)])

    assert result.exit_code == 0, result.output
    assert "[COMPLETED]" in result.output
    assert (workspace / "repo" / "greet.py").exists()
    assert list((workspace / "snapshots").glob("*.json"))
    with _store(workspace) as store:
        snapshot = store.load("demo")
    assert snapshot is not None
    assert snapshot.plan.status == PlanStatus.COMPLETED
    assert all(step.status == StepStatus.SUCCEEDED for step in snapshot.plan.steps)

    status = runner.invoke(app, ["status", "demo", "--config", str(config_path)])
    assert status.exit_code == 0, status.output
    assert "write SUCCEEDED" in status.output


def test_submit_failure_exits_1(workspace: Path) -> None:
    plan = {
        "id": "broken",
        "goal": "fail loudly",
        "steps": [
            {
                "id": "explode",
                "action_kind": "run",
                "metadata": {"command": [sys.executable, "-c", "import sys; sys.exit(3)"]},
            },
            {"id": "after", "action_kind": "run", "depends_on": ["explode"], "metadata": {"command": "true"}},
        ],
    }
    plan_path = _write_plan(workspace, plan)

    result = runner.invoke(app, ["submit", str(plan_path), "--config", str(workspace / "config.yaml")])

    assert result.exit_code == 1, result.output
    assert "explode [unknown]" in result.output
    with _store(workspace) as store:
        snapshot = store.load("broken")
    assert snapshot is not None
    assert snapshot.plan.get_step("after").status == StepStatus.SKIPPED


def test_resume_finishes_stored_plan(workspace: Path) -> None:
    config_path = workspace / "config.yaml"
    plan_path = _write_plan(workspace, _happy_plan())
    assert runner.invoke(app, ["submit", str(plan_path), "--config", str(config_path)]).exit_code == 0

    result = runner.invoke(app, ["resume", "demo", "--plan", str(plan_path), "--config", str(config_path)])

    assert result.exit_code == 0, result.output
    assert "[COMPLETED]" in result.output


def test_resume_rejects_changed_plan(workspace: Path) -> None:
    config_path = workspace / "config.yaml"
    plan_path = _write_plan(workspace, _happy_plan())
    assert runner.invoke(app, ["submit", str(plan_path), "--config", str(config_path)]).exit_code == 0

    changed = _happy_plan()
    changed["steps"][1]["depends_on"] = []
    changed_path = _write_plan(workspace, changed, "changed.yaml")
    result = runner.invoke(app, ["resume", "demo", "--plan", str(changed_path), "--config", str(config_path)])

    assert result.exit_code == 2


def test_cancel_and_approve_require_known_plan(workspace: Path) -> None:
    config_path = workspace / "config.yaml"

    cancel = runner.invoke(app, ["cancel", "ghost", "--config", str(config_path)])
    approve = runner.invoke(app, ["approve", "ghost", "step", "--config", str(config_path)])
    status = runner.invoke(app, ["status", "ghost", "--config", str(config_path)])

    assert cancel.exit_code == 1
    assert approve.exit_code == 1
    assert status.exit_code == 1


def test_cancel_and_approve_record_signals(workspace: Path) -> None:
    config_path = workspace / "config.yaml"
    plan_path = _write_plan(workspace, _happy_plan())
    assert runner.invoke(app, ["submit", str(plan_path), "--config", str(config_path)]).exit_code == 0

    cancel = runner.invoke(app, ["cancel", "demo", "--config", str(config_path)])
    approve = runner.invoke(app, ["approve", "demo", "check", "--reject", "--note", "later", "--config", str(config_path)])

    assert cancel.exit_code == 0, cancel.output
    assert approve.exit_code == 0, approve.output
    assert "Rejected step check" in approve.output
    with _store(workspace) as store:
        assert store.cancel_requested("demo")
        decision = store.pop_approval("demo", "check")
    assert decision is not None and decision.approved is False


def test_init_writes_default_config(tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"

    first = runner.invoke(app, ["init", "--config", str(config_path)])
    second = runner.invoke(app, ["init", "--config", str(config_path)])

    assert first.exit_code == 0, first.output
    assert second.exit_code == 1
    data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    assert data["execution"]["parallelism"] == 4
    assert data["approval"]["policy"] == "auto"


def test_status_history_and_plan_listing(workspace: Path) -> None:
    config_path = workspace / "config.yaml"
    plan_path = _write_plan(workspace, _happy_plan())
    assert runner.invoke(app, ["submit", str(plan_path), "--config", str(config_path)]).exit_code == 0

    status = runner.invoke(app, ["status", "demo", "--history", "2", "--config", str(config_path)])
    listing = runner.invoke(app, ["plans", "--config", str(config_path)])

    assert status.exit_code == 0, status.output
    assert "History:" in status.output
    assert "write=SUCCEEDED, check=SUCCEEDED" in status.output
    assert listing.exit_code == 0, listing.output
    assert "demo (version 1) [COMPLETED] 2/2 step(s) settled" in listing.output


def test_plans_without_stored_plans(workspace: Path) -> None:
    result = runner.invoke(app, ["plans", "--config", str(workspace / "config.yaml")])

    assert result.exit_code == 0, result.output
    assert "No stored plans." in result.output


def test_corrupt_snapshot_exits_1(workspace: Path) -> None:
    config_path = workspace / "config.yaml"
    plan_path = _write_plan(workspace, _happy_plan())
    assert runner.invoke(app, ["submit", str(plan_path), "--config", str(config_path)]).exit_code == 0
    with _store(workspace) as store:
        store.connection.execute("UPDATE plans SET payload = '{' WHERE id = 'demo'")
        store.connection.commit()

    status = runner.invoke(app, ["status", "demo", "--config", str(config_path)])
    resume = runner.invoke(app, ["resume", "demo", "--config", str(config_path)])

    assert status.exit_code == 1
    assert "Storage error" in status.output
    assert resume.exit_code == 1
    assert "Storage error" in resume.output


def test_unreadable_database_exits_1(workspace: Path) -> None:
    db_path = workspace / "data" / "planexec.sqlite"
    db_path.parent.mkdir(parents=True, exist_ok=True)
    db_path.write_bytes(b"this is not a sqlite database" * 64)

    result = runner.invoke(app, ["status", "demo", "--config", str(workspace / "config.yaml")])

    assert result.exit_code == 1
    assert "Storage error" in result.output


def test_submit_discards_approvals_from_an_earlier_run(workspace: Path) -> None:
    config_path = workspace / "config.yaml"
    plan_path = _write_plan(workspace, _happy_plan())
    assert runner.invoke(app, ["submit", str(plan_path), "--config", str(config_path)]).exit_code == 0
    assert runner.invoke(app, ["approve", "demo", "check", "--config", str(config_path)]).exit_code == 0

    result = runner.invoke(app, ["submit", str(plan_path), "--config", str(config_path)])

    assert result.exit_code == 0, result.output
    assert "Discarded 1 approval decision(s) left from an earlier run." in result.output
    with _store(workspace) as store:
        assert store.pop_approval("demo", "check") is None
