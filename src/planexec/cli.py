"""CLI commands for validating, running and controlling plans."""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

import typer
import yaml

from .errors import PersistenceError, PlanValidationError
from .memory.schema import Plan, PlanSnapshot, PlanStatus
from .memory.snapshots import FileSnapshotStore
from .memory.store import MemoryStore
from .planning.approval import ApprovalGate, ApprovalPolicy, StoreApprovalSource
from .planning.correction import FailureClassifier, SelfCorrectionController
from .planning.executor import PlanExecutionSummary, PlanExecutor
from .planning.interfaces import coerce_plan
from .planning.resolver import DependencyResolver
from .planning.state import StateTracker
from .settings import (
    DEFAULT_CONFIG_NAME,
    ExecutionSettings,
    approval_settings_from_config,
    copy_config_template,
    correction_patterns_from_config,
    resolve_snapshot_root,
)
from .tools.criteria import BuiltinCriterionChecker
from .tools.local_executor import LocalActionExecutor
from .tools.oracle import OfflineOracle

APP_HELP = "Dependency-aware plan execution engine."
EXIT_COMPLETED = 0
EXIT_FAILED = 1
EXIT_REJECTED = 2

app = typer.Typer(help=APP_HELP)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log scheduler activity to stderr."),
) -> None:
    """Dependency-aware plan execution engine."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


def load_config(config_path: Optional[Path]) -> Dict[str, Any]:
    """Load YAML configuration from disk, or the defaults when no file is used."""
    if config_path is None:
        return copy_config_template()
    if not config_path.exists():
        raise typer.BadParameter(f"Config file not found: {config_path}")

    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        typer.echo(f"Failed to parse config: {error}")
        raise typer.Exit(code=EXIT_FAILED) from error

    if not isinstance(data, dict):
        typer.echo("Configuration must be a mapping at the top level.")
        raise typer.Exit(code=EXIT_FAILED)

    return data


def _config_path(config: Optional[str]) -> Optional[Path]:
    if config:
        return Path(config)
    default = Path(DEFAULT_CONFIG_NAME)
    return default if default.exists() else None


def _resolve_repo_root(config: Dict[str, Any], config_path: Optional[Path]) -> Path:
    project_cfg = config.get("project") or {}
    repo_root_path = Path(str(project_cfg.get("repo_root") or "."))
    if not repo_root_path.is_absolute() and config_path is not None:
        repo_root_path = config_path.resolve().parent / repo_root_path
    return repo_root_path.resolve()


def load_plan_file(plan_file: Path) -> Plan:
    """Parse a YAML or JSON plan document, exiting with status 2 when invalid."""
    try:
        text = plan_file.read_text(encoding="utf-8")
    except OSError as error:
        typer.echo(f"Unable to read plan file {plan_file}: {error}")
        raise typer.Exit(code=EXIT_REJECTED) from error

    try:
        if plan_file.suffix.lower() == ".json":
            payload = json.loads(text)
        else:
            payload = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as error:
        typer.echo(f"Plan file {plan_file} is not valid: {error}")
        raise typer.Exit(code=EXIT_REJECTED) from error

    try:
        return coerce_plan(payload)
    except PlanValidationError as error:
        _echo_rejection(error)
        raise typer.Exit(code=EXIT_REJECTED) from error


def _echo_rejection(error: PlanValidationError) -> None:
    typer.echo("Plan rejected:")
    for problem in error.problems:
        typer.echo(f"- {problem}")
    if error.cycle_members:
        typer.echo(f"Steps on a dependency cycle: {', '.join(error.cycle_members)}")


def _validated_levels(plan: Plan) -> list[list[str]]:
    try:
        return DependencyResolver(plan).levels()
    except PlanValidationError as error:
        _echo_rejection(error)
        raise typer.Exit(code=EXIT_REJECTED) from error


def _build_executor(
    config_data: Dict[str, Any],
    config_path: Optional[Path],
    store: MemoryStore,
    plan: Plan,
) -> PlanExecutor:
    settings = ExecutionSettings.from_config(config_data)
    approval_settings = approval_settings_from_config(config_data)
    source = None
    if approval_settings.policy != ApprovalPolicy.AUTO:
        source = StoreApprovalSource(store, plan.id, poll_interval=settings.poll_interval)

    repo_root = _resolve_repo_root(config_data, config_path)
    oracle = OfflineOracle(plan.metadata.get("replan"))
    controller = SelfCorrectionController(
        oracle,
        policy=settings.correction_policy(),
        classifier=FailureClassifier(correction_patterns_from_config(config_data)),
    )
    return PlanExecutor(
        LocalActionExecutor(repo_root, timeout=settings.step_timeout),
        checker=BuiltinCriterionChecker(repo_root),
        oracle=oracle,
        controller=controller,
        approval_gate=ApprovalGate(approval_settings, source=source),
        tracker=StateTracker(store),
        parallelism=settings.parallelism,
        poll_interval=settings.poll_interval,
        max_replans=settings.max_replans,
    )


def _export_snapshot(config_data: Dict[str, Any], config_path: Optional[Path], plan: Plan) -> None:
    root = resolve_snapshot_root(config_data, config_path)
    if root is None:
        return
    store = FileSnapshotStore(root)
    try:
        store.save(PlanSnapshot.capture(plan))
    except PersistenceError as error:
        typer.echo(f"Warning: failed to export snapshot: {error}")
        return
    typer.echo(f"Snapshot written to {store.path_for(plan.id)}")


def _render_plan(plan: Plan, levels: Optional[list[list[str]]] = None) -> None:
    typer.echo(f"Plan {plan.id} (version {plan.version}) [{plan.status.value}] goal='{plan.goal}'")
    if levels is None:
        levels = [[step.id] for step in plan.steps]
        labelled = False
    else:
        labelled = True
    for index, level in enumerate(levels):
        for step_id in level:
            step = plan.get_step(step_id)
            prefix = f"  [level {index}] " if labelled else "  "
            line = f"{prefix}{step.id} {step.status.value} (attempts {step.attempts})"
            if step.last_error is not None and step.last_error.message:
                first_line = step.last_error.message.splitlines()[0]
                line += f" - {step.last_error.category.value}: {first_line}"
            typer.echo(line)


def _render_summary(summary: PlanExecutionSummary) -> None:
    _render_plan(summary.plan, summary.levels)
    if summary.replans:
        typer.echo(f"Replanned {summary.replans} time(s).")
    if summary.failures:
        typer.echo("Failures:")
        for failure in summary.failures:
            typer.echo(f"- {failure.step_id} [{failure.category.value}] after {failure.attempts} attempt(s)")
    if not summary.resumable:
        typer.echo("Warning: snapshots could not be persisted; this run cannot be resumed.")


def _finish(summary: PlanExecutionSummary) -> None:
    if summary.exit_code != EXIT_COMPLETED:
        raise typer.Exit(code=summary.exit_code)


@contextmanager
def _open_store(config_data: Dict[str, Any]) -> Iterator[MemoryStore]:
    """Open the configured store, turning storage failures into exit status 1."""
    try:
        with MemoryStore.from_config(config_data) as store:
            yield store
    except PersistenceError as error:
        typer.echo(f"Storage error: {error}")
        raise typer.Exit(code=EXIT_FAILED) from error


ConfigOption = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to the configuration file (defaults to ./config.yaml when present).",
)


@app.command()
def init(
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help="Where to write the configuration."),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing configuration file."),
) -> None:
    """Write a default configuration file."""
    config_path = Path(config)
    if config_path.exists() and not force:
        typer.echo(f"{config_path} already exists; use --force to overwrite it.")
        raise typer.Exit(code=EXIT_FAILED)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(copy_config_template(), handle, sort_keys=False)
    typer.echo(f"Wrote default configuration to {config_path}")


@app.command()
def validate(
    plan_file: Path = typer.Argument(..., help="YAML or JSON plan document."),
) -> None:
    """Check a plan's dependency graph and print its execution levels."""
    plan = load_plan_file(plan_file)
    levels = _validated_levels(plan)
    typer.echo(f"Plan {plan.id} is valid: {len(plan.steps)} step(s) in {len(levels)} level(s).")
    for index, level in enumerate(levels):
        typer.echo(f"  level {index}: {', '.join(level)}")


@app.command()
def submit(
    plan_file: Path = typer.Argument(..., help="YAML or JSON plan document."),
    config: Optional[str] = ConfigOption,
) -> None:
    """Validate, persist and execute a plan."""
    config_path = _config_path(config)
    config_data = load_config(config_path)
    plan = load_plan_file(plan_file)
    _validated_levels(plan)

    with _open_store(config_data) as store:
        store.clear_cancel(plan.id)
        stale = store.clear_approvals(plan.id)
        if stale:
            typer.echo(f"Discarded {stale} approval decision(s) left from an earlier run.")
        executor = _build_executor(config_data, config_path, store, plan)
        try:
            summary = executor.execute(plan)
        except PlanValidationError as error:
            _echo_rejection(error)
            raise typer.Exit(code=EXIT_REJECTED) from error

    _render_summary(summary)
    _export_snapshot(config_data, config_path, summary.plan)
    _finish(summary)


@app.command()
def resume(
    plan_id: str = typer.Argument(..., help="Identifier of a previously submitted plan."),
    plan_file: Optional[Path] = typer.Option(
        None,
        "--plan",
        "-p",
        help="Current plan definition; defaults to the stored definition.",
    ),
    config: Optional[str] = ConfigOption,
) -> None:
    """Continue a plan from its last snapshot."""
    config_path = _config_path(config)
    config_data = load_config(config_path)
    live_plan = load_plan_file(plan_file) if plan_file is not None else None
    if live_plan is not None and live_plan.id != plan_id:
        typer.echo(f"Plan file describes '{live_plan.id}', not '{plan_id}'.")
        raise typer.Exit(code=EXIT_REJECTED)

    with _open_store(config_data) as store:
        snapshot = store.load(plan_id)
        if snapshot is None and live_plan is None:
            typer.echo(f"No stored plan with id '{plan_id}'.")
            raise typer.Exit(code=EXIT_FAILED)
        reference = live_plan if live_plan is not None else snapshot.plan
        executor = _build_executor(config_data, config_path, store, reference)
        try:
            summary = executor.resume(live_plan, plan_id=plan_id)
        except PlanValidationError as error:
            _echo_rejection(error)
            raise typer.Exit(code=EXIT_REJECTED) from error

    _render_summary(summary)
    _export_snapshot(config_data, config_path, summary.plan)
    _finish(summary)


@app.command()
def cancel(
    plan_id: str = typer.Argument(..., help="Identifier of the plan to cancel."),
    config: Optional[str] = ConfigOption,
) -> None:
    """Ask a running plan to stop; in-flight steps are interrupted."""
    config_data = load_config(_config_path(config))
    with _open_store(config_data) as store:
        if not store.request_cancel(plan_id):
            typer.echo(f"No stored plan with id '{plan_id}'.")
            raise typer.Exit(code=EXIT_FAILED)
    typer.echo(f"Cancellation requested for plan {plan_id}.")


@app.command()
def approve(
    plan_id: str = typer.Argument(..., help="Identifier of the plan."),
    step_id: str = typer.Argument(..., help="Step waiting for approval."),
    reject: bool = typer.Option(False, "--reject", help="Reject the step instead of approving it."),
    note: str = typer.Option("", "--note", help="Free-form note stored with the decision."),
    config: Optional[str] = ConfigOption,
) -> None:
    """Record an approval decision for a blocked step."""
    config_data = load_config(_config_path(config))
    with _open_store(config_data) as store:
        snapshot = store.load(plan_id)
        if snapshot is None:
            typer.echo(f"No stored plan with id '{plan_id}'.")
            raise typer.Exit(code=EXIT_FAILED)
        if step_id not in snapshot.plan.step_ids:
            typer.echo(f"Plan '{plan_id}' has no step '{step_id}'.")
            raise typer.Exit(code=EXIT_FAILED)
        store.record_approval(plan_id, step_id, not reject, note)
    verdict = "Rejected" if reject else "Approved"
    typer.echo(f"{verdict} step {step_id} of plan {plan_id}.")


@app.command()
def status(
    plan_id: str = typer.Argument(..., help="Identifier of the plan."),
    history: int = typer.Option(0, "--history", min=0, help="Also list this many earlier snapshots."),
    config: Optional[str] = ConfigOption,
) -> None:
    """Report the last persisted state of a plan."""
    config_data = load_config(_config_path(config))
    with _open_store(config_data) as store:
        snapshot = store.load(plan_id)
        cancel_pending = store.cancel_requested(plan_id) if snapshot is not None else False
        past = store.history(plan_id, limit=history) if snapshot is not None and history else []
    if snapshot is None:
        typer.echo(f"No stored plan with id '{plan_id}'.")
        raise typer.Exit(code=EXIT_FAILED)

    plan = snapshot.plan
    try:
        levels: Optional[list[list[str]]] = DependencyResolver(plan).levels()
    except PlanValidationError:
        levels = None
    _render_plan(plan, levels)
    typer.echo(f"Last saved: {snapshot.saved_at.isoformat()}")
    if cancel_pending and plan.status == PlanStatus.RUNNING:
        typer.echo("Cancellation requested.")
    if past:
        typer.echo("History:")
        for entry in past:
            states = ", ".join(f"{step.id}={step.status.value}" for step in entry.plan.steps)
            typer.echo(
                f"- {entry.saved_at.isoformat()} version {entry.version} [{entry.plan.status.value}] {states}"
            )


@app.command("plans")
def list_plans(
    config: Optional[str] = ConfigOption,
) -> None:
    """List every stored plan with its last persisted status."""
    config_data = load_config(_config_path(config))
    with _open_store(config_data) as store:
        plans = store.list_plans()
    if not plans:
        typer.echo("No stored plans.")
        return
    for plan in plans:
        done = sum(1 for step in plan.steps if step.status.terminal)
        typer.echo(
            f"{plan.id} (version {plan.version}) [{plan.status.value}] {done}/{len(plan.steps)} step(s) settled"
        )


if __name__ == "__main__":
    app()
