from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from bootkit import __version__
from bootkit.backup import SnapshotManager
from bootkit.catalog import Task, validate_catalog_file
from bootkit.config import CONFIG_FILENAME, BootkitConfig, load_config, save_config
from bootkit.engine import EngineEventHook, ExecutionEngine, ExecutionMode
from bootkit.errors import (
    BootkitError,
    CatalogInvalid,
    PreflightBlocking,
    RestorePartial,
    RestoreVerificationFailed,
    SnapshotNotFound,
)
from bootkit.log import configure_logging
from bootkit.recommend import Recommender
from bootkit.registry import Registry
from bootkit.repair import EXIT_REPAIR_FAILED, HealthReport, RepairService
from bootkit.state import MarkerStore, StateStore, empty_session


@dataclass(slots=True)
class Runtime:
    project_root: Path
    config_path: Path
    config: BootkitConfig
    registry: Registry
    state: StateStore
    markers: MarkerStore
    snapshots: SnapshotManager
    engine: ExecutionEngine
    repair: RepairService


def _resolve_config_path(project_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = project_root / config_path
    return config_path.resolve()


def _project_path(project_root: Path, value: str) -> Path:
    path = Path(value)
    if not path.is_absolute():
        path = project_root / path
    return path


def _verbosity() -> int:
    ctx = click.get_current_context(silent=True)
    obj = ctx.find_root().obj if ctx is not None else None
    return int(obj.get("verbose", 0)) if isinstance(obj, dict) else 0


def _confirm_task(task: Task, outputs: list[str]) -> bool:
    return click.confirm(f"Run {task.id}?", default=True)


def _render_event(event: dict[str, Any]) -> None:
    name = event.get("event")
    if name == "run_started":
        tasks = event.get("tasks") or []
        click.echo(f"Running {len(tasks)} task(s) [{event.get('mode')}]")
    elif name == "task_started":
        description = event.get("description") or ""
        click.echo(f"[{event.get('index')}/{event.get('total')}] {event['task_id']}: {description}")
    elif name == "task_outputs":
        outputs = event.get("outputs") or []
        if outputs:
            click.echo("  Will create: " + ", ".join(outputs))
    elif name == "task_completed":
        if event.get("dry_run"):
            click.echo("  simulated")
        else:
            click.echo(f"  completed ({event.get('duration_seconds', 0):.1f}s)")
    elif name == "task_failed":
        click.echo(
            f"  FAILED {event['task_id']} (exit code {event.get('exit_code')})"
            + (f": {event['message']}" if event.get("message") else ""),
            err=True,
        )
        if event.get("stderr_tail"):
            click.echo(event["stderr_tail"], err=True)
    elif name == "task_skipped":
        click.echo(f"  skipped {event['task_id']}: {event.get('reason')}")
    elif name == "recommendations":
        suggestions = event.get("suggestions") or []
        rendered = ", ".join(f"{item['task_id']} ({item['reason']})" for item in suggestions)
        click.echo(f"  Suggested next: {rendered}")
    elif name == "dry_run_report":
        report = event["report"]
        click.echo(f"  would make {report.total} change(s)")


def _load_runtime(
    project_root: Path,
    config_path: Path,
    *,
    confirm: Any = None,
    event_hook: EngineEventHook | None = None,
    suggestions: bool | None = None,
) -> Runtime:
    config = load_config(config_path)
    configure_logging(
        config.logging.level,
        _project_path(project_root, config.logging.file) if config.logging.file else None,
        verbose=_verbosity(),
    )
    registry = Registry(
        _project_path(project_root, config.paths.catalog),
        project_root=project_root,
        implementations_dir=_project_path(project_root, config.paths.implementations_dir),
    )
    state = StateStore(project_root, state_dir=config.paths.state_dir)
    markers = MarkerStore(project_root, state_dir=config.paths.state_dir)
    snapshots = SnapshotManager(
        project_root,
        backups_dir=project_root / config.paths.state_dir / "backups",
        critical_files=config.critical_files(),
        max_backups=config.backup.max_backups,
    )
    try:
        recommender: Recommender | None = Recommender(registry.load())
    except CatalogInvalid:
        recommender = None
    engine = ExecutionEngine(
        registry,
        state,
        markers,
        recommender=recommender,
        confirm=confirm,
        event_hook=event_hook,
        shell=config.execution.shell,
        target_dir=_project_path(project_root, config.project.target_dir),
        suggestions=config.execution.suggestions if suggestions is None else suggestions,
    )
    repair = RepairService(
        config_path=config_path,
        registry=registry,
        state=state,
        markers=markers,
        snapshots=snapshots,
        engine=engine,
    )
    return Runtime(
        project_root=project_root,
        config_path=config_path,
        config=config,
        registry=registry,
        state=state,
        markers=markers,
        snapshots=snapshots,
        engine=engine,
        repair=repair,
    )


def _runtime(config_value: str, **kwargs: Any) -> Runtime:
    project_root = Path.cwd().resolve()
    return _load_runtime(project_root, _resolve_config_path(project_root, config_value), **kwargs)


def _catalog_failure(exc: CatalogInvalid) -> click.ClickException:
    return click.ClickException(f"{exc}\nRun `bootkit validate` and fix the catalog first.")


def _render_health(health: HealthReport) -> None:
    for check in health.checks:
        if check.ok:
            label = "ok"
        elif check.severity == "warning":
            label = "warn"
        else:
            label = "FAIL"
        suffix = f"  {check.detail}" if check.detail else ""
        click.echo(f"[{label:<4}] {check.name}{suffix}")
    click.echo(f"Issues: {len(health.issues)}  Warnings: {len(health.warnings)}")


config_option = click.option(
    "--config", "config_value", default=CONFIG_FILENAME, show_default=True
)


@click.group()
@click.version_option(__version__, prog_name="bootkit")
@click.option("-v", "--verbose", count=True, help="Increase log verbosity.")
@click.pass_context
def cli(ctx: click.Context, verbose: int) -> None:
    """Bootkit project bootstrap orchestrator."""
    ctx.obj = {"verbose": verbose}


@cli.command("init")
@click.option("--name", default=None, help="Project name recorded in the config.")
@config_option
def init_command(name: str | None, config_value: str) -> None:
    project_root = Path.cwd().resolve()
    config_path = _resolve_config_path(project_root, config_value)
    config = load_config(config_path)
    if name:
        config.project.name = name
    elif not config_path.exists():
        config.project.name = project_root.name
    save_config(config_path, config)

    state_root = project_root / config.paths.state_dir
    state_root.mkdir(parents=True, exist_ok=True)
    _project_path(project_root, config.paths.implementations_dir).mkdir(parents=True, exist_ok=True)

    state = StateStore(project_root, state_dir=config.paths.state_dir)
    if not state.exists("session"):
        state.set_session(empty_session())

    catalog_path = _project_path(project_root, config.paths.catalog)
    click.echo(f"Initialized bootkit in {project_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Catalog: {catalog_path}" + ("" if catalog_path.exists() else " (missing)"))
    click.echo(f"State: {state_root}")


@cli.command("list")
@click.option("--phase", type=int, default=None)
@config_option
def list_command(phase: int | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    runtime.registry.start_background_scan()
    try:
        catalog = runtime.registry.load()
    except CatalogInvalid as exc:
        raise click.ClickException(str(exc)) from exc
    scan = runtime.registry.wait_for_scan(runtime.config.execution.scan_timeout_seconds)
    if runtime.registry.scan_error is not None:
        click.echo(f"Implementation scan failed: {runtime.registry.scan_error}", err=True)
    completed = runtime.markers.completed_ids()

    for number in catalog.phase_numbers():
        if phase is not None and number != phase:
            continue
        tasks = catalog.phase_tasks(number)
        if not tasks:
            continue
        click.echo(f"Phase {number}: {catalog.phase(number).name}")
        for task in tasks:
            mark = "x" if task.id in completed else " "
            flags = []
            if scan is not None and scan.statuses.get(task.id) == "missing":
                flags.append("missing")
            if task.has_questions:
                flags.append("questions")
            suffix = f"  ({', '.join(flags)})" if flags else ""
            click.echo(f"  [{mark}] {task.id:<20} {task.description}{suffix}")

    if catalog.profiles and phase is None:
        click.echo("Profiles:")
        for profile in catalog.profiles.values():
            click.echo(f"  {profile.name:<20} {', '.join(profile.tasks)}")
    if scan is not None and scan.new_scripts:
        click.echo("Unregistered scripts: " + ", ".join(scan.new_scripts))


@cli.command("status")
@click.option("--json", "as_json", is_flag=True, default=False)
@config_option
def status_command(as_json: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        report = runtime.repair.detect_state()
    except CatalogInvalid as exc:
        raise _catalog_failure(exc) from exc
    session = runtime.state.get_session()
    if as_json:
        payload = {"state": report.to_dict(), "session": session}
        click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
        return
    click.echo(f"State: {report.state.value}")
    click.echo(report.description)
    total = "?" if report.catalog_size is None else str(report.catalog_size)
    click.echo(f"Completed: {len(report.completed)}/{total}")
    if session.get("run_id"):
        click.echo(
            f"Last run: {session['run_id']} "
            f"(completed {len(session.get('completed') or [])}, "
            f"failed {len(session.get('failed') or [])}, "
            f"skipped {len(session.get('skipped') or [])})"
        )


@cli.command("validate")
@config_option
def validate_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    errors = validate_catalog_file(runtime.registry.catalog_path)
    if errors:
        for error in errors:
            click.echo(f"- {error}", err=True)
        raise click.ClickException(f"Catalog invalid: {runtime.registry.catalog_path}")
    catalog = runtime.registry.load()
    click.echo(
        f"Catalog valid: {len(catalog)} tasks, {len(catalog.phase_numbers())} phases, "
        f"{len(catalog.profiles)} profiles"
    )


@cli.command("health")
@config_option
@click.pass_context
def health_command(ctx: click.Context, config_value: str) -> None:
    runtime = _runtime(config_value)
    health = runtime.repair.deep_check()
    _render_health(health)
    ctx.exit(health.exit_code)


@cli.command("run")
@click.argument("selector")
@click.option("--yes", "-y", "auto_approve", is_flag=True, default=False)
@click.option("--dry-run", is_flag=True, default=False)
@click.option("--force", is_flag=True, default=False, help="Run despite blocking preflight findings.")
@click.option("--skip-preflight", is_flag=True, default=False)
@click.option("--no-suggest", is_flag=True, default=False)
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the run summary as JSON.")
@config_option
@click.pass_context
def run_command(
    ctx: click.Context,
    selector: str,
    auto_approve: bool,
    dry_run: bool,
    force: bool,
    skip_preflight: bool,
    no_suggest: bool,
    as_json: bool,
    config_value: str,
) -> None:
    runtime = _runtime(
        config_value,
        confirm=_confirm_task,
        event_hook=None if as_json else _render_event,
        suggestions=False if no_suggest else None,
    )
    if dry_run:
        mode = ExecutionMode.DRY_RUN
    elif auto_approve:
        mode = ExecutionMode.AUTO_APPROVE
    else:
        mode = ExecutionMode(runtime.config.execution.default_mode)

    try:
        summary = runtime.engine.execute(
            selector,
            mode,
            force=force,
            skip_preflight=skip_preflight or runtime.config.execution.skip_preflight,
        )
    except PreflightBlocking as exc:
        for finding in exc.findings:
            click.echo(f"- {finding.task_id}: {finding.message}", err=True)
        raise click.ClickException(
            "Preflight check failed; fix the findings above or rerun with --force."
        ) from exc
    except BootkitError as exc:
        raise click.ClickException(str(exc)) from exc

    if as_json:
        click.echo(json.dumps(summary.to_dict(), ensure_ascii=False, indent=2))
        ctx.exit(summary.exit_code)

    if summary.preflight is not None:
        for finding in summary.preflight.advisory:
            click.echo(f"Note: {finding.task_id}: {finding.message}")

    report = summary.dry_run_report
    if report is not None:
        for line in report.lines():
            click.echo(line)

    session = summary.session
    click.echo(f"Run: {session.run}  Failed: {session.failed}  Skipped: {session.skipped}")
    if session.failed and mode is not ExecutionMode.DRY_RUN:
        click.echo("Some tasks failed. See `bootkit repair status` for recovery options.", err=True)
    ctx.exit(summary.exit_code)


@cli.group("repair")
def repair_group() -> None:
    """Inspect and recover bootstrap state."""


@repair_group.command("status")
@config_option
@click.pass_context
def repair_status_command(ctx: click.Context, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        report = runtime.repair.detect_state()
    except CatalogInvalid as exc:
        raise _catalog_failure(exc) from exc
    click.echo(f"Current state: {report.state.value}")
    click.echo(f"Description: {report.description}")
    if report.completed:
        click.echo(f"Completed: {', '.join(report.completed)}")
    if report.last_task:
        click.echo(f"Last task: {report.last_task}")
    if report.recovery_options:
        click.echo("Options:")
        for index, option in enumerate(report.recovery_options, start=1):
            click.echo(f"  {index}. {option}")
    ctx.exit(report.exit_code)


@repair_group.command("retry")
@click.option("--yes", "-y", "assume_yes", is_flag=True, default=False)
@config_option
@click.pass_context
def repair_retry_command(ctx: click.Context, assume_yes: bool, config_value: str) -> None:
    runtime = _runtime(config_value, event_hook=_render_event)
    confirm = None if assume_yes else (lambda prompt: click.confirm(prompt, default=True))
    try:
        outcome = runtime.repair.retry(confirm=confirm)
    except CatalogInvalid as exc:
        raise _catalog_failure(exc) from exc
    if outcome.message:
        click.echo(outcome.message, err=outcome.exit_code != 0)
    elif outcome.status == "cancelled":
        click.echo("Retry cancelled.")
    ctx.exit(outcome.exit_code)


@repair_group.command("continue")
@config_option
@click.pass_context
def repair_continue_command(ctx: click.Context, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        report = runtime.repair.continue_()
    except CatalogInvalid as exc:
        raise _catalog_failure(exc) from exc
    click.echo(report.message)
    if report.next_task:
        click.echo(f"Next unresolved task: {report.next_task}")
        click.echo(f"  bootkit run {report.next_task}")
    ctx.exit(report.exit_code)


@repair_group.command("reset")
@click.option("--yes", "-y", "assume_yes", is_flag=True, default=False)
@config_option
@click.pass_context
def repair_reset_command(ctx: click.Context, assume_yes: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    confirm = None if assume_yes else (lambda prompt: click.confirm(prompt, default=False))
    try:
        report = runtime.repair.reset(confirm=confirm)
    except (BootkitError, OSError) as exc:
        click.echo(f"Reset failed: {exc}", err=True)
        ctx.exit(EXIT_REPAIR_FAILED)
    if report.status == "cancelled":
        click.echo("Reset cancelled.")
        return
    click.echo(f"Backup created: {report.snapshot_id}")
    click.echo(f"Session cleared; {report.markers_removed} completion marker(s) removed.")


@repair_group.command("check")
@config_option
@click.pass_context
def repair_check_command(ctx: click.Context, config_value: str) -> None:
    runtime = _runtime(config_value)
    health = runtime.repair.deep_check()
    _render_health(health)
    ctx.exit(health.exit_code)


@cli.group("backup")
def backup_group() -> None:
    """Snapshot and restore critical files."""


@backup_group.command("create")
@click.option("--label", default=None)
@config_option
def backup_create_command(label: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    snapshot_id = runtime.snapshots.create_snapshot(label=label)
    info = runtime.snapshots.info(snapshot_id)
    click.echo(f"Created snapshot {snapshot_id} ({len(info.files)} files)")
    if info.missing:
        click.echo("Missing (not captured): " + ", ".join(info.missing), err=True)
    count = len(runtime.snapshots.list_snapshots())
    if count > runtime.snapshots.max_backups:
        click.echo(
            f"{count} snapshots exceed backup.max_backups ({runtime.snapshots.max_backups}); "
            "run `bootkit backup prune` to remove old ones."
        )


@backup_group.command("list")
@click.option("--json", "as_json", is_flag=True, default=False)
@config_option
def backup_list_command(as_json: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    snapshots = runtime.snapshots.list_snapshots()
    if as_json:
        click.echo(json.dumps([info.to_dict() for info in snapshots], ensure_ascii=False, indent=2))
        return
    if not snapshots:
        click.echo("No snapshots found.")
        return
    for info in snapshots:
        flag = " incomplete" if info.incomplete else ""
        label = f"  {info.label}" if info.label else ""
        click.echo(f"{info.id}  {len(info.files)} files{flag}{label}")


@backup_group.command("verify")
@click.argument("snapshot_ref", default="latest")
@config_option
def backup_verify_command(snapshot_ref: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        snapshot_id = runtime.snapshots.resolve(snapshot_ref)
        errors = runtime.snapshots.verification_errors(snapshot_id)
    except SnapshotNotFound as exc:
        raise click.ClickException(str(exc)) from exc
    if errors:
        for error in errors:
            click.echo(f"- {error}", err=True)
        raise click.ClickException(f"Snapshot {snapshot_id} failed verification")
    click.echo(f"Snapshot {snapshot_id} verified")


@backup_group.command("restore")
@click.argument("snapshot_ref", default="latest")
@click.option("--yes", "-y", "assume_yes", is_flag=True, default=False)
@config_option
@click.pass_context
def backup_restore_command(
    ctx: click.Context, snapshot_ref: str, assume_yes: bool, config_value: str
) -> None:
    runtime = _runtime(config_value)
    confirm = None if assume_yes else (lambda prompt: click.confirm(prompt, default=False))
    try:
        report = runtime.snapshots.restore(snapshot_ref, confirm=confirm)
    except SnapshotNotFound as exc:
        raise click.ClickException(str(exc)) from exc
    except RestoreVerificationFailed as exc:
        for error in exc.errors:
            click.echo(f"- {error}", err=True)
        raise click.ClickException(
            f"Snapshot {exc.snapshot_id} failed verification; nothing was restored."
        ) from exc
    except RestorePartial as exc:
        click.echo(str(exc), err=True)
        ctx.exit(EXIT_REPAIR_FAILED)
    if report.status == "cancelled":
        click.echo("Restore cancelled.")
        return
    click.echo(f"Restored {len(report.restored)} file(s) from {report.snapshot_id}")
    click.echo(f"Pre-restore snapshot: {report.pre_restore_id}")


@backup_group.command("prune")
@click.option("--keep", "keep_n", type=int, default=None)
@click.option("--yes", "-y", "assume_yes", is_flag=True, default=False)
@config_option
def backup_prune_command(keep_n: int | None, assume_yes: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    confirm = None if assume_yes else (lambda prompt: click.confirm(prompt, default=False))
    removed = runtime.snapshots.prune(keep_n, confirm=confirm)
    if not removed:
        click.echo("Nothing to prune.")
        return
    for snapshot_id in removed:
        click.echo(f"Removed {snapshot_id}")


@backup_group.command("delete")
@click.argument("snapshot_ref")
@click.option("--yes", "-y", "assume_yes", is_flag=True, default=False)
@config_option
def backup_delete_command(snapshot_ref: str, assume_yes: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        snapshot_id = runtime.snapshots.resolve(snapshot_ref)
    except SnapshotNotFound as exc:
        raise click.ClickException(str(exc)) from exc
    if not assume_yes and not click.confirm(f"Delete snapshot {snapshot_id}?", default=False):
        click.echo("Delete cancelled.")
        return
    runtime.snapshots.delete(snapshot_id)
    click.echo(f"Removed {snapshot_id}")
