from __future__ import annotations

import json
import logging
import os
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from bootkit.backup import SnapshotManager
from bootkit.catalog import validate_catalog_file
from bootkit.engine import COMPLETED, ExecutionEngine
from bootkit.errors import CatalogInvalid, SelectorUnresolved
from bootkit.registry import Registry
from bootkit.state import BootstrapState, MarkerStore, StateStore, derive_state

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CRITICAL = 1
EXIT_WARNING = 2
EXIT_REPAIR_FAILED = 3

ConfirmPrompt = Callable[[str], bool]

STATE_DESCRIPTIONS = {
    BootstrapState.NEVER_RUN: "No configuration found; bootstrap has never run.",
    BootstrapState.INITIALIZED: "Configuration exists but no tasks have run.",
    BootstrapState.PARTIAL: "Bootstrap partially complete; some tasks ran successfully.",
    BootstrapState.FAILED: "Bootstrap failed during a task.",
    BootstrapState.COMPLETE: "Bootstrap appears complete.",
}

RECOVERY_OPTIONS = {
    BootstrapState.NEVER_RUN: ["bootkit init", "bootkit run <selector>"],
    BootstrapState.INITIALIZED: ["bootkit run <selector>"],
    BootstrapState.PARTIAL: ["bootkit repair continue", "bootkit repair reset"],
    BootstrapState.FAILED: [
        "bootkit repair retry",
        "bootkit repair reset",
        "bootkit repair check",
    ],
    BootstrapState.COMPLETE: ["bootkit repair check", "bootkit backup list"],
}


def exit_code_for_state(state: BootstrapState) -> int:
    if state is BootstrapState.NEVER_RUN:
        return EXIT_CRITICAL
    if state in {BootstrapState.PARTIAL, BootstrapState.FAILED}:
        return EXIT_WARNING
    return EXIT_OK


@dataclass(slots=True)
class StateReport:
    state: BootstrapState
    description: str
    last_failed: str | None = None
    last_task: str | None = None
    completed: list[str] = field(default_factory=list)
    history_count: int = 0
    catalog_size: int | None = None
    recovery_options: list[str] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        return exit_code_for_state(self.state)

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "description": self.description,
            "last_failed": self.last_failed,
            "last_task": self.last_task,
            "completed": list(self.completed),
            "history_count": self.history_count,
            "catalog_size": self.catalog_size,
            "recovery_options": list(self.recovery_options),
        }


@dataclass(slots=True)
class RepairOutcome:
    action: str
    status: str
    exit_code: int
    task_id: str | None = None
    message: str = ""


@dataclass(slots=True)
class ContinueReport:
    state: BootstrapState
    next_task: str | None
    completed: list[str]
    message: str
    exit_code: int = EXIT_OK
    implemented: bool = False


@dataclass(slots=True)
class ResetReport:
    status: str
    snapshot_id: str | None = None
    markers_removed: int = 0


@dataclass(slots=True)
class HealthCheck:
    name: str
    ok: bool
    detail: str = ""
    severity: str = "error"


@dataclass(slots=True)
class HealthReport:
    checks: list[HealthCheck] = field(default_factory=list)

    def add(self, name: str, ok: bool, detail: str = "", *, severity: str = "error") -> None:
        self.checks.append(HealthCheck(name=name, ok=ok, detail=detail, severity=severity))

    @property
    def issues(self) -> list[HealthCheck]:
        return [check for check in self.checks if not check.ok and check.severity == "error"]

    @property
    def warnings(self) -> list[HealthCheck]:
        return [check for check in self.checks if not check.ok and check.severity == "warning"]

    @property
    def ok(self) -> bool:
        return not self.issues

    @property
    def exit_code(self) -> int:
        if self.issues:
            return EXIT_CRITICAL
        if self.warnings:
            return EXIT_WARNING
        return EXIT_OK


def _writable(path: Path) -> bool:
    probe = path
    while not probe.exists():
        if probe.parent == probe:
            return False
        probe = probe.parent
    return probe.is_dir() and os.access(probe, os.W_OK)


class RepairService:
    """Status, retry, continue, reset and deep-check over recorded state."""

    def __init__(
        self,
        *,
        config_path: Path,
        registry: Registry,
        state: StateStore,
        markers: MarkerStore,
        snapshots: SnapshotManager,
        engine: ExecutionEngine,
    ) -> None:
        self.config_path = config_path
        self.registry = registry
        self.state = state
        self.markers = markers
        self.snapshots = snapshots
        self.engine = engine

    def detect_state(self) -> StateReport:
        """Derive the current run state.

        Raises ``CatalogInvalid`` when a configured project has no usable
        catalog, since completion cannot be judged without it.
        """
        session = self.state.get_session()
        history = session.get("history") or []
        completed = sorted(self.markers.completed_ids())
        config_present = self.config_path.exists()
        catalog_ids = list(self.registry.load().tasks) if config_present else None
        state = derive_state(
            config_present=config_present,
            completed=completed,
            last_failed=session.get("last_failed"),
            history_count=len(history),
            catalog_ids=catalog_ids,
        )
        description = STATE_DESCRIPTIONS[state]
        if state is BootstrapState.FAILED:
            description = f"Bootstrap failed during: {session.get('last_failed')}"
        return StateReport(
            state=state,
            description=description,
            last_failed=session.get("last_failed"),
            last_task=session.get("last_task"),
            completed=completed,
            history_count=len(history),
            catalog_size=None if catalog_ids is None else len(catalog_ids),
            recovery_options=list(RECOVERY_OPTIONS[state]),
        )

    def retry(self, confirm: ConfirmPrompt | None = None) -> RepairOutcome:
        report = self.detect_state()
        if report.state is not BootstrapState.FAILED or not report.last_failed:
            return RepairOutcome(
                action="retry",
                status="nothing_to_retry",
                exit_code=EXIT_CRITICAL,
                message=f"No failed task to retry (state: {report.state.value}).",
            )
        task_id = report.last_failed
        try:
            task = self.registry.task(task_id)
        except (SelectorUnresolved, CatalogInvalid) as exc:
            return RepairOutcome(
                action="retry",
                status="unresolved",
                exit_code=EXIT_CRITICAL,
                task_id=task_id,
                message=str(exc),
            )
        if confirm is not None and not confirm(f"Retry {task_id}?"):
            return RepairOutcome(
                action="retry", status="cancelled", exit_code=EXIT_OK, task_id=task_id
            )

        entry = self.engine.run_single(task)
        if entry.outcome == COMPLETED:
            return RepairOutcome(
                action="retry",
                status="completed",
                exit_code=EXIT_OK,
                task_id=task_id,
                message=f"{task_id} completed successfully.",
            )
        return RepairOutcome(
            action="retry",
            status="failed",
            exit_code=EXIT_REPAIR_FAILED,
            task_id=task_id,
            message=entry.reason or f"{task_id} failed again.",
        )

    def continue_(self) -> ContinueReport:
        """Report where a resumed run would pick up; nothing is executed."""
        report = self.detect_state()
        if report.state is BootstrapState.NEVER_RUN:
            return ContinueReport(
                state=report.state,
                next_task=None,
                completed=[],
                message="Bootstrap has never been run; nothing to continue.",
                exit_code=EXIT_CRITICAL,
            )
        if report.state is BootstrapState.COMPLETE:
            return ContinueReport(
                state=report.state,
                next_task=None,
                completed=report.completed,
                message="Bootstrap appears complete; nothing to continue.",
            )

        catalog = self.registry.load()
        done = set(report.completed)
        phases = [catalog.tasks[task_id].phase for task_id in done if task_id in catalog]
        floor = max(phases) if phases else 0
        pending = [task for task in catalog.ordered() if task.id not in done]
        later = [task for task in pending if task.phase >= floor]
        candidates = later or pending
        next_task = candidates[0].id if candidates else None

        return ContinueReport(
            state=report.state,
            next_task=next_task,
            completed=report.completed,
            message=(
                "Automatic continuation is not implemented; "
                "run the remaining tasks individually with `bootkit run <task>`."
            ),
        )

    def reset(self, confirm: ConfirmPrompt | None = None) -> ResetReport:
        if confirm is not None and not confirm("Reset session state and clear completion markers?"):
            return ResetReport(status="cancelled")
        snapshot_id = self.snapshots.create_snapshot(label="pre-reset")
        self.state.clear_session()
        removed = self.markers.clear()
        logger.info("Reset complete: snapshot %s, %d marker(s) removed", snapshot_id, removed)
        return ResetReport(status="reset", snapshot_id=snapshot_id, markers_removed=removed)

    def deep_check(self) -> HealthReport:
        health = HealthReport()

        if self.config_path.is_file():
            text = self.config_path.read_text(encoding="utf-8")
            health.add(
                "config",
                bool(re.search(r"^\s*\[[^\]]+\]", text, re.MULTILINE)),
                str(self.config_path),
            )
        else:
            health.add("config", False, f"{self.config_path} not found")

        catalog_errors = validate_catalog_file(self.registry.catalog_path)
        health.add(
            "catalog",
            not catalog_errors,
            "; ".join(catalog_errors[:5]) or str(self.registry.catalog_path),
        )

        health.add(
            "state_dir",
            _writable(self.state.local_state_dir),
            str(self.state.local_state_dir),
        )
        health.add(
            "backups_dir",
            _writable(self.snapshots.backups_dir),
            str(self.snapshots.backups_dir),
        )

        session_path = self.state.document_path("session")
        if session_path.exists():
            try:
                json.loads(session_path.read_text(encoding="utf-8"))
                health.add("session", True, str(session_path))
            except json.JSONDecodeError as exc:
                health.add("session", False, f"{session_path}: {exc.msg}")

        lock_detail = ""
        if self.state.lock_file.exists():
            if self.state.lock_is_stale():
                lock_detail = "stale lock file; removed on next write"
            else:
                lock_detail = "lock held by a running process"
        health.add("state_lock", not lock_detail, lock_detail, severity="warning")

        if not catalog_errors:
            scan = self.registry.scan()
            health.add(
                "implementations",
                not scan.missing,
                ", ".join(scan.missing) or f"{len(scan.statuses)} available",
                severity="warning",
            )

        snapshots = self.snapshots.list_snapshots()
        health.add(
            "backups",
            bool(snapshots),
            f"{len(snapshots)} snapshot(s)" if snapshots else "no snapshots yet",
            severity="warning",
        )
        return health
