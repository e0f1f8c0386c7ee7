from __future__ import annotations

import logging
import shutil
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import uuid4

from bootkit.catalog import Task
from bootkit.errors import BootkitError, PreflightBlocking, TaskExecutionFailure
from bootkit.fsops import DryRunReport, LoggingFileOps, OperationLog, RealFileOps
from bootkit.implementations import (
    ScriptImplementation,
    TaskContext,
    TaskImplementation,
    TaskResult,
    load_entrypoint,
)
from bootkit.preflight import Preflight, PreflightReport, ToolProbe
from bootkit.recommend import Recommendation, Recommender
from bootkit.registry import Registry
from bootkit.state import MarkerStore, StateStore

logger = logging.getLogger(__name__)

EngineEventHook = Callable[[dict[str, Any]], None]
ConfirmCallback = Callable[[Task, list[str]], bool]

COMPLETED = "completed"
FAILED = "failed"
SKIPPED = "skipped"

UPSTREAM_FAILED = "upstream failed"
DECLINED = "declined"


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class ExecutionMode(str, Enum):
    CONFIRM = "confirm"
    AUTO_APPROVE = "auto-approve"
    DRY_RUN = "dry-run"


@dataclass(slots=True)
class SessionEntry:
    task_id: str
    outcome: str
    at: str = field(default_factory=_utcnow_iso)
    reason: str | None = None
    exit_code: int | None = None
    duration_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "outcome": self.outcome,
            "at": self.at,
            "reason": self.reason,
            "exit_code": self.exit_code,
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass(slots=True)
class Session:
    run_id: str
    mode: ExecutionMode
    entries: list[SessionEntry] = field(default_factory=list)

    def record(self, entry: SessionEntry) -> SessionEntry:
        self.entries.append(entry)
        return entry

    def ids_with(self, outcome: str) -> list[str]:
        return [entry.task_id for entry in self.entries if entry.outcome == outcome]

    def outcome_of(self, task_id: str) -> SessionEntry | None:
        for entry in reversed(self.entries):
            if entry.task_id == task_id:
                return entry
        return None

    @property
    def run(self) -> int:
        return len(self.ids_with(COMPLETED))

    @property
    def failed(self) -> int:
        return len(self.ids_with(FAILED))

    @property
    def skipped(self) -> int:
        return len(self.ids_with(SKIPPED))


@dataclass(slots=True)
class RunSummary:
    run_id: str
    mode: ExecutionMode
    selector: str | None
    started_at: str
    ended_at: str
    session: Session
    preflight: PreflightReport | None = None
    dry_run_reports: dict[str, DryRunReport] = field(default_factory=dict)
    recommendations: dict[str, list[Recommendation]] = field(default_factory=dict)

    @property
    def exit_code(self) -> int:
        return self.session.failed

    @property
    def dry_run_report(self) -> DryRunReport | None:
        if self.mode is not ExecutionMode.DRY_RUN:
            return None
        combined = OperationLog()
        for report in self.dry_run_reports.values():
            combined.operations.extend(report.operations)
        return DryRunReport.from_log(combined, task_ids=list(self.dry_run_reports))

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "mode": self.mode.value,
            "selector": self.selector,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "run": self.session.run,
            "failed": self.session.failed,
            "skipped": self.session.skipped,
            "entries": [entry.to_dict() for entry in self.session.entries],
            "preflight": self.preflight.to_dict() if self.preflight is not None else None,
            "recommendations": {
                task_id: [item.to_dict() for item in items]
                for task_id, items in self.recommendations.items()
            },
            "dry_run": self.dry_run_report.to_dict() if self.dry_run_report is not None else None,
        }


class ExecutionEngine:
    """Runs resolved task lists in order and records their outcomes.

    The engine is the only writer of completion markers. Failures are
    isolated per task: a failing task is recorded and the loop moves on,
    skipping only tasks whose hard dependencies failed in the same run.
    """

    def __init__(
        self,
        registry: Registry,
        state: StateStore,
        markers: MarkerStore,
        *,
        recommender: Recommender | None = None,
        confirm: ConfirmCallback | None = None,
        event_hook: EngineEventHook | None = None,
        shell: str = "bash",
        target_dir: Path | None = None,
        implementations: Mapping[str, TaskImplementation] | None = None,
        tool_probe: ToolProbe = shutil.which,
        suggestions: bool = True,
    ) -> None:
        self.registry = registry
        self.state = state
        self.markers = markers
        self.recommender = recommender
        self.confirm = confirm
        self.event_hook = event_hook
        self.shell = shell
        self.target_dir = (target_dir or registry.project_root).resolve()
        self.implementations = dict(implementations or {})
        self.tool_probe = tool_probe
        self.suggestions = suggestions

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def implementation_for(self, task: Task) -> TaskImplementation:
        override = self.implementations.get(task.id)
        if override is not None:
            return override
        if task.entrypoint:
            return load_entrypoint(task.entrypoint)
        return ScriptImplementation(self.registry.script_path(task), shell=self.shell)

    def preflight(self, tasks: list[Task]) -> PreflightReport:
        checker = Preflight(
            self.registry,
            self.markers,
            tool_probe=self.tool_probe,
            provided=self.implementations,
        )
        return checker.check(tasks)

    def execute(
        self,
        selector: str,
        mode: ExecutionMode | str = ExecutionMode.CONFIRM,
        *,
        force: bool = False,
        skip_preflight: bool = False,
    ) -> RunSummary:
        tasks = self.registry.resolve(selector)
        report: PreflightReport | None = None
        if not skip_preflight:
            report = self.preflight(tasks)
            for finding in report.advisory:
                logger.info("Preflight advisory for %s: %s", finding.task_id, finding.message)
            if not report.ok:
                if not force:
                    raise PreflightBlocking(report.blocking)
                logger.warning(
                    "Continuing despite %d blocking preflight finding(s)", len(report.blocking)
                )
        return self.run(tasks, mode, selector=selector, preflight=report)

    def _invoke(self, task: Task, *, dry_run: bool, log: OperationLog | None = None) -> TaskResult:
        ops = LoggingFileOps(log) if dry_run else RealFileOps()
        context = TaskContext(task=task, target_dir=self.target_dir, ops=ops, dry_run=dry_run)
        try:
            implementation = self.implementation_for(task)
            return implementation.run(context)
        except TaskExecutionFailure as exc:
            logger.error("%s", exc)
            return TaskResult(exit_code=exc.exit_code or 1, message=str(exc))
        except Exception as exc:
            logger.exception("Task %s raised", task.id)
            return TaskResult(exit_code=1, message=f"{type(exc).__name__}: {exc}")

    def _suggest(self, task: Task, session: Session, summary: RunSummary | None) -> None:
        if not self.suggestions or self.recommender is None:
            return
        completed = set(session.ids_with(COMPLETED))
        suggestions = self.recommender.suggest(task.id, completed=completed)
        if not suggestions:
            return
        if summary is not None:
            summary.recommendations[task.id] = suggestions
        self._emit(
            {
                "event": "recommendations",
                "task_id": task.id,
                "suggestions": [item.to_dict() for item in suggestions],
            }
        )

    def _execute_task(
        self,
        task: Task,
        session: Session,
        summary: RunSummary | None = None,
    ) -> SessionEntry:
        started = time.monotonic()
        result = self._invoke(task, dry_run=False)
        duration = time.monotonic() - started

        if result.ok:
            self.markers.mark_complete(task.id)
            entry = session.record(
                SessionEntry(task.id, COMPLETED, exit_code=0, duration_seconds=duration)
            )
            self.state.record_outcome(task.id, COMPLETED, exit_code=0)
            logger.info("Task %s completed in %.2fs", task.id, duration)
            self._emit(
                {
                    "event": "task_completed",
                    "task_id": task.id,
                    "duration_seconds": round(duration, 3),
                }
            )
            self._suggest(task, session, summary)
            return entry

        entry = session.record(
            SessionEntry(
                task.id,
                FAILED,
                reason=result.message or None,
                exit_code=result.exit_code,
                duration_seconds=duration,
            )
        )
        self.state.record_outcome(
            task.id, FAILED, reason=result.message or None, exit_code=result.exit_code
        )
        logger.warning("Task %s failed with exit code %s", task.id, result.exit_code)
        self._emit(
            {
                "event": "task_failed",
                "task_id": task.id,
                "exit_code": result.exit_code,
                "message": result.message,
                "stderr_tail": result.stderr_tail,
            }
        )
        return entry

    def _dry_run_task(self, task: Task, session: Session, summary: RunSummary) -> SessionEntry:
        log = OperationLog()
        started = time.monotonic()
        result = self._invoke(task, dry_run=True, log=log)
        duration = time.monotonic() - started

        report = DryRunReport.from_log(log, task_ids=[task.id])
        summary.dry_run_reports[task.id] = report
        self._emit({"event": "dry_run_report", "task_id": task.id, "report": report})
        if not result.ok:
            self._emit(
                {
                    "event": "task_failed",
                    "task_id": task.id,
                    "exit_code": result.exit_code,
                    "message": result.message,
                    "stderr_tail": result.stderr_tail,
                }
            )
            return session.record(
                SessionEntry(
                    task.id,
                    FAILED,
                    reason=result.message or None,
                    exit_code=result.exit_code,
                    duration_seconds=duration,
                )
            )
        self._emit({"event": "task_completed", "task_id": task.id, "dry_run": True})
        return session.record(
            SessionEntry(task.id, COMPLETED, reason="dry run", exit_code=0, duration_seconds=duration)
        )

    def _skip(self, task: Task, session: Session, reason: str, *, persist: bool) -> SessionEntry:
        entry = session.record(SessionEntry(task.id, SKIPPED, reason=reason))
        if persist:
            self.state.record_outcome(task.id, SKIPPED, reason=reason)
        logger.info("Skipped %s: %s", task.id, reason)
        self._emit({"event": "task_skipped", "task_id": task.id, "reason": reason})
        return entry

    def _declared_outputs(self, task: Task) -> list[str]:
        try:
            return self.implementation_for(task).declared_outputs(task)
        except Exception:
            return list(task.outputs)

    def run(
        self,
        tasks: list[Task],
        mode: ExecutionMode | str = ExecutionMode.CONFIRM,
        *,
        selector: str | None = None,
        preflight: PreflightReport | None = None,
    ) -> RunSummary:
        mode = ExecutionMode(mode)
        if mode is ExecutionMode.CONFIRM and self.confirm is None:
            raise BootkitError("Confirm mode requires a confirmation callback.")

        dry_run = mode is ExecutionMode.DRY_RUN
        run_id = f"run-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8]}"
        session = Session(run_id=run_id, mode=mode)
        summary = RunSummary(
            run_id=run_id,
            mode=mode,
            selector=selector,
            started_at=_utcnow_iso(),
            ended_at="",
            session=session,
            preflight=preflight,
        )
        if not dry_run:
            self.state.begin_run(run_id, mode=mode.value, selector=selector)
        logger.info("Run %s started (%s, %d tasks)", run_id, mode.value, len(tasks))
        self._emit(
            {
                "event": "run_started",
                "run_id": run_id,
                "mode": mode.value,
                "selector": selector,
                "tasks": [task.id for task in tasks],
            }
        )

        blocked: set[str] = set()
        total = len(tasks)
        for index, task in enumerate(tasks, start=1):
            failed_upstream = [dep for dep in task.dependencies if dep in blocked]
            if failed_upstream:
                blocked.add(task.id)
                self._skip(task, session, UPSTREAM_FAILED, persist=not dry_run)
                continue

            self._emit(
                {
                    "event": "task_started",
                    "task_id": task.id,
                    "index": index,
                    "total": total,
                    "description": task.description,
                }
            )

            if mode is ExecutionMode.CONFIRM:
                outputs = self._declared_outputs(task)
                self._emit({"event": "task_outputs", "task_id": task.id, "outputs": outputs})
                if not self.confirm(task, outputs):
                    self._skip(task, session, DECLINED, persist=True)
                    continue

            if dry_run:
                entry = self._dry_run_task(task, session, summary)
            else:
                entry = self._execute_task(task, session, summary)
            if entry.outcome == FAILED:
                blocked.add(task.id)

        summary.ended_at = _utcnow_iso()
        if not dry_run:
            self.state.end_run()
        logger.info(
            "Run %s finished: run=%d failed=%d skipped=%d",
            run_id,
            session.run,
            session.failed,
            session.skipped,
        )
        self._emit(
            {
                "event": "run_finished",
                "run_id": run_id,
                "run": session.run,
                "failed": session.failed,
                "skipped": session.skipped,
                "dry_run": dry_run,
            }
        )
        return summary

    def run_single(self, task: Task) -> SessionEntry:
        """Execute one task for real, outside of a full run."""
        run_id = f"run-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8]}"
        session = Session(run_id=run_id, mode=ExecutionMode.AUTO_APPROVE)
        self._emit({"event": "task_started", "task_id": task.id, "index": 1, "total": 1})
        return self._execute_task(task, session)
