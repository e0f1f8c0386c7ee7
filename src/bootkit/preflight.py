from __future__ import annotations

import shutil
from collections.abc import Callable, Collection
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from bootkit.catalog import Task
from bootkit.errors import PreflightBlocking
from bootkit.registry import Registry
from bootkit.state import MarkerStore

ToolProbe = Callable[[str], Any]


class Severity(str, Enum):
    BLOCKING = "blocking"
    ADVISORY = "advisory"


@dataclass(frozen=True, slots=True)
class Finding:
    task_id: str
    check: str
    severity: Severity
    subject: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {
            "task_id": self.task_id,
            "check": self.check,
            "severity": self.severity.value,
            "subject": self.subject,
            "message": self.message,
        }


@dataclass(slots=True)
class PreflightReport:
    task_ids: list[str]
    findings: list[Finding] = field(default_factory=list)
    checked_at: str = field(
        default_factory=lambda: datetime.now(UTC).replace(microsecond=0).isoformat()
    )

    @property
    def blocking(self) -> list[Finding]:
        return [item for item in self.findings if item.severity is Severity.BLOCKING]

    @property
    def advisory(self) -> list[Finding]:
        return [item for item in self.findings if item.severity is Severity.ADVISORY]

    @property
    def ok(self) -> bool:
        return not self.blocking

    def for_task(self, task_id: str) -> list[Finding]:
        return [item for item in self.findings if item.task_id == task_id]

    def raise_for_blocking(self) -> None:
        if self.blocking:
            raise PreflightBlocking(self.blocking)

    def to_dict(self) -> dict[str, Any]:
        return {
            "checked_at": self.checked_at,
            "ok": self.ok,
            "tasks": list(self.task_ids),
            "findings": [item.to_dict() for item in self.findings],
        }


class Preflight:
    """Validates a resolved task list before anything executes."""

    def __init__(
        self,
        registry: Registry,
        markers: MarkerStore,
        *,
        tool_probe: ToolProbe = shutil.which,
        provided: Collection[str] = (),
    ) -> None:
        self.registry = registry
        self.markers = markers
        self.tool_probe = tool_probe
        self.provided = set(provided)

    def _tool_available(self, tool: str) -> bool:
        return bool(tool.strip()) and bool(self.tool_probe(tool))

    def _tool_findings(self, task: Task) -> list[Finding]:
        findings: list[Finding] = []
        for tool in task.required_tools:
            if not self._tool_available(tool):
                findings.append(
                    Finding(
                        task_id=task.id,
                        check="tool",
                        severity=Severity.BLOCKING,
                        subject=tool,
                        message=f"required tool '{tool}' not found in PATH",
                    )
                )
        for tool in task.optional_tools:
            if not self._tool_available(tool):
                findings.append(
                    Finding(
                        task_id=task.id,
                        check="tool",
                        severity=Severity.ADVISORY,
                        subject=tool,
                        message=f"optional tool '{tool}' not found in PATH",
                    )
                )
        return findings

    def _dependency_findings(
        self,
        task: Task,
        completed: set[str],
        scheduled_before: set[str],
        scheduled_after: set[str],
    ) -> list[Finding]:
        findings: list[Finding] = []
        for dependency in task.dependencies:
            if dependency in completed or dependency in scheduled_before:
                continue
            if dependency in scheduled_after:
                message = f"depends on '{dependency}', which is scheduled after it"
            else:
                message = f"depends on '{dependency}', which has not completed"
            findings.append(
                Finding(
                    task_id=task.id,
                    check="dependency",
                    severity=Severity.BLOCKING,
                    subject=dependency,
                    message=message,
                )
            )
        for dependency in task.soft_dependencies:
            if dependency in completed or dependency in scheduled_before:
                continue
            findings.append(
                Finding(
                    task_id=task.id,
                    check="dependency",
                    severity=Severity.ADVISORY,
                    subject=dependency,
                    message=f"works best after '{dependency}', which has not completed",
                )
            )
        return findings

    def _implementation_findings(self, task: Task) -> list[Finding]:
        if task.id in self.provided or self.registry.implementation_present(task):
            return []
        where = task.entrypoint or str(self.registry.script_path(task))
        return [
            Finding(
                task_id=task.id,
                check="implementation",
                severity=Severity.BLOCKING,
                subject=where,
                message=f"implementation not found: {where}",
            )
        ]

    def check(self, tasks: list[Task]) -> PreflightReport:
        completed = self.markers.completed_ids()
        report = PreflightReport(task_ids=[task.id for task in tasks])
        scheduled_before: set[str] = set()
        all_ids = {task.id for task in tasks}
        for task in tasks:
            scheduled_after = all_ids - scheduled_before - {task.id}
            report.findings.extend(self._tool_findings(task))
            report.findings.extend(
                self._dependency_findings(task, completed, scheduled_before, scheduled_after)
            )
            report.findings.extend(self._implementation_findings(task))
            scheduled_before.add(task.id)
        return report
