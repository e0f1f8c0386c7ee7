from __future__ import annotations

from typing import Any


class BootkitError(RuntimeError):
    """Base class for orchestration errors."""


class StateError(BootkitError):
    """Raised when state-document operations fail."""


class CatalogInvalid(BootkitError):
    """Raised when the task catalog fails schema or semantic validation."""

    def __init__(self, errors: list[str], *, path: str | None = None) -> None:
        self.errors = list(errors)
        self.path = path
        where = f" ({path})" if path else ""
        summary = "; ".join(self.errors[:5])
        super().__init__(f"Catalog invalid{where}: {summary}")


class SelectorUnresolved(BootkitError):
    def __init__(self, selector: str, *, choices: list[str] | None = None) -> None:
        self.selector = selector
        self.choices = list(choices or [])
        message = f"Unknown task, phase or profile: {selector!r}"
        if self.choices:
            message += f". Available: {', '.join(self.choices)}"
        super().__init__(message)


class PreflightBlocking(BootkitError):
    def __init__(self, findings: list[Any]) -> None:
        self.findings = list(findings)
        lines = [f"- {finding.task_id}: {finding.message}" for finding in self.findings]
        super().__init__("Preflight check failed:\n" + "\n".join(lines))


class TaskExecutionFailure(BootkitError):
    def __init__(self, task_id: str, exit_code: int, message: str = "") -> None:
        self.task_id = task_id
        self.exit_code = exit_code
        super().__init__(message or f"Task {task_id} failed (exit code: {exit_code})")


class SnapshotCaptureIncomplete(UserWarning):
    """Some critical files were absent when a snapshot was taken."""


class SnapshotNotFound(BootkitError):
    def __init__(self, snapshot_id: str) -> None:
        self.snapshot_id = snapshot_id
        super().__init__(f"Snapshot not found: {snapshot_id}")


class RestoreVerificationFailed(BootkitError):
    def __init__(self, snapshot_id: str, errors: list[str]) -> None:
        self.snapshot_id = snapshot_id
        self.errors = list(errors)
        super().__init__(
            f"Snapshot {snapshot_id} failed verification; restore aborted: "
            + "; ".join(self.errors)
        )


class RestorePartial(BootkitError):
    def __init__(self, report: Any) -> None:
        self.report = report
        self.pre_restore_id = report.pre_restore_id
        failed = ", ".join(report.failed)
        super().__init__(
            f"Restore completed with errors ({failed}). "
            f"Pre-restore snapshot available: {report.pre_restore_id}"
        )
