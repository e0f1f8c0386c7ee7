from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from bootkit.catalog import Task
from bootkit.fsops import FileOps


@dataclass(slots=True)
class TaskContext:
    task: Task
    target_dir: Path
    ops: FileOps
    dry_run: bool = False
    env: Mapping[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class TaskResult:
    exit_code: int
    message: str = ""
    stdout_tail: str = ""
    stderr_tail: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class ImplementationError(RuntimeError):
    """Raised when a task implementation cannot be located or loaded."""


class TaskImplementation(ABC):
    """One executable setup unit.

    Implementations must be idempotent: a repeat run on an already set-up
    project returns exit code 0 without redoing completed work.
    """

    outputs: tuple[str, ...] = ()

    @abstractmethod
    def run(self, context: TaskContext) -> TaskResult:
        """Run against ``context.target_dir``; non-zero exit code means failure."""

    def declared_outputs(self, task: Task) -> list[str]:
        return list(task.outputs or self.outputs)
