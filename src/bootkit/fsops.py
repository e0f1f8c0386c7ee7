"""Filesystem operations injected into task implementations.

Task code never touches the filesystem directly for mutations; it calls a
:class:`FileOps`. The execution engine hands out :class:`RealFileOps` for
normal runs and :class:`LoggingFileOps` for dry runs. The logging variant
records every mutating call into an :class:`OperationLog` and leaves disk
untouched, while reads still hit the real filesystem so a task's branching
reflects actual project state.
"""

from __future__ import annotations

import os
import re
import shutil
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

CREATE_DIR = "create_dir"
COPY = "copy"
MOVE = "move"
DELETE = "delete"
SUBSTITUTE = "substitute"
WRITE = "write"
TOUCH = "touch"
CHMOD = "chmod"
CHOWN = "chown"
RUN_SCRIPT = "run_script"

OPERATION_KINDS = (CREATE_DIR, COPY, MOVE, DELETE, SUBSTITUTE, WRITE, TOUCH, CHMOD, CHOWN, RUN_SCRIPT)
CREATING_KINDS = {CREATE_DIR, COPY, WRITE, TOUCH}
MODIFYING_KINDS = {SUBSTITUTE, MOVE}

KIND_LABELS = {
    CREATE_DIR: "Create directories",
    COPY: "Copy files",
    MOVE: "Move files",
    DELETE: "Delete files",
    SUBSTITUTE: "Modify files",
    WRITE: "Write files",
    TOUCH: "Touch files",
    CHMOD: "Change permissions",
    CHOWN: "Change ownership",
    RUN_SCRIPT: "Run scripts",
}


class FileOps(Protocol):
    def mkdir(self, path: Path) -> None: ...

    def copy(self, src: Path, dst: Path) -> None: ...

    def move(self, src: Path, dst: Path) -> None: ...

    def delete(self, path: Path) -> None: ...

    def substitute(self, path: Path, pattern: str, replacement: str) -> int: ...

    def write_text(self, path: Path, content: str) -> None: ...

    def touch(self, path: Path) -> None: ...

    def chmod(self, path: Path, mode: int) -> None: ...

    def chown(self, path: Path, owner: str, group: str | None = None) -> None: ...

    def exists(self, path: Path) -> bool: ...

    def is_file(self, path: Path) -> bool: ...

    def is_dir(self, path: Path) -> bool: ...

    def read_text(self, path: Path) -> str: ...

    def list_dir(self, path: Path) -> list[Path]: ...


class _ReadOps:
    def exists(self, path: Path) -> bool:
        return Path(path).exists()

    def is_file(self, path: Path) -> bool:
        return Path(path).is_file()

    def is_dir(self, path: Path) -> bool:
        return Path(path).is_dir()

    def read_text(self, path: Path) -> str:
        return Path(path).read_text(encoding="utf-8")

    def list_dir(self, path: Path) -> list[Path]:
        target = Path(path)
        if not target.is_dir():
            return []
        return sorted(target.iterdir())


class RealFileOps(_ReadOps):
    def mkdir(self, path: Path) -> None:
        Path(path).mkdir(parents=True, exist_ok=True)

    def copy(self, src: Path, dst: Path) -> None:
        source = Path(src)
        target = Path(dst)
        target.parent.mkdir(parents=True, exist_ok=True)
        if source.is_dir():
            shutil.copytree(source, target, dirs_exist_ok=True)
        else:
            shutil.copy2(source, target)

    def move(self, src: Path, dst: Path) -> None:
        target = Path(dst)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(src), str(target))

    def delete(self, path: Path) -> None:
        target = Path(path)
        if target.is_dir() and not target.is_symlink():
            shutil.rmtree(target)
        else:
            target.unlink(missing_ok=True)

    def substitute(self, path: Path, pattern: str, replacement: str) -> int:
        target = Path(path)
        content = target.read_text(encoding="utf-8")
        updated, count = re.subn(pattern, replacement, content)
        if count:
            target.write_text(updated, encoding="utf-8")
        return count

    def write_text(self, path: Path, content: str) -> None:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")

    def touch(self, path: Path) -> None:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.touch()

    def chmod(self, path: Path, mode: int) -> None:
        os.chmod(path, mode)

    def chown(self, path: Path, owner: str, group: str | None = None) -> None:
        shutil.chown(path, user=owner, group=group)


@dataclass(frozen=True, slots=True)
class Operation:
    kind: str
    path: str
    detail: str = ""

    def describe(self) -> str:
        if self.kind in {COPY, MOVE}:
            return f"{self.detail} -> {self.path}"
        if self.detail:
            return f"{self.path} ({self.detail})"
        return self.path


@dataclass(slots=True)
class OperationLog:
    operations: list[Operation] = field(default_factory=list)

    def record(self, kind: str, path: Path | str, detail: str = "") -> Operation:
        operation = Operation(kind=kind, path=str(path), detail=detail)
        self.operations.append(operation)
        return operation

    def of_kind(self, kind: str) -> list[Operation]:
        return [operation for operation in self.operations if operation.kind == kind]


class LoggingFileOps(_ReadOps):
    """Records mutating calls instead of applying them."""

    def __init__(self, log: OperationLog | None = None) -> None:
        self.log = log if log is not None else OperationLog()

    def mkdir(self, path: Path) -> None:
        self.log.record(CREATE_DIR, path)

    def copy(self, src: Path, dst: Path) -> None:
        self.log.record(COPY, dst, str(src))

    def move(self, src: Path, dst: Path) -> None:
        self.log.record(MOVE, dst, str(src))

    def delete(self, path: Path) -> None:
        self.log.record(DELETE, path)

    def substitute(self, path: Path, pattern: str, replacement: str) -> int:
        self.log.record(SUBSTITUTE, path, f"s/{pattern}/{replacement}/")
        target = Path(path)
        if not target.is_file():
            return 0
        return len(re.findall(pattern, target.read_text(encoding="utf-8")))

    def write_text(self, path: Path, content: str) -> None:
        self.log.record(WRITE, path, f"{len(content)} chars")

    def touch(self, path: Path) -> None:
        self.log.record(TOUCH, path)

    def chmod(self, path: Path, mode: int) -> None:
        self.log.record(CHMOD, path, oct(mode))

    def chown(self, path: Path, owner: str, group: str | None = None) -> None:
        self.log.record(CHOWN, path, f"{owner}:{group}" if group else owner)


@dataclass(slots=True)
class RollbackStep:
    action: str
    path: str
    recoverable: bool = True


@dataclass(slots=True)
class DryRunReport:
    task_ids: list[str]
    counts: dict[str, int]
    operations: list[Operation]
    rollback_plan: list[RollbackStep]

    @classmethod
    def from_log(cls, log: OperationLog, *, task_ids: list[str] | None = None) -> DryRunReport:
        counter = Counter(operation.kind for operation in log.operations)
        counts = {kind: counter.get(kind, 0) for kind in OPERATION_KINDS}
        plan: list[RollbackStep] = []
        for operation in log.operations:
            if operation.kind in CREATING_KINDS:
                plan.append(RollbackStep(action="remove", path=operation.path))
            elif operation.kind == MOVE:
                plan.append(RollbackStep(action=f"move back to {operation.detail}", path=operation.path))
            elif operation.kind == SUBSTITUTE:
                plan.append(RollbackStep(action="back up before run", path=operation.path))
            elif operation.kind == DELETE:
                plan.append(
                    RollbackStep(action="unrecoverable delete", path=operation.path, recoverable=False)
                )
        return cls(
            task_ids=list(task_ids or []),
            counts=counts,
            operations=list(log.operations),
            rollback_plan=plan,
        )

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    @property
    def creates(self) -> int:
        return sum(self.counts[kind] for kind in CREATING_KINDS)

    @property
    def deletes(self) -> int:
        return self.counts[DELETE]

    @property
    def modifies(self) -> int:
        return sum(self.counts[kind] for kind in MODIFYING_KINDS)

    @property
    def destructive(self) -> bool:
        return self.deletes > 0

    @property
    def high_risk(self) -> list[Operation]:
        return [
            operation
            for operation in self.operations
            if operation.kind == DELETE or operation.kind in MODIFYING_KINDS
        ]

    def to_dict(self) -> dict:
        return {
            "tasks": list(self.task_ids),
            "total": self.total,
            "counts": {kind: count for kind, count in self.counts.items() if count},
            "destructive": self.destructive,
            "modifying": self.modifies > 0,
            "operations": [
                {"kind": op.kind, "path": op.path, "detail": op.detail} for op in self.operations
            ],
            "rollback_plan": [
                {"action": step.action, "path": step.path, "recoverable": step.recoverable}
                for step in self.rollback_plan
            ],
        }

    def lines(self) -> list[str]:
        output = [f"Total proposed changes: {self.total}"]
        for kind in OPERATION_KINDS:
            if self.counts[kind]:
                output.append(f"  {KIND_LABELS[kind]}: {self.counts[kind]}")
        for kind in OPERATION_KINDS:
            operations = [op for op in self.operations if op.kind == kind]
            if not operations:
                continue
            output.append(f"{KIND_LABELS[kind]}:")
            output.extend(f"  - {op.describe()}" for op in operations)
        output.append("Impact assessment:")
        if self.deletes:
            output.append(f"  DESTRUCTIVE: {self.deletes} file(s) will be deleted")
        if self.modifies:
            output.append(f"  MODIFYING: {self.modifies} file(s) will be changed")
        if self.total == 0:
            output.append("  No changes would be made")
        elif not self.deletes and not self.modifies:
            output.append("  All changes are non-destructive (creates only)")
        if self.rollback_plan:
            output.append("Rollback plan:")
            for step in self.rollback_plan:
                marker = "" if step.recoverable else " [cannot be recovered]"
                output.append(f"  - {step.action}: {step.path}{marker}")
        output.append("Dry run only: no changes were made.")
        return output
