from __future__ import annotations

import os
import subprocess
from pathlib import Path

from bootkit.fsops import RUN_SCRIPT, LoggingFileOps
from bootkit.implementations.base import (
    ImplementationError,
    TaskContext,
    TaskImplementation,
    TaskResult,
)


def _tail(text: str | None, limit: int = 2000) -> str:
    if not text:
        return ""
    return text[-limit:].strip()


class ScriptImplementation(TaskImplementation):
    """Runs ``<shell> <script> <target_dir>`` as an opaque external process.

    The only observed boundary is the exit status. In dry-run mode the
    script is not started: a process cannot be intercepted, so the run is
    recorded as a ``run_script`` operation instead.
    """

    def __init__(self, path: Path, *, shell: str = "bash", capture_output: bool = False) -> None:
        self.path = path
        self.shell = shell
        self.capture_output = capture_output

    def build_command(self, target_dir: Path) -> list[str]:
        return [self.shell, str(self.path), str(target_dir)]

    def run(self, context: TaskContext) -> TaskResult:
        if not self.path.is_file():
            raise ImplementationError(f"Script not found: {self.path}")

        if context.dry_run:
            if isinstance(context.ops, LoggingFileOps):
                context.ops.log.record(RUN_SCRIPT, self.path, f"target={context.target_dir}")
            return TaskResult(exit_code=0, message=f"Would run {self.path.name}")

        env = os.environ.copy()
        env.update(context.env)
        env["BOOTKIT_TASK_ID"] = context.task.id
        env["BOOTKIT_TARGET_DIR"] = str(context.target_dir)
        try:
            proc = subprocess.run(
                self.build_command(context.target_dir),
                cwd=context.target_dir,
                env=env,
                text=True,
                capture_output=self.capture_output,
            )
        except FileNotFoundError as exc:
            raise ImplementationError(f"Shell not found: {self.shell}") from exc

        message = "" if proc.returncode == 0 else f"exit code {proc.returncode}"
        return TaskResult(
            exit_code=proc.returncode,
            message=message,
            stdout_tail=_tail(proc.stdout),
            stderr_tail=_tail(proc.stderr),
        )
