import sys
import types
from pathlib import Path

import pytest

from bootkit.catalog import Task
from bootkit.fsops import LoggingFileOps, RealFileOps
from bootkit.implementations import (
    CallableImplementation,
    ImplementationError,
    ScriptImplementation,
    TaskContext,
    TaskImplementation,
    TaskResult,
    load_entrypoint,
)


def _context(tmp_path: Path, *, dry_run: bool = False) -> TaskContext:
    task = Task(id="git", phase=1, category="core", description="Git", outputs=(".gitignore",))
    ops = LoggingFileOps() if dry_run else RealFileOps()
    return TaskContext(task=task, target_dir=tmp_path, ops=ops, dry_run=dry_run)


class _GitTask(TaskImplementation):
    outputs = (".gitignore", ".gitattributes")

    def run(self, context: TaskContext) -> TaskResult:
        context.ops.write_text(context.target_dir / ".gitignore", "node_modules/\n")
        return TaskResult(exit_code=0)


@pytest.mark.parametrize(
    ("returned", "exit_code"),
    [(None, 0), (True, 0), (False, 1), (0, 0), (7, 7)],
)
def test_callable_return_values_are_coerced(tmp_path: Path, returned, exit_code: int) -> None:
    implementation = CallableImplementation(lambda context: returned)

    assert implementation.run(_context(tmp_path)).exit_code == exit_code


def test_unsupported_return_value_raises(tmp_path: Path) -> None:
    implementation = CallableImplementation(lambda context: "done")

    with pytest.raises(ImplementationError):
        implementation.run(_context(tmp_path))


def test_load_entrypoint_variants(tmp_path: Path, monkeypatch) -> None:
    module = types.ModuleType("bootkit_test_tasks")
    module.GitTask = _GitTask
    module.instance = _GitTask()
    module.plain = lambda context: None
    module.not_callable = 3
    monkeypatch.setitem(sys.modules, "bootkit_test_tasks", module)

    assert isinstance(load_entrypoint("bootkit_test_tasks:GitTask"), _GitTask)
    assert load_entrypoint("bootkit_test_tasks:instance") is module.instance
    assert isinstance(load_entrypoint("bootkit_test_tasks:plain"), CallableImplementation)
    with pytest.raises(ImplementationError):
        load_entrypoint("bootkit_test_tasks:not_callable")
    with pytest.raises(ImplementationError):
        load_entrypoint("bootkit_test_tasks:missing")
    with pytest.raises(ImplementationError):
        load_entrypoint("no_such_module_for_bootkit:run")
    with pytest.raises(ImplementationError):
        load_entrypoint("no-colon")


def test_declared_outputs_prefer_catalog(tmp_path: Path) -> None:
    context = _context(tmp_path)
    implementation = _GitTask()

    assert implementation.declared_outputs(context.task) == [".gitignore"]
    bare = Task(id="git", phase=1, category="core", description="Git")
    assert implementation.declared_outputs(bare) == [".gitignore", ".gitattributes"]


def test_script_reports_exit_status(tmp_path: Path) -> None:
    script = tmp_path / "bootstrap-git.sh"
    script.write_text('echo "$BOOTKIT_TARGET_DIR" >&2\nexit 5\n', encoding="utf-8")
    implementation = ScriptImplementation(script, capture_output=True)

    result = implementation.run(_context(tmp_path))

    assert result.exit_code == 5
    assert result.ok is False
    assert result.stderr_tail == str(tmp_path)
    assert implementation.build_command(tmp_path) == ["bash", str(script), str(tmp_path)]


def test_missing_script_raises(tmp_path: Path) -> None:
    implementation = ScriptImplementation(tmp_path / "absent.sh")

    with pytest.raises(ImplementationError):
        implementation.run(_context(tmp_path))
