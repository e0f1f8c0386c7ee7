import json
import os
from pathlib import Path

import pytest

from bootkit.errors import SelectorUnresolved
from bootkit.registry import Registry


def _write_catalog(path: Path, tasks: dict, profiles: dict | None = None) -> Path:
    payload = {"tasks": tasks, "profiles": profiles or {}}
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def _tasks() -> dict:
    return {
        "testing": {"phase": 2, "category": "quality", "description": "Test runner"},
        "git": {"phase": 1, "category": "core", "description": "Git"},
        "packages": {
            "phase": 1,
            "category": "core",
            "description": "Packages",
            "dependencies": ["git"],
        },
        "docker": {
            "phase": 3,
            "category": "infra",
            "description": "Docker",
            "file": "infra/docker-setup.sh",
        },
    }


def _registry(tmp_path: Path, profiles: dict | None = None) -> Registry:
    catalog = _write_catalog(tmp_path / "bootkit-manifest.json", _tasks(), profiles)
    return Registry(catalog, project_root=tmp_path, implementations_dir=tmp_path / "scripts")


def test_resolve_all_orders_by_phase_then_declaration(tmp_path: Path) -> None:
    registry = _registry(tmp_path)

    assert [task.id for task in registry.resolve("all")] == ["git", "packages", "testing", "docker"]


def test_resolve_phase_task_and_profile(tmp_path: Path) -> None:
    registry = _registry(tmp_path, profiles={"minimal": ["packages", "git"]})

    assert [task.id for task in registry.resolve("1")] == ["git", "packages"]
    assert [task.id for task in registry.resolve("phase:2")] == ["testing"]
    assert [task.id for task in registry.resolve("docker")] == ["docker"]
    assert [task.id for task in registry.resolve("minimal")] == ["packages", "git"]


def test_task_id_wins_over_profile_unless_prefixed(tmp_path: Path) -> None:
    registry = _registry(tmp_path, profiles={"git": ["git", "packages"]})

    assert [task.id for task in registry.resolve("git")] == ["git"]
    assert [task.id for task in registry.resolve("profile:git")] == ["git", "packages"]
    assert [task.id for task in registry.resolve("task:git")] == ["git"]


def test_unknown_selector_lists_choices(tmp_path: Path) -> None:
    registry = _registry(tmp_path, profiles={"minimal": ["git"]})

    with pytest.raises(SelectorUnresolved) as excinfo:
        registry.resolve("kubernetes")

    assert excinfo.value.selector == "kubernetes"
    assert "all" in excinfo.value.choices
    assert "minimal" in excinfo.value.choices
    assert "git" in excinfo.value.choices
    assert "Available:" in str(excinfo.value)


def test_empty_phase_is_unresolved(tmp_path: Path) -> None:
    registry = _registry(tmp_path)

    with pytest.raises(SelectorUnresolved):
        registry.resolve("7")


def test_load_is_cached_until_catalog_changes(tmp_path: Path) -> None:
    registry = _registry(tmp_path)
    first = registry.load()
    assert registry.load() is first

    tasks = _tasks()
    tasks["vscode"] = {"phase": 2, "category": "editor", "description": "VS Code"}
    _write_catalog(registry.catalog_path, tasks)
    stat = registry.catalog_path.stat()
    os.utime(registry.catalog_path, ns=(stat.st_atime_ns, stat.st_mtime_ns + 5_000_000_000))

    reloaded = registry.load()
    assert reloaded is not first
    assert "vscode" in reloaded


def test_script_path_lookup_locations(tmp_path: Path) -> None:
    registry = _registry(tmp_path)
    scripts = tmp_path / "scripts"
    scripts.mkdir()
    (scripts / "bootstrap-git.sh").write_text("exit 0\n", encoding="utf-8")
    (tmp_path / "infra").mkdir()
    (tmp_path / "infra" / "docker-setup.sh").write_text("exit 0\n", encoding="utf-8")

    assert registry.script_path(registry.task("git")) == scripts / "bootstrap-git.sh"
    assert registry.script_path(registry.task("docker")) == tmp_path / "infra" / "docker-setup.sh"
    assert registry.implementation_present(registry.task("git")) is True
    assert registry.implementation_present(registry.task("packages")) is False


def test_scan_reports_missing_and_unregistered_scripts(tmp_path: Path) -> None:
    registry = _registry(tmp_path)
    scripts = tmp_path / "scripts"
    scripts.mkdir()
    (scripts / "bootstrap-git.sh").write_text("exit 0\n", encoding="utf-8")
    (scripts / "bootstrap-redis.sh").write_text("exit 0\n", encoding="utf-8")

    registry.start_background_scan()
    result = registry.wait_for_scan(timeout=5.0)

    assert result is not None
    assert result.statuses["git"] == "available"
    assert set(result.missing) == {"packages", "testing", "docker"}
    assert result.new_scripts == ["redis"]
    assert result.has_questions["git"] is False


def test_wait_without_scan_returns_none(tmp_path: Path) -> None:
    registry = _registry(tmp_path)

    assert registry.wait_for_scan(timeout=0.1) is None
