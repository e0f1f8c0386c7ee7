from __future__ import annotations

import importlib.util
import logging
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from bootkit.catalog import Catalog, Task, is_script_name, load_catalog
from bootkit.errors import SelectorUnresolved

logger = logging.getLogger(__name__)

SELECTOR_PREFIXES = ("phase:", "profile:", "task:")


@dataclass(slots=True)
class ScanResult:
    scanned_at: str
    statuses: dict[str, str] = field(default_factory=dict)
    has_questions: dict[str, bool] = field(default_factory=dict)
    new_scripts: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)


class Registry:
    """Read-only access to the task catalog, cached by file mtime."""

    def __init__(
        self,
        catalog_path: Path,
        *,
        project_root: Path,
        implementations_dir: Path | None = None,
    ) -> None:
        self.catalog_path = catalog_path
        self.project_root = project_root.resolve()
        self.implementations_dir = (
            implementations_dir if implementations_dir is not None else self.project_root / "scripts"
        )
        self._cache: Catalog | None = None
        self._cache_mtime: int | None = None
        self._lock = threading.Lock()
        self._scan_thread: threading.Thread | None = None
        self._scan_done = threading.Event()
        self._scan_result: ScanResult | None = None
        self._scan_error: BaseException | None = None

    def load(self) -> Catalog:
        mtime = self.catalog_path.stat().st_mtime_ns if self.catalog_path.exists() else None
        with self._lock:
            if self._cache is not None and self._cache_mtime == mtime:
                return self._cache
            catalog = load_catalog(self.catalog_path)
            self._cache = catalog
            self._cache_mtime = mtime
            logger.debug("Loaded catalog %s (%d tasks)", self.catalog_path, len(catalog))
            return catalog

    def task(self, task_id: str) -> Task:
        catalog = self.load()
        task = catalog.get(task_id)
        if task is None:
            raise SelectorUnresolved(task_id, choices=list(catalog.tasks))
        return task

    def _choices(self, catalog: Catalog) -> list[str]:
        return (
            ["all"]
            + [str(number) for number in catalog.phase_numbers()]
            + list(catalog.profiles)
            + list(catalog.tasks)
        )

    def _resolve_phase(self, catalog: Catalog, raw: str, selector: str) -> list[Task]:
        try:
            number = int(raw)
        except ValueError as exc:
            raise SelectorUnresolved(selector, choices=self._choices(catalog)) from exc
        tasks = catalog.phase_tasks(number)
        if not tasks:
            raise SelectorUnresolved(selector, choices=self._choices(catalog))
        return tasks

    def _resolve_profile(self, catalog: Catalog, name: str, selector: str) -> list[Task]:
        profile = catalog.profiles.get(name)
        if profile is None:
            raise SelectorUnresolved(selector, choices=sorted(catalog.profiles))
        return [catalog.tasks[task_id] for task_id in profile.tasks]

    def resolve(self, selector: str) -> list[Task]:
        """Resolve a task id, phase number, profile name or ``all`` to tasks.

        Bare selectors are tried in the order ``all``, phase number, task id,
        profile name. ``phase:``, ``task:`` and ``profile:`` prefixes force one
        interpretation.
        """
        catalog = self.load()
        value = selector.strip()
        if value == "all":
            return catalog.ordered()
        if value.startswith("phase:"):
            return self._resolve_phase(catalog, value[len("phase:") :], selector)
        if value.startswith("profile:"):
            return self._resolve_profile(catalog, value[len("profile:") :], selector)
        if value.startswith("task:"):
            task = catalog.get(value[len("task:") :])
            if task is None:
                raise SelectorUnresolved(selector, choices=list(catalog.tasks))
            return [task]
        if value.isdigit():
            return self._resolve_phase(catalog, value, selector)
        task = catalog.get(value)
        if task is not None:
            return [task]
        if value in catalog.profiles:
            return self._resolve_profile(catalog, value, selector)
        raise SelectorUnresolved(selector, choices=self._choices(catalog))

    def script_path(self, task: Task) -> Path:
        """Resolve a script entry against the usual locations.

        Absolute paths, project-root relative paths, implementations-dir
        relative paths and bare file names are tried in that order; the
        implementations-dir guess is returned when nothing exists.
        """
        name = task.script_name
        raw = Path(name)
        candidates: list[Path] = []
        if raw.is_absolute():
            candidates.append(raw)
        candidates.append(self.project_root / raw)
        candidates.append(self.implementations_dir / raw)
        candidates.append(self.implementations_dir / raw.name)
        for candidate in candidates:
            if candidate.is_file():
                return candidate
        return self.implementations_dir / raw.name

    def implementation_present(self, task: Task) -> bool:
        if task.entrypoint:
            module_name = task.entrypoint.split(":", maxsplit=1)[0]
            try:
                return importlib.util.find_spec(module_name) is not None
            except (ImportError, ValueError):
                return False
        return self.script_path(task).is_file()

    def scan(self) -> ScanResult:
        catalog = self.load()
        result = ScanResult(scanned_at=datetime.now(UTC).replace(microsecond=0).isoformat())
        for task in catalog.tasks.values():
            present = self.implementation_present(task)
            result.statuses[task.id] = "available" if present else "missing"
            result.has_questions[task.id] = task.has_questions
            if not present:
                result.missing.append(task.id)

        registered = {
            self.script_path(task).name for task in catalog.tasks.values() if not task.entrypoint
        }
        if self.implementations_dir.is_dir():
            for path in sorted(self.implementations_dir.iterdir()):
                if path.is_file() and is_script_name(path.name) and path.name not in registered:
                    result.new_scripts.append(path.name[len("bootstrap-") : -len(".sh")])
        return result

    def _scan_worker(self) -> None:
        try:
            self._scan_result = self.scan()
        except Exception as exc:
            self._scan_error = exc
            logger.warning("Background catalog scan failed: %s", exc)
        finally:
            self._scan_done.set()

    def start_background_scan(self) -> None:
        """Warm the catalog cache and scan implementations on a daemon thread."""
        if self._scan_thread is not None and self._scan_thread.is_alive():
            return
        self._scan_done.clear()
        self._scan_result = None
        self._scan_error = None
        self._scan_thread = threading.Thread(
            target=self._scan_worker, name="bootkit-prescan", daemon=True
        )
        self._scan_thread.start()

    @property
    def scan_error(self) -> BaseException | None:
        return self._scan_error

    def wait_for_scan(self, timeout: float = 3.0) -> ScanResult | None:
        if self._scan_thread is None:
            return self._scan_result
        if not self._scan_done.wait(timeout):
            logger.info("Background scan still running after %.1fs; continuing without it", timeout)
            return None
        return self._scan_result
