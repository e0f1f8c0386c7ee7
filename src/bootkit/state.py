from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from collections.abc import Callable, Iterable
from contextlib import contextmanager
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from bootkit.errors import StateError

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 200


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def empty_session() -> dict[str, Any]:
    return {
        "run_id": None,
        "started_at": None,
        "ended_at": None,
        "mode": None,
        "selector": None,
        "last_task": None,
        "last_failed": None,
        "completed": [],
        "failed": [],
        "skipped": [],
        "history": [],
    }


class StateStore:
    """Versioned JSON documents stored under ``<state_dir>/state``.

    Writers always replace the whole document through a temp file and
    ``os.replace`` so readers never observe a partially written file.
    """

    NAMESPACES = {"session"}
    SCHEMA_VERSION = 1

    def __init__(self, project_root: Path, *, state_dir: str = ".bootkit") -> None:
        self.project_root = project_root.resolve()
        self.base_dir = self.project_root / state_dir
        self.local_state_dir = self.base_dir / "state"
        self.lock_file = self.local_state_dir / ".lock"

    @staticmethod
    def _validate_namespace(namespace: str) -> None:
        if namespace not in StateStore.NAMESPACES:
            raise StateError(f"Unsupported namespace: {namespace}")

    def document_path(self, namespace: str = "session") -> Path:
        return self.local_state_dir / f"{namespace}.json"

    def lock_is_stale(self) -> bool:
        """True when the lock file names a process that is no longer running."""
        try:
            pid = int(self.lock_file.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return False
        if pid <= 0 or os.name != "posix":
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return True
        except PermissionError:
            return False
        return False

    @contextmanager
    def _state_lock(self, timeout_seconds: float = 3.0):
        self.local_state_dir.mkdir(parents=True, exist_ok=True)
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if self.lock_is_stale():
                    logger.warning("Removing stale state lock %s", self.lock_file)
                    self.lock_file.unlink(missing_ok=True)
                    continue
                if time.monotonic() - start > timeout_seconds:
                    raise StateError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw_json(self, namespace: str) -> Any:
        local_file = self.document_path(namespace)
        if not local_file.exists():
            return None
        try:
            return json.loads(local_file.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return None

    def _write_raw_json(self, namespace: str, payload: Any) -> None:
        serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        target = self.document_path(namespace)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{namespace}-", suffix=".tmp", dir=target.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(serialized)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, target)
        except OSError as exc:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise StateError(f"Failed to write {target}: {exc}") from exc

    def _normalize_envelope(self, raw_payload: Any, default: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 1),
                "updated_at": raw_payload.get("updated_at") or _utcnow_iso(),
                "data": raw_payload.get("data", default),
            }

        data = default if raw_payload is None else raw_payload
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 0 if raw_payload is None else 1,
            "updated_at": _utcnow_iso(),
            "data": data,
        }

    def exists(self, namespace: str = "session") -> bool:
        return self.document_path(namespace).exists()

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        self._validate_namespace(namespace)
        default_value = {} if default is None else default
        return self._normalize_envelope(self._read_raw_json(namespace), default_value)

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        return self.get_envelope(namespace, default=default).get("data")

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> None:
        self._validate_namespace(namespace)
        with self._state_lock():
            current = self.get_envelope(namespace, default={})
            current_revision = int(current.get("revision", 0))
            if expected_revision is not None and expected_revision != current_revision:
                raise StateError(f"Concurrent state update detected for namespace '{namespace}'.")
            envelope = {
                "schema_version": self.SCHEMA_VERSION,
                "revision": current_revision + 1,
                "updated_at": _utcnow_iso(),
                "data": data,
            }
            self._write_raw_json(namespace, envelope)

    def update_json(
        self,
        namespace: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        default_value = {} if default is None else default
        last_error: Exception | None = None
        for _ in range(4):
            current = self.get_envelope(namespace, default=default_value)
            updated = updater(current.get("data", default_value))
            try:
                self.set_json(namespace, updated, expected_revision=int(current.get("revision", 0)))
                return updated
            except StateError as exc:
                last_error = exc
                if "Concurrent state update detected" not in str(exc):
                    raise
                time.sleep(0.01)
        raise StateError(str(last_error) if last_error else "State update failed.")

    def get_session(self) -> dict[str, Any]:
        session = self.get_json("session", default=empty_session())
        if not isinstance(session, dict):
            return empty_session()
        merged = empty_session()
        merged.update(session)
        return merged

    def set_session(self, session: dict[str, Any]) -> None:
        self.set_json("session", session)

    def update_session(self, updater: Callable[[dict[str, Any]], dict[str, Any]]) -> dict[str, Any]:
        def _updater(payload: Any) -> dict[str, Any]:
            session = empty_session()
            if isinstance(payload, dict):
                session.update(payload)
            return updater(session)

        return self.update_json("session", _updater, default=empty_session())

    def begin_run(self, run_id: str, *, mode: str, selector: str | None) -> None:
        def _updater(session: dict[str, Any]) -> dict[str, Any]:
            session["run_id"] = run_id
            session["started_at"] = _utcnow_iso()
            session["ended_at"] = None
            session["mode"] = mode
            session["selector"] = selector
            session["completed"] = []
            session["failed"] = []
            session["skipped"] = []
            return session

        self.update_session(_updater)

    def record_outcome(
        self,
        task_id: str,
        outcome: str,
        *,
        reason: str | None = None,
        exit_code: int | None = None,
    ) -> None:
        now = _utcnow_iso()

        def _updater(session: dict[str, Any]) -> dict[str, Any]:
            bucket = {"completed": "completed", "failed": "failed", "skipped": "skipped"}[outcome]
            values = session.get(bucket)
            if not isinstance(values, list):
                values = []
            if task_id not in values:
                values.append(task_id)
            session[bucket] = values
            session["last_task"] = task_id
            if outcome == "failed":
                session["last_failed"] = task_id
            elif outcome == "completed" and session.get("last_failed") == task_id:
                session["last_failed"] = None
            history = session.get("history")
            if not isinstance(history, list):
                history = []
            entry: dict[str, Any] = {"task_id": task_id, "outcome": outcome, "at": now}
            if reason:
                entry["reason"] = reason
            if exit_code is not None:
                entry["exit_code"] = exit_code
            history.append(entry)
            session["history"] = history[-HISTORY_LIMIT:]
            return session

        self.update_session(_updater)

    def end_run(self) -> None:
        def _updater(session: dict[str, Any]) -> dict[str, Any]:
            session["ended_at"] = _utcnow_iso()
            return session

        self.update_session(_updater)

    def clear_session(self) -> None:
        self.set_session(empty_session())


class MarkerStore:
    """One ``.<task-id>.completed`` sentinel per successfully completed task."""

    SUFFIX = ".completed"

    def __init__(self, project_root: Path, *, state_dir: str = ".bootkit") -> None:
        self.project_root = project_root.resolve()
        self.markers_dir = self.project_root / state_dir / "markers"

    def marker_path(self, task_id: str) -> Path:
        return self.markers_dir / f".{task_id}{self.SUFFIX}"

    def mark_complete(self, task_id: str) -> Path:
        self.markers_dir.mkdir(parents=True, exist_ok=True)
        path = self.marker_path(task_id)
        path.write_text(_utcnow_iso() + "\n", encoding="utf-8")
        return path

    def is_complete(self, task_id: str) -> bool:
        return self.marker_path(task_id).is_file()

    def completed_at(self, task_id: str) -> str | None:
        path = self.marker_path(task_id)
        if not path.is_file():
            return None
        return path.read_text(encoding="utf-8").strip() or None

    def completed_ids(self) -> set[str]:
        if not self.markers_dir.is_dir():
            return set()
        ids: set[str] = set()
        for path in self.markers_dir.iterdir():
            name = path.name
            if path.is_file() and name.startswith(".") and name.endswith(self.SUFFIX):
                ids.add(name[1 : -len(self.SUFFIX)])
        return ids

    def clear(self) -> int:
        removed = 0
        for task_id in self.completed_ids():
            self.marker_path(task_id).unlink(missing_ok=True)
            removed += 1
        return removed


class BootstrapState(str, Enum):
    NEVER_RUN = "never_run"
    INITIALIZED = "initialized"
    PARTIAL = "partial"
    FAILED = "failed"
    COMPLETE = "complete"


def derive_state(
    *,
    config_present: bool,
    completed: Iterable[str],
    last_failed: str | None,
    history_count: int = 0,
    catalog_ids: Iterable[str] | None = None,
) -> BootstrapState:
    """Map (config presence, marker set, failure field) to a run state.

    A recorded failure wins over any number of markers. Markers for ids that
    are no longer in the catalog are ignored when ``catalog_ids`` is given.
    Without ``catalog_ids`` the run can never be reported as complete.
    """
    if not config_present:
        return BootstrapState.NEVER_RUN
    if last_failed:
        return BootstrapState.FAILED
    completed_ids = set(completed)
    if catalog_ids is not None:
        known = set(catalog_ids)
        completed_ids &= known
        catalog_size = len(known)
    else:
        catalog_size = None
    if not completed_ids:
        return BootstrapState.PARTIAL if history_count else BootstrapState.INITIALIZED
    if catalog_size is None or len(completed_ids) < catalog_size:
        return BootstrapState.PARTIAL
    return BootstrapState.COMPLETE
