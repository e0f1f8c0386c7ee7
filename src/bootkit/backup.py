"""Snapshots of the critical file set, with verify/restore/prune.

Layout of one snapshot::

    <backups_dir>/<YYYYMMDD-HHMMSS[-N]>/
        snapshot.json        metadata (id, created_at, user, host, files, ...)
        files/<relative>     byte-for-byte copy of each captured file

A restore never touches live files until the snapshot has passed
verification, and always takes a fresh pre-restore snapshot first.
"""

from __future__ import annotations

import getpass
import json
import logging
import os
import re
import shutil
import socket
import tempfile
import tomllib
import warnings
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from bootkit.errors import (
    RestorePartial,
    RestoreVerificationFailed,
    SnapshotCaptureIncomplete,
    SnapshotNotFound,
)

logger = logging.getLogger(__name__)

METADATA_FILE = "snapshot.json"
FILES_DIR = "files"
SNAPSHOT_ID_PATTERN = re.compile(r"^(\d{8}-\d{6})(?:-(\d+))?$")
SECTION_HEADER = re.compile(r"^\s*\[[^\]]+\]", re.MULTILINE)
CONFIG_SUFFIXES = {".toml", ".ini", ".cfg", ".config", ".conf"}

ConfirmPrompt = Callable[[str], bool]


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def _current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


def _sort_key(snapshot_id: str) -> tuple[str, int]:
    match = SNAPSHOT_ID_PATTERN.match(snapshot_id)
    if match is None:
        return (snapshot_id, 0)
    return (match.group(1), int(match.group(2) or 0))


@dataclass(slots=True)
class SnapshotInfo:
    id: str
    path: Path
    created_at: str | None = None
    label: str | None = None
    files: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    incomplete: bool = False
    user: str | None = None
    host: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "created_at": self.created_at,
            "label": self.label,
            "files": list(self.files),
            "missing": list(self.missing),
            "incomplete": self.incomplete,
            "user": self.user,
            "host": self.host,
        }


@dataclass(slots=True)
class RestoreReport:
    snapshot_id: str
    restored: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    pre_restore_id: str | None = None
    status: str = "pending"


class SnapshotManager:
    def __init__(
        self,
        project_root: Path,
        *,
        backups_dir: Path | None = None,
        critical_files: list[str] | None = None,
        max_backups: int = 10,
    ) -> None:
        self.project_root = project_root.resolve()
        self.backups_dir = backups_dir or (self.project_root / ".bootkit" / "backups")
        self.critical_files = list(critical_files or [])
        self.max_backups = max(1, int(max_backups))

    def _relative(self, raw: str) -> str | None:
        """Project-relative posix path, or None when ``raw`` escapes the root."""
        path = Path(raw)
        if not path.is_absolute():
            path = self.project_root / path
        try:
            relative = path.resolve().relative_to(self.project_root)
        except ValueError:
            return None
        return relative.as_posix() if relative.parts else None

    def _allocate_id(self) -> str:
        base = datetime.now().strftime("%Y%m%d-%H%M%S")
        candidate = base
        counter = 0
        while (self.backups_dir / candidate).exists():
            counter += 1
            candidate = f"{base}-{counter}"
        return candidate

    def snapshot_dir(self, snapshot_id: str) -> Path:
        return self.backups_dir / snapshot_id

    def create_snapshot(self, label: str | None = None) -> str:
        """Copy every present critical file into a new snapshot directory."""
        self.backups_dir.mkdir(parents=True, exist_ok=True)
        snapshot_id = self._allocate_id()
        target = self.snapshot_dir(snapshot_id)
        files_root = target / FILES_DIR
        files_root.mkdir(parents=True)

        captured: list[str] = []
        missing: list[str] = []
        for raw in self.critical_files:
            relative = self._relative(raw)
            if relative is None:
                logger.warning("Critical file outside project root ignored: %s", raw)
                missing.append(raw)
                continue
            source = self.project_root / relative
            if not source.is_file():
                missing.append(relative)
                continue
            destination = files_root / relative
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, destination)
            captured.append(relative)

        metadata = {
            "id": snapshot_id,
            "created_at": _utcnow_iso(),
            "label": label,
            "user": _current_user(),
            "host": socket.gethostname(),
            "project_root": str(self.project_root),
            "files": captured,
            "missing": missing,
            "incomplete": bool(missing),
        }
        (target / METADATA_FILE).write_text(
            json.dumps(metadata, ensure_ascii=False, indent=2), encoding="utf-8"
        )
        if missing:
            warnings.warn(
                f"Snapshot {snapshot_id} is incomplete; missing: {', '.join(missing)}",
                SnapshotCaptureIncomplete,
                stacklevel=2,
            )
        logger.info("Created snapshot %s (%d files)", snapshot_id, len(captured))
        return snapshot_id

    def _read_metadata(self, snapshot_id: str) -> dict[str, Any] | None:
        path = self.snapshot_dir(snapshot_id) / METADATA_FILE
        if not path.is_file():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return None
        return payload if isinstance(payload, dict) else None

    def info(self, snapshot_id: str) -> SnapshotInfo:
        path = self.snapshot_dir(snapshot_id)
        if not path.is_dir():
            raise SnapshotNotFound(snapshot_id)
        metadata = self._read_metadata(snapshot_id) or {}
        return SnapshotInfo(
            id=snapshot_id,
            path=path,
            created_at=metadata.get("created_at"),
            label=metadata.get("label"),
            files=list(metadata.get("files") or []),
            missing=list(metadata.get("missing") or []),
            incomplete=bool(metadata.get("incomplete")),
            user=metadata.get("user"),
            host=metadata.get("host"),
        )

    def list_snapshots(self) -> list[SnapshotInfo]:
        if not self.backups_dir.is_dir():
            return []
        ids = [path.name for path in self.backups_dir.iterdir() if path.is_dir()]
        ids.sort(key=_sort_key, reverse=True)
        return [self.info(snapshot_id) for snapshot_id in ids]

    def resolve(self, snapshot_ref: str) -> str:
        if snapshot_ref == "latest":
            snapshots = self.list_snapshots()
            if not snapshots:
                raise SnapshotNotFound(snapshot_ref)
            return snapshots[0].id
        if not self.snapshot_dir(snapshot_ref).is_dir():
            raise SnapshotNotFound(snapshot_ref)
        return snapshot_ref

    def verification_errors(self, snapshot_id: str) -> list[str]:
        snapshot_id = self.resolve(snapshot_id)
        metadata = self._read_metadata(snapshot_id)
        if metadata is None:
            return [f"{METADATA_FILE} missing or unreadable"]

        errors: list[str] = []
        files = metadata.get("files") or []
        if not files:
            errors.append("no captured files")
        files_root = self.snapshot_dir(snapshot_id) / FILES_DIR
        for relative in files:
            if not isinstance(relative, str) or Path(relative).is_absolute() or (
                self._relative(relative) != Path(relative).as_posix()
            ):
                errors.append(f"{relative}: path outside the project root")
                continue
            path = files_root / relative
            if not path.is_file():
                errors.append(f"{relative}: captured file missing")
                continue
            try:
                content = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                errors.append(f"{relative}: unreadable ({exc})")
                continue
            suffix = path.suffix.lower()
            if suffix == ".json":
                try:
                    json.loads(content)
                except json.JSONDecodeError as exc:
                    errors.append(f"{relative}: invalid JSON ({exc.msg})")
            elif suffix in CONFIG_SUFFIXES:
                if not SECTION_HEADER.search(content):
                    errors.append(f"{relative}: no section header")
                elif suffix == ".toml":
                    try:
                        tomllib.loads(content)
                    except tomllib.TOMLDecodeError as exc:
                        errors.append(f"{relative}: invalid TOML ({exc})")
        return errors

    def verify(self, snapshot_id: str) -> bool:
        return not self.verification_errors(snapshot_id)

    @staticmethod
    def _replace_file(source: Path, destination: Path) -> None:
        destination.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{destination.name}-", suffix=".tmp", dir=destination.parent
        )
        os.close(fd)
        try:
            shutil.copy2(source, tmp_name)
            os.replace(tmp_name, destination)
        except OSError:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

    def restore(self, snapshot_id: str, confirm: ConfirmPrompt | None = None) -> RestoreReport:
        snapshot_id = self.resolve(snapshot_id)
        errors = self.verification_errors(snapshot_id)
        if errors:
            raise RestoreVerificationFailed(snapshot_id, errors)

        info = self.info(snapshot_id)
        report = RestoreReport(snapshot_id=snapshot_id)
        if confirm is not None and not confirm(
            f"Restore {len(info.files)} file(s) from snapshot {snapshot_id}?"
        ):
            report.status = "cancelled"
            return report

        with warnings.catch_warnings():
            warnings.simplefilter("ignore", SnapshotCaptureIncomplete)
            report.pre_restore_id = self.create_snapshot(label=f"pre-restore {snapshot_id}")

        files_root = info.path / FILES_DIR
        for relative in info.files:
            try:
                self._replace_file(files_root / relative, self.project_root / relative)
            except OSError as exc:
                logger.error("Failed to restore %s: %s", relative, exc)
                report.failed.append(relative)
                continue
            report.restored.append(relative)

        if report.failed:
            report.status = "partial"
            raise RestorePartial(report)
        report.status = "restored"
        logger.info("Restored snapshot %s (%d files)", snapshot_id, len(report.restored))
        return report

    def delete(self, snapshot_id: str) -> None:
        snapshot_id = self.resolve(snapshot_id)
        shutil.rmtree(self.snapshot_dir(snapshot_id))
        logger.info("Deleted snapshot %s", snapshot_id)

    def prune(self, keep_n: int | None = None, confirm: ConfirmPrompt | None = None) -> list[str]:
        """Delete all but the ``keep_n`` most recent snapshots."""
        keep = self.max_backups if keep_n is None else max(0, int(keep_n))
        doomed = [snapshot.id for snapshot in self.list_snapshots()[keep:]]
        if not doomed:
            return []
        if confirm is not None and not confirm(f"Delete {len(doomed)} old snapshot(s)?"):
            return []
        for snapshot_id in doomed:
            shutil.rmtree(self.snapshot_dir(snapshot_id))
            logger.info("Pruned snapshot %s", snapshot_id)
        return doomed
