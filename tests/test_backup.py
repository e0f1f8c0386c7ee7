import json
from datetime import datetime
from pathlib import Path

import pytest

from bootkit.backup import SnapshotManager
from bootkit.errors import (
    RestorePartial,
    RestoreVerificationFailed,
    SnapshotCaptureIncomplete,
    SnapshotNotFound,
)

CRITICAL = ["bootkit.toml", "bootkit-manifest.json", ".bootkit/state/session.json"]


class _FrozenDatetime(datetime):
    @classmethod
    def now(cls, tz=None):
        return datetime(2026, 1, 2, 3, 4, 5, tzinfo=tz)


def _project(root: Path) -> SnapshotManager:
    (root / "bootkit.toml").write_text('[project]\nname = "demo"\n', encoding="utf-8")
    (root / "bootkit-manifest.json").write_text(
        json.dumps({"tasks": {"git": {"phase": 1, "category": "core", "description": "Gït"}}}),
        encoding="utf-8",
    )
    session = root / ".bootkit" / "state" / "session.json"
    session.parent.mkdir(parents=True)
    session.write_text(json.dumps({"data": {"last_failed": None}}), encoding="utf-8")
    return SnapshotManager(root, critical_files=CRITICAL, max_backups=3)


def test_snapshot_restore_roundtrip_is_byte_identical(tmp_path: Path) -> None:
    manager = _project(tmp_path)
    originals = {name: (tmp_path / name).read_bytes() for name in CRITICAL}

    snapshot_id = manager.create_snapshot(label="before changes")
    for name in CRITICAL:
        (tmp_path / name).write_text("{}", encoding="utf-8")

    report = manager.restore(snapshot_id)

    assert report.status == "restored"
    assert sorted(report.restored) == sorted(CRITICAL)
    assert report.pre_restore_id is not None
    assert report.pre_restore_id != snapshot_id
    for name in CRITICAL:
        assert (tmp_path / name).read_bytes() == originals[name]


def test_snapshot_metadata(tmp_path: Path) -> None:
    manager = _project(tmp_path)

    snapshot_id = manager.create_snapshot(label="nightly")
    info = manager.info(snapshot_id)
    metadata = json.loads((info.path / "snapshot.json").read_text(encoding="utf-8"))

    assert info.label == "nightly"
    assert info.files == CRITICAL
    assert info.incomplete is False
    assert metadata["user"]
    assert metadata["host"]
    assert (info.path / "files" / ".bootkit" / "state" / "session.json").is_file()


def test_incomplete_snapshot_lists_missing_files(tmp_path: Path) -> None:
    manager = _project(tmp_path)
    (tmp_path / "bootkit.toml").unlink()

    with pytest.warns(SnapshotCaptureIncomplete):
        snapshot_id = manager.create_snapshot()

    info = manager.info(snapshot_id)
    assert info.incomplete is True
    assert info.missing == ["bootkit.toml"]
    assert manager.verify(snapshot_id) is True


def test_corrupted_snapshot_aborts_restore(tmp_path: Path) -> None:
    manager = _project(tmp_path)
    snapshot_id = manager.create_snapshot()
    captured = manager.snapshot_dir(snapshot_id) / "files" / "bootkit-manifest.json"
    captured.write_text("{broken", encoding="utf-8")
    live = tmp_path / "bootkit-manifest.json"
    live.write_text('{"tasks": {}}', encoding="utf-8")

    assert manager.verify(snapshot_id) is False
    with pytest.raises(RestoreVerificationFailed) as excinfo:
        manager.restore(snapshot_id)

    assert any("bootkit-manifest.json" in error for error in excinfo.value.errors)
    assert live.read_text(encoding="utf-8") == '{"tasks": {}}'
    assert len(manager.list_snapshots()) == 1


def test_config_without_section_fails_verification(tmp_path: Path) -> None:
    manager = _project(tmp_path)
    (tmp_path / "bootkit.toml").write_text('name = "flat"\n', encoding="utf-8")

    snapshot_id = manager.create_snapshot()

    assert manager.verification_errors(snapshot_id) == ["bootkit.toml: no section header"]


def test_snapshot_without_files_fails_verification(tmp_path: Path) -> None:
    manager = SnapshotManager(tmp_path, critical_files=["absent.json"])

    with pytest.warns(SnapshotCaptureIncomplete):
        snapshot_id = manager.create_snapshot()

    assert manager.verification_errors(snapshot_id) == ["no captured files"]


def test_id_collisions_get_suffixes_and_listing_is_newest_first(
    tmp_path: Path, monkeypatch
) -> None:
    monkeypatch.setattr("bootkit.backup.datetime", _FrozenDatetime)
    manager = _project(tmp_path)

    ids = [manager.create_snapshot() for _ in range(3)]

    assert ids == ["20260102-030405", "20260102-030405-1", "20260102-030405-2"]
    assert [info.id for info in manager.list_snapshots()] == list(reversed(ids))
    assert manager.resolve("latest") == "20260102-030405-2"


def test_prune_keeps_most_recent(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr("bootkit.backup.datetime", _FrozenDatetime)
    manager = _project(tmp_path)
    ids = [manager.create_snapshot() for _ in range(5)]

    declined = manager.prune(1, confirm=lambda prompt: False)
    assert declined == []

    removed = manager.prune()
    assert removed == [ids[1], ids[0]]
    assert [info.id for info in manager.list_snapshots()] == [ids[4], ids[3], ids[2]]

    assert manager.prune(keep_n=1) == [ids[3], ids[2]]


def test_unknown_snapshot_raises(tmp_path: Path) -> None:
    manager = _project(tmp_path)

    with pytest.raises(SnapshotNotFound):
        manager.restore("20000101-000000")
    with pytest.raises(SnapshotNotFound):
        manager.resolve("latest")


def test_restore_failure_reports_partial(tmp_path: Path, monkeypatch) -> None:
    manager = _project(tmp_path)
    snapshot_id = manager.create_snapshot()
    original_replace = SnapshotManager._replace_file

    def _flaky_replace(source: Path, destination: Path) -> None:
        if destination.name == "bootkit.toml":
            raise OSError("read-only file system")
        original_replace(source, destination)

    monkeypatch.setattr(SnapshotManager, "_replace_file", staticmethod(_flaky_replace))

    with pytest.raises(RestorePartial) as excinfo:
        manager.restore(snapshot_id)

    report = excinfo.value.report
    assert report.failed == ["bootkit.toml"]
    assert report.status == "partial"
    assert excinfo.value.pre_restore_id == report.pre_restore_id
    assert manager.snapshot_dir(report.pre_restore_id).is_dir()


def test_restore_can_be_cancelled(tmp_path: Path) -> None:
    manager = _project(tmp_path)
    snapshot_id = manager.create_snapshot()

    report = manager.restore(snapshot_id, confirm=lambda prompt: False)

    assert report.status == "cancelled"
    assert len(manager.list_snapshots()) == 1


def test_critical_files_outside_project_are_not_captured(tmp_path: Path) -> None:
    root = tmp_path / "project"
    root.mkdir()
    (root / "bootkit.toml").write_text("[project]\n", encoding="utf-8")
    (tmp_path / "outside.json").write_text("{}", encoding="utf-8")
    manager = SnapshotManager(root, critical_files=["bootkit.toml", "../outside.json"])

    with pytest.warns(SnapshotCaptureIncomplete):
        snapshot_id = manager.create_snapshot()

    info = manager.info(snapshot_id)
    assert info.files == ["bootkit.toml"]
    assert info.missing == ["../outside.json"]
    assert not (info.path / "outside.json").exists()
    assert manager.verify(snapshot_id) is True


def test_restore_refuses_entries_escaping_project_root(tmp_path: Path) -> None:
    root = tmp_path / "project"
    root.mkdir()
    (root / "bootkit.toml").write_text("[project]\n", encoding="utf-8")
    outside = tmp_path / "outside.json"
    outside.write_text('{"keep": true}', encoding="utf-8")
    manager = SnapshotManager(root, critical_files=["bootkit.toml"])
    snapshot_id = manager.create_snapshot()

    metadata_path = manager.snapshot_dir(snapshot_id) / "snapshot.json"
    metadata = json.loads(metadata_path.read_text(encoding="utf-8"))
    metadata["files"].append("../outside.json")
    metadata_path.write_text(json.dumps(metadata), encoding="utf-8")
    (manager.snapshot_dir(snapshot_id) / "outside.json").write_text("{}", encoding="utf-8")

    with pytest.raises(RestoreVerificationFailed) as excinfo:
        manager.restore(snapshot_id)

    assert excinfo.value.errors == ["../outside.json: path outside the project root"]
    assert outside.read_text(encoding="utf-8") == '{"keep": true}'


def test_delete_removes_one_snapshot(tmp_path: Path) -> None:
    manager = _project(tmp_path)
    first = manager.create_snapshot(label="keep")
    second = manager.create_snapshot(label="drop")

    manager.delete("latest")

    assert [info.id for info in manager.list_snapshots()] == [first]
    assert not manager.snapshot_dir(second).exists()
    with pytest.raises(SnapshotNotFound):
        manager.delete(second)
