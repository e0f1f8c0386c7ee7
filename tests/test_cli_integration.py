import json
from pathlib import Path

from click.testing import CliRunner

from bootkit.cli import cli
from bootkit.config import BootkitConfig, save_config
from bootkit.state import MarkerStore


def _write_project(root: Path) -> None:
    catalog = {
        "tasks": {
            "git": {
                "phase": 1,
                "category": "core",
                "description": "Initialize git",
                "outputs": [".gitignore"],
            },
            "packages": {
                "phase": 1,
                "category": "core",
                "description": "Package manager",
                "dependencies": ["git"],
            },
            "docker": {
                "phase": 3,
                "category": "infra",
                "description": "Docker",
                "dependencies": ["packages"],
            },
        },
        "profiles": {"minimal": ["git", "packages"]},
    }
    (root / "bootkit-manifest.json").write_text(json.dumps(catalog), encoding="utf-8")
    scripts = root / "scripts"
    scripts.mkdir(exist_ok=True)
    (scripts / "bootstrap-git.sh").write_text('touch "$1/.gitignore"\n', encoding="utf-8")
    (scripts / "bootstrap-packages.sh").write_text('echo "{}" > "$1/package.json"\n', encoding="utf-8")
    (scripts / "bootstrap-docker.sh").write_text("exit 2\n", encoding="utf-8")


def test_cli_full_lifecycle_commands(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()

    init_result = runner.invoke(cli, ["init", "--name", "demo"])
    assert init_result.exit_code == 0
    assert (tmp_path / "bootkit.toml").is_file()
    assert "(missing)" in init_result.output

    _write_project(tmp_path)

    validate_result = runner.invoke(cli, ["validate"])
    assert validate_result.exit_code == 0
    assert "3 tasks" in validate_result.output

    list_result = runner.invoke(cli, ["list"])
    assert list_result.exit_code == 0
    assert "Phase 1: Foundation" in list_result.output
    assert "minimal" in list_result.output

    repair_status = runner.invoke(cli, ["repair", "status"])
    assert repair_status.exit_code == 0
    assert "initialized" in repair_status.output

    run_result = runner.invoke(cli, ["run", "minimal", "--yes"])
    assert run_result.exit_code == 0, run_result.output
    assert "Run: 2  Failed: 0  Skipped: 0" in run_result.output
    assert (tmp_path / ".gitignore").is_file()
    assert (tmp_path / "package.json").is_file()

    status_result = runner.invoke(cli, ["status", "--json"])
    assert status_result.exit_code == 0
    assert '"state": "partial"' in status_result.output

    failed_run = runner.invoke(cli, ["run", "docker", "--yes"])
    assert failed_run.exit_code == 1
    assert "Run: 0  Failed: 1  Skipped: 0" in failed_run.output
    assert "bootkit repair status" in failed_run.output

    failed_status = runner.invoke(cli, ["repair", "status"])
    assert failed_status.exit_code == 2
    assert "failed" in failed_status.output

    retry_result = runner.invoke(cli, ["repair", "retry", "--yes"])
    assert retry_result.exit_code == 3

    continue_result = runner.invoke(cli, ["repair", "continue"])
    assert continue_result.exit_code == 0
    assert "not implemented" in continue_result.output

    backup_result = runner.invoke(cli, ["backup", "create", "--label", "manual"])
    assert backup_result.exit_code == 0
    assert "Created snapshot" in backup_result.output

    list_backups = runner.invoke(cli, ["backup", "list"])
    assert list_backups.exit_code == 0
    assert "manual" in list_backups.output

    verify_result = runner.invoke(cli, ["backup", "verify", "latest"])
    assert verify_result.exit_code == 0

    reset_result = runner.invoke(cli, ["repair", "reset", "--yes"])
    assert reset_result.exit_code == 0
    assert "2 completion marker(s) removed" in reset_result.output

    after_reset = runner.invoke(cli, ["repair", "status"])
    assert after_reset.exit_code == 0
    assert "initialized" in after_reset.output


def test_run_confirm_mode_prompts_for_each_task(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0
    _write_project(tmp_path)

    result = runner.invoke(cli, ["run", "minimal"], input="y\nn\n")

    assert result.exit_code == 0
    assert "Will create: .gitignore" in result.output
    assert "Run: 1  Failed: 0  Skipped: 1" in result.output
    assert not (tmp_path / "package.json").exists()


def test_run_dry_run_changes_nothing(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0
    _write_project(tmp_path)

    result = runner.invoke(cli, ["run", "minimal", "--dry-run"])

    assert result.exit_code == 0
    assert "Run scripts: 2" in result.output
    assert "Dry run only" in result.output
    assert not (tmp_path / ".gitignore").exists()
    assert not (tmp_path / ".bootkit" / "markers").exists()


def test_run_rejects_unknown_selector_and_blocking_preflight(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0
    _write_project(tmp_path)

    unknown = runner.invoke(cli, ["run", "kubernetes", "--yes"])
    assert unknown.exit_code == 1
    assert "Available:" in unknown.output

    blocked = runner.invoke(cli, ["run", "packages", "--yes"])
    assert blocked.exit_code == 1
    assert "packages: depends on 'git'" in blocked.output
    assert "--force" in blocked.output
    assert not (tmp_path / "package.json").exists()


def test_restore_refuses_corrupted_snapshot(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0
    _write_project(tmp_path)
    assert runner.invoke(cli, ["backup", "create"]).exit_code == 0

    snapshot_dir = next((tmp_path / ".bootkit" / "backups").iterdir())
    (snapshot_dir / "files" / "bootkit-manifest.json").write_text("{oops", encoding="utf-8")
    live_catalog = (tmp_path / "bootkit-manifest.json").read_text(encoding="utf-8")

    result = runner.invoke(cli, ["backup", "restore", snapshot_dir.name, "--yes"])

    assert result.exit_code == 1
    assert "nothing was restored" in result.output
    assert (tmp_path / "bootkit-manifest.json").read_text(encoding="utf-8") == live_catalog


def test_repair_status_before_init(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(cli, ["repair", "status"])

    assert result.exit_code == 1
    assert "never_run" in result.output


def test_json_output_for_run_and_backup_list(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0
    _write_project(tmp_path)

    run_result = runner.invoke(cli, ["run", "git", "--yes", "--json", "--no-suggest"])
    assert run_result.exit_code == 0, run_result.output
    payload = json.loads(run_result.stdout)
    assert payload["mode"] == "auto-approve"
    assert payload["run"] == 1
    assert [entry["task_id"] for entry in payload["entries"]] == ["git"]
    assert payload["dry_run"] is None

    assert runner.invoke(cli, ["backup", "create", "--label", "nightly"]).exit_code == 0
    list_result = runner.invoke(cli, ["backup", "list", "--json"])
    assert list_result.exit_code == 0
    snapshots = json.loads(list_result.stdout)
    assert snapshots[0]["label"] == "nightly"
    assert "bootkit.toml" in snapshots[0]["files"]


def test_status_commands_fail_on_invalid_catalog(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0
    _write_project(tmp_path)
    MarkerStore(tmp_path).mark_complete("git")
    (tmp_path / "bootkit-manifest.json").write_text("{broken", encoding="utf-8")

    for command in (["repair", "status"], ["status"], ["repair", "continue"]):
        result = runner.invoke(cli, command)
        assert result.exit_code == 1, command
        assert "Catalog invalid" in result.output
        assert "bootkit validate" in result.output
        assert "complete" not in result.output


def test_backup_create_never_prunes(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    config = BootkitConfig.default()
    config.backup.max_backups = 1
    save_config(tmp_path / "bootkit.toml", config)
    _write_project(tmp_path)

    assert runner.invoke(cli, ["backup", "create", "--label", "first"]).exit_code == 0
    second = runner.invoke(cli, ["backup", "create", "--label", "second"])

    assert second.exit_code == 0
    assert "run `bootkit backup prune`" in second.output
    assert len(list((tmp_path / ".bootkit" / "backups").iterdir())) == 2


def test_backup_delete_asks_first(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0
    _write_project(tmp_path)
    assert runner.invoke(cli, ["backup", "create"]).exit_code == 0
    backups = tmp_path / ".bootkit" / "backups"

    declined = runner.invoke(cli, ["backup", "delete", "latest"], input="n\n")
    assert declined.exit_code == 0
    assert "Delete cancelled." in declined.output
    assert len(list(backups.iterdir())) == 1

    removed = runner.invoke(cli, ["backup", "delete", "latest", "--yes"])
    assert removed.exit_code == 0
    assert list(backups.iterdir()) == []

    missing = runner.invoke(cli, ["backup", "delete", "latest", "--yes"])
    assert missing.exit_code == 1
