from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

ModeName = Literal["confirm", "auto-approve", "dry-run"]

CONFIG_FILENAME = "bootkit.toml"


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    target_dir: str = "."


@dataclass(slots=True)
class PathsConfig:
    catalog: str = "bootkit-manifest.json"
    implementations_dir: str = "scripts"
    state_dir: str = ".bootkit"


@dataclass(slots=True)
class ExecutionConfig:
    default_mode: ModeName = "confirm"
    shell: str = "bash"
    suggestions: bool = True
    scan_timeout_seconds: float = 3.0
    skip_preflight: bool = False


@dataclass(slots=True)
class BackupConfig:
    max_backups: int = 10
    critical_files: list[str] = field(
        default_factory=lambda: [
            CONFIG_FILENAME,
            "bootkit-manifest.json",
            ".bootkit/state/session.json",
        ]
    )


@dataclass(slots=True)
class LoggingConfig:
    level: str = "WARNING"
    file: str = ".bootkit/logs/bootkit.log"


@dataclass(slots=True)
class BootkitConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    backup: BackupConfig = field(default_factory=BackupConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> BootkitConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> BootkitConfig:
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            paths=PathsConfig(**data.get("paths", {})),
            execution=ExecutionConfig(**data.get("execution", {})),
            backup=BackupConfig(**data.get("backup", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "target_dir": self.project.target_dir,
            },
            "paths": {
                "catalog": self.paths.catalog,
                "implementations_dir": self.paths.implementations_dir,
                "state_dir": self.paths.state_dir,
            },
            "execution": {
                "default_mode": self.execution.default_mode,
                "shell": self.execution.shell,
                "suggestions": self.execution.suggestions,
                "scan_timeout_seconds": self.execution.scan_timeout_seconds,
                "skip_preflight": self.execution.skip_preflight,
            },
            "backup": {
                "max_backups": self.backup.max_backups,
                "critical_files": list(self.backup.critical_files),
            },
            "logging": {
                "level": self.logging.level,
                "file": self.logging.file,
            },
        }

    def critical_files(self) -> list[str]:
        """Critical file set, always including the configured catalog path."""
        files = list(self.backup.critical_files)
        if self.paths.catalog not in files:
            files.append(self.paths.catalog)
        return files


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: BootkitConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["project", "paths", "execution", "backup", "logging"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> BootkitConfig:
    if not path.exists():
        return BootkitConfig.default()
    return BootkitConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: BootkitConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
