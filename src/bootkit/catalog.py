"""Task catalog model and validation.

The catalog is a JSON document with three top-level maps:

- ``tasks``: id -> {phase, category, description, dependencies[],
  requiredTools[], ...}, kept in declaration order.
- ``phases``: ordinal -> {name, color}.
- ``profiles``: name -> ordered task-id list (or {description, tasks}).

Validation happens once at load time, first against ``CATALOG_SCHEMA`` and
then against the cross-references the schema cannot express (unknown
dependency ids, unknown profile members, dependency cycles). Any finding
raises :class:`~bootkit.errors.CatalogInvalid`, which blocks every operation.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from jsonschema import Draft202012Validator

from bootkit.errors import CatalogInvalid

TASK_ID_PATTERN = r"^[a-z0-9][a-z0-9._-]*$"

DEFAULT_PHASE_NAMES = {
    1: "Foundation",
    2: "Development Environment",
    3: "Infrastructure & Databases",
    4: "Services & Deployment",
    5: "Advanced Services",
}

_ID_LIST = {"type": "array", "items": {"type": "string", "pattern": TASK_ID_PATTERN}}
_STRING_LIST = {"type": "array", "items": {"type": "string", "minLength": 1}}

CATALOG_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["tasks"],
    "properties": {
        "version": {"type": "string"},
        "tasks": {
            "type": "object",
            "minProperties": 1,
            "propertyNames": {"pattern": TASK_ID_PATTERN},
            "additionalProperties": {
                "type": "object",
                "required": ["phase", "category", "description"],
                "properties": {
                    "phase": {"type": "integer", "minimum": 0},
                    "category": {"type": "string", "minLength": 1},
                    "description": {"type": "string"},
                    "dependencies": _ID_LIST,
                    "softDependencies": _ID_LIST,
                    "requiredTools": _STRING_LIST,
                    "optionalTools": _STRING_LIST,
                    "outputs": _STRING_LIST,
                    "file": {"type": "string", "minLength": 1},
                    "entrypoint": {"type": "string", "pattern": r"^[\w.]+:[\w.]+$"},
                    "questions": {"type": ["string", "boolean", "null"]},
                },
                "additionalProperties": False,
            },
        },
        "phases": {
            "type": "object",
            "propertyNames": {"pattern": r"^\d+$"},
            "additionalProperties": {
                "type": "object",
                "properties": {
                    "name": {"type": "string"},
                    "color": {"type": "string"},
                },
            },
        },
        "profiles": {
            "type": "object",
            "additionalProperties": {
                "oneOf": [
                    _ID_LIST,
                    {
                        "type": "object",
                        "required": ["tasks"],
                        "properties": {
                            "description": {"type": "string"},
                            "tasks": _ID_LIST,
                        },
                    },
                ]
            },
        },
    },
}


@dataclass(frozen=True, slots=True)
class Task:
    id: str
    phase: int
    category: str
    description: str
    dependencies: tuple[str, ...] = ()
    soft_dependencies: tuple[str, ...] = ()
    required_tools: tuple[str, ...] = ()
    optional_tools: tuple[str, ...] = ()
    outputs: tuple[str, ...] = ()
    file: str | None = None
    entrypoint: str | None = None
    has_questions: bool = False

    @property
    def script_name(self) -> str:
        return self.file or f"bootstrap-{self.id}.sh"


@dataclass(frozen=True, slots=True)
class Phase:
    number: int
    name: str
    color: str = "blue"


@dataclass(frozen=True, slots=True)
class Profile:
    name: str
    tasks: tuple[str, ...]
    description: str = ""


@dataclass(slots=True)
class Catalog:
    tasks: dict[str, Task]
    phases: dict[int, Phase]
    profiles: dict[str, Profile]
    version: str = "1"
    source: Path | None = None
    _order: dict[str, int] = field(default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        self._order = {task_id: index for index, task_id in enumerate(self.tasks)}

    def __len__(self) -> int:
        return len(self.tasks)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self.tasks

    def get(self, task_id: str) -> Task | None:
        return self.tasks.get(task_id)

    def ordered(self) -> list[Task]:
        return sorted(self.tasks.values(), key=lambda task: (task.phase, self._order[task.id]))

    def phase_tasks(self, phase: int) -> list[Task]:
        return [task for task in self.tasks.values() if task.phase == phase]

    def phase(self, number: int) -> Phase:
        existing = self.phases.get(number)
        if existing is not None:
            return existing
        return Phase(number=number, name=DEFAULT_PHASE_NAMES.get(number, f"Phase {number}"))

    def phase_numbers(self) -> list[int]:
        return sorted({task.phase for task in self.tasks.values()} | set(self.phases))

    def dependents_of(self, task_id: str) -> list[Task]:
        return [task for task in self.tasks.values() if task_id in task.dependencies]


def _schema_errors(data: Any) -> list[str]:
    validator = Draft202012Validator(CATALOG_SCHEMA)
    errors = []
    for error in sorted(validator.iter_errors(data), key=lambda item: list(item.absolute_path)):
        path = ".".join(str(part) for part in error.absolute_path) or "(root)"
        errors.append(f"{path}: {error.message}")
    return errors


def _find_cycle(tasks: dict[str, Task]) -> list[str] | None:
    visiting: set[str] = set()
    done: set[str] = set()
    stack: list[str] = []

    def _visit(task_id: str) -> list[str] | None:
        if task_id in done:
            return None
        if task_id in visiting:
            return stack[stack.index(task_id) :] + [task_id]
        visiting.add(task_id)
        stack.append(task_id)
        for dependency in tasks[task_id].dependencies:
            if dependency in tasks:
                cycle = _visit(dependency)
                if cycle:
                    return cycle
        stack.pop()
        visiting.discard(task_id)
        done.add(task_id)
        return None

    for task_id in tasks:
        cycle = _visit(task_id)
        if cycle:
            return cycle
    return None


def _semantic_errors(catalog: Catalog) -> list[str]:
    errors: list[str] = []
    for task in catalog.tasks.values():
        for dependency in task.dependencies:
            if dependency not in catalog.tasks:
                errors.append(f"tasks.{task.id}.dependencies: unknown task '{dependency}'")
            elif dependency == task.id:
                errors.append(f"tasks.{task.id}.dependencies: task depends on itself")
        for dependency in task.soft_dependencies:
            if dependency not in catalog.tasks:
                errors.append(f"tasks.{task.id}.softDependencies: unknown task '{dependency}'")
        if task.file and task.entrypoint:
            errors.append(f"tasks.{task.id}: 'file' and 'entrypoint' are mutually exclusive")
    for profile in catalog.profiles.values():
        if not profile.tasks:
            errors.append(f"profiles.{profile.name}: profile lists no tasks")
        seen: set[str] = set()
        for task_id in profile.tasks:
            if task_id not in catalog.tasks:
                errors.append(f"profiles.{profile.name}: unknown task '{task_id}'")
            if task_id in seen:
                errors.append(f"profiles.{profile.name}: task '{task_id}' listed twice")
            seen.add(task_id)
    if not errors:
        cycle = _find_cycle(catalog.tasks)
        if cycle:
            errors.append("dependency cycle: " + " -> ".join(cycle))
    return errors


def _task_from_dict(task_id: str, payload: dict[str, Any]) -> Task:
    questions = payload.get("questions")
    return Task(
        id=task_id,
        phase=int(payload["phase"]),
        category=str(payload["category"]),
        description=str(payload.get("description", "")),
        dependencies=tuple(payload.get("dependencies", [])),
        soft_dependencies=tuple(payload.get("softDependencies", [])),
        required_tools=tuple(payload.get("requiredTools", [])),
        optional_tools=tuple(payload.get("optionalTools", [])),
        outputs=tuple(payload.get("outputs", [])),
        file=payload.get("file"),
        entrypoint=payload.get("entrypoint"),
        has_questions=bool(questions),
    )


def _profile_from_dict(name: str, payload: Any) -> Profile:
    if isinstance(payload, list):
        return Profile(name=name, tasks=tuple(payload))
    return Profile(
        name=name,
        tasks=tuple(payload.get("tasks", [])),
        description=str(payload.get("description", "")),
    )


def parse_catalog(data: Any, *, source: Path | None = None) -> Catalog:
    where = str(source) if source else None
    errors = _schema_errors(data)
    if errors:
        raise CatalogInvalid(errors, path=where)

    tasks = {
        task_id: _task_from_dict(task_id, payload) for task_id, payload in data["tasks"].items()
    }
    phases = {
        int(number): Phase(
            number=int(number),
            name=str(payload.get("name") or DEFAULT_PHASE_NAMES.get(int(number), f"Phase {number}")),
            color=str(payload.get("color") or "blue"),
        )
        for number, payload in data.get("phases", {}).items()
    }
    profiles = {
        name: _profile_from_dict(name, payload)
        for name, payload in data.get("profiles", {}).items()
    }
    catalog = Catalog(
        tasks=tasks,
        phases=phases,
        profiles=profiles,
        version=str(data.get("version", "1")),
        source=source,
    )
    errors = _semantic_errors(catalog)
    if errors:
        raise CatalogInvalid(errors, path=where)
    return catalog


def load_catalog(path: Path) -> Catalog:
    if not path.exists():
        raise CatalogInvalid(["catalog file not found"], path=str(path))
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise CatalogInvalid([f"invalid JSON: {exc}"], path=str(path)) from exc
    return parse_catalog(data, source=path)


def validate_catalog_file(path: Path) -> list[str]:
    try:
        load_catalog(path)
    except CatalogInvalid as exc:
        return exc.errors
    return []


def is_script_name(name: str) -> bool:
    return re.match(r"^bootstrap-[\w.-]+\.sh$", name) is not None
