from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from bootkit.catalog import Catalog

logger = logging.getLogger(__name__)

KNOWN_NEXT_STEPS: dict[str, tuple[str, ...]] = {
    "git": ("packages", "linting", "environment"),
    "packages": ("typescript", "linting", "testing"),
    "typescript": ("linting", "testing"),
    "linting": ("testing", "vscode"),
    "testing": ("github", "docker"),
    "environment": ("docker", "database"),
    "docker": ("database", "kubernetes"),
    "database": ("prisma", "redis"),
    "claude": ("codex",),
    "vscode": ("linting",),
}


@dataclass(frozen=True, slots=True)
class Recommendation:
    task_id: str
    reason: str

    def to_dict(self) -> dict[str, str]:
        return {"task_id": self.task_id, "reason": self.reason}


class Recommender:
    """Advisory next-step suggestions after a task completes.

    Candidates come from three sources, highest priority first: tasks that
    declare the finished task as a dependency, the known next-step table, and
    the next task in the same phase. Suggestions never affect execution.
    """

    def __init__(
        self,
        catalog: Catalog,
        *,
        next_steps: Mapping[str, Iterable[str]] | None = None,
    ) -> None:
        self.catalog = catalog
        self.next_steps = dict(KNOWN_NEXT_STEPS if next_steps is None else next_steps)

    def _candidates(self, task_id: str) -> list[Recommendation]:
        candidates = [
            Recommendation(task.id, f"depends on {task_id}")
            for task in self.catalog.dependents_of(task_id)
        ]
        candidates.extend(
            Recommendation(step, f"commonly follows {task_id}")
            for step in self.next_steps.get(task_id, ())
        )
        task = self.catalog.get(task_id)
        if task is not None:
            siblings = self.catalog.phase_tasks(task.phase)
            ids = [sibling.id for sibling in siblings]
            position = ids.index(task_id)
            if position + 1 < len(ids):
                candidates.append(
                    Recommendation(ids[position + 1], f"next in phase {task.phase}")
                )
        return candidates

    def suggest(
        self,
        task_id: str,
        *,
        completed: Iterable[str] = (),
        limit: int = 3,
    ) -> list[Recommendation]:
        try:
            candidates = self._candidates(task_id)
        except Exception as exc:
            logger.warning("Could not compute suggestions after %s: %s", task_id, exc)
            return []

        done = set(completed) | {task_id}
        seen: set[str] = set()
        results: list[Recommendation] = []
        for item in candidates:
            if item.task_id in seen or item.task_id in done or item.task_id not in self.catalog:
                continue
            seen.add(item.task_id)
            results.append(item)
            if len(results) >= limit:
                break
        return results
