from bootkit.catalog import parse_catalog
from bootkit.recommend import Recommender


def _catalog():
    return parse_catalog(
        {
            "tasks": {
                "git": {"phase": 1, "category": "core", "description": "Git"},
                "packages": {"phase": 1, "category": "core", "description": "Packages"},
                "environment": {"phase": 1, "category": "core", "description": "Env files"},
                "linting": {"phase": 2, "category": "quality", "description": "Linting"},
                "hooks": {
                    "phase": 2,
                    "category": "quality",
                    "description": "Git hooks",
                    "dependencies": ["git"],
                },
                "claude": {"phase": 4, "category": "ai", "description": "Claude"},
                "codex": {"phase": 4, "category": "ai", "description": "Codex"},
            }
        }
    )


def test_dependents_come_before_known_next_steps() -> None:
    suggestions = Recommender(_catalog()).suggest("git")

    assert [item.task_id for item in suggestions] == ["hooks", "packages", "linting"]
    assert suggestions[0].reason == "depends on git"


def test_completed_and_unknown_tasks_are_filtered() -> None:
    suggestions = Recommender(_catalog()).suggest("git", completed={"hooks", "packages"}, limit=5)

    assert [item.task_id for item in suggestions] == ["linting", "environment"]


def test_known_next_step_table() -> None:
    suggestions = Recommender(_catalog()).suggest("claude")

    assert [item.task_id for item in suggestions] == ["codex"]


def test_falls_back_to_next_task_in_phase() -> None:
    recommender = Recommender(_catalog(), next_steps={})

    suggestions = recommender.suggest("packages")

    assert [item.task_id for item in suggestions] == ["environment"]
    assert suggestions[0].reason == "next in phase 1"


def test_unknown_task_yields_nothing() -> None:
    assert Recommender(_catalog()).suggest("kubernetes") == []


def test_suggest_never_raises() -> None:
    recommender = Recommender(_catalog(), next_steps={"git": None})

    assert recommender.suggest("git") == []
