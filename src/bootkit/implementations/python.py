from __future__ import annotations

import importlib
from collections.abc import Callable
from typing import Any

from bootkit.implementations.base import (
    ImplementationError,
    TaskContext,
    TaskImplementation,
    TaskResult,
)

TaskCallable = Callable[[TaskContext], Any]


def _coerce_result(value: Any) -> TaskResult:
    if isinstance(value, TaskResult):
        return value
    if value is None or value is True:
        return TaskResult(exit_code=0)
    if value is False:
        return TaskResult(exit_code=1, message="task reported failure")
    if isinstance(value, int):
        return TaskResult(exit_code=value, message="" if value == 0 else f"exit code {value}")
    raise ImplementationError(f"Unsupported task return value: {value!r}")


class CallableImplementation(TaskImplementation):
    """Adapts a plain ``func(context)`` returning None/bool/int/TaskResult."""

    def __init__(self, func: TaskCallable, *, outputs: tuple[str, ...] = ()) -> None:
        self.func = func
        self.outputs = tuple(outputs or getattr(func, "outputs", ()))

    def run(self, context: TaskContext) -> TaskResult:
        return _coerce_result(self.func(context))


def load_entrypoint(entrypoint: str) -> TaskImplementation:
    module_name, _, attr_path = entrypoint.partition(":")
    if not module_name or not attr_path:
        raise ImplementationError(f"Invalid entrypoint: {entrypoint}")
    try:
        target: Any = importlib.import_module(module_name)
    except ImportError as exc:
        raise ImplementationError(f"Cannot import {module_name}: {exc}") from exc
    for part in attr_path.split("."):
        try:
            target = getattr(target, part)
        except AttributeError as exc:
            raise ImplementationError(f"{entrypoint}: missing attribute '{part}'") from exc

    if isinstance(target, TaskImplementation):
        return target
    if isinstance(target, type) and issubclass(target, TaskImplementation):
        return target()
    if callable(target):
        return CallableImplementation(target)
    raise ImplementationError(f"{entrypoint} is not callable")
