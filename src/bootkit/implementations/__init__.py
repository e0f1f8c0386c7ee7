from bootkit.implementations.base import (
    ImplementationError,
    TaskContext,
    TaskImplementation,
    TaskResult,
)
from bootkit.implementations.python import CallableImplementation, load_entrypoint
from bootkit.implementations.script import ScriptImplementation

__all__ = [
    "CallableImplementation",
    "ImplementationError",
    "ScriptImplementation",
    "TaskContext",
    "TaskImplementation",
    "TaskResult",
    "load_entrypoint",
]
