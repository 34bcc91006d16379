"""Declarative state-machine front end sharing the step contract."""

from .adapter import StateMachineRunner, as_workflow
from .builder import StateMachineBuilder
from .lint import collect_problems, lint_definition, parse_definition
from .models import (
    CallbackState,
    CatchRule,
    FailState,
    MapState,
    ParallelState,
    RetryRule,
    StateMachineDefinition,
    SubMachine,
    SucceedState,
    TaskState,
    WaitState,
)

__all__ = [
    "CallbackState",
    "CatchRule",
    "FailState",
    "MapState",
    "ParallelState",
    "RetryRule",
    "StateMachineBuilder",
    "StateMachineDefinition",
    "StateMachineRunner",
    "SubMachine",
    "SucceedState",
    "TaskState",
    "WaitState",
    "as_workflow",
    "collect_problems",
    "lint_definition",
    "parse_definition",
]
