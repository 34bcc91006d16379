"""Structural checks for state-machine definitions."""

from __future__ import annotations

from typing import Any, List, Mapping, Set, Union

from pydantic import ValidationError

from ..constants import DEFAULT_MAX_CONCURRENCY
from ..errors import DefinitionError
from .models import (
    TERMINAL_TYPES,
    CatchRule,
    MapState,
    ParallelState,
    RetryRule,
    StateMachineDefinition,
    SubMachine,
)

DefinitionLike = Union[StateMachineDefinition, Mapping[str, Any], str]


def parse_definition(definition: DefinitionLike) -> StateMachineDefinition:
    """Validate a definition given as a model, a mapping or a JSON document."""
    if isinstance(definition, StateMachineDefinition):
        return definition
    try:
        if isinstance(definition, str):
            return StateMachineDefinition.model_validate_json(definition)
        return StateMachineDefinition.model_validate(definition)
    except ValidationError as e:
        problems = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        ]
        raise DefinitionError(problems) from e


def _check_retry(where: str, rules: List[RetryRule], problems: List[str]) -> None:
    for i, rule in enumerate(rules):
        prefix = f"{where}.Retry[{i}]"
        if not rule.error_equals:
            problems.append(f"{prefix}: ErrorEquals must not be empty")
        if rule.interval_seconds <= 0:
            problems.append(f"{prefix}: IntervalSeconds must be positive")
        if rule.max_attempts < 0:
            problems.append(f"{prefix}: MaxAttempts must not be negative")
        if rule.backoff_rate < 1.0:
            problems.append(f"{prefix}: BackoffRate must be >= 1.0")


def _check_catch(
    where: str, rules: List[CatchRule], names: Set[str], problems: List[str]
) -> None:
    for i, rule in enumerate(rules):
        prefix = f"{where}.Catch[{i}]"
        if not rule.error_equals:
            problems.append(f"{prefix}: ErrorEquals must not be empty")
        if rule.next not in names:
            problems.append(f"{prefix}: Next '{rule.next}' is not a state")


def _reachable(machine: SubMachine) -> Set[str]:
    seen: Set[str] = set()
    pending = [machine.start_at]
    while pending:
        name = pending.pop()
        if name in seen or name not in machine.states:
            continue
        seen.add(name)
        state = machine.states[name]
        if getattr(state, "next", None):
            pending.append(state.next)
        pending.extend(rule.next for rule in getattr(state, "catch", []))
    return seen


def _lint_machine(
    machine: SubMachine, path: str, max_concurrency: int, problems: List[str]
) -> None:
    names = set(machine.states)
    if not machine.states:
        problems.append(f"{path}: States must not be empty")
        return
    if machine.start_at not in names:
        problems.append(f"{path}: StartAt '{machine.start_at}' is not a state")

    for name, state in machine.states.items():
        where = f"{path}.States.{name}"
        if state.type not in TERMINAL_TYPES:
            if state.end and state.next:
                problems.append(f"{where}: cannot set both Next and End")
            elif not state.end and not state.next:
                problems.append(f"{where}: needs Next or End")
            elif state.next and state.next not in names:
                problems.append(f"{where}: Next '{state.next}' is not a state")

        if hasattr(state, "retry"):
            _check_retry(where, state.retry, problems)
            _check_catch(where, state.catch, names, problems)

        if state.type == "Wait" and state.seconds < 0:
            problems.append(f"{where}: Seconds must not be negative")
        if state.type == "Callback" and (
            state.timeout_seconds is not None and state.timeout_seconds <= 0
        ):
            problems.append(f"{where}: TimeoutSeconds must be positive")

        if isinstance(state, MapState):
            if state.max_concurrency is None or not (
                1 <= state.max_concurrency <= max_concurrency
            ):
                problems.append(
                    f"{where}: MaxConcurrency must be between 1 and {max_concurrency}"
                )
            _lint_machine(state.iterator, f"{where}.Iterator", max_concurrency, problems)
        elif isinstance(state, ParallelState):
            if not state.branches:
                problems.append(f"{where}: Branches must not be empty")
            if len(state.branches) > max_concurrency:
                problems.append(
                    f"{where}: {len(state.branches)} branches exceed the cap of {max_concurrency}"
                )
            for i, branch in enumerate(state.branches):
                _lint_machine(branch, f"{where}.Branches[{i}]", max_concurrency, problems)

    if machine.start_at in names:
        for name in sorted(names - _reachable(machine)):
            problems.append(f"{path}.States.{name}: unreachable from StartAt")


def collect_problems(
    definition: DefinitionLike, *, max_concurrency: int = DEFAULT_MAX_CONCURRENCY
) -> List[str]:
    """Return every structural problem found in ``definition``."""
    try:
        machine = parse_definition(definition)
    except DefinitionError as e:
        return list(e.problems)
    problems: List[str] = []
    _lint_machine(machine, "$", max_concurrency, problems)
    return problems


def lint_definition(
    definition: DefinitionLike, *, max_concurrency: int = DEFAULT_MAX_CONCURRENCY
) -> StateMachineDefinition:
    """Return the parsed definition or raise ``DefinitionError`` listing its problems."""
    machine = parse_definition(definition)
    problems: List[str] = []
    _lint_machine(machine, "$", max_concurrency, problems)
    if problems:
        raise DefinitionError(problems)
    return machine
