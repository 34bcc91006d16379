"""Lowers a state-machine definition onto the durable primitives."""

from __future__ import annotations

import copy
import functools
import logging
from collections import Counter
from typing import Any, Callable, Dict, List, Mapping, Optional

from ..context import DurableContext
from ..errors import DefinitionError, OperationError, WaitTimeoutError, error_kind
from ..utils.calls import call_maybe_async
from .lint import DefinitionLike, lint_definition
from .models import (
    CallbackState,
    FailState,
    MapState,
    ParallelState,
    SubMachine,
    SucceedState,
    TaskState,
    WaitState,
)

logger = logging.getLogger(__name__)

Resources = Mapping[str, Callable[..., Any]]


def select_path(data: Any, path: Optional[str]) -> Any:
    """Resolve a ``$``/``$.a.b`` reference against ``data``."""
    if path is None or path == "$":
        return data
    if not path.startswith("$."):
        raise DefinitionError([f"Unsupported path '{path}'"])
    current = data
    for key in path[2:].split("."):
        if isinstance(current, Mapping) and key in current:
            current = current[key]
        elif isinstance(current, list) and key.isdigit() and int(key) < len(current):
            current = current[int(key)]
        else:
            raise OperationError("States.Runtime", f"Path '{path}' not found in input")
    return current


def apply_result(data: Any, path: Optional[str], result: Any) -> Any:
    """Place ``result`` into ``data`` following ASL ``ResultPath`` rules."""
    if path is None:
        return data
    if path == "$":
        return result
    if not path.startswith("$."):
        raise DefinitionError([f"Unsupported ResultPath '{path}'"])
    output = copy.deepcopy(data) if isinstance(data, dict) else {}
    keys = path[2:].split(".")
    target = output
    for key in keys[:-1]:
        target = target.setdefault(key, {})
    target[keys[-1]] = result
    return output


def render_parameters(parameters: Optional[Dict[str, Any]], data: Any) -> Any:
    """Build task input; keys ending in ``.$`` are paths into ``data``."""
    if parameters is None:
        return data
    rendered: Dict[str, Any] = {}
    for key, value in parameters.items():
        if key.endswith(".$"):
            rendered[key[:-2]] = select_path(data, value)
        elif isinstance(value, dict):
            rendered[key] = render_parameters(value, data)
        else:
            rendered[key] = value
    return rendered


def _error_output(exc: BaseException) -> Dict[str, str]:
    if isinstance(exc, OperationError):
        return {"Error": exc.kind, "Cause": exc.message}
    if isinstance(exc, WaitTimeoutError):
        return {"Error": "States.Timeout", "Cause": str(exc)}
    return {"Error": error_kind(exc), "Cause": str(exc)}


class StateMachineRunner:
    """Interprets one (sub-)machine inside a ``DurableContext``.

    Task, Callback and Wait states become steps and waits named after the
    state, suffixed ``#<n>`` when a state is revisited.
    """

    def __init__(self, machine: SubMachine, resources: Resources) -> None:
        self.machine = machine
        self.resources = resources

    def _resource(self, name: str) -> Callable[..., Any]:
        try:
            return self.resources[name]
        except KeyError:
            raise DefinitionError([f"No resource registered as '{name}'"]) from None

    async def run(self, ctx: DurableContext, data: Any) -> Any:
        visits: Counter[str] = Counter()
        current = self.machine.start_at
        while True:
            state = self.machine.states[current]
            visits[current] += 1
            label = current if visits[current] == 1 else f"{current}#{visits[current]}"
            ctx.logger.debug(f"Entering state {label}")

            if isinstance(state, SucceedState):
                return data
            if isinstance(state, FailState):
                raise OperationError(state.error or "States.Fail", state.cause or "")

            try:
                data = await self._execute(ctx, label, state, data)
            except (OperationError, WaitTimeoutError) as exc:
                handler = next(
                    (rule for rule in getattr(state, "catch", []) if rule.to_policy().matches(exc)),
                    None,
                )
                if handler is None:
                    raise
                logger.info(f"State {label} failed with {error_kind(exc)}; routing to {handler.next}")
                data = apply_result(data, handler.result_path, _error_output(exc))
                current = handler.next
                continue

            if state.end:
                return data
            current = state.next

    async def _execute(self, ctx: DurableContext, label: str, state: Any, data: Any) -> Any:
        if isinstance(state, TaskState):
            fn = self._resource(state.resource)
            task_input = render_parameters(state.parameters, data)
            result = await ctx.step(
                label,
                functools.partial(call_maybe_async, fn, task_input),
                retry=[rule.to_policy() for rule in state.retry],
            )
            return apply_result(data, state.result_path, result)

        if isinstance(state, WaitState):
            await ctx.wait(state.seconds, name=label)
            return data

        if isinstance(state, CallbackState):
            submitter = self._resource(state.resource) if state.resource else None
            payload = await ctx.wait_for_callback(
                label,
                submitter=submitter,
                timeout=state.timeout_seconds,
                raise_on_timeout=True,
            )
            return apply_result(data, state.result_path, payload)

        if isinstance(state, MapState):
            items = select_path(data, state.items_path)
            if not isinstance(items, list):
                raise OperationError("States.Runtime", f"ItemsPath of {label} is not a list")
            iterator = StateMachineRunner(state.iterator, self.resources)
            results = await ctx.map(
                items,
                lambda child, item, index: iterator.run(child, item),
                name=label,
                retry=[rule.to_policy() for rule in state.retry],
                max_concurrency=state.max_concurrency,
            )
            return apply_result(data, state.result_path, results)

        if isinstance(state, ParallelState):
            branches: List[Callable[[DurableContext], Any]] = [
                functools.partial(_run_branch, StateMachineRunner(b, self.resources), data)
                for b in state.branches
            ]
            results = await ctx.parallel(
                branches,
                name=label,
                retry=[rule.to_policy() for rule in state.retry],
            )
            return apply_result(data, state.result_path, results)

        raise DefinitionError([f"State {label} has unsupported type {state.type}"])


async def _run_branch(runner: StateMachineRunner, data: Any, ctx: DurableContext) -> Any:
    return await runner.run(ctx, copy.deepcopy(data))


def as_workflow(
    definition: DefinitionLike, resources: Resources
) -> Callable[[Any, DurableContext], Any]:
    """Return a workflow function that runs ``definition`` on ``ExecutionDriver``.

    ``resources`` maps Task resource names to callables taking the task input
    and Callback resource names to submitters taking the callback id.
    """
    machine = lint_definition(definition)
    runner = StateMachineRunner(machine, resources)

    async def state_machine_workflow(event: Any, ctx: DurableContext) -> Any:
        return await runner.run(ctx, event)

    state_machine_workflow.__name__ = f"statemachine:{machine.start_at}"
    return state_machine_workflow
