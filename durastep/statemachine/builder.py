"""Fluent construction of state-machine definitions."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence, Union

from ..constants import DEFAULT_MAX_CONCURRENCY
from ..contracts import CatchPolicy, RetryPolicy
from .lint import lint_definition
from .models import (
    TERMINAL_TYPES,
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

logger = logging.getLogger(__name__)

Policies = Union[RetryPolicy, Sequence[RetryPolicy], None]
MachineLike = Union["StateMachineBuilder", SubMachine]


def _retry_rules(retry: Policies) -> List[RetryRule]:
    if retry is None:
        return []
    if isinstance(retry, RetryPolicy):
        retry = [retry]
    return [RetryRule.from_policy(p) for p in retry]


def _catch_rules(catch: Optional[Sequence[CatchPolicy]]) -> List[CatchRule]:
    return [CatchRule.from_policy(p) for p in catch or []]


class StateMachineBuilder:
    """Builds a definition whose states run in the order they are added.

    Each state flows to the next one added; the last non-terminal state
    ends the machine. ``goto`` overrides the implicit transition.

    Example:
        >>> builder = StateMachineBuilder("Price albums")
        >>> builder.step("Process", "process-image").wait_for_callback(
        ...     "Validate", timeout_seconds=3600
        ... ).succeed("Done")
        >>> definition = builder.build()
    """

    def __init__(self, comment: Optional[str] = None) -> None:
        self.comment = comment
        self._states: Dict[str, Any] = {}
        self._order: List[str] = []
        self._explicit_next: Dict[str, str] = {}

    def _add(self, name: str, state: Any) -> "StateMachineBuilder":
        if name in self._states:
            raise ValueError(f"State '{name}' is already defined")
        self._states[name] = state
        self._order.append(name)
        return self

    def goto(self, name: str, next_state: str) -> "StateMachineBuilder":
        """Send ``name`` to ``next_state`` instead of the following state."""
        self._explicit_next[name] = next_state
        return self

    def step(
        self,
        name: str,
        resource: str,
        *,
        retry: Policies = None,
        catch: Optional[Sequence[CatchPolicy]] = None,
        parameters: Optional[Dict[str, Any]] = None,
        result_path: Optional[str] = "$",
    ) -> "StateMachineBuilder":
        fields: Dict[str, Any] = {"type": "Task", "resource": resource}
        if retry:
            fields["retry"] = _retry_rules(retry)
        if catch:
            fields["catch"] = _catch_rules(catch)
        if parameters is not None:
            fields["parameters"] = parameters
        if result_path != "$":
            fields["result_path"] = result_path
        return self._add(name, TaskState(**fields))

    def wait(self, name: str, seconds: float) -> "StateMachineBuilder":
        return self._add(name, WaitState(type="Wait", seconds=seconds))

    def wait_for_callback(
        self,
        name: str,
        *,
        resource: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        catch: Optional[Sequence[CatchPolicy]] = None,
        result_path: Optional[str] = "$",
    ) -> "StateMachineBuilder":
        fields: Dict[str, Any] = {"type": "Callback"}
        if resource is not None:
            fields["resource"] = resource
        if timeout_seconds is not None:
            fields["timeout_seconds"] = timeout_seconds
        if catch:
            fields["catch"] = _catch_rules(catch)
        if result_path != "$":
            fields["result_path"] = result_path
        return self._add(name, CallbackState(**fields))

    def map(
        self,
        name: str,
        iterator: MachineLike,
        *,
        items_path: str = "$",
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        retry: Policies = None,
        catch: Optional[Sequence[CatchPolicy]] = None,
        result_path: Optional[str] = "$",
    ) -> "StateMachineBuilder":
        fields: Dict[str, Any] = {
            "type": "Map",
            "iterator": _as_sub_machine(iterator),
            "items_path": items_path,
            "max_concurrency": max_concurrency,
        }
        if retry:
            fields["retry"] = _retry_rules(retry)
        if catch:
            fields["catch"] = _catch_rules(catch)
        if result_path != "$":
            fields["result_path"] = result_path
        return self._add(name, MapState(**fields))

    def parallel(
        self,
        name: str,
        branches: Sequence[MachineLike],
        *,
        retry: Policies = None,
        catch: Optional[Sequence[CatchPolicy]] = None,
        result_path: Optional[str] = "$",
    ) -> "StateMachineBuilder":
        fields: Dict[str, Any] = {
            "type": "Parallel",
            "branches": [_as_sub_machine(b) for b in branches],
        }
        if retry:
            fields["retry"] = _retry_rules(retry)
        if catch:
            fields["catch"] = _catch_rules(catch)
        if result_path != "$":
            fields["result_path"] = result_path
        return self._add(name, ParallelState(**fields))

    def succeed(self, name: str) -> "StateMachineBuilder":
        return self._add(name, SucceedState(type="Succeed"))

    def fail(
        self, name: str, error: Optional[str] = None, cause: Optional[str] = None
    ) -> "StateMachineBuilder":
        fields: Dict[str, Any] = {"type": "Fail"}
        if error is not None:
            fields["error"] = error
        if cause is not None:
            fields["cause"] = cause
        return self._add(name, FailState(**fields))

    def _linked_states(self) -> Dict[str, Any]:
        if not self._order:
            raise ValueError("A state machine needs at least one state")
        linked: Dict[str, Any] = {}
        for position, name in enumerate(self._order):
            state = self._states[name]
            if state.type in TERMINAL_TYPES:
                linked[name] = state
                continue
            following = self._explicit_next.get(name)
            if following is None and position + 1 < len(self._order):
                following = self._order[position + 1]
            update = {"next": following} if following else {"end": True}
            linked[name] = state.model_copy(update=update)
        return linked

    def build_sub_machine(self) -> SubMachine:
        states = self._linked_states()
        return SubMachine(start_at=self._order[0], states=states)

    def build(self, *, lint: bool = True) -> StateMachineDefinition:
        """Return the definition, linted unless ``lint`` is false."""
        fields: Dict[str, Any] = {
            "start_at": self._order[0] if self._order else "",
            "states": self._linked_states(),
        }
        if self.comment is not None:
            fields["comment"] = self.comment
        definition = StateMachineDefinition(**fields)
        if lint:
            lint_definition(definition)
        logger.debug(f"Built state machine with {len(self._order)} state(s)")
        return definition


def _as_sub_machine(machine: MachineLike) -> SubMachine:
    if isinstance(machine, StateMachineBuilder):
        return machine.build_sub_machine()
    return SubMachine(start_at=machine.start_at, states=dict(machine.states))
