"""Pydantic models of a declarative state-machine definition.

Field names follow the Amazon States Language on the wire (``StartAt``,
``States``, ``ErrorEquals`` ...) and snake_case in Python.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from ..contracts import CatchPolicy, RetryPolicy

# ASL error names mapped onto the names durastep policies match against.
ERROR_ALIASES = {
    "States.TaskFailed": "Exception",
    "States.Timeout": "WaitTimeoutError",
}


def _translate(kinds: List[str]) -> List[str]:
    return [ERROR_ALIASES.get(kind, kind) for kind in kinds]


class _AslModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RetryRule(_AslModel):
    error_equals: List[str] = Field(alias="ErrorEquals")
    interval_seconds: float = Field(1.0, alias="IntervalSeconds")
    max_attempts: int = Field(3, alias="MaxAttempts")
    backoff_rate: float = Field(2.0, alias="BackoffRate")

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            error_kinds=_translate(self.error_equals),
            interval_seconds=self.interval_seconds,
            max_attempts=self.max_attempts,
            backoff_rate=max(self.backoff_rate, 1.0),
        )

    @classmethod
    def from_policy(cls, policy: RetryPolicy) -> "RetryRule":
        return cls(
            error_equals=list(policy.error_kinds),
            interval_seconds=policy.interval_seconds,
            max_attempts=policy.max_attempts,
            backoff_rate=policy.backoff_rate,
        )


class CatchRule(_AslModel):
    error_equals: List[str] = Field(alias="ErrorEquals")
    next: str = Field(alias="Next")
    result_path: Optional[str] = Field("$", alias="ResultPath")

    def to_policy(self) -> CatchPolicy:
        return CatchPolicy(error_kinds=_translate(self.error_equals), on_failure=self.next)

    @classmethod
    def from_policy(cls, policy: CatchPolicy) -> "CatchRule":
        return cls(error_equals=list(policy.error_kinds), next=policy.on_failure)


class _StateBase(_AslModel):
    comment: Optional[str] = Field(None, alias="Comment")


class _FlowState(_StateBase):
    next: Optional[str] = Field(None, alias="Next")
    end: Optional[bool] = Field(None, alias="End")


class _GuardedState(_FlowState):
    result_path: Optional[str] = Field("$", alias="ResultPath")
    retry: List[RetryRule] = Field(default_factory=list, alias="Retry")
    catch: List[CatchRule] = Field(default_factory=list, alias="Catch")


class TaskState(_GuardedState):
    type: Literal["Task"] = Field(alias="Type")
    resource: str = Field(alias="Resource")
    parameters: Optional[Dict[str, Any]] = Field(None, alias="Parameters")


class WaitState(_FlowState):
    type: Literal["Wait"] = Field(alias="Type")
    seconds: float = Field(alias="Seconds")


class CallbackState(_GuardedState):
    type: Literal["Callback"] = Field(alias="Type")
    resource: Optional[str] = Field(None, alias="Resource")
    timeout_seconds: Optional[float] = Field(None, alias="TimeoutSeconds")


class MapState(_GuardedState):
    type: Literal["Map"] = Field(alias="Type")
    items_path: str = Field("$", alias="ItemsPath")
    iterator: "SubMachine" = Field(alias="Iterator")
    max_concurrency: Optional[int] = Field(None, alias="MaxConcurrency")


class ParallelState(_GuardedState):
    type: Literal["Parallel"] = Field(alias="Type")
    branches: List["SubMachine"] = Field(alias="Branches")


class SucceedState(_StateBase):
    type: Literal["Succeed"] = Field(alias="Type")


class FailState(_StateBase):
    type: Literal["Fail"] = Field(alias="Type")
    error: Optional[str] = Field(None, alias="Error")
    cause: Optional[str] = Field(None, alias="Cause")


State = Annotated[
    Union[
        TaskState,
        WaitState,
        CallbackState,
        MapState,
        ParallelState,
        SucceedState,
        FailState,
    ],
    Field(discriminator="type"),
]

TERMINAL_TYPES = ("Succeed", "Fail")


class SubMachine(_AslModel):
    start_at: str = Field(alias="StartAt")
    states: Dict[str, State] = Field(alias="States")


class StateMachineDefinition(SubMachine):
    comment: Optional[str] = Field(None, alias="Comment")

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_unset=True)

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def from_json(cls, data: str) -> "StateMachineDefinition":
        return cls.model_validate_json(data)


MapState.model_rebuild()
ParallelState.model_rebuild()
SubMachine.model_rebuild()
StateMachineDefinition.model_rebuild()
