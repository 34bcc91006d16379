"""Core contracts shared by the primitives, the driver and the transports."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, List, Mapping, Optional, Union

from pydantic import BaseModel, Field, field_validator

from .constants import WILDCARD_ERROR_KINDS
from .errors import ExecutionFailedError, error_kind
from .persistence.models import ErrorInfo, ExecutionStatus, StepRecord


def _kind_matches(error_kinds: List[str], exc: BaseException) -> bool:
    kinds = set(error_kinds)
    if kinds & WILDCARD_ERROR_KINDS:
        return True
    if error_kind(exc) in kinds:
        return True
    return any(cls.__name__ in kinds for cls in type(exc).__mro__)


class RetryPolicy(BaseModel):
    """Retry rule for one step.

    ``max_attempts`` counts retries after the first invocation, matching the
    declarative ``Retry`` table.
    """

    error_kinds: List[str] = Field(default_factory=lambda: ["*"])
    interval_seconds: float = 1.0
    max_attempts: int = 3
    backoff_rate: float = 2.0

    @field_validator("backoff_rate")
    @classmethod
    def _ensure_backoff(cls, v: float) -> float:
        if v < 1.0:
            raise ValueError("backoff_rate must be >= 1.0")
        return v

    def matches(self, exc: BaseException) -> bool:
        """Return ``True`` if this rule covers ``exc``."""
        return _kind_matches(self.error_kinds, exc)


class CatchPolicy(BaseModel):
    """Routes matching failures to another label instead of failing."""

    error_kinds: List[str]
    on_failure: str

    def matches(self, exc: BaseException) -> bool:
        return _kind_matches(self.error_kinds, exc)


RetrySpec = Union[RetryPolicy, List[RetryPolicy], None]


def as_policies(retry: RetrySpec) -> List[RetryPolicy]:
    if retry is None:
        return []
    if isinstance(retry, RetryPolicy):
        return [retry]
    return list(retry)


class WaitDecision(BaseModel):
    """Outcome of a condition wait's continuation predicate."""

    should_continue: bool
    delay_seconds: Optional[float] = None

    @classmethod
    def coerce(cls, value: Any) -> "WaitDecision":
        """Accept a ``WaitDecision``, a bool, or a mapping with
        ``continue``/``should_continue`` and ``delay``/``delay_seconds`` keys."""
        if isinstance(value, WaitDecision):
            return value
        if isinstance(value, bool):
            return cls(should_continue=value)
        if isinstance(value, Mapping):
            should_continue = value.get("should_continue", value.get("continue"))
            if should_continue is None:
                raise ValueError("Wait decision needs a 'continue' flag")
            delay = value.get("delay_seconds", value.get("delay"))
            if hasattr(delay, "total_seconds"):
                delay = delay.total_seconds()
            return cls(should_continue=bool(should_continue), delay_seconds=delay)
        raise TypeError(f"Unsupported wait decision: {value!r}")


class CallbackTimeout:
    """Sentinel returned by a callback wait that expired without a signal."""

    _instance: Optional["CallbackTimeout"] = None

    def __new__(cls) -> "CallbackTimeout":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "CALLBACK_TIMEOUT"


CALLBACK_TIMEOUT = CallbackTimeout()


class ExecutionOutcome(BaseModel):
    """What one driver attempt (or a terminal lookup) observed."""

    execution_id: str
    status: ExecutionStatus
    result: Any = None
    error: Optional[ErrorInfo] = None
    wake_at: Optional[datetime] = None
    history: List[StepRecord] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def raise_for_status(self) -> "ExecutionOutcome":
        if self.status == ExecutionStatus.FAILED:
            error = self.error or ErrorInfo(kind="UnknownError")
            raise ExecutionFailedError(self.execution_id, error.kind, error.message)
        return self


class SignalResult(BaseModel):
    accepted: bool
    execution_id: Optional[str] = None
    reason: Optional[str] = None


class SignalMessage(BaseModel):
    """Envelope carrying a callback signal over a transport."""

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    callback_id: str
    payload: Any = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    schema_version: str = "1.0"

    def to_json(self) -> str:
        """Serialize message to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "SignalMessage":
        """Deserialize message from JSON."""
        return cls.model_validate_json(data)
