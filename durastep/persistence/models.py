"""Data models for persisted execution history."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)


class StepStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class OperationKind(str, Enum):
    """Which primitive wrote a record. Informational only."""

    STEP = "step"
    WAIT = "wait"
    CALLBACK = "callback"
    CONDITION = "condition"
    INVOKE = "invoke"
    CHILD = "child"


class WaitTokenStatus(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    EXPIRED = "expired"


class ErrorInfo(BaseModel):
    """Serialized form of a failure."""

    kind: str
    message: str = ""


class StepRecord(BaseModel):
    """Immutable record of one committed step outcome."""

    execution_id: str
    namespace: str = ""
    name: str
    sequence: Optional[int] = None
    status: StepStatus
    kind: OperationKind = OperationKind.STEP
    result: Any = None
    error: Optional[ErrorInfo] = None
    attempts: int = 1
    committed_at: Optional[datetime] = None

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.execution_id, self.namespace, self.name)

    def same_outcome(self, other: "StepRecord") -> bool:
        """``True`` when ``other`` would commit the same observable outcome."""
        return (
            self.status == other.status
            and self.result == other.result
            and self.error == other.error
        )


class Execution(BaseModel):
    """One logical run of a workflow function."""

    execution_id: str
    workflow_name: str
    input: Any = None
    status: ExecutionStatus = ExecutionStatus.RUNNING
    result: Any = None
    error: Optional[ErrorInfo] = None
    wake_at: Optional[datetime] = None
    started_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    history: list[StepRecord] = Field(default_factory=list)


class WaitToken(BaseModel):
    """Correlates a suspended execution with a future external signal."""

    token: str
    execution_id: str
    namespace: str = ""
    name: str
    expires_at: Optional[datetime] = None
    status: WaitTokenStatus = WaitTokenStatus.PENDING
    payload: Any = None
    created_at: datetime = Field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        if self.status == WaitTokenStatus.EXPIRED:
            return True
        return self.expires_at is not None and now >= self.expires_at
