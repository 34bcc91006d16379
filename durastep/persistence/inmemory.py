"""In-memory implementation of the history repository."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from ..errors import CallbackIdConflictError, DuplicateStepNameError
from .models import (
    ErrorInfo,
    Execution,
    ExecutionStatus,
    StepRecord,
    WaitToken,
    WaitTokenStatus,
    utcnow,
)
from .repository import HistoryRepository


class InMemoryHistoryRepository(HistoryRepository):
    """Store execution history in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._executions: Dict[str, Execution] = {}
        self._steps: Dict[Tuple[str, str, str], StepRecord] = {}
        self._sequences: Dict[str, int] = {}
        self._tokens: Dict[str, WaitToken] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def create_execution(self, execution: Execution) -> None:
        stored = execution.model_copy(deep=True)
        stored.history = []
        self._executions[execution.execution_id] = stored

    async def get_execution(self, execution_id: str) -> Execution | None:
        execution = self._executions.get(execution_id)
        if execution is None:
            return None
        result = execution.model_copy(deep=True)
        result.history = await self.list_steps(execution_id)
        return result

    async def list_executions(self) -> list[Execution]:
        return [e.model_copy(deep=True) for e in self._executions.values()]

    async def update_execution(
        self,
        execution_id: str,
        status: ExecutionStatus,
        *,
        result: Any = None,
        error: Optional[ErrorInfo] = None,
        wake_at: Optional[datetime] = None,
    ) -> None:
        execution = self._executions.get(execution_id)
        if execution is None or execution.status.is_terminal:
            return
        execution.status = status
        execution.result = result
        execution.error = error
        execution.wake_at = wake_at
        execution.updated_at = utcnow()

    async def get_step(
        self, execution_id: str, namespace: str, name: str
    ) -> StepRecord | None:
        record = self._steps.get((execution_id, namespace, name))
        return record.model_copy(deep=True) if record else None

    async def append_step(self, record: StepRecord) -> StepRecord:
        async with self._lock:
            existing = self._steps.get(record.key)
            if existing is not None:
                if existing.same_outcome(record):
                    return existing.model_copy(deep=True)
                raise DuplicateStepNameError(record.namespace, record.name)
            sequence = self._sequences.get(record.execution_id, 0) + 1
            self._sequences[record.execution_id] = sequence
            stored = record.model_copy(
                deep=True, update={"sequence": sequence, "committed_at": utcnow()}
            )
            self._steps[record.key] = stored
            return stored.model_copy(deep=True)

    async def list_steps(self, execution_id: str) -> list[StepRecord]:
        steps = [
            s.model_copy(deep=True)
            for key, s in self._steps.items()
            if key[0] == execution_id
        ]
        return sorted(steps, key=lambda s: s.sequence or 0)

    async def create_wait_token(self, token: WaitToken) -> None:
        async with self._lock:
            existing = self._tokens.get(token.token)
            if existing is not None:
                if (existing.execution_id, existing.namespace, existing.name) == (
                    token.execution_id,
                    token.namespace,
                    token.name,
                ):
                    return
                raise CallbackIdConflictError(
                    f"Callback id '{token.token}' is already in use"
                )
            self._tokens[token.token] = token.model_copy(deep=True)

    async def get_wait_token(self, token: str) -> WaitToken | None:
        stored = self._tokens.get(token)
        return stored.model_copy(deep=True) if stored else None

    async def resolve_wait_token(self, token: str, payload: Any, now: datetime) -> bool:
        async with self._lock:
            stored = self._tokens.get(token)
            if stored is None or stored.status != WaitTokenStatus.PENDING:
                return False
            if stored.is_expired(now):
                stored.status = WaitTokenStatus.EXPIRED
                stored.resolved_at = now
                return False
            stored.status = WaitTokenStatus.RESOLVED
            stored.payload = payload
            stored.resolved_at = now
            return True

    async def expire_wait_token(self, token: str, now: datetime) -> bool:
        async with self._lock:
            stored = self._tokens.get(token)
            if stored is None or stored.status != WaitTokenStatus.PENDING:
                return False
            stored.status = WaitTokenStatus.EXPIRED
            stored.resolved_at = now
            return True
