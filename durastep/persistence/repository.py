"""Repository abstraction for execution history persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Protocol

from .models import ErrorInfo, Execution, ExecutionStatus, StepRecord, WaitToken


class HistoryRepository(Protocol):
    """Protocol for append-only history backends.

    Step records are keyed by ``(execution_id, namespace, name)`` and never
    change once appended.
    """

    async def create_execution(self, execution: Execution) -> None:
        """Persist a new execution."""

    async def get_execution(self, execution_id: str) -> Execution | None:
        """Retrieve an execution together with its full history."""

    async def list_executions(self) -> list[Execution]:
        """Return all persisted executions without history."""

    async def update_execution(
        self,
        execution_id: str,
        status: ExecutionStatus,
        *,
        result: Any = None,
        error: Optional[ErrorInfo] = None,
        wake_at: Optional[datetime] = None,
    ) -> None:
        """Flip the execution status. Terminal executions are left untouched."""

    async def get_step(
        self, execution_id: str, namespace: str, name: str
    ) -> StepRecord | None:
        """Look up one committed step."""

    async def append_step(self, record: StepRecord) -> StepRecord:
        """Durably append ``record`` and return it with its sequence number.

        Raises:
            DuplicateStepNameError: If a different outcome is already stored
                under the same key.
        """

    async def list_steps(self, execution_id: str) -> list[StepRecord]:
        """Return the history of an execution ordered by sequence."""

    async def create_wait_token(self, token: WaitToken) -> None:
        """Register a pending wait token."""

    async def get_wait_token(self, token: str) -> WaitToken | None:
        """Return a wait token by id."""

    async def resolve_wait_token(self, token: str, payload: Any, now: datetime) -> bool:
        """Consume a pending token with ``payload``. ``False`` if not accepted."""

    async def expire_wait_token(self, token: str, now: datetime) -> bool:
        """Mark a pending token as expired. ``False`` if it was not pending."""
