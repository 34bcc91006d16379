"""PostgreSQL implementation of the history repository."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional

import asyncpg

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


def _load(value: Optional[str]) -> Any:
    return json.loads(value) if value is not None else None


class PostgresHistoryRepository(HistoryRepository):
    """Persist execution history using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
                execution_id TEXT PRIMARY KEY,
                workflow_name TEXT NOT NULL,
                input JSONB,
                status TEXT NOT NULL,
                result JSONB,
                error JSONB,
                wake_at TIMESTAMPTZ,
                started_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS step_history (
                execution_id TEXT NOT NULL,
                namespace TEXT NOT NULL,
                name TEXT NOT NULL,
                sequence INTEGER NOT NULL,
                status TEXT NOT NULL,
                kind TEXT NOT NULL,
                result JSONB,
                error JSONB,
                attempts INTEGER NOT NULL,
                committed_at TIMESTAMPTZ NOT NULL,
                PRIMARY KEY (execution_id, namespace, name)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS wait_tokens (
                token TEXT PRIMARY KEY,
                execution_id TEXT NOT NULL,
                namespace TEXT NOT NULL,
                name TEXT NOT NULL,
                expires_at TIMESTAMPTZ,
                status TEXT NOT NULL,
                payload JSONB,
                created_at TIMESTAMPTZ NOT NULL,
                resolved_at TIMESTAMPTZ
            )
            """
        )

    @staticmethod
    def _to_step(row: asyncpg.Record) -> StepRecord:
        error = _load(row["error"])
        return StepRecord(
            execution_id=row["execution_id"],
            namespace=row["namespace"],
            name=row["name"],
            sequence=row["sequence"],
            status=row["status"],
            kind=row["kind"],
            result=_load(row["result"]),
            error=ErrorInfo(**error) if error else None,
            attempts=row["attempts"],
            committed_at=row["committed_at"],
        )

    @staticmethod
    def _to_execution(row: asyncpg.Record) -> Execution:
        error = _load(row["error"])
        return Execution(
            execution_id=row["execution_id"],
            workflow_name=row["workflow_name"],
            input=_load(row["input"]),
            status=row["status"],
            result=_load(row["result"]),
            error=ErrorInfo(**error) if error else None,
            wake_at=row["wake_at"],
            started_at=row["started_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _to_token(row: asyncpg.Record) -> WaitToken:
        return WaitToken(
            token=row["token"],
            execution_id=row["execution_id"],
            namespace=row["namespace"],
            name=row["name"],
            expires_at=row["expires_at"],
            status=row["status"],
            payload=_load(row["payload"]),
            created_at=row["created_at"],
            resolved_at=row["resolved_at"],
        )

    # ------------------------------------------------------------------
    async def create_execution(self, execution: Execution) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO executions
                (execution_id, workflow_name, input, status, result, error, wake_at, started_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, NULL, $6, $7, $8)
                """,
                execution.execution_id,
                execution.workflow_name,
                json.dumps(execution.input),
                execution.status.value,
                json.dumps(execution.result),
                execution.wake_at,
                execution.started_at,
                execution.updated_at,
            )
        finally:
            await conn.close()

    async def get_execution(self, execution_id: str) -> Execution | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT * FROM executions WHERE execution_id = $1", execution_id
            )
            if not row:
                return None
            steps = await conn.fetch(
                "SELECT * FROM step_history WHERE execution_id = $1 ORDER BY sequence",
                execution_id,
            )
        finally:
            await conn.close()
        execution = self._to_execution(row)
        execution.history = [self._to_step(r) for r in steps]
        return execution

    async def list_executions(self) -> list[Execution]:
        conn = await self._connect()
        try:
            rows = await conn.fetch("SELECT * FROM executions ORDER BY started_at")
        finally:
            await conn.close()
        return [self._to_execution(r) for r in rows]

    async def update_execution(
        self,
        execution_id: str,
        status: ExecutionStatus,
        *,
        result: Any = None,
        error: Optional[ErrorInfo] = None,
        wake_at: Optional[datetime] = None,
    ) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                UPDATE executions
                SET status = $1, result = $2, error = $3, wake_at = $4, updated_at = $5
                WHERE execution_id = $6 AND status NOT IN ('completed', 'failed')
                """,
                status.value,
                json.dumps(result),
                json.dumps(error.model_dump()) if error else None,
                wake_at,
                utcnow(),
                execution_id,
            )
        finally:
            await conn.close()

    async def get_step(
        self, execution_id: str, namespace: str, name: str
    ) -> StepRecord | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT * FROM step_history WHERE execution_id = $1 AND namespace = $2 AND name = $3",
                execution_id,
                namespace,
                name,
            )
        finally:
            await conn.close()
        return self._to_step(row) if row else None

    async def append_step(self, record: StepRecord) -> StepRecord:
        conn = await self._connect()
        try:
            async with conn.transaction():
                # serialize appends per execution so sequence numbers stay gapless
                await conn.execute(
                    "SELECT pg_advisory_xact_lock(hashtext($1))", record.execution_id
                )
                row = await conn.fetchrow(
                    "SELECT * FROM step_history WHERE execution_id = $1 AND namespace = $2 AND name = $3",
                    record.execution_id,
                    record.namespace,
                    record.name,
                )
                if row is not None:
                    existing = self._to_step(row)
                    if existing.same_outcome(record):
                        return existing
                    raise DuplicateStepNameError(record.namespace, record.name)
                sequence = await conn.fetchval(
                    "SELECT COALESCE(MAX(sequence), 0) + 1 FROM step_history WHERE execution_id = $1",
                    record.execution_id,
                )
                stored = record.model_copy(
                    update={"sequence": sequence, "committed_at": utcnow()}
                )
                await conn.execute(
                    """
                    INSERT INTO step_history
                    (execution_id, namespace, name, sequence, status, kind, result, error, attempts, committed_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                    """,
                    stored.execution_id,
                    stored.namespace,
                    stored.name,
                    sequence,
                    stored.status.value,
                    stored.kind.value,
                    json.dumps(stored.result),
                    json.dumps(stored.error.model_dump()) if stored.error else None,
                    stored.attempts,
                    stored.committed_at,
                )
                return stored
        finally:
            await conn.close()

    async def list_steps(self, execution_id: str) -> list[StepRecord]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT * FROM step_history WHERE execution_id = $1 ORDER BY sequence",
                execution_id,
            )
        finally:
            await conn.close()
        return [self._to_step(r) for r in rows]

    async def create_wait_token(self, token: WaitToken) -> None:
        conn = await self._connect()
        try:
            inserted = await conn.fetchval(
                """
                INSERT INTO wait_tokens
                (token, execution_id, namespace, name, expires_at, status, payload, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                ON CONFLICT (token) DO NOTHING
                RETURNING token
                """,
                token.token,
                token.execution_id,
                token.namespace,
                token.name,
                token.expires_at,
                token.status.value,
                json.dumps(token.payload),
                token.created_at,
            )
            if inserted is not None:
                return
            row = await conn.fetchrow(
                "SELECT * FROM wait_tokens WHERE token = $1", token.token
            )
        finally:
            await conn.close()
        existing = self._to_token(row)
        if (existing.execution_id, existing.namespace, existing.name) != (
            token.execution_id,
            token.namespace,
            token.name,
        ):
            raise CallbackIdConflictError(
                f"Callback id '{token.token}' is already in use"
            )

    async def get_wait_token(self, token: str) -> WaitToken | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow("SELECT * FROM wait_tokens WHERE token = $1", token)
        finally:
            await conn.close()
        return self._to_token(row) if row else None

    async def resolve_wait_token(self, token: str, payload: Any, now: datetime) -> bool:
        conn = await self._connect()
        try:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT * FROM wait_tokens WHERE token = $1 FOR UPDATE", token
                )
                if row is None:
                    return False
                stored = self._to_token(row)
                if stored.status != WaitTokenStatus.PENDING:
                    return False
                if stored.is_expired(now):
                    await conn.execute(
                        "UPDATE wait_tokens SET status = $1, resolved_at = $2 WHERE token = $3",
                        WaitTokenStatus.EXPIRED.value,
                        now,
                        token,
                    )
                    return False
                await conn.execute(
                    "UPDATE wait_tokens SET status = $1, payload = $2, resolved_at = $3 WHERE token = $4",
                    WaitTokenStatus.RESOLVED.value,
                    json.dumps(payload),
                    now,
                    token,
                )
                return True
        finally:
            await conn.close()

    async def expire_wait_token(self, token: str, now: datetime) -> bool:
        conn = await self._connect()
        try:
            result = await conn.execute(
                "UPDATE wait_tokens SET status = $1, resolved_at = $2 WHERE token = $3 AND status = $4",
                WaitTokenStatus.EXPIRED.value,
                now,
                token,
                WaitTokenStatus.PENDING.value,
            )
        finally:
            await conn.close()
        return result.endswith(" 1")
