"""SQLite implementation of the history repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

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


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _load(value: Optional[str]) -> Any:
    return json.loads(value) if value is not None else None


class SQLiteHistoryRepository(HistoryRepository):
    """Persist execution history using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._guard = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
                execution_id TEXT PRIMARY KEY,
                workflow_name TEXT NOT NULL,
                input TEXT,
                status TEXT NOT NULL,
                result TEXT,
                error TEXT,
                wake_at TEXT,
                started_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS step_history (
                execution_id TEXT NOT NULL,
                namespace TEXT NOT NULL,
                name TEXT NOT NULL,
                sequence INTEGER NOT NULL,
                status TEXT NOT NULL,
                kind TEXT NOT NULL,
                result TEXT,
                error TEXT,
                attempts INTEGER NOT NULL,
                committed_at TEXT NOT NULL,
                PRIMARY KEY (execution_id, namespace, name)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS wait_tokens (
                token TEXT PRIMARY KEY,
                execution_id TEXT NOT NULL,
                namespace TEXT NOT NULL,
                name TEXT NOT NULL,
                expires_at TEXT,
                status TEXT NOT NULL,
                payload TEXT,
                created_at TEXT NOT NULL,
                resolved_at TEXT
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> None:
        with self._guard:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._guard:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._guard:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    @staticmethod
    def _to_step(row: sqlite3.Row) -> StepRecord:
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
            committed_at=_dt(row["committed_at"]),
        )

    @staticmethod
    def _to_execution(row: sqlite3.Row) -> Execution:
        error = _load(row["error"])
        return Execution(
            execution_id=row["execution_id"],
            workflow_name=row["workflow_name"],
            input=_load(row["input"]),
            status=row["status"],
            result=_load(row["result"]),
            error=ErrorInfo(**error) if error else None,
            wake_at=_dt(row["wake_at"]),
            started_at=_dt(row["started_at"]),
            updated_at=_dt(row["updated_at"]),
        )

    @staticmethod
    def _to_token(row: sqlite3.Row) -> WaitToken:
        return WaitToken(
            token=row["token"],
            execution_id=row["execution_id"],
            namespace=row["namespace"],
            name=row["name"],
            expires_at=_dt(row["expires_at"]),
            status=row["status"],
            payload=_load(row["payload"]),
            created_at=_dt(row["created_at"]),
            resolved_at=_dt(row["resolved_at"]),
        )

    def _append_step_sync(self, record: StepRecord) -> StepRecord:
        with self._guard:
            cur = self._conn.cursor()
            cur.execute(
                "SELECT * FROM step_history WHERE execution_id = ? AND namespace = ? AND name = ?",
                (record.execution_id, record.namespace, record.name),
            )
            row = cur.fetchone()
            if row is not None:
                existing = self._to_step(row)
                if existing.same_outcome(record):
                    return existing
                raise DuplicateStepNameError(record.namespace, record.name)
            cur.execute(
                "SELECT COALESCE(MAX(sequence), 0) + 1 FROM step_history WHERE execution_id = ?",
                (record.execution_id,),
            )
            sequence = cur.fetchone()[0]
            stored = record.model_copy(
                update={"sequence": sequence, "committed_at": utcnow()}
            )
            cur.execute(
                """
                INSERT INTO step_history
                (execution_id, namespace, name, sequence, status, kind, result, error, attempts, committed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    stored.execution_id,
                    stored.namespace,
                    stored.name,
                    sequence,
                    stored.status.value,
                    stored.kind.value,
                    json.dumps(stored.result),
                    json.dumps(stored.error.model_dump()) if stored.error else None,
                    stored.attempts,
                    _iso(stored.committed_at),
                ),
            )
            self._conn.commit()
            return stored

    def _transition_token_sync(
        self, token: str, status: WaitTokenStatus, payload: Any, now: datetime
    ) -> bool:
        with self._guard:
            cur = self._conn.cursor()
            cur.execute("SELECT * FROM wait_tokens WHERE token = ?", (token,))
            row = cur.fetchone()
            if row is None:
                return False
            stored = self._to_token(row)
            if stored.status != WaitTokenStatus.PENDING:
                return False
            accepted = True
            if status == WaitTokenStatus.RESOLVED and stored.is_expired(now):
                status, payload, accepted = WaitTokenStatus.EXPIRED, None, False
            cur.execute(
                "UPDATE wait_tokens SET status = ?, payload = ?, resolved_at = ? WHERE token = ? AND status = ?",
                (
                    status.value,
                    json.dumps(payload),
                    now.isoformat(),
                    token,
                    WaitTokenStatus.PENDING.value,
                ),
            )
            self._conn.commit()
            return accepted and cur.rowcount == 1

    # ------------------------------------------------------------------
    # Repository API
    async def create_execution(self, execution: Execution) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO executions
            (execution_id, workflow_name, input, status, result, error, wake_at, started_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            execution.execution_id,
            execution.workflow_name,
            json.dumps(execution.input),
            execution.status.value,
            json.dumps(execution.result),
            None,
            _iso(execution.wake_at),
            _iso(execution.started_at),
            _iso(execution.updated_at),
        )

    async def get_execution(self, execution_id: str) -> Execution | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM executions WHERE execution_id = ?",
            execution_id,
        )
        if not row:
            return None
        execution = self._to_execution(row)
        execution.history = await self.list_steps(execution_id)
        return execution

    async def list_executions(self) -> list[Execution]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT * FROM executions ORDER BY started_at"
        )
        return [self._to_execution(row) for row in rows]

    async def update_execution(
        self,
        execution_id: str,
        status: ExecutionStatus,
        *,
        result: Any = None,
        error: Optional[ErrorInfo] = None,
        wake_at: Optional[datetime] = None,
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE executions
            SET status = ?, result = ?, error = ?, wake_at = ?, updated_at = ?
            WHERE execution_id = ? AND status NOT IN (?, ?)
            """,
            status.value,
            json.dumps(result),
            json.dumps(error.model_dump()) if error else None,
            _iso(wake_at),
            utcnow().isoformat(),
            execution_id,
            ExecutionStatus.COMPLETED.value,
            ExecutionStatus.FAILED.value,
        )

    async def get_step(
        self, execution_id: str, namespace: str, name: str
    ) -> StepRecord | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM step_history WHERE execution_id = ? AND namespace = ? AND name = ?",
            execution_id,
            namespace,
            name,
        )
        return self._to_step(row) if row else None

    async def append_step(self, record: StepRecord) -> StepRecord:
        return await asyncio.to_thread(self._append_step_sync, record)

    async def list_steps(self, execution_id: str) -> list[StepRecord]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM step_history WHERE execution_id = ? ORDER BY sequence",
            execution_id,
        )
        return [self._to_step(row) for row in rows]

    async def create_wait_token(self, token: WaitToken) -> None:
        existing = await self.get_wait_token(token.token)
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
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO wait_tokens
            (token, execution_id, namespace, name, expires_at, status, payload, created_at, resolved_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            token.token,
            token.execution_id,
            token.namespace,
            token.name,
            _iso(token.expires_at),
            token.status.value,
            json.dumps(token.payload),
            _iso(token.created_at),
            None,
        )

    async def get_wait_token(self, token: str) -> WaitToken | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM wait_tokens WHERE token = ?", token
        )
        return self._to_token(row) if row else None

    async def resolve_wait_token(self, token: str, payload: Any, now: datetime) -> bool:
        return await asyncio.to_thread(
            self._transition_token_sync, token, WaitTokenStatus.RESOLVED, payload, now
        )

    async def expire_wait_token(self, token: str, now: datetime) -> bool:
        return await asyncio.to_thread(
            self._transition_token_sync, token, WaitTokenStatus.EXPIRED, None, now
        )
