"""History stores and the factory that picks one from a database URL."""

from __future__ import annotations

import os
from typing import Callable, Dict, Optional

from ..config import DurastepConfig, load_config
from .inmemory import InMemoryHistoryRepository
from .models import (
    ErrorInfo,
    Execution,
    ExecutionStatus,
    OperationKind,
    StepRecord,
    StepStatus,
    WaitToken,
    WaitTokenStatus,
)
from .repository import HistoryRepository
from .sqlite import SQLiteHistoryRepository

try:
    from .postgres import PostgresHistoryRepository
except ImportError:
    PostgresHistoryRepository = None  # type: ignore

_repository_instance: HistoryRepository | None = None


def _open_sqlite(url: str) -> HistoryRepository:
    # sqlite://relative.db or sqlite:///absolute/path.db
    return SQLiteHistoryRepository(url.split("://", 1)[1])


def _open_postgres(url: str) -> HistoryRepository:
    if PostgresHistoryRepository is None:
        raise RuntimeError("Postgres history needs asyncpg: pip install 'durastep[postgres]'")
    return PostgresHistoryRepository(url)


_BACKENDS: Dict[str, Callable[[str], HistoryRepository]] = {
    "sqlite": _open_sqlite,
    "postgres": _open_postgres,
    "postgresql": _open_postgres,
}


def get_repository(
    database_url: Optional[str] = None, config: Optional[DurastepConfig] = None
) -> HistoryRepository:
    """Return the history store named by ``database_url``.

    Without an explicit URL, ``DURASTEP_DATABASE_URL``, ``DATABASE_URL`` and
    then ``config.database_url`` are consulted; no URL at all selects the
    in-memory store. The selected store is kept and returned by later calls
    that pass neither argument.
    """
    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("DURASTEP_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        _repository_instance = InMemoryHistoryRepository()
        return _repository_instance

    scheme = database_url.split("://", 1)[0].lower()
    opener = _BACKENDS.get(scheme)
    if opener is None or "://" not in database_url:
        raise ValueError(f"Unsupported database backend: {database_url}")
    _repository_instance = opener(database_url)
    return _repository_instance
