"""Shared fixtures for durastep tests."""

from typing import Optional

import pytest

import durastep.persistence as persistence
from durastep.clock import ManualClock
from durastep.config import DurastepConfig, EngineConfig
from durastep.context import DurableContext, ExecutionScope
from durastep.driver import ExecutionDriver
from durastep.invoke import LocalInvoker
from durastep.persistence import InMemoryHistoryRepository
from durastep.steps import StepExecutor
from durastep.waits import WaitCoordinator


@pytest.fixture(autouse=True)
def _reset_repository_singleton(monkeypatch):
    monkeypatch.delenv("DURASTEP_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setattr(persistence, "_repository_instance", None)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def repository() -> InMemoryHistoryRepository:
    return InMemoryHistoryRepository()


@pytest.fixture
def driver(repository, clock) -> ExecutionDriver:
    return ExecutionDriver(repository, clock=clock, config=DurastepConfig())


@pytest.fixture
def make_context(repository, clock):
    """Build a root context for one attempt of ``execution_id``.

    Every call starts a fresh attempt over the same history, which is how
    the driver replays an execution.
    """

    def _make(
        execution_id: str = "exec-1",
        *,
        invoker=None,
        submitter=None,
        engine: Optional[EngineConfig] = None,
    ) -> DurableContext:
        engine = engine or EngineConfig()
        executor = StepExecutor(execution_id, repository, clock)
        scope = ExecutionScope(
            execution_id=execution_id,
            executor=executor,
            waits=WaitCoordinator(executor, repository, clock, engine, submitter),
            invoker=invoker or LocalInvoker(),
            clock=clock,
            engine=engine,
        )
        return DurableContext(scope)

    return _make
