from datetime import datetime, timedelta, timezone

import pytest

from durastep.errors import CallbackIdConflictError, DuplicateStepNameError
from durastep.persistence import (
    ErrorInfo,
    Execution,
    ExecutionStatus,
    InMemoryHistoryRepository,
    OperationKind,
    SQLiteHistoryRepository,
    StepRecord,
    StepStatus,
    WaitToken,
    WaitTokenStatus,
)

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture(params=["inmemory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "sqlite":
        return SQLiteHistoryRepository(tmp_path / "history.db")
    return InMemoryHistoryRepository()


def _step(name, namespace="", result=None, status=StepStatus.SUCCEEDED, error=None):
    return StepRecord(
        execution_id="exec-1",
        namespace=namespace,
        name=name,
        status=status,
        kind=OperationKind.STEP,
        result=result,
        error=error,
    )


@pytest.mark.asyncio
async def test_execution_lifecycle(repo):
    await repo.create_execution(
        Execution(execution_id="exec-1", workflow_name="price-albums", input={"key": "a.jpg"})
    )
    await repo.append_step(_step("process", result={"albums": 2}))
    await repo.update_execution(
        "exec-1", ExecutionStatus.WAITING, wake_at=NOW + timedelta(hours=1)
    )

    execution = await repo.get_execution("exec-1")
    assert execution.workflow_name == "price-albums"
    assert execution.input == {"key": "a.jpg"}
    assert execution.status == ExecutionStatus.WAITING
    assert execution.wake_at == NOW + timedelta(hours=1)
    assert [s.name for s in execution.history] == ["process"]

    await repo.update_execution("exec-1", ExecutionStatus.COMPLETED, result={"total": 3})
    # Terminal executions are never reopened
    await repo.update_execution("exec-1", ExecutionStatus.RUNNING)
    execution = await repo.get_execution("exec-1")
    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.result == {"total": 3}

    listed = await repo.list_executions()
    assert [e.execution_id for e in listed] == ["exec-1"]
    assert await repo.get_execution("missing") is None


@pytest.mark.asyncio
async def test_failed_execution_keeps_error(repo):
    await repo.create_execution(Execution(execution_id="exec-1", workflow_name="wf"))
    await repo.update_execution(
        "exec-1", ExecutionStatus.FAILED, error=ErrorInfo(kind="ValueError", message="bad")
    )
    execution = await repo.get_execution("exec-1")
    assert execution.error == ErrorInfo(kind="ValueError", message="bad")


@pytest.mark.asyncio
async def test_append_assigns_sequence_per_execution(repo):
    first = await repo.append_step(_step("a", result=1))
    second = await repo.append_step(_step("b", namespace="map-0", result=[2]))
    assert (first.sequence, second.sequence) == (1, 2)
    assert second.committed_at is not None

    fetched = await repo.get_step("exec-1", "map-0", "b")
    assert fetched.result == [2]
    assert await repo.get_step("exec-1", "", "b") is None
    assert [s.name for s in await repo.list_steps("exec-1")] == ["a", "b"]


@pytest.mark.asyncio
async def test_duplicate_append_is_idempotent_for_same_outcome(repo):
    await repo.append_step(_step("a", result={"x": 1}))
    again = await repo.append_step(_step("a", result={"x": 1}))
    assert again.sequence == 1

    with pytest.raises(DuplicateStepNameError):
        await repo.append_step(_step("a", result={"x": 2}))
    assert len(await repo.list_steps("exec-1")) == 1


@pytest.mark.asyncio
async def test_failed_step_round_trip(repo):
    await repo.append_step(
        _step(
            "broken",
            status=StepStatus.FAILED,
            error=ErrorInfo(kind="KeyError", message="missing"),
        )
    )
    record = await repo.get_step("exec-1", "", "broken")
    assert record.status == StepStatus.FAILED
    assert record.error.kind == "KeyError"
    assert record.result is None


@pytest.mark.asyncio
async def test_wait_token_resolves_once(repo):
    await repo.create_wait_token(
        WaitToken(token="cb-1", execution_id="exec-1", name="approval")
    )
    # Re-registering from a replay of the same wait is harmless
    await repo.create_wait_token(
        WaitToken(token="cb-1", execution_id="exec-1", name="approval")
    )
    with pytest.raises(CallbackIdConflictError):
        await repo.create_wait_token(
            WaitToken(token="cb-1", execution_id="exec-2", name="approval")
        )

    assert await repo.resolve_wait_token("cb-1", {"ok": True}, NOW)
    assert not await repo.resolve_wait_token("cb-1", {"ok": False}, NOW)
    assert not await repo.expire_wait_token("cb-1", NOW)

    token = await repo.get_wait_token("cb-1")
    assert token.status == WaitTokenStatus.RESOLVED
    assert token.payload == {"ok": True}
    assert await repo.resolve_wait_token("unknown", None, NOW) is False


@pytest.mark.asyncio
async def test_wait_token_rejects_signal_after_expiry(repo):
    await repo.create_wait_token(
        WaitToken(
            token="cb-2",
            execution_id="exec-1",
            name="approval",
            expires_at=NOW + timedelta(minutes=5),
        )
    )
    assert not await repo.resolve_wait_token("cb-2", {"late": True}, NOW + timedelta(minutes=5))
    token = await repo.get_wait_token("cb-2")
    assert token.status == WaitTokenStatus.EXPIRED
    assert token.payload is None


@pytest.mark.asyncio
async def test_expire_pending_token(repo):
    await repo.create_wait_token(WaitToken(token="cb-3", execution_id="exec-1", name="w"))
    assert await repo.expire_wait_token("cb-3", NOW)
    assert not await repo.resolve_wait_token("cb-3", {"ok": True}, NOW)


@pytest.mark.asyncio
async def test_sqlite_history_survives_reopen(tmp_path):
    path = tmp_path / "history.db"
    repo = SQLiteHistoryRepository(path)
    await repo.create_execution(Execution(execution_id="exec-1", workflow_name="wf"))
    await repo.append_step(_step("a", result={"n": 1}))

    reopened = SQLiteHistoryRepository(path)
    execution = await reopened.get_execution("exec-1")
    assert execution.history[0].result == {"n": 1}
