"""Fan-out (map/parallel) and child context tests."""

import asyncio
from collections import Counter
from datetime import timedelta

import pytest

from durastep.config import EngineConfig
from durastep.contracts import RetryPolicy
from durastep.errors import FanOutError, OperationError, SuspendExecution
from durastep.persistence.models import OperationKind, StepStatus


@pytest.mark.asyncio
async def test_map_preserves_input_order(make_context):
    async def branch(ctx, item, index):
        # Later items finish first
        for _ in range(5 - item):
            await asyncio.sleep(0)
        return await ctx.step("price", lambda: item * 10)

    results = await make_context().map([1, 2, 3, 4], branch, name="prices")
    assert results == [10, 20, 30, 40]


@pytest.mark.asyncio
async def test_map_of_no_items_returns_empty_list(make_context):
    assert await make_context().map([], lambda ctx, item, index: item) == []


@pytest.mark.asyncio
async def test_map_bounds_concurrency(make_context):
    active = 0
    peak = 0

    async def branch(ctx, item, index):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        for _ in range(3):
            await asyncio.sleep(0)
        active -= 1
        return item

    results = await make_context().map(range(8), branch, max_concurrency=2)
    assert results == list(range(8))
    assert peak == 2


@pytest.mark.asyncio
async def test_map_uses_engine_default_concurrency(make_context):
    active = 0
    peak = 0

    async def branch(ctx, item, index):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0)
        active -= 1
        return item

    ctx = make_context(engine=EngineConfig(max_concurrency=3))
    await ctx.map(range(9), branch)
    assert peak == 3


@pytest.mark.asyncio
async def test_failures_are_aggregated_after_all_branches_settle(make_context, repository):
    async def branch(ctx, item, index):
        if item % 2 == 0:
            raise ValueError(f"bad item {item}")
        for _ in range(3):
            await asyncio.sleep(0)
        return await ctx.step("ok", lambda: item)

    with pytest.raises(FanOutError) as exc:
        await make_context().map([0, 1, 2, 3], branch, name="items")

    assert [index for index, _ in exc.value.errors] == [0, 2]
    assert all(err.kind == "ValueError" for _, err in exc.value.errors)
    # Siblings of the failed branches still committed their work
    assert (await repository.get_step("exec-1", "items-1", "ok")).result == 1
    assert (await repository.get_step("exec-1", "items-3", "ok")).result == 3


@pytest.mark.asyncio
async def test_retry_policy_applies_per_branch(make_context, repository, clock):
    calls = Counter()

    def work(item):
        calls[item] += 1
        if item == "b" and calls[item] == 1:
            raise ConnectionError("transient")
        return item.upper()

    async def branch(ctx, item, index):
        return await ctx.step("work", lambda: work(item))

    retry = RetryPolicy(error_kinds=["ConnectionError"], interval_seconds=1, max_attempts=2)
    # The failed branch waits out its backoff on a durable timer
    with pytest.raises(SuspendExecution) as suspended:
        await make_context().map(["a", "b", "c"], branch, name="letters", retry=retry)
    assert suspended.value.wake_at == clock.now() + timedelta(seconds=1)

    clock.advance(1)
    results = await make_context().map(["a", "b", "c"], branch, name="letters", retry=retry)

    assert results == ["A", "B", "C"]
    assert clock.sleeps == []
    assert calls == Counter({"a": 1, "b": 2, "c": 1})
    # The retried branch ran its second attempt in a fresh namespace
    failed = await repository.get_step("exec-1", "letters-1", "work")
    assert failed.status == StepStatus.FAILED
    retried = await repository.get_step("exec-1", "letters-1@2", "work")
    assert retried.result == "B"
    branch_record = await repository.get_step("exec-1", "", "letters-1")
    assert branch_record.attempts == 2


@pytest.mark.asyncio
async def test_suspended_branch_suspends_caller_with_earliest_wake(make_context, clock):
    async def branch(ctx, item, index):
        if item == 0:
            return "done"
        await ctx.wait(item, name="pause")
        return f"waited {item}"

    with pytest.raises(SuspendExecution) as suspended:
        await make_context().map([0, 30, 10], branch, name="mixed")
    assert suspended.value.wake_at == clock.now() + timedelta(seconds=10)

    clock.advance(30)
    results = await make_context().map([0, 30, 10], branch, name="mixed")
    assert results == ["done", "waited 30", "waited 10"]


@pytest.mark.asyncio
async def test_parallel_runs_heterogeneous_branches(make_context):
    async def albums(ctx):
        return await ctx.step("load", lambda: ["A", "B"])

    def summary(ctx):
        return ctx.step("load", lambda: {"count": 2})

    results = await make_context().parallel([albums, summary], name="save")
    assert results == [["A", "B"], {"count": 2}]


@pytest.mark.asyncio
async def test_child_contexts_isolate_step_names(make_context, repository):
    async def left(ctx):
        inner = await ctx.run_in_child_context("inner", lambda c: c.step("x", lambda: "li"))
        return [await ctx.step("x", lambda: "l"), inner]

    async def right(ctx):
        return await ctx.step("x", lambda: "r")

    ctx = make_context()
    assert await ctx.run_in_child_context("left", left) == ["l", "li"]
    assert await ctx.run_in_child_context("right", right) == "r"
    assert await ctx.step("x", lambda: "root") == "root"

    keys = {(s.namespace, s.name) for s in await repository.list_steps("exec-1")}
    assert {("left", "x"), ("left/inner", "x"), ("right", "x"), ("", "x")} <= keys
    child = await repository.get_step("exec-1", "", "left")
    assert child.kind == OperationKind.CHILD


@pytest.mark.asyncio
async def test_child_failure_is_replayed_as_operation_error(make_context):
    calls = Counter()

    async def failing(ctx):
        calls["child"] += 1
        raise KeyError("missing album")

    with pytest.raises(OperationError):
        await make_context().run_in_child_context("lookup", failing)
    with pytest.raises(OperationError) as replayed:
        await make_context().run_in_child_context("lookup", failing)
    assert replayed.value.kind == "KeyError"
    assert calls["child"] == 1
