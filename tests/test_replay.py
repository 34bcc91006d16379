"""Deterministic replay over committed history."""

from collections import Counter
from datetime import timedelta

import pytest

from durastep.persistence.models import ExecutionStatus


class Crash(BaseException):
    """Stands in for the process dying between two steps."""


def _fail(label):
    def _raise():
        raise AssertionError(f"{label} must not run again")

    return _raise


def build_workflow(f1, f2, f3, f4):
    async def album_flow(event, ctx):
        a = await ctx.step("a", f1)
        b = await ctx.parallel(
            [lambda c: c.step("b0", f2), lambda c: c.step("b1", f3)], name="b"
        )
        cb = await ctx.wait(name="cb", callback_id="cb1", timeout=timedelta(hours=1))
        c = await ctx.step("c", f4)
        return {"a": a, "b": b, "cb": cb, "c": c}

    return album_flow


@pytest.mark.asyncio
async def test_replay_with_throwing_operations_returns_same_result(driver, make_context):
    workflow = build_workflow(lambda: 1, lambda: 2, lambda: 3, lambda: 4)

    outcome = await driver.start(workflow, execution_id="exec-1")
    assert outcome.status == ExecutionStatus.WAITING

    assert (await driver.signal("cb1", {"ok": True})).accepted
    outcome = await driver.resume("exec-1")
    expected = {"a": 1, "b": [2, 3], "cb": {"ok": True}, "c": 4}
    assert outcome.status == ExecutionStatus.COMPLETED
    assert outcome.result == expected

    replay = build_workflow(_fail("f1"), _fail("f2"), _fail("f3"), _fail("f4"))
    assert await replay(None, make_context("exec-1")) == expected


@pytest.mark.asyncio
async def test_steps_run_at_most_once_across_attempts(driver, clock):
    calls = Counter()

    async def counting(event, ctx):
        def tick(name):
            calls[name] += 1
            return calls[name]

        first = await ctx.step("first", lambda: tick("first"))
        await ctx.wait(60, name="pause")
        second = await ctx.step("second", lambda: tick("second"))
        return [first, second]

    outcome = await driver.start(counting)
    for _ in range(3):
        outcome = await driver.resume(outcome.execution_id)
        assert outcome.status == ExecutionStatus.WAITING
    clock.advance(60)
    outcome = await driver.resume(outcome.execution_id)

    assert outcome.result == [1, 1]
    assert calls == Counter({"first": 1, "second": 1})


@pytest.mark.asyncio
async def test_crash_between_steps_resumes_from_last_commit(driver, repository):
    calls = Counter()
    crash = {"armed": True}

    async def checkout(event, ctx):
        def charge():
            calls["charge"] += 1
            return {"charged": event["amount"]}

        receipt = await ctx.step("charge", charge)
        if crash["armed"]:
            crash["armed"] = False
            raise Crash()
        shipped = await ctx.step("ship", lambda: "shipped")
        return [receipt, shipped]

    with pytest.raises(Crash):
        await driver.start(checkout, {"amount": 10}, execution_id="order-1")
    execution = await repository.get_execution("order-1")
    assert execution.status == ExecutionStatus.RUNNING
    assert [s.name for s in execution.history] == ["charge"]

    outcome = await driver.resume("order-1")
    assert outcome.result == [{"charged": 10}, "shipped"]
    assert calls["charge"] == 1


@pytest.mark.asyncio
async def test_replayed_values_match_first_run(driver, make_context):
    async def shapes(event, ctx):
        pair = await ctx.step("pair", lambda: (1, 2))
        labels = await ctx.step("labels", lambda: {"blue", "green"})
        return [pair, sorted(labels)]

    first = await driver.start(shapes, execution_id="exec-1")
    # The first run already sees the committed JSON form
    assert first.result == [[1, 2], ["blue", "green"]]
    assert await shapes(None, make_context("exec-1")) == [[1, 2], ["blue", "green"]]


@pytest.mark.asyncio
async def test_same_name_in_sibling_namespaces_is_independent(driver):
    async def nested(event, ctx):
        async def branch(child, item, index):
            return await child.step("price", lambda: item * 2)

        prices = await ctx.map([1, 2, 3], branch, name="albums")
        total = await ctx.step("price", lambda: sum(prices))
        return {"prices": prices, "total": total}

    outcome = await driver.start(nested)
    assert outcome.result == {"prices": [2, 4, 6], "total": 12}
    assert sorted((s.namespace, s.name) for s in outcome.history if s.name == "price") == [
        ("", "price"),
        ("albums-0", "price"),
        ("albums-1", "price"),
        ("albums-2", "price"),
    ]
