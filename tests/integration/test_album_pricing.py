import json
from collections import Counter
from datetime import timedelta

import httpx
import pytest

from durastep import (
    CALLBACK_TIMEOUT,
    ExecutionDriver,
    HttpCallbackSubmitter,
    LocalInvoker,
    RetryPolicy,
)
from durastep.config import DurastepConfig
from durastep.persistence.models import ExecutionStatus, OperationKind

ALBUMS = ["Blue", "Kind of Blue", "Abbey Road"]


def _invoker(calls):
    invoker = LocalInvoker()

    @invoker.register("process-image")
    def process(payload):
        calls["process"] += 1
        return {"key": payload["key"], "albums": ALBUMS}

    @invoker.register("estimate-price")
    async def estimate(payload):
        calls[payload["album"]] += 1
        if payload["album"] == "Abbey Road" and calls[payload["album"]] == 1:
            raise ConnectionError("price service busy")
        return {"album": payload["album"], "price": len(payload["album"])}

    return invoker


def _submitter(seen):
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content)["callback_id"])
        return httpx.Response(202, json={"queued": True})

    return HttpCallbackSubmitter(
        "http://validation.local/tasks", transport=httpx.MockTransport(handler)
    )


def build_workflow(submitter):
    async def price_albums(event, ctx):
        processed = await ctx.invoke("process", "process-image", {"key": event["key"]})
        validation = await ctx.wait_for_callback(
            "validate", submitter=submitter, timeout=timedelta(hours=24)
        )
        if validation is CALLBACK_TIMEOUT or not validation["approved"]:
            return {"status": "rejected"}

        async def price(child, album, index):
            return await child.invoke(
                "estimate",
                "estimate-price",
                {"album": album},
                retry=RetryPolicy(error_kinds=["InvocationError", "ConnectionError"]),
            )

        prices = await ctx.map(processed["albums"], price, name="price", max_concurrency=2)
        export = await ctx.wait_for_condition(
            lambda state: {"polls": state["polls"] + 1},
            {"polls": 0},
            lambda state: state["polls"] < 2,
            name="export",
        )
        saved = await ctx.parallel(
            [
                lambda c: c.step("save-albums", lambda: len(prices)),
                lambda c: c.step("save-summary", lambda: sum(p["price"] for p in prices)),
            ],
            name="save",
        )
        return {"status": "priced", "prices": prices, "saved": saved, "polls": export["polls"]}

    return price_albums


@pytest.mark.asyncio
async def test_album_pricing_end_to_end(repository, clock):
    calls = Counter()
    seen = []
    driver = ExecutionDriver(
        repository, clock=clock, invoker=_invoker(calls), config=DurastepConfig()
    )
    workflow = build_workflow(_submitter(seen))

    outcome = await driver.start(workflow, {"key": "shelf.jpg"}, execution_id="pricing-1")
    assert outcome.status == ExecutionStatus.WAITING
    assert outcome.wake_at == clock.now() + timedelta(hours=24)
    assert len(seen) == 1

    assert (await driver.signal(seen[0], {"approved": True})).accepted
    outcome = await driver.run_until_complete(workflow, execution_id="pricing-1")

    assert outcome.status == ExecutionStatus.COMPLETED
    assert outcome.result == {
        "status": "priced",
        "prices": [
            {"album": "Blue", "price": 4},
            {"album": "Kind of Blue", "price": 12},
            {"album": "Abbey Road", "price": 10},
        ],
        "saved": [3, 26],
        "polls": 2,
    }
    # The failed estimate was retried in place; everything else ran once
    assert calls == Counter({"process": 1, "Blue": 1, "Kind of Blue": 1, "Abbey Road": 2})
    assert len(seen) == 1
    assert clock.sleeps == [1.0, 5.0]

    kinds = {(s.namespace, s.name): s.kind for s in outcome.history}
    assert kinds[("", "process")] == OperationKind.INVOKE
    assert kinds[("", "validate")] == OperationKind.CALLBACK
    assert kinds[("price-2", "estimate")] == OperationKind.INVOKE
    assert kinds[("", "save-1")] == OperationKind.CHILD


@pytest.mark.asyncio
async def test_album_pricing_rejected_when_validation_times_out(repository, clock):
    seen = []
    driver = ExecutionDriver(
        repository, clock=clock, invoker=_invoker(Counter()), config=DurastepConfig()
    )

    outcome = await driver.run_until_complete(
        build_workflow(_submitter(seen)), {"key": "shelf.jpg"}
    )
    assert outcome.result == {"status": "rejected"}
    assert clock.sleeps == [timedelta(hours=24).total_seconds()]
    assert (await driver.signal(seen[0], {"approved": True})).reason == "callback expired"
