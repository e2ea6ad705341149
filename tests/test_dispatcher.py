import asyncio
from decimal import Decimal

import pytest

from meterflow.dispatcher import billing_message
from tests.fakes import FakeDeliveryAdapter, wait_for


async def _terminal_generation(services, platform="fake", target="chan-1", **fields):
    generation_id = await services.store.create(
        {
            "account_id": "user-1",
            "tool_id": "render",
            "notification_platform": platform,
            "notification_target": target,
            **fields,
        }
    )
    await services.store.mark_failed(generation_id, "GPU crashed")
    return generation_id


@pytest.mark.asyncio
async def test_item_is_delivered_once(services):
    generation_id = await _terminal_generation(services)
    assert await services.dispatcher.scan() == [("generation", generation_id)]

    counts = await services.dispatcher.dispatch_once()
    assert counts["sent"] == 1
    delivery = services.adapter.deliveries[0]
    assert delivery["target"] == "chan-1"
    assert delivery["outcome"].kind == "generation"
    assert delivery["outcome"].status == "failed"
    assert delivery["outcome"].failure_reason == "GPU crashed"

    assert (await services.dispatcher.dispatch_once())["sent"] == 0
    assert len(services.adapter.deliveries) == 1
    record = await services.store.get(generation_id)
    assert record["delivered"]
    assert record["delivered_at"]


@pytest.mark.asyncio
async def test_retryable_failure_is_retried(services_factory):
    adapter = FakeDeliveryAdapter(failures=1)
    services = await services_factory(adapters={"fake": adapter})
    generation_id = await _terminal_generation(services)

    assert (await services.dispatcher.dispatch_once())["retry"] == 1
    record = await services.store.get(generation_id)
    assert record["delivery_attempts"] == 1
    assert record["delivery_error"] == "platform unavailable"

    assert (await services.dispatcher.dispatch_once())["sent"] == 1
    assert len(adapter.deliveries) == 1


@pytest.mark.asyncio
async def test_item_is_dropped_after_max_attempts(services_factory):
    adapter = FakeDeliveryAdapter(failures=10)
    services = await services_factory(adapters={"fake": adapter}, max_delivery_attempts=2)
    generation_id = await _terminal_generation(services)

    assert (await services.dispatcher.dispatch_once())["retry"] == 1
    assert (await services.dispatcher.dispatch_once())["dropped"] == 1
    assert await services.dispatcher.scan() == []
    record = await services.store.get(generation_id)
    assert record["delivery_status"] == "dropped"
    assert not record["delivered"]


@pytest.mark.asyncio
async def test_non_retryable_failure_drops_immediately(services_factory):
    adapter = FakeDeliveryAdapter(failures=1, retryable=False)
    services = await services_factory(adapters={"fake": adapter})
    generation_id = await _terminal_generation(services)
    assert (await services.dispatcher.dispatch_once())["dropped"] == 1
    assert (await services.store.get(generation_id))["delivery_status"] == "dropped"


@pytest.mark.asyncio
async def test_unknown_platform_is_dropped(services):
    generation_id = await _terminal_generation(services, platform="carrier-pigeon")
    assert (await services.dispatcher.dispatch_once())["dropped"] == 1
    record = await services.store.get(generation_id)
    assert record["delivery_status"] == "dropped"
    assert "carrier-pigeon" in record["delivery_error"]
    assert services.adapter.deliveries == []


@pytest.mark.asyncio
async def test_payment_failure_is_delivered_as_billing_message(services):
    generation_id = await services.store.create(
        {"account_id": "user-1", "tool_id": "render", "notification_platform": "fake", "notification_target": "c"}
    )
    await services.store.mark_submitted(generation_id, "ext-1")
    await services.store.claim_settlement(generation_id, {"output": "a.png"}, "2026-01-01T00:00:10.000000Z")
    await services.store.finish_settlement(
        generation_id,
        "payment_failed",
        "rejected",
        {"withheld_payload": {"output": "a.png"}, "failure_reason": "insufficient_funds: short"},
    )
    await services.dispatcher.dispatch_once()
    outcome = services.adapter.deliveries[0]["outcome"]
    assert outcome.status == "payment_failed"
    assert outcome.outputs is None
    assert outcome.failure_reason.startswith("billing:")
    assert billing_message(None).startswith("billing:")


@pytest.mark.asyncio
async def test_run_is_delivered_instead_of_its_steps(services):
    run_id = await services.runs.create(
        {
            "account_id": "user-1",
            "definition": [{"step_id": "a", "tool_id": "render"}, {"step_id": "b", "tool_id": "render"}],
            "notification_platform": "fake",
            "notification_target": "chan-9",
        }
    )
    for step_id, cost in (("a", "0.10"), ("b", "0.25")):
        generation_id = await services.store.create(
            {
                "account_id": "user-1",
                "tool_id": "render",
                "run_id": run_id,
                "step_id": step_id,
                "notification_platform": "fake",
            }
        )
        await services.store.transition(
            generation_id,
            "succeeded",
            {"cost_final": Decimal(cost), "points_charged": Decimal(cost), "response_payload": {"output": step_id}},
        )
    await services.runs.finish(run_id, "completed", {"result": {"output": "b"}, "steps": {}})

    assert await services.dispatcher.scan() == [("run", run_id)]
    counts = await services.dispatcher.dispatch_once()
    assert counts["sent"] == 1
    outcome = services.adapter.deliveries[0]["outcome"]
    assert outcome.kind == "run"
    assert outcome.id == run_id
    assert outcome.outputs == {"result": {"output": "b"}, "steps": {}}
    assert Decimal(outcome.cost_final) == Decimal("0.35")
    assert (await services.dispatcher.dispatch_once())["sent"] == 0
    assert (await services.runs.get(run_id))["delivery_status"] == "sent"


@pytest.mark.asyncio
async def test_running_dispatcher_wakes_on_terminal_events(services_factory):
    services = await services_factory(dispatch_interval_s=30.0)
    stop_event = asyncio.Event()
    task = asyncio.create_task(services.dispatcher.run_forever(stop_event))
    try:
        await asyncio.sleep(0.05)
        generation_id = await _terminal_generation(services)
        await services.bus.generation_terminal(await services.store.get(generation_id))
        await wait_for(lambda: services.adapter.deliveries, timeout=2.0)
    finally:
        stop_event.set()
        await asyncio.wait_for(task, timeout=2.0)
    assert services.adapter.deliveries[0]["outcome"].id == generation_id


@pytest.mark.asyncio
async def test_adapter_crash_counts_as_retryable_failure(services_factory):
    adapter = FakeDeliveryAdapter(crashes=1)
    services = await services_factory(adapters={"fake": adapter})
    generation_id = await _terminal_generation(services)

    assert (await services.dispatcher.dispatch_once())["retry"] == 1
    record = await services.store.get(generation_id)
    assert record["delivery_attempts"] == 1
    assert record["delivery_error"] == "RuntimeError: adapter bug"

    assert (await services.dispatcher.dispatch_once())["sent"] == 1
    assert len(adapter.deliveries) == 1


@pytest.mark.asyncio
async def test_running_dispatcher_survives_errors(services_factory):
    adapter = FakeDeliveryAdapter(crashes=1)
    services = await services_factory(adapters={"fake": adapter})
    first = await _terminal_generation(services)
    second = await _terminal_generation(services)

    real_scan = services.dispatcher.scan
    calls = {"n": 0}

    async def flaky_scan():
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("database is locked")
        return await real_scan()

    services.dispatcher.scan = flaky_scan
    stop_event = asyncio.Event()
    task = asyncio.create_task(services.dispatcher.run_forever(stop_event))
    try:
        await wait_for(lambda: len(adapter.deliveries) == 2, timeout=3.0)
        assert not task.done()
    finally:
        stop_event.set()
        await asyncio.wait_for(task, timeout=2.0)
    assert {d["outcome"].id for d in adapter.deliveries} == {first, second}
