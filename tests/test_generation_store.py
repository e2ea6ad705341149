import asyncio
from pathlib import Path

import pytest

from meterflow.db import Database
from meterflow.errors import NotFound, ValidationError
from meterflow.generation_store import GenerationStore, can_transition


async def _store(tmp_path: Path) -> GenerationStore:
    db = Database(str(tmp_path / "store.db"))
    await db.init()
    return GenerationStore(db.path)


async def _record(store: GenerationStore, **overrides) -> str:
    record = {
        "account_id": "user-1",
        "tool_id": "upscale",
        "request_payload": {"prompt": "a lighthouse"},
        "cost_rate": {"amount": "0.01", "unit": "second"},
        "creator_ids": ["creator-a"],
    }
    record.update(overrides)
    return await store.create(record)


def test_transition_guard_is_forward_only():
    assert can_transition("pending", "submitted")
    assert can_transition("submitted", "running")
    assert can_transition("running", "failed")
    assert can_transition("succeeded", "payment_failed")
    assert not can_transition("running", "submitted")
    assert not can_transition("failed", "succeeded")
    assert not can_transition("succeeded", "failed")
    assert not can_transition("running", "running")


@pytest.mark.asyncio
async def test_create_and_partial_update(tmp_path: Path):
    store = await _store(tmp_path)
    generation_id = await _record(store)
    record = await store.get(generation_id)
    assert record["status"] == "pending"
    assert record["cost_rate"] == {"amount": "0.01", "unit": "second"}

    updated = await store.update(generation_id, {"failure_reason": "note"})
    assert updated["failure_reason"] == "note"
    assert updated["request_payload"] == {"prompt": "a lighthouse"}
    assert updated["creator_ids"] == ["creator-a"]

    with pytest.raises(ValidationError):
        await store.update(generation_id, {"balance": "1"})
    with pytest.raises(NotFound):
        await store.update("missing", {"failure_reason": "x"})
    assert await store.get("missing") is None
    with pytest.raises(NotFound):
        await store.require("missing")


@pytest.mark.asyncio
async def test_transition_refuses_backwards_moves(tmp_path: Path):
    store = await _store(tmp_path)
    generation_id = await _record(store)
    submitted = await store.mark_submitted(generation_id, "ext-1")
    assert submitted["ok"]
    assert (await store.find_by_external_run_id("ext-1"))["generation_id"] == generation_id

    failed = await store.mark_failed(generation_id, "boom")
    assert failed["ok"]
    again = await store.transition(generation_id, "running")
    assert again == {"ok": False, "status": "conflict", "record": again["record"]}
    assert (await store.get(generation_id))["status"] == "failed"
    assert (await store.transition("missing", "failed"))["status"] == "missing"


@pytest.mark.asyncio
async def test_mark_running_keeps_the_first_start(tmp_path: Path):
    store = await _store(tmp_path)
    generation_id = await _record(store)
    await store.mark_submitted(generation_id, "ext-1")
    first = await store.mark_running(generation_id, "2026-01-01T00:00:00.000000Z")
    assert first["ok"]
    second = await store.mark_running(generation_id, "2026-01-01T00:05:00.000000Z")
    assert not second["ok"]
    assert (await store.get(generation_id))["started_at"] == "2026-01-01T00:00:00.000000Z"


@pytest.mark.asyncio
async def test_only_one_settlement_claim_wins(tmp_path: Path):
    store = await _store(tmp_path)
    generation_id = await _record(store)
    await store.mark_submitted(generation_id, "ext-1")
    claims = await asyncio.gather(
        *[store.claim_settlement(generation_id, {"output": i}, "2026-01-01T00:00:10.000000Z") for i in range(5)]
    )
    assert sum(1 for claim in claims if claim["ok"]) == 1

    # A claimed record can no longer be failed by a timeout or a late callback.
    blocked = await store.mark_failed(generation_id, "timeout")
    assert not blocked["ok"]

    done = await store.finish_settlement(generation_id, "succeeded", "settled", {"response_payload": {"output": 1}})
    assert done["ok"]
    repeat = await store.finish_settlement(generation_id, "succeeded", "settled", {})
    assert not repeat["ok"]


@pytest.mark.asyncio
async def test_withheld_payload_stays_internal(tmp_path: Path):
    store = await _store(tmp_path)
    generation_id = await _record(store)
    await store.mark_submitted(generation_id, "ext-1")
    await store.claim_settlement(generation_id, {"output": "secret.png"}, "2026-01-01T00:00:10.000000Z")
    await store.finish_settlement(
        generation_id,
        "payment_failed",
        "rejected",
        {"withheld_payload": {"output": "secret.png"}, "failure_reason": "insufficient_funds"},
    )
    public = await store.get(generation_id)
    assert "withheld_payload" not in public
    assert public["response_payload"] is None
    internal = await store.get(generation_id, internal=True)
    assert internal["withheld_payload"] == {"output": "secret.png"}
    assert internal["settlement_payload"] is None


@pytest.mark.asyncio
async def test_undelivered_scan_until_marked(tmp_path: Path):
    store = await _store(tmp_path)
    deliverable = await _record(store, notification_platform="fake", notification_target="chan-1")
    silent = await _record(store, notification_platform="none")
    step = await _record(store, notification_platform="fake", run_id="run-1", step_id="a")
    still_running = await _record(store, notification_platform="fake")
    for generation_id in (deliverable, silent, step):
        await store.mark_failed(generation_id, "boom")

    assert await store.list_undelivered() == [deliverable]
    assert await store.list_undelivered() == [deliverable]
    assert still_running not in await store.list_undelivered()

    await store.mark_delivered(deliverable)
    assert await store.list_undelivered() == []
    record = await store.get(deliverable)
    assert record["delivered"] and record["delivery_status"] == "sent"


@pytest.mark.asyncio
async def test_claimed_delivery_is_leased(tmp_path: Path):
    store = await _store(tmp_path)
    generation_id = await _record(store, notification_platform="fake")
    await store.mark_failed(generation_id, "boom")
    assert await store.claim_delivery(generation_id, 60)
    assert not await store.claim_delivery(generation_id, 60)
    assert await store.list_undelivered() == []

    # A failure releases the lease; the last allowed attempt drops the item.
    assert await store.record_delivery_failure(generation_id, "503", max_attempts=2) == "pending"
    assert await store.list_undelivered() == [generation_id]
    assert await store.record_delivery_failure(generation_id, "503", max_attempts=2) == "dropped"
    assert await store.list_undelivered() == []
    assert await store.record_delivery_failure("missing", "x", max_attempts=2) == "missing"


@pytest.mark.asyncio
async def test_overdue_listing_skips_claimed_and_terminal(tmp_path: Path):
    store = await _store(tmp_path)
    waiting = await _record(store)
    await store.mark_submitted(waiting, "ext-1")
    claimed = await _record(store)
    await store.mark_submitted(claimed, "ext-2")
    await store.claim_settlement(claimed, {}, "2026-01-01T00:00:00.000000Z")
    done = await _record(store)
    await store.mark_failed(done, "boom")

    overdue = await store.list_overdue("9999-12-31T00:00:00.000000Z")
    assert [r["generation_id"] for r in overdue] == [waiting]
    assert await store.list_overdue("2000-01-01T00:00:00.000000Z") == []
