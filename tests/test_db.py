import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from meterflow.db import Database, format_ts, parse_ts


@pytest.mark.asyncio
async def test_db_init_creates_tables(tmp_path: Path):
    db_path = tmp_path / "schema.db"
    db = Database(str(db_path))
    await db.init()
    rows = await db.fetchall("SELECT name FROM sqlite_master WHERE type='table'")
    tables = {row["name"] for row in rows}
    expected = {
        "accounts",
        "ledger_entries",
        "generations",
        "workflow_runs",
        "webhook_events",
        "events",
        "configs",
    }
    assert expected.issubset(tables)
    # Running init twice is harmless.
    await db.init()


@pytest.mark.asyncio
async def test_db_migration_adds_settlement_and_lease_columns(tmp_path: Path):
    db_path = tmp_path / "legacy.db"
    conn = sqlite3.connect(db_path)
    conn.executescript(
        """
        CREATE TABLE generations(
            generation_id TEXT PRIMARY KEY,
            account_id TEXT NOT NULL,
            tool_id TEXT NOT NULL,
            external_run_id TEXT,
            status TEXT NOT NULL,
            run_id TEXT,
            delivered INTEGER NOT NULL DEFAULT 0,
            created_at TEXT
        );
        CREATE TABLE workflow_runs(
            run_id TEXT PRIMARY KEY,
            account_id TEXT NOT NULL,
            status TEXT NOT NULL,
            created_at TEXT
        );
        """
    )
    conn.execute(
        "INSERT INTO generations(generation_id, account_id, tool_id, status, created_at) VALUES (?,?,?,?,?)",
        ("gen-1", "user-1", "upscale", "succeeded", "2026-01-01T00:00:00.000000Z"),
    )
    conn.commit()
    conn.close()

    db = Database(str(db_path))
    await db.init()

    row = await db.fetchone(
        "SELECT settlement, settlement_payload_json, settlement_claimed_at, delivery_lease_until "
        "FROM generations WHERE generation_id=?",
        ("gen-1",),
    )
    assert row is not None
    assert row["settlement"] is None
    run_columns = await db.fetchall("PRAGMA table_info(workflow_runs)")
    assert "delivery_lease_until" in {col["name"] for col in run_columns}


@pytest.mark.asyncio
async def test_events_are_sequenced_per_scope(tmp_path: Path):
    db = Database(str(tmp_path / "events.db"))
    await db.init()
    await db.add_event("generation:a", "generation_progress", {"progress": 0.5})
    await db.add_event("generation:b", "generation_progress", {"progress": 0.1})
    second = await db.add_event("generation:a", "generation_terminal", {"status": "succeeded"})
    assert second["seq"] == 2
    events = await db.list_events("generation:a", after_seq=1)
    assert [e["event_type"] for e in events] == ["generation_terminal"]
    assert events[0]["payload"] == {"status": "succeeded"}


def test_timestamps_sort_lexicographically():
    base = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
    stamps = [format_ts(base + timedelta(microseconds=n)) for n in (0, 1, 999999)]
    assert stamps == sorted(stamps)
    assert stamps[0] == "2026-03-01T12:00:00.000000Z"
    assert parse_ts(stamps[1]) == base + timedelta(microseconds=1)
    assert parse_ts("not a time") is None
