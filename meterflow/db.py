import json
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Tuple

import aiosqlite


def format_ts(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def utc_now() -> str:
    return format_ts(datetime.now(timezone.utc))


def parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True, default=str)


def json_loads(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except ValueError:
        return default


class Database:
    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS accounts(
                    account_id TEXT PRIMARY KEY,
                    balance TEXT NOT NULL DEFAULT '0',
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS ledger_entries(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    entry_id TEXT UNIQUE,
                    account_id TEXT NOT NULL,
                    type TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    balance_before TEXT NOT NULL,
                    balance_after TEXT NOT NULL,
                    related_generation_id TEXT,
                    description TEXT,
                    created_at TEXT
                );
                CREATE INDEX IF NOT EXISTS ix_ledger_account ON ledger_entries(account_id, id);
                CREATE UNIQUE INDEX IF NOT EXISTS ux_ledger_generation_debit
                    ON ledger_entries(related_generation_id)
                    WHERE type='debit' AND related_generation_id IS NOT NULL;
                CREATE TABLE IF NOT EXISTS generations(
                    generation_id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL,
                    tool_id TEXT NOT NULL,
                    external_run_id TEXT,
                    status TEXT NOT NULL,
                    request_payload_json TEXT,
                    response_payload_json TEXT,
                    withheld_payload_json TEXT,
                    failure_reason TEXT,
                    cost_rate_json TEXT,
                    cost_final TEXT,
                    points_charged TEXT,
                    reward_breakdown_json TEXT,
                    creator_ids_json TEXT,
                    duration_ms INTEGER,
                    settlement TEXT,
                    settlement_payload_json TEXT,
                    settlement_claimed_at TEXT,
                    run_id TEXT,
                    step_id TEXT,
                    notification_platform TEXT,
                    notification_target TEXT,
                    delivered INTEGER NOT NULL DEFAULT 0,
                    delivery_status TEXT NOT NULL DEFAULT 'pending',
                    delivery_attempts INTEGER NOT NULL DEFAULT 0,
                    delivery_error TEXT,
                    delivery_lease_until TEXT,
                    delivered_at TEXT,
                    created_at TEXT,
                    submitted_at TEXT,
                    started_at TEXT,
                    ended_at TEXT,
                    updated_at TEXT
                );
                CREATE UNIQUE INDEX IF NOT EXISTS ux_generations_external_run
                    ON generations(external_run_id) WHERE external_run_id IS NOT NULL;
                CREATE INDEX IF NOT EXISTS ix_generations_delivery ON generations(delivered, status);
                CREATE INDEX IF NOT EXISTS ix_generations_run ON generations(run_id);
                CREATE TABLE IF NOT EXISTS workflow_runs(
                    run_id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL,
                    definition_json TEXT,
                    step_statuses_json TEXT,
                    status TEXT NOT NULL,
                    final_outputs_json TEXT,
                    failure_reason TEXT,
                    notification_platform TEXT,
                    notification_target TEXT,
                    delivered INTEGER NOT NULL DEFAULT 0,
                    delivery_status TEXT NOT NULL DEFAULT 'pending',
                    delivery_attempts INTEGER NOT NULL DEFAULT 0,
                    delivery_error TEXT,
                    delivery_lease_until TEXT,
                    delivered_at TEXT,
                    created_at TEXT,
                    updated_at TEXT,
                    ended_at TEXT
                );
                CREATE TABLE IF NOT EXISTS webhook_events(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    provider TEXT,
                    external_run_id TEXT,
                    payload_json TEXT,
                    status TEXT,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    first_seen_at TEXT,
                    next_attempt_at TEXT,
                    last_error TEXT,
                    updated_at TEXT
                );
                CREATE INDEX IF NOT EXISTS ix_webhook_events_status ON webhook_events(status, next_attempt_at);
                CREATE TABLE IF NOT EXISTS events(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    scope TEXT,
                    seq INTEGER,
                    event_type TEXT,
                    payload_json TEXT,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS configs(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    created_at TEXT,
                    payload_json TEXT
                );
                """
            )

            async def column_exists(table: str, column: str) -> bool:
                cursor = await db.execute(f"PRAGMA table_info({table})")
                rows = await cursor.fetchall()
                await cursor.close()
                return any(row[1] == column for row in rows)

            async def ensure_column(table: str, column: str, decl: str) -> None:
                if not await column_exists(table, column):
                    await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {decl}")

            # Databases created before settlement claims and delivery leases existed.
            await ensure_column("generations", "settlement", "TEXT")
            await ensure_column("generations", "settlement_payload_json", "TEXT")
            await ensure_column("generations", "settlement_claimed_at", "TEXT")
            await ensure_column("generations", "delivery_lease_until", "TEXT")
            await ensure_column("workflow_runs", "delivery_lease_until", "TEXT")
            await db.commit()

    async def execute(self, query: str, params: Tuple[Any, ...] = ()) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute(query, params)
            await db.commit()

    async def fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return rows

    async def fetchone(self, query: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        rows = await self.fetchall(query, params)
        return rows[0] if rows else None

    async def add_event(self, scope: str, event_type: str, payload: dict) -> dict:
        created_at = utc_now()
        async with aiosqlite.connect(self.path) as db:
            await db.execute("BEGIN IMMEDIATE")
            cursor = await db.execute("SELECT MAX(seq) FROM events WHERE scope=?", (scope,))
            row = await cursor.fetchone()
            await cursor.close()
            seq = int(row[0] or 0) + 1 if row else 1
            await db.execute(
                "INSERT INTO events(scope, seq, event_type, payload_json, created_at) VALUES (?,?,?,?,?)",
                (scope, seq, event_type, json_dumps(payload), created_at),
            )
            await db.commit()
        return {"scope": scope, "seq": seq, "event_type": event_type, "payload": payload, "created_at": created_at}

    async def list_events(self, scope: str, after_seq: int = 0) -> List[dict]:
        rows = await self.fetchall(
            "SELECT seq, event_type, payload_json, created_at FROM events WHERE scope=? AND seq>? ORDER BY seq ASC",
            (scope, after_seq),
        )
        return [
            {
                "scope": scope,
                "seq": row["seq"],
                "event_type": row["event_type"],
                "payload": json_loads(row["payload_json"], {}),
                "created_at": row["created_at"],
            }
            for row in rows
        ]

    async def save_config(self, payload: dict) -> None:
        await self.execute(
            "INSERT INTO configs(created_at, payload_json) VALUES (?,?)",
            (utc_now(), json_dumps(payload)),
        )


class DeliverableStore:
    """Delivery bookkeeping shared by generation records and workflow runs.

    Subclasses set ``table``, ``key`` and ``deliverable_statuses``. An item
    stays in the scan until it is marked sent or dropped; a claimed item is
    hidden from other workers until its lease expires.
    """

    table = ""
    key = ""
    deliverable_statuses: Tuple[str, ...] = ()

    def __init__(self, path: str):
        self.path = path

    def _scan_filter(self) -> Tuple[str, List[Any]]:
        placeholders = ",".join("?" for _ in self.deliverable_statuses)
        clause = (
            f"status IN ({placeholders}) AND delivered=0 AND delivery_status='pending' "
            "AND notification_platform IS NOT NULL AND notification_platform NOT IN ('', 'none') "
            "AND (delivery_lease_until IS NULL OR delivery_lease_until < ?)"
        )
        return clause, [*self.deliverable_statuses, utc_now()]

    def _extra_scan_filter(self) -> str:
        return ""

    async def list_undelivered(self, limit: int = 50) -> List[str]:
        clause, params = self._scan_filter()
        extra = self._extra_scan_filter()
        if extra:
            clause = f"{clause} AND {extra}"
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(
                f"SELECT {self.key} FROM {self.table} WHERE {clause} ORDER BY updated_at ASC LIMIT ?",
                (*params, int(limit)),
            )
            rows = await cursor.fetchall()
            await cursor.close()
        return [row[0] for row in rows]

    async def claim_delivery(self, item_id: str, lease_s: float) -> bool:
        clause, params = self._scan_filter()
        lease_until = format_ts(datetime.now(timezone.utc) + timedelta(seconds=lease_s))
        async with aiosqlite.connect(self.path) as db:
            await db.execute("BEGIN IMMEDIATE")
            cursor = await db.execute(
                f"UPDATE {self.table} SET delivery_lease_until=? WHERE {self.key}=? AND {clause}",
                (lease_until, item_id, *params),
            )
            claimed = cursor.rowcount == 1
            await cursor.close()
            await db.commit()
        return claimed

    async def mark_delivered(self, item_id: str) -> None:
        now = utc_now()
        await self._update_delivery(
            item_id,
            "delivered=1, delivery_status='sent', delivered_at=?, delivery_lease_until=NULL, updated_at=?",
            (now, now),
        )

    async def record_delivery_failure(self, item_id: str, error: str, max_attempts: int) -> str:
        """Count a retryable failure; returns the resulting delivery status."""
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            cursor = await db.execute(
                f"SELECT delivery_attempts FROM {self.table} WHERE {self.key}=?",
                (item_id,),
            )
            row = await cursor.fetchone()
            await cursor.close()
            if not row:
                await db.execute("ROLLBACK")
                return "missing"
            attempts = int(row["delivery_attempts"] or 0) + 1
            status = "dropped" if attempts >= max_attempts else "pending"
            await db.execute(
                f"UPDATE {self.table} SET delivery_attempts=?, delivery_error=?, delivery_status=?, "
                f"delivery_lease_until=NULL, updated_at=? WHERE {self.key}=?",
                (attempts, error, status, utc_now(), item_id),
            )
            await db.commit()
        return status

    async def drop_delivery(self, item_id: str, error: str) -> None:
        await self._update_delivery(
            item_id,
            "delivery_status='dropped', delivery_error=?, delivery_lease_until=NULL, updated_at=?",
            (error, utc_now()),
        )

    async def _update_delivery(self, item_id: str, assignments: str, params: Tuple[Any, ...]) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute(
                f"UPDATE {self.table} SET {assignments} WHERE {self.key}=?",
                (*params, item_id),
            )
            await db.commit()
