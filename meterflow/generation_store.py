import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import aiosqlite

from .db import DeliverableStore, json_dumps, json_loads, utc_now
from .errors import NotFound, ValidationError
from .schemas import ACTIVE_STATUSES, STATUS_RANK, TERMINAL_STATUSES

# Columns that partial updates may touch. JSON-encoded fields map to a *_json column.
PLAIN_FIELDS = {
    "status",
    "external_run_id",
    "failure_reason",
    "cost_final",
    "points_charged",
    "duration_ms",
    "settlement",
    "settlement_claimed_at",
    "notification_platform",
    "notification_target",
    "submitted_at",
    "started_at",
    "ended_at",
}
JSON_FIELDS = {
    "request_payload",
    "response_payload",
    "withheld_payload",
    "cost_rate",
    "reward_breakdown",
    "creator_ids",
    "settlement_payload",
}


def can_transition(current: str, target: str) -> bool:
    """Forward-only guard for the generation state machine."""
    if current == target:
        return False
    if current in TERMINAL_STATUSES:
        return current == "succeeded" and target == "payment_failed"
    return STATUS_RANK.get(target, -1) > STATUS_RANK.get(current, -1)


def _encode_fields(fields: Dict[str, Any]) -> Tuple[List[str], List[Any]]:
    assignments: List[str] = []
    params: List[Any] = []
    for key, value in fields.items():
        if key in JSON_FIELDS:
            assignments.append(f"{key}_json=?")
            params.append(None if value is None else json_dumps(value))
        elif key in PLAIN_FIELDS:
            assignments.append(f"{key}=?")
            params.append(str(value) if isinstance(value, Decimal) else value)
        else:
            raise ValidationError(f"Generation field is not updatable: {key}")
    return assignments, params


class GenerationStore(DeliverableStore):
    """Persistent generation records, one per tool invocation."""

    table = "generations"
    key = "generation_id"
    deliverable_statuses = TERMINAL_STATUSES

    def _extra_scan_filter(self) -> str:
        # Steps of a workflow run are delivered through the run.
        return "run_id IS NULL"

    def _row_to_record(self, row: aiosqlite.Row, internal: bool = False) -> Dict[str, Any]:
        record = {
            "generation_id": row["generation_id"],
            "account_id": row["account_id"],
            "tool_id": row["tool_id"],
            "external_run_id": row["external_run_id"],
            "status": row["status"],
            "request_payload": json_loads(row["request_payload_json"], {}),
            "response_payload": json_loads(row["response_payload_json"], None),
            "failure_reason": row["failure_reason"],
            "cost_rate": json_loads(row["cost_rate_json"], None),
            "cost_final": row["cost_final"],
            "points_charged": row["points_charged"],
            "reward_breakdown": json_loads(row["reward_breakdown_json"], []),
            "creator_ids": json_loads(row["creator_ids_json"], []),
            "duration_ms": row["duration_ms"],
            "settlement": row["settlement"],
            "run_id": row["run_id"],
            "step_id": row["step_id"],
            "notification_platform": row["notification_platform"],
            "notification_target": row["notification_target"],
            "delivered": bool(row["delivered"]),
            "delivery_status": row["delivery_status"],
            "delivery_attempts": int(row["delivery_attempts"] or 0),
            "delivery_error": row["delivery_error"],
            "delivered_at": row["delivered_at"],
            "created_at": row["created_at"],
            "submitted_at": row["submitted_at"],
            "started_at": row["started_at"],
            "ended_at": row["ended_at"],
            "updated_at": row["updated_at"],
        }
        if internal:
            # Withheld outputs and stashed settlement payloads never leave the service.
            record["withheld_payload"] = json_loads(row["withheld_payload_json"], None)
            record["settlement_payload"] = json_loads(row["settlement_payload_json"], None)
            record["settlement_claimed_at"] = row["settlement_claimed_at"]
        return record

    async def _fetch(self, db: aiosqlite.Connection, generation_id: str) -> Optional[aiosqlite.Row]:
        cursor = await db.execute("SELECT * FROM generations WHERE generation_id=?", (generation_id,))
        row = await cursor.fetchone()
        await cursor.close()
        return row

    async def create(self, record: Dict[str, Any]) -> str:
        generation_id = str(record.get("generation_id") or uuid.uuid4())
        now = utc_now()
        async with aiosqlite.connect(self.path) as db:
            await db.execute(
                "INSERT INTO generations(generation_id, account_id, tool_id, status, request_payload_json, "
                "cost_rate_json, creator_ids_json, run_id, step_id, notification_platform, notification_target, "
                "delivered, delivery_status, delivery_attempts, created_at, updated_at) "
                "VALUES (?,?,?,?,?,?,?,?,?,?,?,0,'pending',0,?,?)",
                (
                    generation_id,
                    str(record["account_id"]),
                    str(record["tool_id"]),
                    "pending",
                    json_dumps(record.get("request_payload") or {}),
                    json_dumps(record.get("cost_rate")) if record.get("cost_rate") is not None else None,
                    json_dumps(list(record.get("creator_ids") or [])),
                    record.get("run_id"),
                    record.get("step_id"),
                    record.get("notification_platform"),
                    record.get("notification_target"),
                    now,
                    now,
                ),
            )
            await db.commit()
        return generation_id

    async def get(self, generation_id: str, internal: bool = False) -> Optional[Dict[str, Any]]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            row = await self._fetch(db, generation_id)
        return self._row_to_record(row, internal) if row else None

    async def require(self, generation_id: str, internal: bool = False) -> Dict[str, Any]:
        record = await self.get(generation_id, internal)
        if record is None:
            raise NotFound(f"Generation {generation_id} not found")
        return record

    async def find_by_external_run_id(self, external_run_id: str, internal: bool = False) -> Optional[Dict[str, Any]]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM generations WHERE external_run_id=?",
                (external_run_id,),
            )
            row = await cursor.fetchone()
            await cursor.close()
        return self._row_to_record(row, internal) if row else None

    async def update(self, generation_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Merge ``fields`` into the record. Fields not named are left untouched."""
        if not fields:
            return await self.require(generation_id)
        assignments, params = _encode_fields(fields)
        assignments.append("updated_at=?")
        params.append(utc_now())
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(
                f"UPDATE generations SET {', '.join(assignments)} WHERE generation_id=?",
                (*params, generation_id),
            )
            updated = cursor.rowcount
            await cursor.close()
            await db.commit()
        if not updated:
            raise NotFound(f"Generation {generation_id} not found")
        return await self.require(generation_id)

    async def transition(
        self,
        generation_id: str,
        target: str,
        fields: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Move a record forward to ``target`` if the guard allows it.

        Returns ``{"ok": True, "record": ...}`` on success, or ``ok`` False with
        ``status`` ``"missing"`` or ``"conflict"`` when nothing was written.
        """
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            row = await self._fetch(db, generation_id)
            if not row:
                await db.execute("ROLLBACK")
                return {"ok": False, "status": "missing"}
            current = row["status"]
            # A claimed settlement owns the terminal transition.
            blocked = target == "failed" and row["settlement"] == "claimed"
            if blocked or not can_transition(current, target):
                await db.execute("ROLLBACK")
                return {"ok": False, "status": "conflict", "record": self._row_to_record(row)}
            values = dict(fields or {})
            values["status"] = target
            assignments, params = _encode_fields(values)
            assignments.append("updated_at=?")
            params.append(utc_now())
            await db.execute(
                f"UPDATE generations SET {', '.join(assignments)} WHERE generation_id=?",
                (*params, generation_id),
            )
            await db.commit()
        return {"ok": True, "status": target, "record": await self.require(generation_id)}

    async def mark_submitted(self, generation_id: str, external_run_id: str) -> Dict[str, Any]:
        async with aiosqlite.connect(self.path) as db:
            await db.execute(
                "UPDATE generations SET external_run_id=? WHERE generation_id=? AND external_run_id IS NULL",
                (external_run_id, generation_id),
            )
            await db.commit()
        return await self.transition(generation_id, "submitted", {"submitted_at": utc_now()})

    async def mark_running(self, generation_id: str, started_at: str) -> Dict[str, Any]:
        """Advance to running; ``started_at`` is written only if not yet set."""
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            row = await self._fetch(db, generation_id)
            if not row:
                await db.execute("ROLLBACK")
                return {"ok": False, "status": "missing"}
            if row["status"] not in ACTIVE_STATUSES or row["settlement"] is not None:
                await db.execute("ROLLBACK")
                return {"ok": False, "status": "conflict", "record": self._row_to_record(row)}
            first_start = row["started_at"] is None
            await db.execute(
                "UPDATE generations SET status='running', started_at=COALESCE(started_at, ?), updated_at=? "
                "WHERE generation_id=?",
                (started_at, utc_now(), generation_id),
            )
            await db.commit()
        advanced = first_start or row["status"] != "running"
        return {
            "ok": advanced,
            "status": "running" if advanced else "conflict",
            "record": await self.require(generation_id),
        }

    async def mark_failed(self, generation_id: str, reason: str, ended_at: Optional[str] = None) -> Dict[str, Any]:
        return await self.transition(
            generation_id,
            "failed",
            {"failure_reason": reason, "ended_at": ended_at or utc_now()},
        )

    async def claim_settlement(self, generation_id: str, outputs: Any, ended_at: str) -> Dict[str, Any]:
        """Reserve the right to settle an active record exactly once."""
        now = utc_now()
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            row = await self._fetch(db, generation_id)
            if not row:
                await db.execute("ROLLBACK")
                return {"ok": False, "status": "missing"}
            if row["status"] not in ACTIVE_STATUSES or row["settlement"] is not None:
                await db.execute("ROLLBACK")
                return {"ok": False, "status": "conflict", "record": self._row_to_record(row)}
            await db.execute(
                "UPDATE generations SET settlement='claimed', settlement_payload_json=?, settlement_claimed_at=?, "
                "ended_at=COALESCE(ended_at, ?), updated_at=? WHERE generation_id=?",
                (json_dumps(outputs), now, ended_at, now, generation_id),
            )
            await db.commit()
        return {"ok": True, "status": "claimed", "record": await self.require(generation_id, internal=True)}

    async def finish_settlement(
        self,
        generation_id: str,
        status: str,
        settlement: str,
        fields: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Write the terminal outcome of a claimed settlement."""
        values = dict(fields)
        values["status"] = status
        values["settlement"] = settlement
        values["settlement_payload"] = None
        assignments, params = _encode_fields(values)
        assignments.append("updated_at=?")
        params.append(utc_now())
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(
                f"UPDATE generations SET {', '.join(assignments)} WHERE generation_id=? AND settlement='claimed'",
                (*params, generation_id),
            )
            finished = cursor.rowcount == 1
            await cursor.close()
            await db.commit()
        record = await self.require(generation_id)
        return {"ok": finished, "status": status if finished else "conflict", "record": record}

    async def list_for_run(self, run_id: str) -> List[Dict[str, Any]]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM generations WHERE run_id=? ORDER BY created_at ASC",
                (run_id,),
            )
            rows = await cursor.fetchall()
            await cursor.close()
        return [self._row_to_record(row) for row in rows]

    async def list_overdue(self, cutoff: str) -> List[Dict[str, Any]]:
        """Active, unclaimed records submitted (or created) before ``cutoff``."""
        placeholders = ",".join("?" for _ in ACTIVE_STATUSES)
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                f"SELECT * FROM generations WHERE status IN ({placeholders}) AND settlement IS NULL "
                "AND COALESCE(submitted_at, created_at) < ? ORDER BY created_at ASC",
                (*ACTIVE_STATUSES, cutoff),
            )
            rows = await cursor.fetchall()
            await cursor.close()
        return [self._row_to_record(row) for row in rows]

    async def list_claimed_settlements(self, claimed_before: str) -> List[Dict[str, Any]]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM generations WHERE settlement='claimed' AND settlement_claimed_at < ? "
                "ORDER BY settlement_claimed_at ASC",
                (claimed_before,),
            )
            rows = await cursor.fetchall()
            await cursor.close()
        return [self._row_to_record(row, internal=True) for row in rows]

