import uuid
from typing import Any, Dict, List, Optional

import aiosqlite

from .db import DeliverableStore, json_dumps, json_loads, utc_now
from .errors import NotFound

RUN_TERMINAL_STATUSES = ("completed", "failed", "partially_completed")


class RunStore(DeliverableStore):
    """Persistent workflow runs and their per-step status map."""

    table = "workflow_runs"
    key = "run_id"
    deliverable_statuses = RUN_TERMINAL_STATUSES

    def _row_to_run(self, row: aiosqlite.Row) -> Dict[str, Any]:
        return {
            "run_id": row["run_id"],
            "account_id": row["account_id"],
            "definition": json_loads(row["definition_json"], []),
            "step_statuses": json_loads(row["step_statuses_json"], {}),
            "status": row["status"],
            "final_outputs": json_loads(row["final_outputs_json"], None),
            "failure_reason": row["failure_reason"],
            "notification_platform": row["notification_platform"],
            "notification_target": row["notification_target"],
            "delivered": bool(row["delivered"]),
            "delivery_status": row["delivery_status"],
            "delivery_attempts": int(row["delivery_attempts"] or 0),
            "delivery_error": row["delivery_error"],
            "delivered_at": row["delivered_at"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
            "ended_at": row["ended_at"],
        }

    async def create(self, run: Dict[str, Any]) -> str:
        run_id = str(run.get("run_id") or uuid.uuid4())
        definition = list(run.get("definition") or [])
        step_statuses = {
            str(step["step_id"]): {"generation_id": None, "status": "pending"}
            for step in definition
        }
        now = utc_now()
        async with aiosqlite.connect(self.path) as db:
            await db.execute(
                "INSERT INTO workflow_runs(run_id, account_id, definition_json, step_statuses_json, status, "
                "notification_platform, notification_target, delivered, delivery_status, delivery_attempts, "
                "created_at, updated_at) VALUES (?,?,?,?,?,?,?,0,'pending',0,?,?)",
                (
                    run_id,
                    str(run["account_id"]),
                    json_dumps(definition),
                    json_dumps(step_statuses),
                    "running",
                    run.get("notification_platform"),
                    run.get("notification_target"),
                    now,
                    now,
                ),
            )
            await db.commit()
        return run_id

    async def get(self, run_id: str) -> Optional[Dict[str, Any]]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM workflow_runs WHERE run_id=?", (run_id,))
            row = await cursor.fetchone()
            await cursor.close()
        return self._row_to_run(row) if row else None

    async def require(self, run_id: str) -> Dict[str, Any]:
        run = await self.get(run_id)
        if run is None:
            raise NotFound(f"Workflow run {run_id} not found")
        return run

    async def set_step(
        self,
        run_id: str,
        step_id: str,
        *,
        generation_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Merge one step's generation id and/or status into the status map."""
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            cursor = await db.execute("SELECT step_statuses_json FROM workflow_runs WHERE run_id=?", (run_id,))
            row = await cursor.fetchone()
            await cursor.close()
            if not row:
                await db.execute("ROLLBACK")
                raise NotFound(f"Workflow run {run_id} not found")
            statuses = json_loads(row["step_statuses_json"], {})
            entry = dict(statuses.get(step_id) or {"generation_id": None, "status": "pending"})
            if generation_id is not None:
                entry["generation_id"] = generation_id
            if status is not None:
                entry["status"] = status
            statuses[step_id] = entry
            await db.execute(
                "UPDATE workflow_runs SET step_statuses_json=?, updated_at=? WHERE run_id=?",
                (json_dumps(statuses), utc_now(), run_id),
            )
            await db.commit()
        return statuses

    async def finish(
        self,
        run_id: str,
        status: str,
        final_outputs: Any,
        failure_reason: Optional[str] = None,
    ) -> bool:
        """Mark a running run terminal. Returns False if it was already terminal."""
        if status not in RUN_TERMINAL_STATUSES:
            raise ValueError(f"Not a terminal run status: {status}")
        now = utc_now()
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(
                "UPDATE workflow_runs SET status=?, final_outputs_json=?, failure_reason=?, ended_at=?, updated_at=? "
                "WHERE run_id=? AND status='running'",
                (status, json_dumps(final_outputs), failure_reason, now, now, run_id),
            )
            finished = cursor.rowcount == 1
            await cursor.close()
            await db.commit()
        return finished

    async def list_running(self) -> List[Dict[str, Any]]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM workflow_runs WHERE status='running' ORDER BY created_at ASC"
            )
            rows = await cursor.fetchall()
            await cursor.close()
        return [self._row_to_run(row) for row in rows]
