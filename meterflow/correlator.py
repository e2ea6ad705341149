import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import aiosqlite

from .config import AppSettings
from .db import Database, format_ts, json_dumps, json_loads, parse_ts, utc_now
from .errors import CorrelationOrphan, InsufficientFunds, MeterflowError, ValidationError
from .events import EventBus
from .generation_store import GenerationStore
from .ledger import Ledger
from .pricing import SettlementQuote, compute_cost, quote_settlement, run_duration_seconds, to_money
from .providers import parse_webhook
from .schemas import ProviderEvent


logger = logging.getLogger("uvicorn.error")


class WebhookCorrelator:
    """Matches provider callbacks to generation records and settles them.

    Every write goes through a guarded store transition, so a replayed or
    concurrent callback for the same record is a no-op rather than a second
    transition or a second charge.
    """

    def __init__(
        self,
        db: Database,
        store: GenerationStore,
        ledger: Ledger,
        bus: EventBus,
        settings: AppSettings,
    ):
        self.db = db
        self.store = store
        self.ledger = ledger
        self.bus = bus
        self.settings = settings

    async def handle(self, provider: str, payload: Any) -> Dict[str, Any]:
        """Entry point for the webhook route.

        Uncorrelated callbacks are queued for retry instead of failing. A callback
        for a run that already has queued callbacks joins the queue behind them so
        events for one run are applied in arrival order.
        """
        event = parse_webhook(provider, payload)
        if await self._has_pending_orphans(event.external_run_id):
            await self.enqueue_orphan(provider, event.external_run_id, payload)
            return {"status": "queued", "external_run_id": event.external_run_id}
        try:
            return await self.apply_event(event)
        except CorrelationOrphan:
            await self.enqueue_orphan(provider, event.external_run_id, payload)
            return {"status": "queued", "external_run_id": event.external_run_id}

    async def apply_event(self, event: ProviderEvent) -> Dict[str, Any]:
        record = await self.store.find_by_external_run_id(event.external_run_id)
        if record is None:
            raise CorrelationOrphan(event.external_run_id)
        generation_id = record["generation_id"]
        event_time = self._event_time(event)

        if event.status == "progress":
            await self._emit_progress(record, event)
            return {"status": "progress", "generation_id": generation_id}

        if event.status == "running":
            result = await self.store.mark_running(generation_id, event_time)
            if not result["ok"]:
                return {"status": "ignored", "generation_id": generation_id}
            logger.info("Generation %s running (external run %s)", generation_id, event.external_run_id)
            await self._emit_progress(result["record"], event)
            return {"status": "running", "generation_id": generation_id}

        if event.status == "failed":
            return await self._fail(record, event.failure_reason or "Unknown error from provider", event_time)

        return await self.settle(record, event.outputs, event_time)

    def _event_time(self, event: ProviderEvent) -> str:
        parsed = parse_ts(event.timestamp)
        return format_ts(parsed) if parsed else utc_now()

    async def _emit_progress(self, record: Dict[str, Any], event: ProviderEvent) -> None:
        await self.bus.generation_progress(
            record,
            event.raw_status or event.status,
            progress=event.progress,
            live_status=event.live_status,
        )

    async def _fail(self, record: Dict[str, Any], reason: str, ended_at: str) -> Dict[str, Any]:
        generation_id = record["generation_id"]
        fields: Dict[str, Any] = {"failure_reason": reason, "ended_at": ended_at}
        started = parse_ts(record.get("started_at"))
        if started is not None:
            fields["duration_ms"] = int(run_duration_seconds(started, parse_ts(ended_at)) * 1000)
        result = await self.store.transition(generation_id, "failed", fields)
        if not result["ok"]:
            return {"status": "ignored", "generation_id": generation_id}
        logger.info("Generation %s failed: %s", generation_id, reason)
        await self.bus.generation_terminal(result["record"])
        return {"status": "failed", "generation_id": generation_id}

    async def settle(self, record: Dict[str, Any], outputs: Any, ended_at: str) -> Dict[str, Any]:
        """Claim the record for settlement, then charge and finish it."""
        generation_id = record["generation_id"]
        claim = await self.store.claim_settlement(generation_id, outputs, ended_at)
        if not claim["ok"]:
            logger.info("Ignoring duplicate terminal callback for generation %s", generation_id)
            return {"status": "ignored", "generation_id": generation_id}
        return await self._complete_settlement(claim["record"])

    def quote(self, record: Dict[str, Any]) -> SettlementQuote:
        places = self.settings.money_places
        started = parse_ts(record.get("started_at"))
        ended = parse_ts(record.get("ended_at"))
        if started is None:
            logger.warning(
                "Generation %s has no startedAt; charging zero for this run",
                record["generation_id"],
            )
        duration = run_duration_seconds(started, ended)
        rate = record.get("cost_rate") or {}
        unit = rate.get("unit", "second")
        try:
            base = compute_cost(duration, rate.get("amount", "0"), unit, places)
        except ValueError:
            base = None
        if base is None:
            logger.warning(
                "Generation %s cost rate %r is not a time-based rate; charging zero",
                record["generation_id"],
                rate,
            )
            base = to_money(0, places)
        return quote_settlement(
            base,
            self.settings.creator_fee_pct,
            record.get("creator_ids") or [],
            record["account_id"],
            places,
        )

    async def _complete_settlement(self, record: Dict[str, Any]) -> Dict[str, Any]:
        generation_id = record["generation_id"]
        outputs = record.get("settlement_payload")
        quote = self.quote(record)
        started = parse_ts(record.get("started_at"))
        fields: Dict[str, Any] = {
            "cost_final": quote.base_cost,
            "duration_ms": (
                int(run_duration_seconds(started, parse_ts(record.get("ended_at"))) * 1000)
                if started is not None
                else None
            ),
        }

        if quote.total_charge <= 0:
            fields.update({"response_payload": outputs, "points_charged": quote.total_charge, "reward_breakdown": []})
            result = await self.store.finish_settlement(generation_id, "succeeded", "skipped", fields)
            if result["ok"]:
                logger.info("Generation %s succeeded at zero cost; no ledger entries", generation_id)
                await self.bus.generation_terminal(result["record"])
            return {"status": result["status"], "generation_id": generation_id}

        try:
            await self.ledger.debit(
                record["account_id"],
                quote.total_charge,
                generation_id,
                description=f"Generation {generation_id} ({record['tool_id']})",
            )
        except InsufficientFunds as exc:
            logger.warning("Settlement rejected for generation %s: %s", generation_id, exc)
            fields.update(
                {
                    "withheld_payload": outputs,
                    "failure_reason": f"insufficient_funds: {exc}",
                }
            )
            result = await self.store.finish_settlement(generation_id, "payment_failed", "rejected", fields)
            if result["ok"]:
                await self.bus.generation_terminal(result["record"])
            return {"status": result["status"], "generation_id": generation_id}

        # Rewards are only issued once the consumer's debit has committed.
        breakdown = await self._distribute_rewards(record, quote)
        fields.update(
            {
                "response_payload": outputs,
                "points_charged": quote.total_charge,
                "reward_breakdown": breakdown,
            }
        )
        result = await self.store.finish_settlement(generation_id, "succeeded", "settled", fields)
        if result["ok"]:
            logger.info(
                "Generation %s settled: base %s, charged %s to %s",
                generation_id,
                quote.base_cost,
                quote.total_charge,
                record["account_id"],
            )
            await self.bus.generation_terminal(result["record"])
        return {"status": result["status"], "generation_id": generation_id}

    async def _distribute_rewards(self, record: Dict[str, Any], quote: SettlementQuote) -> List[Dict[str, Any]]:
        generation_id = record["generation_id"]
        if not quote.rewards:
            return []
        existing = {
            entry["account_id"]: entry
            for entry in await self.ledger.list_generation_entries(generation_id)
            if entry["type"] == "reward"
        }
        breakdown: List[Dict[str, Any]] = []
        for share in quote.rewards:
            item: Dict[str, Any] = {
                "account_id": share.account_id,
                "shares": share.shares,
                "amount": str(share.amount),
            }
            if share.account_id in existing:
                item.update({"status": "credited", "entry_id": existing[share.account_id]["entry_id"]})
                breakdown.append(item)
                continue
            try:
                entry = await self.ledger.reward(
                    share.account_id,
                    share.amount,
                    generation_id,
                    description=f"Creator reward for generation {generation_id}",
                )
            except (MeterflowError, aiosqlite.Error) as exc:
                logger.error(
                    "Creator reward of %s to %s failed for generation %s: %s",
                    share.amount,
                    share.account_id,
                    generation_id,
                    exc,
                )
                item.update({"status": "failed", "error": str(exc)})
            else:
                item.update({"status": "credited", "entry_id": entry["entry_id"]})
            breakdown.append(item)
        return breakdown

    async def recover_settlements(self, grace_s: Optional[float] = None) -> List[str]:
        """Finish settlements whose claimant stopped before writing the outcome.

        The debit is idempotent per generation and rewards already credited are
        skipped, so finishing twice never charges or pays twice.
        """
        grace = self.settings.settlement_claim_grace_s if grace_s is None else grace_s
        cutoff = format_ts(datetime.now(timezone.utc) - timedelta(seconds=grace))
        recovered: List[str] = []
        for record in await self.store.list_claimed_settlements(cutoff):
            generation_id = record["generation_id"]
            logger.warning("Recovering interrupted settlement for generation %s", generation_id)
            try:
                await self._complete_settlement(record)
            except (MeterflowError, aiosqlite.Error):
                # Left claimed; the next recovery pass tries again.
                logger.exception("Settlement recovery for generation %s failed", generation_id)
                continue
            recovered.append(generation_id)
        return recovered

    async def _has_pending_orphans(self, external_run_id: str) -> bool:
        row = await self.db.fetchone(
            "SELECT 1 FROM webhook_events WHERE external_run_id=? AND status='pending' LIMIT 1",
            (external_run_id,),
        )
        return row is not None

    async def enqueue_orphan(self, provider: str, external_run_id: str, payload: Any) -> None:
        now = datetime.now(timezone.utc)
        next_attempt = now + timedelta(seconds=self.settings.orphan_retry_interval_s)
        await self.db.execute(
            "INSERT INTO webhook_events(provider, external_run_id, payload_json, status, attempts, first_seen_at, "
            "next_attempt_at, updated_at) VALUES (?,?,?,?,?,?,?,?)",
            (provider, external_run_id, json_dumps(payload), "pending", 0, format_ts(now), format_ts(next_attempt), format_ts(now)),
        )
        logger.warning("No generation for external run %s yet; callback queued for retry", external_run_id)

    async def retry_orphans(self, external_run_id: Optional[str] = None, force: bool = False) -> Dict[str, int]:
        """Replay queued callbacks, oldest first.

        ``force`` ignores ``next_attempt_at``; the engine uses it to drain a run's
        queue right after the provider acknowledges the submission.
        """
        now = datetime.now(timezone.utc)
        query = "SELECT * FROM webhook_events WHERE status='pending'"
        params: List[Any] = []
        if not force:
            query += " AND next_attempt_at <= ?"
            params.append(format_ts(now))
        if external_run_id:
            query += " AND external_run_id=?"
            params.append(external_run_id)
        query += " ORDER BY id ASC"
        rows = await self.db.fetchall(query, tuple(params))
        counts = {"processed": 0, "pending": 0, "orphaned": 0}
        blocked = set()
        for row in rows:
            run_key = row["external_run_id"]
            if run_key in blocked:
                # Keep later callbacks for this run behind the one still waiting.
                counts["pending"] += 1
                continue
            status, error = await self._replay(row)
            attempts = int(row["attempts"] or 0) + 1
            if status == "pending":
                first_seen = parse_ts(row["first_seen_at"]) or now
                if (now - first_seen).total_seconds() >= self.settings.orphan_retry_window_s:
                    status = "orphaned"
                    logger.error(
                        "Orphaned provider callback for external run %s after %s attempts: %s",
                        run_key,
                        attempts,
                        error,
                    )
                else:
                    blocked.add(run_key)
            next_attempt = format_ts(now + timedelta(seconds=self.settings.orphan_retry_interval_s))
            await self.db.execute(
                "UPDATE webhook_events SET status=?, attempts=?, next_attempt_at=?, last_error=?, updated_at=? "
                "WHERE id=?",
                (status, attempts, next_attempt, error, format_ts(now), row["id"]),
            )
            counts[status] += 1
        return counts

    async def _replay(self, row: aiosqlite.Row) -> Tuple[str, Optional[str]]:
        payload = json_loads(row["payload_json"], {})
        try:
            event = parse_webhook(row["provider"], payload)
            await self.apply_event(event)
        except CorrelationOrphan as exc:
            return "pending", str(exc)
        except ValidationError as exc:
            logger.error("Queued callback %s cannot be parsed; marking it orphaned: %s", row["id"], exc)
            return "orphaned", str(exc)
        return "processed", None
