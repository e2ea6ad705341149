import asyncio
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from .config import AppSettings
from .db import DeliverableStore
from .errors import DeliveryError
from .events import GENERATION_TERMINAL, RUN_TERMINAL, EventBus
from .generation_store import GenerationStore
from .run_store import RunStore
from .schemas import DeliveryOutcome


logger = logging.getLogger("uvicorn.error")

BILLING_PREFIX = "billing:"


def billing_message(detail: Optional[str]) -> str:
    message = f"{BILLING_PREFIX} could not complete, the charge for this result was declined"
    return f"{message} ({detail})" if detail else message


class NotificationDispatcher:
    """Hands terminal generations and runs to their platform adapter once.

    Scan-then-mark: an item is marked delivered only after the adapter
    confirms, so a crash in between can repeat a delivery but never lose one.
    """

    def __init__(
        self,
        store: GenerationStore,
        runs: RunStore,
        adapters: Dict[str, Any],
        bus: EventBus,
        settings: AppSettings,
    ):
        self.store = store
        self.runs = runs
        self.adapters = dict(adapters)
        self.bus = bus
        self.settings = settings

    async def scan(self) -> List[Tuple[str, str]]:
        """Undelivered terminal items as ``(kind, id)`` pairs."""
        limit = self.settings.dispatch_batch_size
        items = [("generation", gid) for gid in await self.store.list_undelivered(limit)]
        items.extend(("run", run_id) for run_id in await self.runs.list_undelivered(limit))
        return items

    async def dispatch_once(self) -> Dict[str, int]:
        counts = {"sent": 0, "retry": 0, "dropped": 0, "skipped": 0}
        for kind, item_id in await self.scan():
            outcome = await self._deliver_item(kind, item_id)
            counts[outcome] += 1
        return counts

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        with self.bus.listen(event_types=(GENERATION_TERMINAL, RUN_TERMINAL)) as queue:
            while not stop_event.is_set():
                try:
                    await self.dispatch_once()
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("Dispatch pass failed; retrying in %ss", self.settings.dispatch_interval_s)
                await self._wait_for_wakeup(queue, stop_event)

    async def _wait_for_wakeup(self, queue: asyncio.Queue, stop_event: asyncio.Event) -> None:
        """Sleep until a terminal event, a stop request or the dispatch interval."""
        getter = asyncio.ensure_future(queue.get())
        stopper = asyncio.ensure_future(stop_event.wait())
        try:
            await asyncio.wait(
                {getter, stopper},
                timeout=self.settings.dispatch_interval_s,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            getter.cancel()
            stopper.cancel()

    def _store_for(self, kind: str) -> DeliverableStore:
        return self.store if kind == "generation" else self.runs

    async def _deliver_item(self, kind: str, item_id: str) -> str:
        store = self._store_for(kind)
        if not await store.claim_delivery(item_id, self.settings.delivery_lease_s):
            return "skipped"
        if kind == "generation":
            item = await self.store.require(item_id)
            outcome = self.generation_outcome(item)
        else:
            item = await self.runs.require(item_id)
            outcome = await self.run_outcome(item)

        platform = item.get("notification_platform")
        adapter = self.adapters.get(platform)
        if adapter is None:
            error = f"No delivery adapter for platform {platform!r}"
            logger.error("Dropping %s %s: %s", kind, item_id, error)
            await store.drop_delivery(item_id, error)
            return "dropped"

        try:
            await adapter.deliver(item.get("notification_target"), outcome)
        except DeliveryError as exc:
            if not exc.retryable:
                logger.error("Dropping %s %s after non-retryable delivery error: %s", kind, item_id, exc)
                await store.drop_delivery(item_id, str(exc))
                return "dropped"
            return await self._record_failure(store, kind, item_id, str(exc))
        except Exception as exc:
            logger.exception("Adapter %s raised while delivering %s %s", platform, kind, item_id)
            return await self._record_failure(store, kind, item_id, f"{type(exc).__name__}: {exc}")

        await store.mark_delivered(item_id)
        logger.info("Delivered %s %s via %s", kind, item_id, platform)
        return "sent"

    async def _record_failure(self, store: DeliverableStore, kind: str, item_id: str, error: str) -> str:
        status = await store.record_delivery_failure(item_id, error, self.settings.max_delivery_attempts)
        if status == "dropped":
            logger.error(
                "Dropping %s %s after %s delivery attempts: %s",
                kind,
                item_id,
                self.settings.max_delivery_attempts,
                error,
            )
            return "dropped"
        logger.warning("Delivery of %s %s failed, will retry: %s", kind, item_id, error)
        return "retry"

    def generation_outcome(self, record: Dict[str, Any]) -> DeliveryOutcome:
        status = record["status"]
        outputs = record.get("response_payload") if status == "succeeded" else None
        if status == "payment_failed":
            failure_reason = billing_message(record.get("failure_reason"))
        elif status == "failed":
            failure_reason = record.get("failure_reason") or "Unknown error"
        else:
            failure_reason = None
        return DeliveryOutcome(
            kind="generation",
            id=record["generation_id"],
            status=status,
            outputs=outputs,
            failure_reason=failure_reason,
            cost_final=record.get("cost_final"),
            points_charged=record.get("points_charged"),
        )

    async def run_outcome(self, run: Dict[str, Any]) -> DeliveryOutcome:
        steps = await self.store.list_for_run(run["run_id"])
        cost = sum((Decimal(step["cost_final"]) for step in steps if step.get("cost_final")), Decimal("0"))
        charged = sum(
            (Decimal(step["points_charged"]) for step in steps if step.get("points_charged")),
            Decimal("0"),
        )
        status = run["status"]
        return DeliveryOutcome(
            kind="run",
            id=run["run_id"],
            status=status,
            outputs=run.get("final_outputs") if status != "failed" else None,
            failure_reason=run.get("failure_reason"),
            cost_final=str(cost),
            points_charged=str(charged),
        )
