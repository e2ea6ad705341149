import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from .config import AppSettings
from .db import format_ts, utc_now
from .events import EventBus
from .generation_store import GenerationStore


logger = logging.getLogger("uvicorn.error")

TIMEOUT_REASON = "timeout"


class TimeoutSweeper:
    """Fails generations that never received a terminal callback in time."""

    def __init__(self, store: GenerationStore, bus: EventBus, settings: AppSettings):
        self.store = store
        self.bus = bus
        self.settings = settings

    async def sweep(self, now: Optional[datetime] = None) -> List[str]:
        current = now or datetime.now(timezone.utc)
        cutoff = format_ts(current - timedelta(seconds=self.settings.step_timeout_s))
        timed_out: List[str] = []
        for record in await self.store.list_overdue(cutoff):
            generation_id = record["generation_id"]
            result = await self.store.transition(
                generation_id,
                "failed",
                {"failure_reason": TIMEOUT_REASON, "ended_at": utc_now()},
            )
            if not result["ok"]:
                # A callback finished it between the scan and the transition.
                continue
            logger.warning(
                "Generation %s timed out after %ss in status %s",
                generation_id,
                self.settings.step_timeout_s,
                record["status"],
            )
            await self.bus.generation_terminal(result["record"])
            timed_out.append(generation_id)
        return timed_out
