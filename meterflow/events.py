import asyncio
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, Optional, Set

from .db import Database

GENERATION_TERMINAL = "generation_terminal"
GENERATION_PROGRESS = "generation_progress"
RUN_TERMINAL = "run_terminal"


def generation_scope(generation_id: str) -> str:
    return f"generation:{generation_id}"


def run_scope(run_id: str) -> str:
    return f"run:{run_id}"


class _Listener:
    def __init__(self, event_types: Optional[Iterable[str]]):
        self.queue: asyncio.Queue = asyncio.Queue()
        self.event_types = frozenset(event_types) if event_types is not None else None

    def offer(self, event: dict) -> None:
        if self.event_types is None or event["event_type"] in self.event_types:
            self.queue.put_nowait(event)


class EventBus:
    """Lifecycle events for generations and runs.

    Every event is written to the ``events`` table first, so SSE clients can
    replay a scope, and then queued for in-process listeners. A listener
    watches one scope, or every scope when ``scope`` is None, and may narrow
    what it receives to a set of event types.
    """

    def __init__(self, db: Database):
        self.db = db
        self._listeners: Dict[Optional[str], Set[_Listener]] = {}

    async def emit(self, scope: str, event_type: str, payload: Dict[str, Any]) -> dict:
        stored = await self.db.add_event(scope, event_type, dict(payload or {}))
        for listener in (*self._listeners.get(scope, ()), *self._listeners.get(None, ())):
            listener.offer(stored)
        return stored

    @contextmanager
    def listen(
        self,
        scope: Optional[str] = None,
        event_types: Optional[Iterable[str]] = None,
    ) -> Iterator[asyncio.Queue]:
        listener = _Listener(event_types)
        self._listeners.setdefault(scope, set()).add(listener)
        try:
            yield listener.queue
        finally:
            listeners = self._listeners.get(scope)
            if listeners is not None:
                listeners.discard(listener)
                if not listeners:
                    del self._listeners[scope]

    def listener_count(self, scope: Optional[str] = None) -> int:
        return len(self._listeners.get(scope, ()))

    async def generation_progress(
        self,
        record: Dict[str, Any],
        status: str,
        progress: Optional[float] = None,
        live_status: Optional[str] = None,
    ) -> dict:
        return await self.emit(
            generation_scope(record["generation_id"]),
            GENERATION_PROGRESS,
            {
                "generation_id": record["generation_id"],
                "run_id": record.get("run_id"),
                "status": status,
                "progress": progress,
                "live_status": live_status,
            },
        )

    async def generation_terminal(self, record: Dict[str, Any]) -> dict:
        """Announce that a generation record reached a terminal status."""
        return await self.emit(
            generation_scope(record["generation_id"]),
            GENERATION_TERMINAL,
            {
                "generation_id": record["generation_id"],
                "run_id": record.get("run_id"),
                "step_id": record.get("step_id"),
                "status": record["status"],
            },
        )

    async def run_terminal(self, run_id: str, status: str) -> dict:
        return await self.emit(run_scope(run_id), RUN_TERMINAL, {"run_id": run_id, "status": status})
