import asyncio
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from .config import AppSettings, CONFIG_PATH, load_settings, save_settings
from .correlator import WebhookCorrelator
from .db import Database
from .delivery import default_adapters
from .dispatcher import NotificationDispatcher
from .engine import InputResolver, WorkflowEngine
from .errors import InsufficientFunds, NotFound, ValidationError
from .events import EventBus, generation_scope, run_scope
from .generation_store import GenerationStore
from .ledger import Ledger
from .registry import ProviderClient, StaticToolRegistry
from .run_store import RunStore
from .schemas import LedgerAdjustmentRequest, SubmitGenerationRequest, SubmitWorkflowRunRequest
from .sweeper import TimeoutSweeper


logger = logging.getLogger("uvicorn.error")


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


def get_event_bus(request: Request) -> EventBus:
    return request.app.state.bus


def get_generation_store(request: Request) -> GenerationStore:
    return request.app.state.generations


def get_run_store(request: Request) -> RunStore:
    return request.app.state.runs


def get_ledger(request: Request) -> Ledger:
    return request.app.state.ledger


def get_engine(request: Request) -> WorkflowEngine:
    return request.app.state.engine


def get_correlator(request: Request) -> WebhookCorrelator:
    return request.app.state.correlator


def apply_settings(app: FastAPI, settings: AppSettings) -> None:
    app.state.settings = settings
    app.state.ledger.money_places = settings.money_places
    for component in (app.state.correlator, app.state.engine, app.state.sweeper, app.state.dispatcher):
        component.settings = settings


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event, default=str)}\n\n"


def entry_view(entry: Dict[str, Any]) -> Dict[str, Any]:
    view = dict(entry)
    for key in ("amount", "balance_before", "balance_after", "balance"):
        if key in view and view[key] is not None:
            view[key] = str(view[key])
    return view


router = APIRouter()


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/settings")
async def update_settings_route(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    db: Database = Depends(get_db),
    config_path: Path = Depends(get_config_path),
):
    body = await request.json()
    new_settings = AppSettings(**{**settings.model_dump(), **body})
    save_settings(new_settings, config_path=config_path)
    await db.save_config(new_settings.to_safe_dict())
    apply_settings(request.app, new_settings)
    return {"ok": True, "settings": new_settings.to_safe_dict()}


@router.post("/api/generations", status_code=201)
async def submit_generation(
    payload: SubmitGenerationRequest,
    engine: WorkflowEngine = Depends(get_engine),
):
    generation_id = await engine.submit_generation(payload)
    return {"generation_id": generation_id}


@router.get("/api/generations/{generation_id}")
async def get_generation(generation_id: str, store: GenerationStore = Depends(get_generation_store)):
    return await store.require(generation_id)


@router.post("/api/workflow-runs", status_code=201)
async def submit_workflow_run(
    payload: SubmitWorkflowRunRequest,
    engine: WorkflowEngine = Depends(get_engine),
):
    run_id = await engine.submit_run(payload)
    return {"run_id": run_id}


@router.get("/api/workflow-runs/{run_id}")
async def get_workflow_run(run_id: str, runs: RunStore = Depends(get_run_store)):
    return await runs.require(run_id)


@router.post("/api/webhooks/{provider}")
async def receive_webhook(
    provider: str,
    payload: Any = Body(...),
    correlator: WebhookCorrelator = Depends(get_correlator),
):
    result = await correlator.handle(provider, payload)
    if result.get("status") == "queued":
        return JSONResponse(status_code=202, content=result)
    return result


@router.get("/api/accounts/{account_id}")
async def get_account(account_id: str, ledger: Ledger = Depends(get_ledger)):
    account = await ledger.get_account(account_id)
    if account is None:
        raise NotFound(f"Account {account_id} not found")
    return entry_view(account)


@router.get("/api/accounts/{account_id}/entries")
async def list_account_entries(account_id: str, limit: int = 500, ledger: Ledger = Depends(get_ledger)):
    entries = await ledger.list_entries(account_id, limit=limit)
    return {"account_id": account_id, "entries": [entry_view(entry) for entry in entries]}


@router.post("/api/accounts/{account_id}/credit", status_code=201)
async def credit_account(
    account_id: str,
    payload: LedgerAdjustmentRequest,
    ledger: Ledger = Depends(get_ledger),
):
    entry = await ledger.credit(
        account_id,
        payload.amount,
        payload.related_generation_id,
        payload.description or "Manual credit",
    )
    return entry_view(entry)


@router.post("/api/accounts/{account_id}/debit", status_code=201)
async def debit_account(
    account_id: str,
    payload: LedgerAdjustmentRequest,
    ledger: Ledger = Depends(get_ledger),
):
    entry = await ledger.debit(
        account_id,
        payload.amount,
        payload.related_generation_id,
        payload.description or "Manual debit",
    )
    return entry_view(entry)


def _scoped_stream(scope: str, db: Database, bus: EventBus) -> StreamingResponse:
    # Listen before replaying so nothing emitted in between is lost; seq drops the overlap.
    async def event_generator():
        with bus.listen(scope) as queue:
            last_seq = 0
            try:
                for ev in await db.list_events(scope):
                    last_seq = ev["seq"]
                    yield sse_format(ev)
                while True:
                    ev = await queue.get()
                    if ev["seq"] <= last_seq:
                        continue
                    last_seq = ev["seq"]
                    yield sse_format(ev)
            except asyncio.CancelledError:
                pass

    return StreamingResponse(event_generator(), media_type="text/event-stream")


@router.get("/api/generations/{generation_id}/events")
async def stream_generation_events(
    generation_id: str,
    db: Database = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
):
    return _scoped_stream(generation_scope(generation_id), db, bus)


@router.get("/api/workflow-runs/{run_id}/events")
async def stream_run_events(
    run_id: str,
    db: Database = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
):
    return _scoped_stream(run_scope(run_id), db, bus)


@router.get("/events")
async def stream_global_events(bus: EventBus = Depends(get_event_bus)):
    async def event_generator():
        with bus.listen() as queue:
            try:
                while True:
                    ev = await queue.get()
                    yield sse_format(ev)
            except asyncio.CancelledError:
                pass

    return StreamingResponse(event_generator(), media_type="text/event-stream")


def _error_response(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": type(exc).__name__, "detail": str(exc)})


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(NotFound)
    async def not_found_handler(request: Request, exc: NotFound):
        return _error_response(404, exc)

    @app.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError):
        return _error_response(422, exc)

    @app.exception_handler(InsufficientFunds)
    async def insufficient_funds_handler(request: Request, exc: InsufficientFunds):
        return _error_response(402, exc)


async def _periodic(name: str, interval_s: float, job: Callable[[], Awaitable[Any]], stop_event: asyncio.Event) -> None:
    while not stop_event.is_set():
        try:
            await job()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Background job %s failed; retrying in %ss", name, interval_s)
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_s)
        except asyncio.TimeoutError:
            continue


def start_workers(app: FastAPI) -> List[asyncio.Task]:
    settings: AppSettings = app.state.settings
    stop_event: asyncio.Event = app.state.stop_event
    return [
        asyncio.create_task(app.state.dispatcher.run_forever(stop_event)),
        asyncio.create_task(_periodic("sweeper", settings.sweep_interval_s, app.state.sweeper.sweep, stop_event)),
        asyncio.create_task(
            _periodic(
                "orphan-retry",
                settings.orphan_retry_interval_s,
                app.state.correlator.retry_orphans,
                stop_event,
            )
        ),
        asyncio.create_task(
            _periodic(
                "settlement-recovery",
                settings.settlement_recovery_interval_s,
                app.state.correlator.recover_settlements,
                stop_event,
            )
        ),
    ]


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    registry: Optional[Any] = None,
    adapters: Optional[Dict[str, Any]] = None,
    input_resolver: Optional[InputResolver] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        await app.state.db.save_config(app.state.settings.to_safe_dict())
        app.state.stop_event = asyncio.Event()
        app.state.worker_tasks = []
        if app.state.settings.workers_enabled:
            await app.state.correlator.recover_settlements()
            await app.state.engine.resume_incomplete_runs()
            app.state.worker_tasks = start_workers(app)
        try:
            yield
        finally:
            app.state.stop_event.set()
            for task in app.state.worker_tasks:
                task.cancel()
            await asyncio.gather(*app.state.worker_tasks, return_exceptions=True)
            await app.state.engine.shutdown()
            if hasattr(app.state.registry, "close"):
                await app.state.registry.close()
            for adapter in app.state.adapters.values():
                if hasattr(adapter, "close"):
                    await adapter.close()

    app = FastAPI(title="Meterflow Orchestration & Accounting", lifespan=lifespan)
    app.state.settings = settings
    app.state.config_path = config_path or CONFIG_PATH
    app.state.db = db or Database(settings.database_path)
    path = app.state.db.path
    app.state.bus = EventBus(app.state.db)
    app.state.generations = GenerationStore(path)
    app.state.runs = RunStore(path)
    app.state.ledger = Ledger(path, money_places=settings.money_places)
    app.state.registry = registry or StaticToolRegistry(
        settings.tools,
        ProviderClient(settings.provider_base_url, settings.provider_api_key, settings.webhook_url()),
    )
    app.state.adapters = adapters if adapters is not None else default_adapters()
    app.state.correlator = WebhookCorrelator(
        app.state.db,
        app.state.generations,
        app.state.ledger,
        app.state.bus,
        settings,
    )
    app.state.engine = WorkflowEngine(
        app.state.generations,
        app.state.runs,
        app.state.registry,
        app.state.bus,
        settings,
        correlator=app.state.correlator,
        input_resolver=input_resolver,
    )
    app.state.sweeper = TimeoutSweeper(app.state.generations, app.state.bus, settings)
    app.state.dispatcher = NotificationDispatcher(
        app.state.generations,
        app.state.runs,
        app.state.adapters,
        app.state.bus,
        settings,
    )
    install_error_handlers(app)
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("METERFLOW_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "meterflow.main:app",
            host=getattr(settings, "host", "0.0.0.0"),
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
