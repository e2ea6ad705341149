from pathlib import Path
from types import SimpleNamespace

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from meterflow.config import AppSettings
from meterflow.correlator import WebhookCorrelator
from meterflow.db import Database
from meterflow.dispatcher import NotificationDispatcher
from meterflow.engine import WorkflowEngine
from meterflow.events import EventBus
from meterflow.generation_store import GenerationStore
from meterflow.ledger import Ledger
from meterflow.main import create_app
from meterflow.run_store import RunStore
from meterflow.sweeper import TimeoutSweeper
from tests.fakes import FakeDeliveryAdapter, FakeToolRegistry


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        database_path=str(tmp_path / "test.db"),
        host="127.0.0.1",
        port=8000,
        creator_fee_pct=0.0,
        engine_poll_interval_s=0.05,
        workers_enabled=False,
        dispatch_interval_s=0.05,
        orphan_retry_interval_s=0.0,
        provider_base_url="http://provider.test",
        provider_api_key=None,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
async def services_factory(tmp_path: Path):
    engines = []

    async def _factory(*, registry=None, adapters=None, input_resolver=None, **overrides):
        settings = make_settings(tmp_path, **overrides)
        db = Database(settings.database_path)
        await db.init()
        bus = EventBus(db)
        store = GenerationStore(db.path)
        runs = RunStore(db.path)
        ledger = Ledger(db.path, money_places=settings.money_places)
        registry = registry or FakeToolRegistry()
        adapter = FakeDeliveryAdapter()
        adapters = adapters if adapters is not None else {"fake": adapter}
        correlator = WebhookCorrelator(db, store, ledger, bus, settings)
        engine = WorkflowEngine(
            store,
            runs,
            registry,
            bus,
            settings,
            correlator=correlator,
            input_resolver=input_resolver,
        )
        engines.append(engine)
        return SimpleNamespace(
            settings=settings,
            db=db,
            bus=bus,
            store=store,
            runs=runs,
            ledger=ledger,
            registry=registry,
            adapter=adapter,
            correlator=correlator,
            engine=engine,
            sweeper=TimeoutSweeper(store, bus, settings),
            dispatcher=NotificationDispatcher(store, runs, adapters, bus, settings),
        )

    yield _factory
    for engine in engines:
        await engine.shutdown()


@pytest.fixture
async def services(services_factory):
    return await services_factory()


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        registry: FakeToolRegistry | None = None,
        adapter: FakeDeliveryAdapter | None = None,
        config_path: Path | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        registry = registry or FakeToolRegistry()
        adapter = adapter or FakeDeliveryAdapter()
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(settings, registry=registry, adapters={"fake": adapter}, config_path=cfg_path)
        return app, cfg_path, registry, adapter

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config_path, registry, adapter = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.config_path = config_path  # type: ignore[attr-defined]
            http_client.registry = registry  # type: ignore[attr-defined]
            http_client.adapter = adapter  # type: ignore[attr-defined]
            yield http_client
