import json

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from meterflow.config import AppSettings, load_settings


@pytest.mark.asyncio
async def test_get_settings_masks_provider_key(app_factory):
    app, _, _, _ = app_factory(provider_api_key="secret-key")
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.get("/settings")
            assert res.status_code == 200
            data = res.json()
            assert data["settings"]["provider_api_key"] == "********"


@pytest.mark.asyncio
async def test_post_settings_persists_config_and_db(app_factory):
    app, config_path, _, _ = app_factory()
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            db = app.state.db
            before = await db.fetchone("SELECT COUNT(*) as cnt FROM configs")
            res = await client.post("/settings", json={"creator_fee_pct": 0.1, "provider_api_key": "new-key"})
            assert res.status_code == 200
            after = await db.fetchone("SELECT COUNT(*) as cnt FROM configs")
            assert after["cnt"] == before["cnt"] + 1
            # Running components see the new values without a restart.
            assert app.state.correlator.settings.creator_fee_pct == 0.1

    saved = json.loads(config_path.read_text())
    assert saved["provider_api_key"] == "new-key"
    assert saved["creator_fee_pct"] == 0.1


def test_config_precedence_configjson_wins_by_default(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"provider_base_url": "http://config"}))
    monkeypatch.setenv("PROVIDER_BASE_URL", "http://env")
    monkeypatch.delenv("METERFLOW_ENV_OVERRIDES_CONFIG", raising=False)
    settings = load_settings(config_path=config_path)
    assert settings.provider_base_url == "http://config"


def test_env_override_when_meterflow_env_override_set(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"provider_base_url": "http://config"}))
    monkeypatch.setenv("PROVIDER_BASE_URL", "http://env")
    monkeypatch.setenv("METERFLOW_ENV_OVERRIDES_CONFIG", "1")
    settings = load_settings(config_path=config_path)
    assert settings.provider_base_url == "http://env"


def test_env_values_are_coerced(tmp_path, monkeypatch):
    monkeypatch.setenv("CREATOR_FEE_PCT", "0.15")
    monkeypatch.setenv("MAX_DELIVERY_ATTEMPTS", "7")
    monkeypatch.setenv("WORKERS_ENABLED", "no")
    settings = load_settings(config_path=tmp_path / "absent.json")
    assert settings.creator_fee_pct == 0.15
    assert settings.max_delivery_attempts == 7
    assert settings.workers_enabled is False


def test_webhook_url_follows_public_base_url():
    assert AppSettings().webhook_url() is None
    settings = AppSettings(public_base_url="https://meter.example/", provider_name="comfydeploy")
    assert settings.webhook_url() == "https://meter.example/api/webhooks/comfydeploy"
