import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "METERFLOW_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}


class CostRateConfig(BaseModel):
    amount: str = "0"
    unit: str = "second"


class ToolConfig(BaseModel):
    endpoint: str = ""
    cost_rate: CostRateConfig = Field(default_factory=CostRateConfig)
    owners: List[str] = Field(default_factory=list)
    display_name: Optional[str] = None


class AppSettings(BaseModel):
    database_path: str = "meterflow.db"
    host: str = "0.0.0.0"
    port: int = 8000

    # Accounting
    money_places: int = 6
    creator_fee_pct: float = 0.20

    # Engine
    default_output_field: str = "output"
    engine_poll_interval_s: float = 1.0

    # Timeouts and background workers
    workers_enabled: bool = True
    step_timeout_s: int = 15 * 60
    sweep_interval_s: float = 30.0
    dispatch_interval_s: float = 2.0
    dispatch_batch_size: int = 50
    delivery_lease_s: int = 60
    max_delivery_attempts: int = 3
    orphan_retry_window_s: int = 120
    orphan_retry_interval_s: float = 5.0
    settlement_claim_grace_s: int = 60
    settlement_recovery_interval_s: float = 30.0

    # External compute provider
    provider_base_url: str = "http://127.0.0.1:9000"
    provider_name: str = "comfydeploy"
    provider_api_key: Optional[str] = None
    public_base_url: Optional[str] = None
    tools: Dict[str, ToolConfig] = Field(default_factory=dict)

    def webhook_url(self) -> Optional[str]:
        if not self.public_base_url:
            return None
        return f"{self.public_base_url.rstrip('/')}/api/webhooks/{self.provider_name}"

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        if data.get("provider_api_key"):
            data["provider_api_key"] = "********"
        return data


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "database_path": os.getenv("DATABASE_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "money_places": os.getenv("MONEY_PLACES"),
        "creator_fee_pct": os.getenv("CREATOR_FEE_PCT"),
        "default_output_field": os.getenv("DEFAULT_OUTPUT_FIELD"),
        "workers_enabled": os.getenv("WORKERS_ENABLED"),
        "step_timeout_s": os.getenv("STEP_TIMEOUT_S"),
        "sweep_interval_s": os.getenv("SWEEP_INTERVAL_S"),
        "dispatch_interval_s": os.getenv("DISPATCH_INTERVAL_S"),
        "max_delivery_attempts": os.getenv("MAX_DELIVERY_ATTEMPTS"),
        "orphan_retry_window_s": os.getenv("ORPHAN_RETRY_WINDOW_S"),
        "provider_base_url": os.getenv("PROVIDER_BASE_URL"),
        "provider_name": os.getenv("PROVIDER_NAME"),
        "provider_api_key": os.getenv("PROVIDER_API_KEY"),
        "public_base_url": os.getenv("PUBLIC_BASE_URL"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in ("port", "money_places", "step_timeout_s", "max_delivery_attempts", "orphan_retry_window_s"):
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    for key in ("creator_fee_pct", "sweep_interval_s", "dispatch_interval_s"):
        if key in cleaned:
            cleaned[key] = float(cleaned[key])
    if "workers_enabled" in cleaned:
        cleaned["workers_enabled"] = str(cleaned["workers_enabled"]).lower() in ENV_OVERRIDE_TRUE
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except ValueError:
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    if not merged.get("provider_api_key") and env_data.get("provider_api_key"):
        merged["provider_api_key"] = env_data["provider_api_key"]
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
