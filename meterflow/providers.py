"""
Provider webhook payloads normalised to ``ProviderEvent``.

Each provider names its statuses differently; parsers map them onto
progress/running/succeeded/failed and pull out the run id, outputs and
failure reason.
"""

from typing import Any, Callable, Dict, Optional

from .errors import ValidationError
from .schemas import ProviderEvent

PROGRESS_STATUSES = {"queued", "started", "uploading", "not-started"}
RUNNING_STATUSES = {"running"}
SUCCESS_STATUSES = {"success", "succeeded", "completed"}
FAILURE_STATUSES = {"failed", "error", "cancelled", "canceled", "timeout"}
UNKNOWN_FAILURE = "Unknown error from provider"


def normalize_status(raw: Any) -> Optional[str]:
    status = str(raw or "").strip().lower()
    if status in RUNNING_STATUSES:
        return "running"
    if status in PROGRESS_STATUSES:
        return "progress"
    if status in SUCCESS_STATUSES:
        return "succeeded"
    if status in FAILURE_STATUSES:
        return "failed"
    return None


def _failure_reason(payload: Dict[str, Any]) -> str:
    for key in ("error_details", "error"):
        value = payload.get(key)
        if value:
            return value if isinstance(value, str) else str(value)
    return UNKNOWN_FAILURE


def _progress(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _build_event(run_id: Any, raw_status: Any, payload: Dict[str, Any], outputs: Any) -> ProviderEvent:
    if not run_id or not raw_status:
        raise ValidationError("Webhook payload needs a run id and a status")
    status = normalize_status(raw_status)
    if status is None:
        raise ValidationError(f"Unrecognised provider status: {raw_status}")
    return ProviderEvent(
        external_run_id=str(run_id),
        status=status,
        outputs=outputs if status == "succeeded" else None,
        failure_reason=_failure_reason(payload) if status == "failed" else None,
        timestamp=payload.get("timestamp"),
        progress=_progress(payload.get("progress")),
        live_status=payload.get("live_status"),
        raw_status=str(raw_status),
    )


def parse_comfydeploy(payload: Dict[str, Any]) -> ProviderEvent:
    return _build_event(payload.get("run_id"), payload.get("status"), payload, payload.get("outputs"))


def parse_generic(payload: Dict[str, Any]) -> ProviderEvent:
    run_id = payload.get("external_run_id") or payload.get("run_id") or payload.get("id")
    outputs = payload.get("outputs", payload.get("output"))
    return _build_event(run_id, payload.get("status"), payload, outputs)


PARSERS: Dict[str, Callable[[Dict[str, Any]], ProviderEvent]] = {
    "comfydeploy": parse_comfydeploy,
    "generic": parse_generic,
}


def parse_webhook(provider: str, payload: Any) -> ProviderEvent:
    parser = PARSERS.get(str(provider or "").lower())
    if parser is None:
        raise ValidationError(f"Unknown webhook provider: {provider}")
    if not isinstance(payload, dict):
        raise ValidationError("Webhook payload must be a JSON object")
    return parser(payload)
