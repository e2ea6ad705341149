import pytest

from meterflow.errors import ValidationError
from meterflow.providers import normalize_status, parse_webhook


def test_status_vocabulary():
    assert normalize_status("Running") == "running"
    for raw in ("queued", "started", "uploading", "not-started"):
        assert normalize_status(raw) == "progress"
    for raw in ("success", "succeeded", "completed"):
        assert normalize_status(raw) == "succeeded"
    for raw in ("failed", "error", "cancelled", "timeout"):
        assert normalize_status(raw) == "failed"
    assert normalize_status("exploded") is None
    assert normalize_status(None) is None


def test_comfydeploy_success_carries_outputs():
    event = parse_webhook(
        "comfydeploy",
        {"run_id": "ext-1", "status": "success", "outputs": [{"url": "a.png"}], "timestamp": "2026-01-01T00:00:10Z"},
    )
    assert event.external_run_id == "ext-1"
    assert event.status == "succeeded"
    assert event.outputs == [{"url": "a.png"}]
    assert event.failure_reason is None
    assert event.timestamp == "2026-01-01T00:00:10Z"


def test_failure_reason_precedence():
    detailed = parse_webhook("comfydeploy", {"run_id": "x", "status": "failed", "error_details": "OOM", "error": "e"})
    assert detailed.failure_reason == "OOM"
    plain = parse_webhook("comfydeploy", {"run_id": "x", "status": "error", "error": "bad input"})
    assert plain.failure_reason == "bad input"
    bare = parse_webhook("comfydeploy", {"run_id": "x", "status": "failed", "outputs": {"ignored": True}})
    assert bare.failure_reason == "Unknown error from provider"
    assert bare.outputs is None


def test_progress_events_keep_live_status():
    event = parse_webhook("comfydeploy", {"run_id": "x", "status": "uploading", "progress": "0.4", "live_status": "KSampler"})
    assert event.status == "progress"
    assert event.progress == 0.4
    assert event.live_status == "KSampler"
    assert event.raw_status == "uploading"


def test_generic_provider_accepts_alternate_keys():
    event = parse_webhook("generic", {"id": "job-9", "status": "completed", "output": {"text": "hi"}})
    assert event.external_run_id == "job-9"
    assert event.outputs == {"text": "hi"}


def test_malformed_payloads_are_rejected():
    with pytest.raises(ValidationError):
        parse_webhook("comfydeploy", "nope")
    with pytest.raises(ValidationError):
        parse_webhook("comfydeploy", {"status": "success"})
    with pytest.raises(ValidationError):
        parse_webhook("comfydeploy", {"run_id": "x", "status": "exploded"})
    with pytest.raises(ValidationError):
        parse_webhook("unknown", {"run_id": "x", "status": "success"})
