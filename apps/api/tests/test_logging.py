from datetime import datetime, timezone
from types import SimpleNamespace

from giftcard_api.core.logging import build_log_payload, redact


def test_redact_masks_codes_and_credentials():
    values = {
        "claim_id": "c-1",
        "code": "AMZN-1234",
        "pin": None,
        "request": {"brand": "amazon", "api_key": "k"},
    }

    assert redact(values) == {
        "claim_id": "c-1",
        "code": "***",
        "pin": None,
        "request": {"brand": "amazon", "api_key": "***"},
    }


def test_build_log_payload_includes_metadata_and_extra():
    record = {
        "time": datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc),
        "level": SimpleNamespace(name="WARNING"),
        "message": "Supplier purchase failed",
        "name": "giftcard_api.services.provisioning.adapter",
        "extra": {"kind": "supplier_unavailable", "source_code": "SECRET"},
        "exception": None,
    }

    payload = build_log_payload(record, {"service_name": "giftcard-api", "environment": "development"})

    assert payload["level"] == "warning"
    assert payload["service"] == "giftcard-api"
    assert payload["version"] == "unknown"
    assert payload["kind"] == "supplier_unavailable"
    assert payload["source_code"] == "***"
    assert "trace_id" not in payload
