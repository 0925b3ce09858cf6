from __future__ import annotations

from pygps51._redact import redact_for_log, redact_url


def test_redact_for_log_redacts_sensitive_keys() -> None:
    payload = {
        "status": 0,
        "token": "abc123",
        "records": [{"deviceid": "D1", "simnum": "13800000000"}],
        "nested": {"Password": "pw"},
    }

    redacted = redact_for_log(payload)
    assert redacted["status"] == 0
    assert redacted["token"] == "<redacted>"
    assert redacted["records"][0]["simnum"] == "<redacted>"
    assert redacted["records"][0]["deviceid"] == "D1"
    assert redacted["nested"]["Password"] == "<redacted>"


def test_redact_for_log_truncates_long_strings() -> None:
    long_value = "x" * 600
    redacted = redact_for_log({"value": long_value}, max_string=10)
    assert redacted["value"].startswith("x" * 10)
    assert "<truncated>" in redacted["value"]


def test_redact_for_log_truncates_long_batches() -> None:
    redacted = redact_for_log({"records": list(range(25))}, max_items=20)
    assert redacted["records"][:20] == list(range(20))
    assert redacted["records"][-1] == "<+5 more>"


def test_redact_url_masks_token() -> None:
    url = "https://api.gps51.com/openapi?action=lastposition&token=SECRET&serverid=1"
    assert redact_url(url) == "https://api.gps51.com/openapi?action=lastposition&token=<redacted>&serverid=1"
