from __future__ import annotations

import json
import logging

from clinic.core.logging import (
    JsonLogFormatter,
    error_fields,
    redact,
    set_correlation_id,
)


def test_redact_masks_credentials_at_any_depth() -> None:
    payload = {
        "email": "doc@clinic.local",
        "password": "secret-pass",
        "nested": {"refreshToken": "r1", "items": [{"Authorization": "Bearer x"}]},
    }

    redacted = redact(payload)

    assert redacted["email"] == "doc@clinic.local"
    assert redacted["password"] == "[REDACTED]"
    assert redacted["nested"]["refreshToken"] == "[REDACTED]"
    assert redacted["nested"]["items"][0]["Authorization"] == "[REDACTED]"
    assert payload["password"] == "secret-pass"


def test_redact_truncates_deep_structures() -> None:
    deep: dict = {"a": {"b": {"c": {"d": {"e": {"f": 1}}}}}}

    assert redact(deep)["a"]["b"]["c"]["d"]["e"] == "[TRUNCATED]"


def test_json_formatter_emits_correlation_id_and_extras() -> None:
    set_correlation_id("req-42")
    record = logging.LogRecord("clinic", logging.INFO, __file__, 1, "realtime_connect", None, None)
    record.connection_id = "c1"
    record.details = {"token": "abc", "has_token": True}

    line = json.loads(JsonLogFormatter().format(record))

    assert line["message"] == "realtime_connect"
    assert line["correlation_id"] == "req-42"
    assert line["connection_id"] == "c1"
    assert line["details"] == {"token": "[REDACTED]", "has_token": True}
    assert "user_id" not in line


def test_error_fields_names_exception() -> None:
    assert error_fields(ValueError("bad")) == {"error_name": "ValueError", "error_message": "bad"}
