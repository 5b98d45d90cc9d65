from __future__ import annotations

import json
import logging

from app.core.logging import JSONFormatter, RedactingFormatter, redact


def _record(msg: str, **extra) -> logging.LogRecord:
    record = logging.LogRecord("app.services.billing", logging.INFO, __file__, 10, msg, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_redact_masks_provider_secrets():
    assert redact("key sk_live_51Habc123") == "key [REDACTED]"
    assert redact({"secret": "whsec_abc", "n": 3}) == {"secret": "[REDACTED]", "n": 3}
    assert redact(["Bearer eyJhbGciOi"]) == ["[REDACTED]"]


def test_json_formatter_includes_extras():
    line = JSONFormatter().format(_record("balance credit applied", customer_id="cus_1", amount_cents=2500))
    data = json.loads(line)

    assert data["message"] == "balance credit applied"
    assert data["level"] == "INFO"
    assert data["logger"] == "app.services.billing"
    assert data["customer_id"] == "cus_1"
    assert data["amount_cents"] == 2500


def test_json_formatter_redacts_extras():
    data = json.loads(JSONFormatter().format(_record("provider call", error="bad key sk_test_xyz")))

    assert data["error"] == "bad key [REDACTED]"


def test_text_formatter_redacts_message():
    out = RedactingFormatter("%(message)s").format(_record("Authorization: Bearer abc.def"))

    assert out == "Authorization: [REDACTED]"
