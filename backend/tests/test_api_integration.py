from __future__ import annotations

import pytest

from tests.testkit import ApiError


def test_health(api):
    assert api.call("GET", "/health") == {"ok": True}


@pytest.mark.parametrize(
    "method, path",
    [
        ("GET", "/billing/overview"),
        ("GET", "/billing/invoices"),
        ("POST", "/premium/purchase-with-balance"),
        ("GET", "/entitlements/me"),
    ],
)
def test_billing_routes_require_identity(api, method, path):
    with pytest.raises(ApiError) as err:
        api.call(method, path)
    assert err.value.status_code == 401
    assert err.value.payload == {"error": "Unauthorized"}


def test_webhook_rejects_unsigned_payload(api):
    with pytest.raises(ApiError) as err:
        api.call("POST", "/billing/webhooks/stripe", body={"id": "evt_x", "type": "invoice.paid"})
    assert err.value.status_code == 400
