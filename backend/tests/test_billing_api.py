from __future__ import annotations

import json

from app.core.config import settings
from app.services import billing_store


def _link(db, provider, user, **kwargs) -> str:
    customer_id = provider.add_customer(email=user.email, **kwargs)
    billing_store.upsert_customer_link(db, user.id, customer_id)
    db.commit()
    return customer_id


def test_overview_requires_identity(client):
    res = client.get("/billing/overview")
    assert res.status_code == 401
    assert res.json() == {"error": "Unauthorized"}


def test_overview_rejects_bad_token(client):
    res = client.get("/billing/overview", headers={"Authorization": "Bearer not-a-jwt"})
    assert res.status_code == 401


def test_not_configured_is_reported_before_identity(db, jwt_secret, monkeypatch):
    from fastapi.testclient import TestClient

    from app.db.session import get_db
    from app.main import app

    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", None)
    app.dependency_overrides[get_db] = lambda: db
    try:
        with TestClient(app, base_url="http://localhost") as test_client:
            res = test_client.get("/billing/overview")
    finally:
        app.dependency_overrides.clear()

    assert res.status_code == 500
    assert res.json() == {"error": "Stripe not configured"}


def test_overview_maps_transaction_signs(client, db, provider, user, auth_headers):
    customer_id = _link(db, provider, user)
    provider.create_balance_transaction(customer_id, amount=-500, currency="usd", description="Account credit")
    provider.now += 60
    provider.create_balance_transaction(customer_id, amount=1999, currency="usd", description="1 x PropEdge Premium")

    res = client.get("/billing/overview", headers=auth_headers)

    assert res.status_code == 200
    body = res.json()
    assert body["balance"] == 1499
    assert body["subscription"] is None
    assert "debug" not in body
    debit, credit = body["transactions"]
    assert debit["type"] == "debit"
    assert debit["amount"] == 19.99
    assert debit["currency"] == "USD"
    assert credit["type"] == "credit"
    assert credit["amount"] == 5.00
    assert len(credit["date"]) == 10
    assert credit["dateTime"].startswith(credit["date"])


def test_overview_without_customer(client, auth_headers):
    res = client.get("/billing/overview", headers=auth_headers)

    assert res.status_code == 200
    assert res.json() == {"transactions": [], "balance": None, "subscription": None}


def test_overview_runs_backfill_and_reports_subscription(client, db, provider, user, auth_headers):
    customer_id = _link(db, provider, user)
    provider.add_session(
        customer=customer_id,
        created=provider.now - 3600,
        amount_total=2000,
        metadata={"user_id": user.id, "type": "balance_credit", "amount_cents": "2000"},
    )
    provider.add_subscription(customer=customer_id, unit_amount=1999, period_end=provider.now + 30 * 86400)

    body = client.get("/billing/overview", headers=auth_headers).json()

    assert body["balance"] == -2000
    assert body["subscription"]["status"] == "active"
    assert [t["type"] for t in body["transactions"]] == ["credit"]
    assert billing_store.get_profile(db, user.id)["is_premium"] is True


def test_overview_keeps_captured_balance_after_self_heal(client, db, provider, user, auth_headers):
    old_id = _link(db, provider, user)
    provider.create_balance_transaction(old_id, amount=-4000, currency="usd", description="Account credit")
    provider.delete_customer(old_id)

    body = client.get("/billing/overview", headers=auth_headers).json()

    assert body["balance"] == -4000
    assert billing_store.get_customer_link(db, user.id) not in (None, old_id)


def test_overview_debug_block_is_flag_gated(client, db, provider, user, auth_headers, monkeypatch):
    _link(db, provider, user)

    assert "debug" not in client.get("/billing/overview?debug=true", headers=auth_headers).json()

    monkeypatch.setattr(settings, "BILLING_DEBUG_ENABLED", True)
    body = client.get("/billing/overview?debug=true", headers=auth_headers).json()
    assert body["debug"]["resolved_via"] == "link"


def test_overview_survives_provider_outage(client, db, provider, user, auth_headers):
    _link(db, provider, user)
    for op in (
        "customers.retrieve",
        "customers.list_balance_transactions",
        "invoices.list",
        "subscriptions.list",
        "checkout.sessions.list",
    ):
        provider.fail(op)

    res = client.get("/billing/overview", headers=auth_headers)

    assert res.status_code == 200
    assert res.json() == {"transactions": [], "balance": None, "subscription": None}


def test_invoices_endpoint_lists_synced_invoices(client, db, provider, user, auth_headers):
    customer_id = _link(db, provider, user)
    provider.add_invoice(customer=customer_id, amount_paid=1999)

    body = client.get("/billing/invoices", headers=auth_headers).json()

    assert len(body["invoices"]) == 1
    assert body["invoices"][0]["amount"] == 19.99
    assert body["invoices"][0]["currency"] == "USD"


def test_purchase_with_balance_route(client, db, provider, user, auth_headers):
    customer_id = _link(db, provider, user, balance=-1999)

    res = client.post("/premium/purchase-with-balance", headers=auth_headers)

    assert res.status_code == 200
    assert res.json()["success"] is True
    assert provider.customers[customer_id]["balance"] == 0
    me = client.get("/entitlements/me", headers=auth_headers).json()
    assert me["is_premium"] is True
    assert me["entitlement_source"] == "balance"


def test_purchase_with_balance_route_errors(client, db, provider, user, auth_headers):
    res = client.post("/premium/purchase-with-balance", headers=auth_headers)
    assert res.status_code == 400
    assert res.json() == {"error": "No payment method on file. Add balance first."}

    _link(db, provider, user, balance=-1998)
    res = client.post("/premium/purchase-with-balance", headers=auth_headers)
    assert res.status_code == 400
    assert res.json() == {"error": "Insufficient balance. Need $19.99. Add balance first."}

    assert client.post("/premium/purchase-with-balance").status_code == 401


def test_purchase_debit_failure_is_500(client, db, provider, user, auth_headers):
    _link(db, provider, user, balance=-5000)
    provider.fail("customers.create_balance_transaction")

    res = client.post("/premium/purchase-with-balance", headers=auth_headers)

    assert res.status_code == 500
    assert res.json() == {"error": "Purchase failed"}


def test_checkout_mints_customer_when_missing(client, db, provider, user, auth_headers):
    res = client.post("/billing/checkout", headers=auth_headers)

    assert res.status_code == 200
    assert res.json()["url"].startswith("https://checkout.test/")
    params = provider.checkout_requests[0]
    assert params["mode"] == "subscription"
    assert params["line_items"][0]["price_data"]["unit_amount"] == 1999
    assert params["metadata"] == {"user_id": user.id}
    assert params["subscription_data"] == {"metadata": {"user_id": user.id}}
    assert billing_store.get_customer_link(db, user.id) == params["customer"]


def test_charge_balance_enforces_minimum(client, provider, auth_headers):
    res = client.post("/billing/charge-balance", headers=auth_headers, json={"amount": 5})
    assert res.status_code == 400
    assert res.json() == {"error": "Minimum charge is $10"}

    res = client.post("/billing/charge-balance", headers=auth_headers, json={"amount": 25})
    assert res.status_code == 200
    params = provider.checkout_requests[-1]
    assert params["mode"] == "payment"
    assert params["metadata"]["type"] == "balance_credit"
    assert params["metadata"]["amount_cents"] == "2500"


def test_portal_requires_linked_customer(client, db, provider, user, auth_headers):
    res = client.post("/billing/portal", headers=auth_headers)
    assert res.status_code == 400

    customer_id = _link(db, provider, user)
    res = client.post("/billing/portal", headers=auth_headers)
    assert res.status_code == 200
    assert res.json()["url"].endswith(customer_id)


def _event(event_id: str, event_type: str, obj: dict) -> bytes:
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}}).encode()


def test_webhook_rejects_bad_signature(client):
    res = client.post(
        "/billing/webhooks/stripe",
        content=_event("evt_1", "invoice.paid", {}),
        headers={"stripe-signature": "forged"},
    )
    assert res.status_code == 400


def test_webhook_credits_balance_once(client, db, provider, user):
    customer_id = provider.add_customer(email=user.email)
    session = {
        "id": "cs_live_1",
        "customer": customer_id,
        "status": "complete",
        "amount_total": 3000,
        "currency": "usd",
        "metadata": {"user_id": user.id, "type": "balance_credit", "amount_cents": "3000"},
    }
    payload = _event("evt_checkout_1", "checkout.session.completed", session)

    first = client.post("/billing/webhooks/stripe", content=payload, headers={"stripe-signature": "valid"})
    second = client.post("/billing/webhooks/stripe", content=payload, headers={"stripe-signature": "valid"})

    assert first.json()["status"] == "processed"
    assert first.json()["duplicate"] is False
    assert second.json()["duplicate"] is True
    assert provider.customers[customer_id]["balance"] == -3000
    assert billing_store.get_customer_link(db, user.id) == customer_id


def test_webhook_subscription_lifecycle(client, db, provider, user):
    customer_id = provider.add_customer(email=user.email)
    sub = provider.add_subscription(
        customer=customer_id,
        unit_amount=1999,
        period_end=provider.now + 30 * 86400,
        metadata={"user_id": user.id},
    )

    client.post(
        "/billing/webhooks/stripe",
        content=_event("evt_sub_1", "customer.subscription.created", sub),
        headers={"stripe-signature": "valid"},
    )
    assert billing_store.get_profile(db, user.id)["entitlement_source"] == "subscription"

    client.post(
        "/billing/webhooks/stripe",
        content=_event("evt_sub_2", "customer.subscription.deleted", {**sub, "status": "canceled"}),
        headers={"stripe-signature": "valid"},
    )
    assert billing_store.get_profile(db, user.id)["is_premium"] is False


def test_webhook_subscription_delete_keeps_balance_premium(client, db, provider, user, auth_headers):
    customer_id = _link(db, provider, user, balance=-1999)
    assert client.post("/premium/purchase-with-balance", headers=auth_headers).status_code == 200
    sub = provider.add_subscription(
        customer=customer_id,
        unit_amount=1999,
        period_end=provider.now + 30 * 86400,
        metadata={"user_id": user.id},
    )

    for event_id, event_type, obj in (
        ("evt_bal_1", "customer.subscription.created", sub),
        ("evt_bal_2", "customer.subscription.deleted", {**sub, "status": "canceled"}),
    ):
        res = client.post(
            "/billing/webhooks/stripe",
            content=_event(event_id, event_type, obj),
            headers={"stripe-signature": "valid"},
        )
        assert res.json()["status"] == "ignored"

    me = client.get("/entitlements/me", headers=auth_headers).json()
    assert me["is_premium"] is True
    assert me["entitlement_source"] == "balance"


def test_webhook_invoice_paid_resolves_user_from_customer_metadata(client, db, provider, user):
    customer_id = provider.add_customer(email=user.email, metadata={"supabase_user_id": user.id})
    invoice = provider.add_invoice(customer=customer_id, amount_paid=1999)

    res = client.post(
        "/billing/webhooks/stripe",
        content=_event("evt_inv_1", "invoice.paid", invoice),
        headers={"stripe-signature": "valid"},
    )

    assert res.json()["status"] == "processed"
    assert billing_store.get_invoice(db, invoice["id"])["user_id"] == user.id
    assert billing_store.get_customer_link(db, user.id) == customer_id


def test_reconcile_is_dev_only(client, auth_headers, monkeypatch):
    assert client.post("/billing/reconcile", headers=auth_headers).status_code == 404

    monkeypatch.setattr(settings, "ENV", "dev")
    res = client.post("/billing/reconcile", headers=auth_headers)
    assert res.status_code == 200
    assert res.json()["processed"] == 0


def test_health(client):
    assert client.get("/health").json() == {"ok": True}
