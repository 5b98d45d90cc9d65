from __future__ import annotations

from app.services import billing_store
from app.services.customer_resolver import ResolvedCustomer
from app.services.entitlements import (
    clear_subscription_entitlement,
    derive_entitlement,
    get_entitlement,
    grant_balance_entitlement,
    subscription_qualifies,
)

THIRTY_DAYS = 30 * 86400


def _resolved(customer_id: str, **kwargs) -> ResolvedCustomer:
    return ResolvedCustomer(customer_id=customer_id, source="link", **kwargs)


def test_qualifying_subscription_grants_premium(db, provider, user):
    customer_id = provider.add_customer(email=user.email, balance=-300)
    provider.add_subscription(customer=customer_id, unit_amount=1999, period_end=provider.now + THIRTY_DAYS)

    result = derive_entitlement(db, provider, user, _resolved(customer_id))

    assert result.is_premium is True
    assert result.subscription_amount_cents == 1999
    assert result.entitlement_source == "subscription"
    assert result.subscription["status"] == "active"
    assert result.subscription["currentPeriodEnd"] is not None
    assert result.balance == -300
    stored = billing_store.get_profile(db, user.id)
    assert stored["is_premium"] is True
    assert stored["subscription_amount_cents"] == 1999


def test_underpriced_subscription_does_not_qualify(db, provider, user):
    customer_id = provider.add_customer(email=user.email)
    provider.add_subscription(customer=customer_id, unit_amount=500, period_end=provider.now + THIRTY_DAYS)

    result = derive_entitlement(db, provider, user, _resolved(customer_id))

    assert result.is_premium is False
    assert result.subscription_amount_cents is None
    assert billing_store.get_profile(db, user.id)["is_premium"] is False


def test_expired_period_does_not_qualify():
    sub = {
        "status": "active",
        "current_period_end": 1_000,
        "items": {"data": [{"price": {"unit_amount": 1999}}]},
    }
    assert subscription_qualifies(sub) is False


def test_price_falls_back_to_plan_amount():
    sub = {"status": "active", "current_period_end": 4_102_444_800, "items": {"data": []}, "plan": {"amount": 2499}}
    assert subscription_qualifies(sub) is True


def test_no_subscription_never_downgrades_balance_premium(db, provider, user):
    customer_id = provider.add_customer(email=user.email)
    grant_balance_entitlement(db, user.id)

    result = derive_entitlement(db, provider, user, _resolved(customer_id))

    assert result.is_premium is True
    assert result.entitlement_source == "balance"
    assert result.subscription is None


def test_no_subscription_does_not_persist_false(db, provider, user):
    customer_id = provider.add_customer(email=user.email)

    derive_entitlement(db, provider, user, _resolved(customer_id))

    assert billing_store.get_profile(db, user.id) is None


def test_non_qualifying_subscription_keeps_balance_grant(db, provider, user):
    customer_id = provider.add_customer(email=user.email)
    provider.add_subscription(customer=customer_id, unit_amount=500, period_end=provider.now + THIRTY_DAYS)
    grant_balance_entitlement(db, user.id)

    result = derive_entitlement(db, provider, user, _resolved(customer_id))

    assert result.is_premium is True
    assert result.entitlement_source == "balance"


def test_subscription_lookup_failure_keeps_stored_flags(db, provider, user):
    customer_id = provider.add_customer(email=user.email)
    billing_store.save_entitlement(
        db, user.id, is_premium=True, subscription_amount_cents=1999, entitlement_source="subscription"
    )
    provider.fail("subscriptions.list")

    result = derive_entitlement(db, provider, user, _resolved(customer_id))

    assert result.is_premium is True


def test_captured_balance_overrides_fresh_read(db, provider, user):
    customer_id = provider.add_customer(email=user.email, balance=0)

    result = derive_entitlement(db, provider, user, _resolved(customer_id, balance_override=-2500))

    assert result.balance == -2500
    assert provider.count("customers.retrieve") == 0


def test_clear_only_drops_subscription_grants(db, user):
    grant_balance_entitlement(db, user.id)
    assert clear_subscription_entitlement(db, user.id) is False
    assert get_entitlement(db, user.id)["is_premium"] is True

    billing_store.save_entitlement(
        db, user.id, is_premium=True, subscription_amount_cents=1999, entitlement_source="subscription"
    )
    assert clear_subscription_entitlement(db, user.id) is True
    current = get_entitlement(db, user.id)
    assert current["is_premium"] is False
    assert current["subscription_amount_cents"] is None
    assert current["entitlement_source"] is None


def test_without_customer_reports_stored_state(db, provider, user):
    result = derive_entitlement(db, provider, user, None)

    assert result.is_premium is False
    assert result.balance is None
    assert provider.calls == []


def test_subscription_does_not_replace_balance_grant(db, provider, user):
    from app.services.billing import _handle_subscription_change

    customer_id = provider.add_customer(email=user.email)
    grant_balance_entitlement(db, user.id)
    sub = provider.add_subscription(
        customer=customer_id,
        unit_amount=1999,
        period_end=provider.now + THIRTY_DAYS,
        metadata={"user_id": user.id},
    )

    result = derive_entitlement(db, provider, user, _resolved(customer_id))
    assert result.is_premium is True
    assert result.entitlement_source == "balance"

    status, _ = _handle_subscription_change(db, provider, "customer.subscription.deleted", {**sub, "status": "canceled"})

    assert status == "ignored"
    current = get_entitlement(db, user.id)
    assert current["is_premium"] is True
    assert current["entitlement_source"] == "balance"
