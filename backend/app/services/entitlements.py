from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.security import CurrentUser, now_utc
from app.services import billing_store
from app.services.billing_provider import BillingProvider, BillingProviderError
from app.services.customer_resolver import ResolvedCustomer
from app.services.invoice_sync import epoch_to_datetime

logger = logging.getLogger(__name__)

SOURCE_SUBSCRIPTION = "subscription"
SOURCE_BALANCE = "balance"


@dataclass
class EntitlementResult:
    is_premium: bool
    subscription_amount_cents: int | None
    entitlement_source: str | None
    subscription: dict | None
    balance: int | None


def subscription_period_end(subscription: dict) -> int | None:
    value = subscription.get("current_period_end")
    if not value:
        items = (subscription.get("items") or {}).get("data") or []
        value = items[0].get("current_period_end") if items else None
    return int(value) if value else None


def subscription_price_cents(subscription: dict) -> int | None:
    items = (subscription.get("items") or {}).get("data") or []
    if items:
        price = items[0].get("price") or {}
        if price.get("unit_amount") is not None:
            return int(price["unit_amount"])
    plan = subscription.get("plan") or {}
    if plan.get("amount") is not None:
        return int(plan["amount"])
    return None


def subscription_qualifies(subscription: dict, *, now: datetime | None = None) -> bool:
    now_ts = int((now or now_utc()).timestamp())
    period_end = subscription_period_end(subscription)
    price = subscription_price_cents(subscription)
    return (
        subscription.get("status") == "active"
        and period_end is not None
        and period_end > now_ts
        and price is not None
        and price >= settings.PREMIUM_PRICE_CENTS
    )


def subscription_summary(subscription: dict | None) -> dict | None:
    if not subscription:
        return None
    period_end = epoch_to_datetime(subscription_period_end(subscription))
    return {
        "currentPeriodEnd": period_end.date().isoformat() if period_end else None,
        "status": subscription.get("status"),
    }


def get_entitlement(db: Session, user_id: str) -> dict:
    profile = billing_store.get_profile(db, user_id)
    if not profile:
        return {
            "is_premium": False,
            "subscription_amount_cents": None,
            "entitlement_source": None,
            "updated_at": None,
        }
    return {
        "is_premium": bool(profile["is_premium"]),
        "subscription_amount_cents": profile["subscription_amount_cents"],
        "entitlement_source": profile["entitlement_source"],
        "updated_at": profile["updated_at"],
    }


def grant_subscription_entitlement(db: Session, user_id: str, amount_cents: int | None) -> bool:
    """Grant premium from a subscription. A balance-sourced grant is left in place."""
    current = get_entitlement(db, user_id)
    if current["is_premium"] and current["entitlement_source"] == SOURCE_BALANCE:
        logger.info("subscription grant skipped, balance premium held", extra={"user_id": user_id})
        return False
    billing_store.save_entitlement(
        db,
        user_id,
        is_premium=True,
        subscription_amount_cents=amount_cents,
        entitlement_source=SOURCE_SUBSCRIPTION,
    )
    return True


def grant_balance_entitlement(db: Session, user_id: str) -> None:
    billing_store.save_entitlement(
        db,
        user_id,
        is_premium=True,
        subscription_amount_cents=settings.PREMIUM_PRICE_CENTS,
        entitlement_source=SOURCE_BALANCE,
    )


def clear_subscription_entitlement(db: Session, user_id: str) -> bool:
    """Drop premium unless it was granted by a balance purchase."""
    current = get_entitlement(db, user_id)
    if current["is_premium"] and current["entitlement_source"] == SOURCE_BALANCE:
        logger.info("keeping balance-sourced premium", extra={"user_id": user_id})
        return False
    billing_store.save_entitlement(
        db,
        user_id,
        is_premium=False,
        subscription_amount_cents=None,
        entitlement_source=None,
    )
    return True


def _read_balance(provider: BillingProvider, user: CurrentUser, resolved: ResolvedCustomer) -> int | None:
    if resolved.balance_override is not None:
        return resolved.balance_override
    if resolved.deleted:
        return None
    try:
        customer = provider.retrieve_customer(resolved.customer_id)
    except BillingProviderError as exc:
        logger.warning(
            "balance read failed",
            extra={"user_id": user.id, "customer_id": resolved.customer_id, "operation": exc.operation, "error": str(exc)},
        )
        return None
    if not customer or customer.get("deleted"):
        return None
    return int(customer.get("balance") or 0)


def derive_entitlement(
    db: Session,
    provider: BillingProvider,
    user: CurrentUser,
    resolved: ResolvedCustomer | None,
    *,
    now: datetime | None = None,
) -> EntitlementResult:
    subscription = None
    if resolved is not None and not resolved.deleted:
        try:
            subs = provider.list_subscriptions(limit=1, customer=resolved.customer_id, status="active")
        except BillingProviderError as exc:
            logger.warning(
                "subscription lookup failed",
                extra={"user_id": user.id, "customer_id": resolved.customer_id, "operation": exc.operation, "error": str(exc)},
            )
        else:
            subscription = subs[0] if subs else None

        if subscription is not None:
            if subscription_qualifies(subscription, now=now):
                grant_subscription_entitlement(db, user.id, subscription_price_cents(subscription))
            else:
                clear_subscription_entitlement(db, user.id)

    current = get_entitlement(db, user.id)
    balance = _read_balance(provider, user, resolved) if resolved is not None else None
    return EntitlementResult(
        is_premium=current["is_premium"],
        subscription_amount_cents=current["subscription_amount_cents"],
        entitlement_source=current["entitlement_source"],
        subscription=subscription_summary(subscription),
        balance=balance,
    )
