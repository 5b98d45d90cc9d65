from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.security import CurrentUser
from app.services import billing_store
from app.services.balance_backfill import (
    BALANCE_CREDIT_TYPE,
    backfill_balance_credits,
    credit_amount_cents,
    credit_checkout_session,
    credited_session_ids,
)
from app.services.billing_provider import (
    BillingError,
    BillingPreconditionError,
    BillingProvider,
    BillingProviderError,
)
from app.services.customer_resolver import USER_METADATA_KEY, ResolvedCustomer, resolve_customer
from app.services.entitlements import (
    clear_subscription_entitlement,
    derive_entitlement,
    grant_subscription_entitlement,
    subscription_price_cents,
    subscription_qualifies,
    subscription_summary,
)
from app.services.invoice_sync import apply_invoice, epoch_to_datetime, sync_invoices

logger = logging.getLogger(__name__)

SUBSCRIPTION_GRANT_EVENTS = {"customer.subscription.created", "customer.subscription.updated"}


def _ref(value) -> str | None:
    if isinstance(value, dict):
        value = value.get("id")
    return str(value) if value else None


def _dates(epoch) -> tuple[str, str]:
    dt = epoch_to_datetime(epoch)
    if dt is None:
        return "", ""
    return dt.date().isoformat(), dt.isoformat()


def map_balance_transaction(txn: dict) -> dict:
    amount = int(txn.get("amount") or 0)
    date, date_time = _dates(txn.get("created"))
    is_credit = amount < 0
    return {
        "id": str(txn["id"]),
        "date": date,
        "dateTime": date_time,
        "amount": abs(amount) / 100,
        "currency": str(txn.get("currency") or settings.BILLING_CURRENCY).upper(),
        "type": "credit" if is_credit else "debit",
        "description": txn.get("description") or ("Account credit" if is_credit else settings.PREMIUM_PRODUCT_NAME),
    }


def map_local_invoice(row: dict) -> dict:
    invoice_date: datetime | None = row.get("invoice_date")
    return {
        "id": row["external_invoice_id"],
        "date": invoice_date.date().isoformat() if invoice_date else "",
        "dateTime": invoice_date.isoformat() if invoice_date else "",
        "amount": int(row["amount_cents"]) / 100,
        "currency": str(row["currency"] or settings.BILLING_CURRENCY).upper(),
        "status": row["status"] or "paid",
        "description": row["description"] or settings.PREMIUM_PRODUCT_NAME,
    }


def _balance_history(provider: BillingProvider, user: CurrentUser, customer_id: str | None) -> list[dict]:
    if not customer_id:
        return []
    try:
        txns = provider.list_balance_transactions(customer_id, limit=settings.BILLING_TRANSACTION_PAGE_SIZE)
    except BillingProviderError as exc:
        logger.warning(
            "balance history read failed",
            extra={"user_id": user.id, "customer_id": customer_id, "operation": exc.operation, "error": str(exc)},
        )
        return []
    txns = sorted(txns, key=lambda t: int(t.get("created") or 0), reverse=True)
    return [map_balance_transaction(t) for t in txns]


def get_billing_overview(
    db: Session,
    provider: BillingProvider,
    user: CurrentUser,
    *,
    debug: bool = False,
    now: datetime | None = None,
) -> dict:
    resolved = resolve_customer(db, provider, user)
    customer_id = resolved.customer_id if resolved else None

    invoices = sync_invoices(db, provider, user, customer_id)
    credited: list[str] = []
    if resolved is not None and not resolved.deleted:
        credited = backfill_balance_credits(provider, resolved.customer_id, now=now)
    entitlement = derive_entitlement(db, provider, user, resolved, now=now)

    out: dict = {
        "transactions": _balance_history(provider, user, customer_id),
        "balance": entitlement.balance,
        "subscription": entitlement.subscription,
    }
    if debug and settings.BILLING_DEBUG_ENABLED:
        out["debug"] = {
            "customer_id": customer_id,
            "resolved_via": resolved.source if resolved else None,
            "customer_created": bool(resolved and resolved.created),
            "customer_deleted": bool(resolved and resolved.deleted),
            "balance_override": resolved.balance_override if resolved else None,
            "invoice_count": len(invoices),
            "credited_sessions": credited,
            "is_premium": entitlement.is_premium,
            "entitlement_source": entitlement.entitlement_source,
        }
    return out


def list_synced_invoices(db: Session, provider: BillingProvider, user: CurrentUser) -> list[dict]:
    resolved = resolve_customer(db, provider, user)
    rows = sync_invoices(db, provider, user, resolved.customer_id if resolved else None)
    return [map_local_invoice(r) for r in rows]


def get_subscription_status(db: Session, provider: BillingProvider, user: CurrentUser) -> dict | None:
    resolved = resolve_customer(db, provider, user)
    if resolved is None or resolved.deleted:
        return None
    subs = provider.list_subscriptions(limit=1, customer=resolved.customer_id, status="active")
    return subscription_summary(subs[0] if subs else None)


def _checkout_customer(db: Session, provider: BillingProvider, user: CurrentUser) -> ResolvedCustomer:
    resolved = resolve_customer(db, provider, user, require_customer=True)
    if resolved is None or resolved.deleted:
        raise BillingPreconditionError("Customer not found")
    return resolved


def create_premium_checkout(
    db: Session,
    provider: BillingProvider,
    user: CurrentUser,
    *,
    amount_cents: int | None = None,
) -> dict:
    amount = settings.PREMIUM_PRICE_CENTS
    if amount_cents is not None and amount_cents >= settings.BALANCE_MIN_CHARGE_CENTS:
        amount = amount_cents

    resolved = _checkout_customer(db, provider, user)
    base = settings.BILLING_SUCCESS_BASE_URL.rstrip("/")
    session = provider.create_checkout_session(
        customer=resolved.customer_id,
        mode="subscription",
        line_items=[
            {
                "price_data": {
                    "currency": settings.BILLING_CURRENCY,
                    "product_data": {
                        "name": settings.PREMIUM_PRODUCT_NAME,
                        "description": settings.PREMIUM_PRODUCT_DESCRIPTION,
                    },
                    "unit_amount": amount,
                    "recurring": {"interval": "month"},
                },
                "quantity": 1,
            }
        ],
        success_url=f"{base}/profile?tab=plan&success=1",
        cancel_url=f"{base}/plan",
        metadata={"user_id": user.id},
        subscription_data={"metadata": {"user_id": user.id}},
    )
    logger.info(
        "premium checkout created",
        extra={"user_id": user.id, "customer_id": resolved.customer_id, "checkout_session_id": session.get("id")},
    )
    return {"url": session.get("url")}


def create_balance_checkout(db: Session, provider: BillingProvider, user: CurrentUser, *, amount_cents: int) -> dict:
    minimum = settings.BALANCE_MIN_CHARGE_CENTS
    if amount_cents < minimum:
        raise BillingPreconditionError(f"Minimum charge is ${minimum / 100:g}")

    resolved = _checkout_customer(db, provider, user)
    base = settings.BILLING_SUCCESS_BASE_URL.rstrip("/")
    session = provider.create_checkout_session(
        customer=resolved.customer_id,
        mode="payment",
        line_items=[
            {
                "price_data": {
                    "currency": settings.BILLING_CURRENCY,
                    "product_data": {
                        "name": "Account credit",
                        "description": f"Add ${amount_cents / 100:.2f} to your account balance",
                    },
                    "unit_amount": amount_cents,
                },
                "quantity": 1,
            }
        ],
        success_url=f"{base}/profile?tab=balance&success=1",
        cancel_url=f"{base}/profile?tab=balance",
        metadata={"user_id": user.id, "type": BALANCE_CREDIT_TYPE, "amount_cents": str(amount_cents)},
    )
    logger.info(
        "balance checkout created",
        extra={
            "user_id": user.id,
            "customer_id": resolved.customer_id,
            "checkout_session_id": session.get("id"),
            "amount_cents": amount_cents,
        },
    )
    return {"url": session.get("url")}


def create_portal_session(db: Session, provider: BillingProvider, user: CurrentUser) -> dict:
    customer_id = billing_store.get_customer_link(db, user.id)
    if not customer_id:
        raise BillingPreconditionError("No subscription found")
    session = provider.create_portal_session(
        customer=customer_id,
        return_url=f"{settings.BILLING_SUCCESS_BASE_URL.rstrip('/')}/pricing",
    )
    return {"url": session.get("url")}


def _user_for_subscription(db: Session, subscription: dict) -> str | None:
    user_id = (subscription.get("metadata") or {}).get("user_id")
    if user_id:
        return str(user_id)
    customer_id = _ref(subscription.get("customer"))
    return billing_store.find_user_by_customer(db, customer_id) if customer_id else None


def _user_for_invoice(db: Session, provider: BillingProvider, invoice: dict, customer_id: str) -> str | None:
    user_id = billing_store.find_user_by_customer(db, customer_id)
    if user_id:
        return user_id

    customer = provider.retrieve_customer(customer_id)
    if customer and not customer.get("deleted"):
        user_id = (customer.get("metadata") or {}).get(USER_METADATA_KEY)
    if not user_id:
        subscription_id = _ref(invoice.get("subscription"))
        subscription = provider.retrieve_subscription(subscription_id) if subscription_id else None
        user_id = (subscription.get("metadata") or {}).get("user_id") if subscription else None
    if user_id:
        billing_store.upsert_customer_link(db, str(user_id), customer_id)
        return str(user_id)
    return None


def _handle_subscription_change(db: Session, provider: BillingProvider, event_type: str, obj: dict) -> tuple[str, str | None]:
    user_id = _user_for_subscription(db, obj)
    if not user_id:
        return "ignored", None
    if event_type == "customer.subscription.deleted":
        cleared = clear_subscription_entitlement(db, user_id)
        return ("processed" if cleared else "ignored"), user_id
    if subscription_qualifies(obj):
        granted = grant_subscription_entitlement(db, user_id, subscription_price_cents(obj))
        return ("processed" if granted else "ignored"), user_id
    return "ignored", user_id


def _handle_checkout_completed(db: Session, provider: BillingProvider, event_type: str, obj: dict) -> tuple[str, str | None]:
    customer_id = _ref(obj.get("customer"))
    metadata = obj.get("metadata") or {}
    user_id = metadata.get("user_id") or (billing_store.find_user_by_customer(db, customer_id) if customer_id else None)
    if customer_id and user_id:
        billing_store.upsert_customer_link(db, str(user_id), customer_id)

    if metadata.get("type") != BALANCE_CREDIT_TYPE or not customer_id or credit_amount_cents(obj) <= 0:
        return ("processed" if customer_id and user_id else "ignored"), user_id

    txns = provider.list_balance_transactions(customer_id, limit=settings.BILLING_SESSION_SCAN_LIMIT)
    if str(obj["id"]) in credited_session_ids(txns):
        logger.info(
            "balance credit already applied",
            extra={"customer_id": customer_id, "checkout_session_id": obj["id"]},
        )
        return "processed", user_id
    credit_checkout_session(provider, customer_id, obj)
    logger.info(
        "balance credit applied",
        extra={"user_id": user_id, "customer_id": customer_id, "checkout_session_id": obj["id"]},
    )
    return "processed", user_id


def _handle_invoice_paid(db: Session, provider: BillingProvider, event_type: str, obj: dict) -> tuple[str, str | None]:
    customer_id = _ref(obj.get("customer"))
    if not customer_id:
        return "ignored", None
    user_id = _user_for_invoice(db, provider, obj, customer_id)
    if not user_id:
        return "ignored", None
    apply_invoice(db, user_id, obj)
    return "processed", user_id


WEBHOOK_HANDLERS = {
    "customer.subscription.created": _handle_subscription_change,
    "customer.subscription.updated": _handle_subscription_change,
    "customer.subscription.deleted": _handle_subscription_change,
    "checkout.session.completed": _handle_checkout_completed,
    "invoice.paid": _handle_invoice_paid,
}


def ingest_webhook_event(db: Session, provider: BillingProvider, *, payload: bytes, signature: str | None) -> dict:
    event = provider.construct_event(payload, signature)
    event_id = str(event.get("id") or "").strip()
    event_type = str(event.get("type") or "").strip()
    if not event_id or not event_type:
        raise BillingPreconditionError("Invalid webhook event")

    inserted = billing_store.record_webhook_event(db, event_id=event_id, event_type=event_type)
    if not inserted:
        status = billing_store.get_webhook_event_status(db, event_id) or "ignored"
        return {
            "received": True,
            "event_id": event_id,
            "duplicate": True,
            "processed": status in ("processed", "ignored"),
            "status": status,
        }

    handler = WEBHOOK_HANDLERS.get(event_type)
    obj = (event.get("data") or {}).get("object") or {}
    final_status = "ignored"
    user_id = None
    error_message = None
    if handler is not None:
        try:
            final_status, user_id = handler(db, provider, event_type, obj)
        except (BillingError, KeyError, ValueError) as exc:
            final_status = "error"
            error_message = str(exc)
            logger.error(
                "webhook handler failed",
                extra={"event_id": event_id, "event_type": event_type, "error": error_message},
            )

    billing_store.finish_webhook_event(
        db,
        event_id=event_id,
        status=final_status,
        user_id=(str(user_id) if user_id else None),
        error_message=error_message,
    )
    logger.info(
        "webhook event ingested",
        extra={"event_id": event_id, "event_type": event_type, "status": final_status, "user_id": user_id},
    )
    return {
        "received": True,
        "event_id": event_id,
        "duplicate": False,
        "processed": final_status == "processed",
        "status": final_status,
    }


def reconcile_linked_users(db: Session, provider: BillingProvider, *, limit: int = 200, now: datetime | None = None) -> dict:
    processed = 0
    updated = 0
    skipped = 0
    errors = 0
    for row in billing_store.list_linked_users(db, limit=limit):
        processed += 1
        user = CurrentUser(id=str(row["user_id"]))
        try:
            resolved = resolve_customer(db, provider, user)
            if resolved is None or resolved.deleted:
                skipped += 1
                continue
            before = len(billing_store.list_invoices(db, user.id, limit=settings.BILLING_INVOICE_PAGE_SIZE))
            after = len(sync_invoices(db, provider, user, resolved.customer_id))
            credited = backfill_balance_credits(provider, resolved.customer_id, now=now)
            derive_entitlement(db, provider, user, resolved, now=now)
            updated += 1 if (credited or after != before or resolved.created) else 0
        except BillingError:
            logger.exception("billing reconcile failed", extra={"user_id": user.id, "customer_id": row["external_customer_id"]})
            errors += 1

    logger.info(
        "billing reconcile finished",
        extra={"processed": processed, "updated": updated, "skipped": skipped, "errors": errors},
    )
    return {
        "processed": processed,
        "updated": updated,
        "skipped": skipped,
        "errors": errors,
    }
