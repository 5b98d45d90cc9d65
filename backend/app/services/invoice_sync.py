from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.security import CurrentUser
from app.services import billing_store
from app.services.billing_provider import BillingProvider, BillingProviderError

logger = logging.getLogger(__name__)

PREMIUM_PURCHASE_TYPE = "premium_purchase"


def epoch_to_datetime(value) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _invoice_description(invoice: dict) -> str:
    lines = (invoice.get("lines") or {}).get("data") or []
    if lines and lines[0].get("description"):
        return str(lines[0]["description"])
    return settings.PREMIUM_PRODUCT_NAME


def _ref(value) -> str | None:
    if isinstance(value, dict):
        value = value.get("id")
    return str(value) if value else None


def apply_invoice(db: Session, user_id: str, invoice: dict) -> str:
    """Mirror one paid provider invoice locally. Returns "upserted" or "deleted"."""
    invoice_id = str(invoice["id"])
    paid = int(invoice.get("amount_paid") or 0)
    refunded = int(invoice.get("post_payment_credit_notes_amount") or 0)
    if refunded > 0 and refunded >= paid:
        billing_store.delete_invoice(db, invoice_id)
        return "deleted"

    billing_store.upsert_invoice(
        db,
        external_invoice_id=invoice_id,
        user_id=user_id,
        amount_cents=paid - refunded,
        currency=str(invoice.get("currency") or settings.BILLING_CURRENCY).lower(),
        status=str(invoice.get("status") or "paid"),
        description=_invoice_description(invoice),
        invoice_date=epoch_to_datetime(invoice.get("created")),
    )
    return "upserted"


def record_purchase_invoice(db: Session, user_id: str, txn: dict) -> str:
    external_id = billing_store.synthetic_invoice_id(str(txn["id"]))
    billing_store.upsert_invoice(
        db,
        external_invoice_id=external_id,
        user_id=user_id,
        amount_cents=abs(int(txn.get("amount") or 0)),
        currency=str(txn.get("currency") or settings.BILLING_CURRENCY).lower(),
        status="paid",
        description=txn.get("description") or f"1 x {settings.PREMIUM_PRODUCT_NAME}",
        invoice_date=epoch_to_datetime(txn.get("created")),
    )
    return external_id


def is_premium_purchase(txn: dict) -> bool:
    metadata = txn.get("metadata") or {}
    return metadata.get("type") == PREMIUM_PURCHASE_TYPE and int(txn.get("amount") or 0) > 0


def _rederive_synthetic_invoices(db: Session, provider: BillingProvider, user: CurrentUser, customer_id: str) -> None:
    limit = settings.BILLING_TRANSACTION_PAGE_SIZE
    try:
        txns = provider.list_balance_transactions(customer_id, limit=limit)
    except BillingProviderError as exc:
        logger.warning(
            "balance ledger read failed, keeping synthetic invoices",
            extra={"user_id": user.id, "customer_id": customer_id, "operation": exc.operation, "error": str(exc)},
        )
        return

    keep = {record_purchase_invoice(db, user.id, txn) for txn in txns if is_premium_purchase(txn)}
    # A full page may not reach older purchases, so only prune when the whole ledger was read.
    if len(txns) < limit:
        removed = billing_store.delete_synthetic_invoices(db, user.id, keep=keep)
        if removed:
            logger.info("stale synthetic invoices removed", extra={"user_id": user.id, "count": removed})


def _capture(db: Session, user: CurrentUser, invoices: list[dict], seen: set[str]) -> int:
    count = 0
    for invoice in invoices:
        invoice_id = str(invoice.get("id") or "")
        if not invoice_id or invoice_id in seen:
            continue
        seen.add(invoice_id)
        apply_invoice(db, user.id, invoice)
        count += 1
    return count


def _by_customer(db, provider, user, customer_id, seen) -> int:
    invoices = provider.list_invoices(limit=settings.BILLING_INVOICE_PAGE_SIZE, customer=customer_id, status="paid")
    return _capture(db, user, invoices, seen)


def _by_customer_subscriptions(db, provider, user, customer_id, seen) -> int:
    count = 0
    subscriptions = provider.list_subscriptions(limit=settings.BILLING_INVOICE_PAGE_SIZE, customer=customer_id, status="all")
    for subscription in subscriptions:
        invoices = provider.list_invoices(
            limit=settings.BILLING_INVOICE_PAGE_SIZE,
            subscription=str(subscription["id"]),
            status="paid",
        )
        count += _capture(db, user, invoices, seen)
    return count


def _by_checkout_sessions(db, provider, user, customer_id, seen) -> int:
    count = 0
    subscription_ids: list[str] = []
    for session in provider.list_checkout_sessions(limit=settings.BILLING_SESSION_SCAN_LIMIT):
        metadata = session.get("metadata") or {}
        subscription_id = _ref(session.get("subscription"))
        if metadata.get("user_id") == user.id and subscription_id and subscription_id not in subscription_ids:
            subscription_ids.append(subscription_id)
    for subscription_id in subscription_ids:
        invoices = provider.list_invoices(
            limit=settings.BILLING_INVOICE_PAGE_SIZE,
            subscription=subscription_id,
            status="paid",
        )
        count += _capture(db, user, invoices, seen)
    return count


DISCOVERY_STEPS = (
    ("customer", _by_customer),
    ("customer_subscriptions", _by_customer_subscriptions),
    ("checkout_sessions", _by_checkout_sessions),
)


def sync_invoices(db: Session, provider: BillingProvider, user: CurrentUser, customer_id: str | None) -> list[dict]:
    page_size = settings.BILLING_INVOICE_PAGE_SIZE
    if not customer_id:
        return billing_store.list_invoices(db, user.id, limit=page_size)

    _rederive_synthetic_invoices(db, provider, user, customer_id)
    snapshot = billing_store.list_invoices(db, user.id, limit=page_size)

    seen: set[str] = set()
    captured = 0
    for name, step in DISCOVERY_STEPS:
        try:
            captured += step(db, provider, user, customer_id, seen)
        except BillingProviderError as exc:
            logger.warning(
                "invoice discovery failed",
                extra={
                    "user_id": user.id,
                    "customer_id": customer_id,
                    "step": name,
                    "operation": exc.operation,
                    "error": str(exc),
                },
            )
            continue
        if seen:
            break

    logger.debug(
        "invoices synced",
        extra={"user_id": user.id, "customer_id": customer_id, "captured": captured, "snapshot": len(snapshot)},
    )
    return billing_store.list_invoices(db, user.id, limit=page_size)
