from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.security import CurrentUser, now_utc
from app.services.billing_provider import (
    BillingError,
    BillingPreconditionError,
    BillingProvider,
    EntitlementWriteError,
)
from app.services.customer_resolver import resolve_customer
from app.services.entitlements import SOURCE_BALANCE, get_entitlement, grant_balance_entitlement
from app.services.invoice_sync import PREMIUM_PURCHASE_TYPE, is_premium_purchase, record_purchase_invoice

logger = logging.getLogger(__name__)

NO_CUSTOMER_MESSAGE = "No payment method on file. Add balance first."
CUSTOMER_MISSING_MESSAGE = "Customer not found"
ALREADY_PREMIUM_MESSAGE = "Premium already active"


def insufficient_balance_message(price_cents: int) -> str:
    return f"Insufficient balance. Need ${price_cents / 100:.2f}. Add balance first."


def purchase_idempotency_key(user_id: str, requested: str | None = None, *, now: datetime | None = None) -> str:
    if requested and requested.strip():
        return requested.strip()
    window = max(1, settings.PREMIUM_PURCHASE_IDEMPOTENCY_WINDOW_SECONDS)
    return f"premium:{user_id}:{int((now or now_utc()).timestamp()) // window}"


def find_purchase_debit(provider: BillingProvider, customer_id: str, key: str) -> dict | None:
    for txn in provider.list_balance_transactions(customer_id, limit=settings.BILLING_TRANSACTION_PAGE_SIZE):
        if is_premium_purchase(txn) and (txn.get("metadata") or {}).get("idempotency_key") == key:
            return txn
    return None


def purchase_premium_with_balance(
    db: Session,
    provider: BillingProvider,
    user: CurrentUser,
    *,
    idempotency_key: str | None = None,
    now: datetime | None = None,
) -> dict:
    """Spend banked balance credit on premium.

    The debit is made first, then the synthetic invoice, then the profile flag.
    A retry carrying the same idempotency key finds the earlier debit in the
    balance ledger and only redoes the local writes.
    """
    resolved = resolve_customer(db, provider, user)
    if resolved is None:
        raise BillingPreconditionError(NO_CUSTOMER_MESSAGE)
    if resolved.deleted or resolved.balance_override is not None:
        # The linked customer was removed; its credit is not spendable on the replacement.
        db.commit()
        raise BillingPreconditionError(CUSTOMER_MISSING_MESSAGE)

    customer_id = resolved.customer_id
    customer = resolved.customer or provider.retrieve_customer(customer_id)
    if not customer or customer.get("deleted"):
        raise BillingPreconditionError(CUSTOMER_MISSING_MESSAGE)

    price = settings.PREMIUM_PRICE_CENTS
    key = purchase_idempotency_key(user.id, idempotency_key, now=now)
    log_ctx = {"user_id": user.id, "customer_id": customer_id, "idempotency_key": key}

    txn = find_purchase_debit(provider, customer_id, key)
    resumed = txn is not None
    if txn is None:
        current = get_entitlement(db, user.id)
        if current["is_premium"] and current["entitlement_source"] == SOURCE_BALANCE:
            logger.info("premium purchase skipped, already active", extra=log_ctx)
            raise BillingPreconditionError(ALREADY_PREMIUM_MESSAGE)
        balance = int(customer.get("balance") or 0)
        if balance > -price:
            logger.info("premium purchase rejected", extra={**log_ctx, "balance": balance})
            raise BillingPreconditionError(insufficient_balance_message(price))
        txn = provider.create_balance_transaction(
            customer_id,
            amount=price,
            currency=settings.BILLING_CURRENCY,
            description=f"1 x {settings.PREMIUM_PRODUCT_NAME}",
            metadata={"type": PREMIUM_PURCHASE_TYPE, "user_id": user.id, "idempotency_key": key},
            idempotency_key=f"premium_purchase:{key}",
        )
        logger.info("premium purchase debited", extra={**log_ctx, "transaction_id": txn.get("id")})
    else:
        logger.info("premium purchase resumed", extra={**log_ctx, "transaction_id": txn.get("id")})

    try:
        invoice_id = record_purchase_invoice(db, user.id, txn)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("premium purchase invoice write failed", extra={**log_ctx, "transaction_id": txn.get("id")})
        raise BillingError("Failed to save invoice") from exc

    try:
        grant_balance_entitlement(db, user.id)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("premium entitlement write failed", extra={**log_ctx, "invoice_id": invoice_id})
        raise EntitlementWriteError("Failed to upgrade") from exc

    return {
        "success": True,
        "transaction_id": txn.get("id"),
        "invoice_id": invoice_id,
        "resumed": resumed,
    }
