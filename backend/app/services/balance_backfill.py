from __future__ import annotations

import logging
from datetime import datetime

from app.core.config import settings
from app.core.security import now_utc
from app.services.billing_provider import BillingProvider, BillingProviderError

logger = logging.getLogger(__name__)

BALANCE_CREDIT_TYPE = "balance_credit"


def credit_amount_cents(session: dict) -> int:
    metadata = session.get("metadata") or {}
    raw = metadata.get("amount_cents")
    try:
        amount = int(raw) if raw not in (None, "") else 0
    except (TypeError, ValueError):
        amount = 0
    if amount <= 0:
        amount = int(session.get("amount_total") or 0)
    return amount


def is_balance_credit_session(session: dict) -> bool:
    metadata = session.get("metadata") or {}
    return (
        session.get("status") == "complete"
        and metadata.get("type") == BALANCE_CREDIT_TYPE
        and credit_amount_cents(session) > 0
    )


def credited_session_ids(txns: list[dict]) -> set[str]:
    out: set[str] = set()
    for txn in txns:
        session_id = (txn.get("metadata") or {}).get("checkout_session_id")
        if session_id:
            out.add(str(session_id))
    return out


def credit_checkout_session(provider: BillingProvider, customer_id: str, session: dict) -> dict:
    """Apply one completed add-balance checkout session to the customer's balance.

    The session id is written into the transaction metadata and used as the
    provider idempotency key, so the webhook handler and a backfill pass that
    race on the same session still produce a single credit.
    """
    session_id = str(session["id"])
    amount = credit_amount_cents(session)
    return provider.create_balance_transaction(
        customer_id,
        amount=-amount,
        currency=str(session.get("currency") or settings.BILLING_CURRENCY).lower(),
        description="Account credit",
        metadata={"checkout_session_id": session_id, "type": BALANCE_CREDIT_TYPE},
        idempotency_key=f"balance_credit:{session_id}",
    )


def backfill_balance_credits(
    provider: BillingProvider,
    customer_id: str,
    *,
    now: datetime | None = None,
) -> list[str]:
    """Credit completed add-balance sessions that never reached the balance ledger.

    Returns the ids of the sessions credited during this pass.
    """
    now_ts = int((now or now_utc()).timestamp())
    try:
        sessions = provider.list_checkout_sessions(limit=settings.BILLING_SESSION_SCAN_LIMIT, customer=customer_id)
        txns = provider.list_balance_transactions(customer_id, limit=settings.BILLING_SESSION_SCAN_LIMIT)
    except BillingProviderError as exc:
        logger.warning(
            "balance backfill skipped",
            extra={"customer_id": customer_id, "operation": exc.operation, "error": str(exc)},
        )
        return []

    credited = credited_session_ids(txns)
    applied: list[str] = []
    for session in sessions:
        session_id = str(session.get("id") or "")
        if not session_id or session_id in credited or not is_balance_credit_session(session):
            continue
        age = now_ts - int(session.get("created") or now_ts)
        if age < settings.BALANCE_CREDIT_GRACE_SECONDS:
            logger.info(
                "balance credit within grace window",
                extra={"customer_id": customer_id, "checkout_session_id": session_id, "age_seconds": age},
            )
            continue
        try:
            credit_checkout_session(provider, customer_id, session)
        except BillingProviderError as exc:
            logger.error(
                "balance credit failed",
                extra={
                    "customer_id": customer_id,
                    "checkout_session_id": session_id,
                    "operation": exc.operation,
                    "error": str(exc),
                },
            )
            continue
        credited.add(session_id)
        applied.append(session_id)
        logger.info(
            "balance credit backfilled",
            extra={"customer_id": customer_id, "checkout_session_id": session_id, "amount_cents": credit_amount_cents(session)},
        )
    return applied
