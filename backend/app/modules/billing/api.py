import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from app.api.deps import get_billing_provider, get_current_user
from app.core.config import settings
from app.db.session import get_db
from app.schemas.billing import (
    BalanceChargeIn,
    BillingOverviewOut,
    BillingWebhookEventOut,
    InvoiceListOut,
    ReconcileOut,
    RedirectOut,
    SubscriptionOut,
)
from app.services.billing import (
    create_balance_checkout,
    create_portal_session,
    create_premium_checkout,
    get_billing_overview,
    get_subscription_status,
    ingest_webhook_event,
    list_synced_invoices,
    reconcile_linked_users,
)
from app.services.billing_provider import BillingError, BillingNotConfiguredError, BillingPreconditionError

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/overview", response_model=BillingOverviewOut, response_model_exclude_unset=True)
def billing_overview(
    debug: bool = Query(default=False),
    provider=Depends(get_billing_provider),
    current=Depends(get_current_user),
    db: Session = Depends(get_db),
):
    out = get_billing_overview(db, provider, current, debug=debug)
    db.commit()
    return BillingOverviewOut(**out)


@router.get("/invoices", response_model=InvoiceListOut)
def billing_invoices(provider=Depends(get_billing_provider), current=Depends(get_current_user), db: Session = Depends(get_db)):
    invoices = list_synced_invoices(db, provider, current)
    db.commit()
    return InvoiceListOut(invoices=invoices)


@router.get("/subscription", response_model=SubscriptionOut)
def billing_subscription(provider=Depends(get_billing_provider), current=Depends(get_current_user), db: Session = Depends(get_db)):
    try:
        subscription = get_subscription_status(db, provider, current)
    except BillingError:
        db.rollback()
        logger.exception("subscription fetch failed", extra={"user_id": current.id})
        raise HTTPException(500, "Failed to fetch subscription")
    db.commit()
    return SubscriptionOut(subscription=subscription)


@router.post("/checkout", response_model=RedirectOut)
def premium_checkout(
    amount: float | None = Query(default=None, gt=0, le=100000),
    provider=Depends(get_billing_provider),
    current=Depends(get_current_user),
    db: Session = Depends(get_db),
):
    amount_cents = round(amount * 100) if amount else None
    try:
        out = create_premium_checkout(db, provider, current, amount_cents=amount_cents)
    except BillingPreconditionError as exc:
        db.rollback()
        raise HTTPException(400, str(exc))
    except BillingError:
        db.rollback()
        logger.exception("premium checkout failed", extra={"user_id": current.id})
        raise HTTPException(500, "Checkout failed")
    db.commit()
    return RedirectOut(**out)


@router.post("/charge-balance", response_model=RedirectOut)
def charge_balance(
    payload: BalanceChargeIn,
    provider=Depends(get_billing_provider),
    current=Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        out = create_balance_checkout(db, provider, current, amount_cents=round(payload.amount * 100))
    except BillingPreconditionError as exc:
        db.rollback()
        raise HTTPException(400, str(exc))
    except BillingError:
        db.rollback()
        logger.exception("balance checkout failed", extra={"user_id": current.id})
        raise HTTPException(500, "Charge failed")
    db.commit()
    return RedirectOut(**out)


@router.post("/portal", response_model=RedirectOut)
def billing_portal(provider=Depends(get_billing_provider), current=Depends(get_current_user), db: Session = Depends(get_db)):
    try:
        out = create_portal_session(db, provider, current)
    except BillingPreconditionError as exc:
        raise HTTPException(400, str(exc))
    except BillingError:
        logger.exception("portal session failed", extra={"user_id": current.id})
        raise HTTPException(500, "Portal failed")
    return RedirectOut(**out)


@router.post("/webhooks/stripe", response_model=BillingWebhookEventOut)
async def stripe_webhook(request: Request, provider=Depends(get_billing_provider), db: Session = Depends(get_db)):
    raw = await request.body()
    try:
        out = ingest_webhook_event(
            db,
            provider,
            payload=raw,
            signature=request.headers.get("stripe-signature"),
        )
        db.commit()
        return BillingWebhookEventOut(**out)
    except BillingNotConfiguredError as exc:
        db.rollback()
        raise HTTPException(500, str(exc))
    except BillingPreconditionError as exc:
        db.rollback()
        raise HTTPException(400, str(exc))


@router.post("/reconcile", response_model=ReconcileOut)
def run_reconciliation(
    limit: int = Query(default=200, ge=1, le=2000),
    provider=Depends(get_billing_provider),
    current=Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if settings.ENV != "dev":
        raise HTTPException(404, "Not available")
    result = reconcile_linked_users(db, provider, limit=limit)
    db.commit()
    logger.info("manual billing reconcile", extra={"user_id": current.id, "limit": limit, **result})
    return ReconcileOut(ok=True, **result)
