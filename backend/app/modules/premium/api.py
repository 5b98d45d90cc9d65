import logging

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from app.api.deps import get_billing_provider, get_current_user
from app.db.session import get_db
from app.schemas.billing import PremiumPurchaseOut
from app.services.billing_provider import (
    BillingError,
    BillingPreconditionError,
    BillingProviderError,
    EntitlementWriteError,
)
from app.services.premium_purchase import purchase_premium_with_balance

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/purchase-with-balance", response_model=PremiumPurchaseOut)
def purchase_with_balance(
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key", max_length=255),
    provider=Depends(get_billing_provider),
    current=Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        out = purchase_premium_with_balance(db, provider, current, idempotency_key=idempotency_key)
    except BillingPreconditionError as exc:
        db.rollback()
        raise HTTPException(400, str(exc))
    except EntitlementWriteError as exc:
        raise HTTPException(500, str(exc))
    except BillingProviderError:
        db.rollback()
        logger.exception("premium purchase provider call failed", extra={"user_id": current.id})
        raise HTTPException(500, "Purchase failed")
    except BillingError as exc:
        raise HTTPException(500, str(exc))
    return PremiumPurchaseOut(**out)
