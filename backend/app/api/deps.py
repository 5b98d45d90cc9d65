import logging

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError

from app.core.security import CurrentUser, decode_token, user_from_claims
from app.services.billing_provider import BillingNotConfiguredError, BillingProvider, get_provider_adapter

logger = logging.getLogger(__name__)

bearer = HTTPBearer(auto_error=False)


def get_current_user(creds: HTTPAuthorizationCredentials | None = Depends(bearer)) -> CurrentUser:
    if creds is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    try:
        claims = decode_token(creds.credentials)
    except JWTError:
        raise HTTPException(status_code=401, detail="Unauthorized")
    user = user_from_claims(claims)
    if user is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user


def get_billing_provider() -> BillingProvider:
    try:
        return get_provider_adapter()
    except BillingNotConfiguredError as exc:
        logger.error("billing provider unavailable", extra={"error": str(exc)})
        raise HTTPException(status_code=500, detail="Stripe not configured")
