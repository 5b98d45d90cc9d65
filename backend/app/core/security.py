from dataclasses import dataclass
from datetime import datetime, timezone

from jose import jwt

from app.core.config import settings

ALGO = "HS256"


@dataclass(frozen=True)
class CurrentUser:
    id: str
    email: str | None = None


def now_utc() -> datetime:
    return datetime.now(timezone.utc)

def decode_token(token: str) -> dict:
    return jwt.decode(
        token,
        settings.SUPABASE_JWT_SECRET,
        algorithms=[ALGO],
        audience=settings.SUPABASE_JWT_AUDIENCE,
    )

def create_access_token(sub: str, email: str | None = None, *, expires_in_seconds: int = 3600) -> str:
    now = int(now_utc().timestamp())
    payload = {
        "sub": sub,
        "aud": settings.SUPABASE_JWT_AUDIENCE,
        "role": "authenticated",
        "iat": now,
        "exp": now + expires_in_seconds,
    }
    if email:
        payload["email"] = email
    return jwt.encode(payload, settings.SUPABASE_JWT_SECRET, algorithm=ALGO)

def user_from_claims(claims: dict) -> CurrentUser | None:
    sub = str(claims.get("sub") or "").strip()
    if not sub:
        return None
    email = claims.get("email")
    return CurrentUser(id=sub, email=(str(email).strip() or None) if email else None)
