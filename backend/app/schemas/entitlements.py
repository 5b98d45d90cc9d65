from datetime import datetime
from typing import Literal

from pydantic import BaseModel


EntitlementSource = Literal["subscription", "balance"]


class EntitlementOut(BaseModel):
    is_premium: bool
    subscription_amount_cents: int | None = None
    entitlement_source: EntitlementSource | None = None
    updated_at: datetime | None = None
