from app.models.profile import Profile
from app.models.billing import (
    BillingWebhookEvent,
    Invoice,
    StripeCustomer,
)
