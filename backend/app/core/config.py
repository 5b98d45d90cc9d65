from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=None, extra="ignore")

    ENV: str = "prod"

    DATABASE_URL: str = "sqlite:///./propedge.db"

    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 5
    DB_POOL_TIMEOUT_SECONDS: int = 30
    DB_POOL_RECYCLE_SECONDS: int = 1800

    ALLOWED_HOSTS: str = "localhost,127.0.0.1"
    SECURITY_HEADERS_ENABLED: bool = True

    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Identity (Supabase-issued access tokens)
    SUPABASE_JWT_SECRET: str = ""
    SUPABASE_JWT_AUDIENCE: str = "authenticated"

    # Stripe
    STRIPE_SECRET_KEY: str | None = None
    STRIPE_WEBHOOK_SECRET: str | None = None
    BILLING_CURRENCY: str = "usd"
    BILLING_SUCCESS_BASE_URL: str = "http://localhost:3000"

    # Premium plan
    PREMIUM_PRICE_CENTS: int = 1999
    PREMIUM_PRODUCT_NAME: str = "PropEdge Premium"
    PREMIUM_PRODUCT_DESCRIPTION: str = "Unlimited AI insights · Up to 10 models · Full backtesting"
    PREMIUM_PURCHASE_IDEMPOTENCY_WINDOW_SECONDS: int = 60

    # Balance credits
    BALANCE_MIN_CHARGE_CENTS: int = 1000
    BALANCE_CREDIT_GRACE_SECONDS: int = 90

    # Reconciliation page sizes
    BILLING_INVOICE_PAGE_SIZE: int = 24
    BILLING_TRANSACTION_PAGE_SIZE: int = 24
    BILLING_SESSION_SCAN_LIMIT: int = 100

    BILLING_DEBUG_ENABLED: bool = False

settings = Settings()
