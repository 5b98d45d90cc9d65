from typing import Literal

from pydantic import BaseModel, Field


TransactionType = Literal["credit", "debit"]
WebhookStatus = Literal["processed", "ignored", "error", "received"]


class BalanceTransactionOut(BaseModel):
    id: str
    date: str
    dateTime: str
    amount: float
    currency: str
    type: TransactionType
    description: str


class SubscriptionStatusOut(BaseModel):
    currentPeriodEnd: str | None = None
    status: str | None = None


class BillingOverviewOut(BaseModel):
    transactions: list[BalanceTransactionOut] = Field(default_factory=list)
    balance: int | None = None
    subscription: SubscriptionStatusOut | None = None
    debug: dict | None = None


class InvoiceOut(BaseModel):
    id: str
    date: str
    dateTime: str
    amount: float
    currency: str
    status: str
    description: str


class InvoiceListOut(BaseModel):
    invoices: list[InvoiceOut] = Field(default_factory=list)


class SubscriptionOut(BaseModel):
    subscription: SubscriptionStatusOut | None = None


class BalanceChargeIn(BaseModel):
    amount: float = Field(default=10, gt=0, le=100000)


class RedirectOut(BaseModel):
    url: str | None = None


class PremiumPurchaseOut(BaseModel):
    success: bool = True
    transaction_id: str | None = None
    invoice_id: str | None = None
    resumed: bool = False


class BillingWebhookEventOut(BaseModel):
    received: bool = True
    event_id: str
    duplicate: bool
    processed: bool
    status: WebhookStatus


class ReconcileOut(BaseModel):
    ok: bool = True
    processed: int
    updated: int
    skipped: int
    errors: int
