from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class StripeCustomer(Base):
    __tablename__ = "stripe_customers"

    user_id: Mapped[str] = mapped_column(sa.Text, primary_key=True)
    external_customer_id: Mapped[str] = mapped_column(sa.Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())
    updated_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())

    __table_args__ = (
        sa.Index("ix_stripe_customers_external_customer_id", "external_customer_id"),
    )


class Invoice(Base):
    __tablename__ = "invoices"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    external_invoice_id: Mapped[str] = mapped_column(sa.Text, nullable=False, unique=True)
    user_id: Mapped[str] = mapped_column(sa.Text, nullable=False)
    amount_cents: Mapped[int] = mapped_column(sa.Integer, nullable=False, server_default=sa.text("0"))
    currency: Mapped[str] = mapped_column(sa.Text, nullable=False, server_default="usd")
    status: Mapped[str] = mapped_column(sa.Text, nullable=False, server_default="paid")
    description: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    invoice_date: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())
    updated_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())

    __table_args__ = (
        sa.CheckConstraint("amount_cents >= 0", name="ck_invoices_amount_non_negative"),
        sa.Index("ix_invoices_user_date", "user_id", "invoice_date"),
    )


class BillingWebhookEvent(Base):
    __tablename__ = "billing_webhook_events"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(sa.Text, nullable=False, unique=True)
    event_type: Mapped[str] = mapped_column(sa.Text, nullable=False)
    user_id: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False, server_default="received")
    error_message: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    received_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())
    processed_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)

    __table_args__ = (
        sa.CheckConstraint(
            "status IN ('received','processed','ignored','error')",
            name="ck_billing_webhook_events_status",
        ),
        sa.Index("ix_billing_webhook_events_status_received", "status", "received_at"),
    )
