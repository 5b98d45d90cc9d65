"""billing core: customer links, invoices, profiles, webhook events

Revision ID: 0001_billing_core
Revises: 
Create Date: 2026-10-16
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_billing_core"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "stripe_customers",
        sa.Column("user_id", sa.Text(), primary_key=True),
        sa.Column("external_customer_id", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_stripe_customers_external_customer_id", "stripe_customers", ["external_customer_id"])

    op.create_table(
        "invoices",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("external_invoice_id", sa.Text(), nullable=False, unique=True),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("currency", sa.Text(), nullable=False, server_default="usd"),
        sa.Column("status", sa.Text(), nullable=False, server_default="paid"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("invoice_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("amount_cents >= 0", name="ck_invoices_amount_non_negative"),
    )
    op.create_index("ix_invoices_user_date", "invoices", ["user_id", sa.text("invoice_date DESC")])

    op.create_table(
        "profiles",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("is_premium", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("subscription_amount_cents", sa.Integer(), nullable=True),
        sa.Column("entitlement_source", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint(
            "entitlement_source IS NULL OR entitlement_source IN ('subscription','balance')",
            name="ck_profiles_entitlement_source",
        ),
    )

    op.create_table(
        "billing_webhook_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("event_id", sa.Text(), nullable=False, unique=True),
        sa.Column("event_type", sa.Text(), nullable=False),
        sa.Column("user_id", sa.Text(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="received"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('received','processed','ignored','error')",
            name="ck_billing_webhook_events_status",
        ),
    )
    op.create_index(
        "ix_billing_webhook_events_status_received",
        "billing_webhook_events",
        ["status", sa.text("received_at DESC")],
    )


def downgrade():
    op.drop_index("ix_billing_webhook_events_status_received", table_name="billing_webhook_events")
    op.drop_table("billing_webhook_events")
    op.drop_table("profiles")
    op.drop_index("ix_invoices_user_date", table_name="invoices")
    op.drop_table("invoices")
    op.drop_index("ix_stripe_customers_external_customer_id", table_name="stripe_customers")
    op.drop_table("stripe_customers")
