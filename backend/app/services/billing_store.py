from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from app.core.security import now_utc
from app.models.billing import BillingWebhookEvent, Invoice, StripeCustomer
from app.models.profile import Profile

SYNTHETIC_INVOICE_PREFIX = "balance_"

_INVOICE_COLUMNS = (
    Invoice.external_invoice_id,
    Invoice.user_id,
    Invoice.amount_cents,
    Invoice.currency,
    Invoice.status,
    Invoice.description,
    Invoice.invoice_date,
)


def _insert(db: Session, model):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"upsert not supported for dialect {dialect}")


def synthetic_invoice_id(txn_id: str) -> str:
    return f"{SYNTHETIC_INVOICE_PREFIX}{txn_id}"


def get_customer_link(db: Session, user_id: str) -> str | None:
    return db.execute(
        sa.select(StripeCustomer.external_customer_id).where(StripeCustomer.user_id == user_id)
    ).scalar_one_or_none()


def upsert_customer_link(db: Session, user_id: str, customer_id: str) -> None:
    now = now_utc()
    stmt = _insert(db, StripeCustomer).values(
        user_id=user_id,
        external_customer_id=customer_id,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[StripeCustomer.user_id],
        set_={"external_customer_id": stmt.excluded.external_customer_id, "updated_at": now},
    )
    db.execute(stmt)


def find_user_by_customer(db: Session, customer_id: str) -> str | None:
    return db.execute(
        sa.select(StripeCustomer.user_id)
        .where(StripeCustomer.external_customer_id == customer_id)
        .order_by(StripeCustomer.updated_at.desc())
        .limit(1)
    ).scalar_one_or_none()


def list_linked_users(db: Session, *, limit: int) -> list[dict]:
    rows = db.execute(
        sa.select(StripeCustomer.user_id, StripeCustomer.external_customer_id)
        .order_by(StripeCustomer.updated_at.asc())
        .limit(limit)
    ).mappings().all()
    return [dict(r) for r in rows]


def list_invoices(db: Session, user_id: str, *, limit: int) -> list[dict]:
    rows = db.execute(
        sa.select(*_INVOICE_COLUMNS)
        .where(Invoice.user_id == user_id)
        .order_by(Invoice.invoice_date.desc().nulls_last(), Invoice.id.desc())
        .limit(limit)
    ).mappings().all()
    return [dict(r) for r in rows]


def get_invoice(db: Session, external_invoice_id: str) -> dict | None:
    row = db.execute(
        sa.select(*_INVOICE_COLUMNS).where(Invoice.external_invoice_id == external_invoice_id)
    ).mappings().first()
    return dict(row) if row else None


def upsert_invoice(
    db: Session,
    *,
    external_invoice_id: str,
    user_id: str,
    amount_cents: int,
    currency: str,
    status: str,
    description: str | None,
    invoice_date: datetime | None,
) -> None:
    now = now_utc()
    values = {
        "external_invoice_id": external_invoice_id,
        "user_id": user_id,
        "amount_cents": amount_cents,
        "currency": currency,
        "status": status,
        "description": description,
        "invoice_date": invoice_date,
    }
    stmt = _insert(db, Invoice).values(**values, created_at=now, updated_at=now)
    stmt = stmt.on_conflict_do_update(
        index_elements=[Invoice.external_invoice_id],
        set_={
            "user_id": stmt.excluded.user_id,
            "amount_cents": stmt.excluded.amount_cents,
            "currency": stmt.excluded.currency,
            "status": stmt.excluded.status,
            "description": stmt.excluded.description,
            "invoice_date": stmt.excluded.invoice_date,
            "updated_at": now,
        },
    )
    db.execute(stmt)


def delete_invoice(db: Session, external_invoice_id: str) -> int:
    result = db.execute(sa.delete(Invoice).where(Invoice.external_invoice_id == external_invoice_id))
    return result.rowcount or 0


def delete_synthetic_invoices(db: Session, user_id: str, *, keep: set[str] | frozenset[str] = frozenset()) -> int:
    stmt = sa.delete(Invoice).where(
        Invoice.user_id == user_id,
        Invoice.external_invoice_id.startswith(SYNTHETIC_INVOICE_PREFIX, autoescape=True),
    )
    if keep:
        stmt = stmt.where(Invoice.external_invoice_id.not_in(sorted(keep)))
    result = db.execute(stmt)
    return result.rowcount or 0


def get_profile(db: Session, user_id: str) -> dict | None:
    row = db.execute(
        sa.select(
            Profile.id,
            Profile.is_premium,
            Profile.subscription_amount_cents,
            Profile.entitlement_source,
            Profile.updated_at,
        ).where(Profile.id == user_id)
    ).mappings().first()
    return dict(row) if row else None


def save_entitlement(
    db: Session,
    user_id: str,
    *,
    is_premium: bool,
    subscription_amount_cents: int | None,
    entitlement_source: str | None,
) -> None:
    now = now_utc()
    stmt = _insert(db, Profile).values(
        id=user_id,
        is_premium=is_premium,
        subscription_amount_cents=subscription_amount_cents,
        entitlement_source=entitlement_source,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[Profile.id],
        set_={
            "is_premium": stmt.excluded.is_premium,
            "subscription_amount_cents": stmt.excluded.subscription_amount_cents,
            "entitlement_source": stmt.excluded.entitlement_source,
            "updated_at": now,
        },
    )
    db.execute(stmt)


def record_webhook_event(db: Session, *, event_id: str, event_type: str) -> bool:
    stmt = _insert(db, BillingWebhookEvent).values(
        event_id=event_id,
        event_type=event_type,
        status="received",
        received_at=now_utc(),
    )
    stmt = stmt.on_conflict_do_nothing(index_elements=[BillingWebhookEvent.event_id])
    result = db.execute(stmt)
    return (result.rowcount or 0) > 0


def get_webhook_event_status(db: Session, event_id: str) -> str | None:
    return db.execute(
        sa.select(BillingWebhookEvent.status).where(BillingWebhookEvent.event_id == event_id)
    ).scalar_one_or_none()


def finish_webhook_event(
    db: Session,
    *,
    event_id: str,
    status: str,
    user_id: str | None = None,
    error_message: str | None = None,
) -> None:
    db.execute(
        sa.update(BillingWebhookEvent)
        .where(BillingWebhookEvent.event_id == event_id)
        .values(
            status=status,
            user_id=user_id,
            error_message=(error_message[:1000] if error_message else None),
            processed_at=now_utc(),
        )
    )
