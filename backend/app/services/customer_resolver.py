from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.security import CurrentUser
from app.services import billing_store
from app.services.billing_provider import BillingProvider, BillingProviderError

logger = logging.getLogger(__name__)

USER_METADATA_KEY = "supabase_user_id"


@dataclass(frozen=True)
class ResolverContext:
    db: Session
    provider: BillingProvider
    user: CurrentUser


@dataclass
class ResolvedCustomer:
    customer_id: str
    source: str
    customer: dict | None = None
    balance_override: int | None = None
    created: bool = False
    deleted: bool = False


def _customer_ref(value) -> str | None:
    if isinstance(value, dict):
        value = value.get("id")
    return str(value) if value else None


def from_local_link(ctx: ResolverContext) -> str | None:
    return billing_store.get_customer_link(ctx.db, ctx.user.id)


def from_email(ctx: ResolverContext) -> str | None:
    if not ctx.user.email:
        return None
    customers = ctx.provider.find_customers_by_email(ctx.user.email, limit=1)
    return _customer_ref(customers[0]) if customers else None


def from_metadata_search(ctx: ResolverContext) -> str | None:
    user_id = ctx.user.id.replace("'", "\\'")
    customers = ctx.provider.search_customers(f"metadata['{USER_METADATA_KEY}']:'{user_id}'", limit=1)
    return _customer_ref(customers[0]) if customers else None


def from_checkout_sessions(ctx: ResolverContext) -> str | None:
    sessions = ctx.provider.list_checkout_sessions(limit=settings.BILLING_SESSION_SCAN_LIMIT)
    for session in sessions:
        metadata = session.get("metadata") or {}
        customer_id = _customer_ref(session.get("customer"))
        if metadata.get("user_id") == ctx.user.id and customer_id:
            return customer_id
    return None


ResolverStrategy = Callable[[ResolverContext], "str | None"]

RESOLVER_STRATEGIES: tuple[tuple[str, ResolverStrategy], ...] = (
    ("link", from_local_link),
    ("email", from_email),
    ("metadata", from_metadata_search),
    ("checkout_session", from_checkout_sessions),
)


def _mint_customer(ctx: ResolverContext) -> dict:
    customer = ctx.provider.create_customer(
        email=ctx.user.email,
        metadata={USER_METADATA_KEY: ctx.user.id},
    )
    logger.info(
        "billing customer created",
        extra={"user_id": ctx.user.id, "customer_id": customer.get("id"), "operation": "customers.create"},
    )
    return customer


def _last_known_balance(ctx: ResolverContext, customer_id: str, customer: dict | None) -> int | None:
    if customer and customer.get("balance") is not None:
        return int(customer["balance"])
    # Deleted customers no longer report a balance; fall back to the ledger's ending balance.
    try:
        txns = ctx.provider.list_balance_transactions(customer_id, limit=1)
    except BillingProviderError as exc:
        logger.warning(
            "balance capture failed",
            extra={"user_id": ctx.user.id, "customer_id": customer_id, "operation": exc.operation, "error": str(exc)},
        )
        return None
    if txns and txns[0].get("ending_balance") is not None:
        return int(txns[0]["ending_balance"])
    return None


def _find_customer_id(ctx: ResolverContext, strategies) -> tuple[str | None, str | None]:
    for source, strategy in strategies:
        try:
            customer_id = strategy(ctx)
        except BillingProviderError as exc:
            logger.warning(
                "customer lookup failed",
                extra={"user_id": ctx.user.id, "strategy": source, "error": str(exc)},
            )
            continue
        if customer_id:
            return customer_id, source
    return None, None


def _self_heal(ctx: ResolverContext, resolved: ResolvedCustomer) -> ResolvedCustomer:
    customer_id = resolved.customer_id
    try:
        customer = ctx.provider.retrieve_customer(customer_id)
    except BillingProviderError as exc:
        logger.warning(
            "customer retrieve failed",
            extra={"user_id": ctx.user.id, "customer_id": customer_id, "operation": exc.operation, "error": str(exc)},
        )
        return resolved

    if customer is not None and not customer.get("deleted"):
        resolved.customer = customer
        return resolved

    captured = _last_known_balance(ctx, customer_id, customer)
    logger.warning(
        "linked customer deleted, minting replacement",
        extra={"user_id": ctx.user.id, "customer_id": customer_id, "captured_balance": captured},
    )
    try:
        replacement = _mint_customer(ctx)
    except BillingProviderError as exc:
        logger.error(
            "replacement customer create failed",
            extra={"user_id": ctx.user.id, "customer_id": customer_id, "operation": exc.operation, "error": str(exc)},
        )
        resolved.customer = customer
        resolved.balance_override = captured
        resolved.deleted = True
        return resolved

    billing_store.upsert_customer_link(ctx.db, ctx.user.id, replacement["id"])
    return ResolvedCustomer(
        customer_id=replacement["id"],
        source=resolved.source,
        customer=replacement,
        balance_override=captured,
        created=True,
    )


def resolve_customer(
    db: Session,
    provider: BillingProvider,
    user: CurrentUser,
    *,
    require_customer: bool = False,
    strategies=RESOLVER_STRATEGIES,
) -> ResolvedCustomer | None:
    ctx = ResolverContext(db=db, provider=provider, user=user)
    customer_id, source = _find_customer_id(ctx, strategies)

    if customer_id:
        if source != "link":
            billing_store.upsert_customer_link(db, user.id, customer_id)
            logger.info(
                "billing customer linked",
                extra={"user_id": user.id, "customer_id": customer_id, "strategy": source},
            )
        return _self_heal(ctx, ResolvedCustomer(customer_id=customer_id, source=source or "link"))

    if not require_customer:
        logger.info("no billing customer for user", extra={"user_id": user.id})
        return None

    customer = _mint_customer(ctx)
    billing_store.upsert_customer_link(db, user.id, customer["id"])
    return ResolvedCustomer(customer_id=customer["id"], source="created", customer=customer, created=True)
