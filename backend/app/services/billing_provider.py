from __future__ import annotations

import logging
from typing import Any, Callable, Protocol

import stripe

from app.core.config import settings

logger = logging.getLogger(__name__)


class BillingError(Exception):
    pass


class BillingNotConfiguredError(BillingError):
    pass


class BillingProviderError(BillingError):
    def __init__(self, operation: str, message: str, *, code: str | None = None):
        self.operation = operation
        self.code = code
        super().__init__(f"{operation}: {message}")


class BillingPreconditionError(BillingError):
    pass


class EntitlementWriteError(BillingError):
    pass


class BillingProvider(Protocol):
    provider_code: str

    def create_customer(self, *, email: str | None, metadata: dict[str, str]) -> dict:
        ...

    def retrieve_customer(self, customer_id: str) -> dict | None:
        ...

    def find_customers_by_email(self, email: str, *, limit: int = 1) -> list[dict]:
        ...

    def search_customers(self, query: str, *, limit: int = 1) -> list[dict]:
        ...

    def list_balance_transactions(self, customer_id: str, *, limit: int) -> list[dict]:
        ...

    def create_balance_transaction(
        self,
        customer_id: str,
        *,
        amount: int,
        currency: str,
        description: str,
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> dict:
        ...

    def list_checkout_sessions(self, *, limit: int, customer: str | None = None) -> list[dict]:
        ...

    def create_checkout_session(self, **params: Any) -> dict:
        ...

    def list_subscriptions(self, *, limit: int, customer: str | None = None, status: str | None = None) -> list[dict]:
        ...

    def search_subscriptions(self, query: str, *, limit: int) -> list[dict]:
        ...

    def retrieve_subscription(self, subscription_id: str) -> dict | None:
        ...

    def list_invoices(
        self,
        *,
        limit: int,
        customer: str | None = None,
        subscription: str | None = None,
        status: str = "paid",
    ) -> list[dict]:
        ...

    def create_portal_session(self, *, customer: str, return_url: str) -> dict:
        ...

    def construct_event(self, payload: bytes, signature: str | None) -> dict:
        ...


def _plain(obj: Any) -> Any:
    if obj is None:
        return None
    for attr in ("to_dict_recursive", "to_dict"):
        fn = getattr(obj, attr, None)
        if callable(fn):
            return fn()
    if isinstance(obj, dict):
        return obj
    return dict(obj)


def _plain_list(resp: Any) -> list[dict]:
    data = getattr(resp, "data", None)
    if data is None and isinstance(resp, dict):
        data = resp.get("data")
    return [_plain(item) for item in (data or [])]


def _clean(params: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in params.items() if v is not None}


class StripeBillingProvider:
    provider_code = "stripe"

    def __init__(self, api_key: str, *, webhook_secret: str | None = None):
        if not api_key:
            raise BillingNotConfiguredError("Stripe not configured")
        self._api_key = api_key
        self._webhook_secret = webhook_secret

    def _call(self, operation: str, fn: Callable[..., Any], *args: Any, **params: Any) -> Any:
        try:
            return fn(*args, api_key=self._api_key, **_clean(params))
        except stripe.StripeError as exc:
            code = getattr(exc, "code", None)
            raise BillingProviderError(operation, exc.user_message or str(exc), code=code) from exc

    def create_customer(self, *, email: str | None, metadata: dict[str, str]) -> dict:
        customer = self._call("customers.create", stripe.Customer.create, email=email, metadata=metadata)
        return _plain(customer)

    def retrieve_customer(self, customer_id: str) -> dict | None:
        try:
            customer = self._call("customers.retrieve", stripe.Customer.retrieve, customer_id)
        except BillingProviderError as exc:
            if exc.code == "resource_missing":
                return None
            raise
        return _plain(customer)

    def find_customers_by_email(self, email: str, *, limit: int = 1) -> list[dict]:
        return _plain_list(self._call("customers.list", stripe.Customer.list, email=email, limit=limit))

    def search_customers(self, query: str, *, limit: int = 1) -> list[dict]:
        return _plain_list(self._call("customers.search", stripe.Customer.search, query=query, limit=limit))

    def list_balance_transactions(self, customer_id: str, *, limit: int) -> list[dict]:
        resp = self._call(
            "customers.list_balance_transactions",
            stripe.Customer.list_balance_transactions,
            customer_id,
            limit=limit,
        )
        return _plain_list(resp)

    def create_balance_transaction(
        self,
        customer_id: str,
        *,
        amount: int,
        currency: str,
        description: str,
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> dict:
        txn = self._call(
            "customers.create_balance_transaction",
            stripe.Customer.create_balance_transaction,
            customer_id,
            amount=amount,
            currency=currency,
            description=description,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        return _plain(txn)

    def list_checkout_sessions(self, *, limit: int, customer: str | None = None) -> list[dict]:
        return _plain_list(
            self._call("checkout.sessions.list", stripe.checkout.Session.list, limit=limit, customer=customer)
        )

    def create_checkout_session(self, **params: Any) -> dict:
        return _plain(self._call("checkout.sessions.create", stripe.checkout.Session.create, **params))

    def list_subscriptions(self, *, limit: int, customer: str | None = None, status: str | None = None) -> list[dict]:
        return _plain_list(
            self._call("subscriptions.list", stripe.Subscription.list, limit=limit, customer=customer, status=status)
        )

    def search_subscriptions(self, query: str, *, limit: int) -> list[dict]:
        return _plain_list(self._call("subscriptions.search", stripe.Subscription.search, query=query, limit=limit))

    def retrieve_subscription(self, subscription_id: str) -> dict | None:
        try:
            subscription = self._call("subscriptions.retrieve", stripe.Subscription.retrieve, subscription_id)
        except BillingProviderError as exc:
            if exc.code == "resource_missing":
                return None
            raise
        return _plain(subscription)

    def list_invoices(
        self,
        *,
        limit: int,
        customer: str | None = None,
        subscription: str | None = None,
        status: str = "paid",
    ) -> list[dict]:
        resp = self._call(
            "invoices.list",
            stripe.Invoice.list,
            limit=limit,
            customer=customer,
            subscription=subscription,
            status=status,
        )
        return _plain_list(resp)

    def create_portal_session(self, *, customer: str, return_url: str) -> dict:
        session = self._call(
            "billing_portal.sessions.create",
            stripe.billing_portal.Session.create,
            customer=customer,
            return_url=return_url,
        )
        return _plain(session)

    def construct_event(self, payload: bytes, signature: str | None) -> dict:
        if not self._webhook_secret:
            raise BillingNotConfiguredError("Webhook secret not set")
        try:
            event = stripe.Webhook.construct_event(payload, signature or "", self._webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as exc:
            raise BillingPreconditionError(f"Invalid webhook: {exc}") from exc
        return _plain(event)


def get_provider_adapter() -> BillingProvider:
    if not settings.STRIPE_SECRET_KEY:
        raise BillingNotConfiguredError("Stripe not configured")
    return StripeBillingProvider(settings.STRIPE_SECRET_KEY, webhook_secret=settings.STRIPE_WEBHOOK_SECRET)
