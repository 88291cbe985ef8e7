"""Stripe webhook endpoint that reconciles subscription state for users."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
import logging
from typing import Any, Protocol

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import PlainTextResponse, Response
import stripe

from .exceptions import BillingError, PersistenceError, WebhookVerificationError
from .subscriptions import SubscriptionStore

LOGGER = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
SIGNATURE_HEADER = "stripe-signature"


class BillingGateway(Protocol):
    """The two Stripe calls the webhook depends on."""

    def construct_event(self, payload: bytes, signature: str) -> Mapping[str, Any]: ...

    def retrieve_subscription(self, subscription_id: str) -> Mapping[str, Any]: ...


def _as_mapping(obj: Any) -> Mapping[str, Any]:
    """Return Stripe SDK objects as plain mappings."""
    if isinstance(obj, Mapping):
        return obj
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    raise BillingError(f"Unexpected Stripe object {type(obj).__name__}.")


class StripeGateway:
    """Verify and enrich webhook events through the Stripe SDK."""

    def __init__(self, api_key: str, webhook_secret: str) -> None:
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        if not webhook_secret:
            LOGGER.warning(
                "billing.webhook_secret.missing",
                extra={"event": "billing.webhook_secret.missing"},
            )

    def construct_event(self, payload: bytes, signature: str) -> Mapping[str, Any]:
        try:
            event = stripe.Webhook.construct_event(
                payload, signature, self.webhook_secret
            )
        except (ValueError, stripe.SignatureVerificationError) as exc:
            raise WebhookVerificationError(str(exc) or "Unknown Error") from exc
        return _as_mapping(event)

    def retrieve_subscription(self, subscription_id: str) -> Mapping[str, Any]:
        try:
            subscription = stripe.Subscription.retrieve(
                subscription_id, api_key=self.api_key
            )
        except stripe.StripeError as exc:
            raise BillingError(
                f"Unable to retrieve subscription {subscription_id!r}: {exc}"
            ) from exc
        return _as_mapping(subscription)


@dataclass(frozen=True)
class SubscriptionDetails:
    """The subscription fields persisted for a user."""

    subscription_id: str
    customer_id: str | None
    price_id: str | None
    current_period_end: datetime | None

    @classmethod
    def from_stripe(cls, subscription: Mapping[str, Any]) -> SubscriptionDetails:
        items_field = subscription.get("items")
        items: list[Any] = []
        if isinstance(items_field, Mapping):
            items = list(items_field.get("data") or [])
        first_item: Mapping[str, Any] = items[0] if items else {}
        price = first_item.get("price") or {}

        # Newer API versions moved the period end onto subscription items.
        period_end_seconds = subscription.get("current_period_end")
        if period_end_seconds is None:
            period_end_seconds = first_item.get("current_period_end")

        customer = subscription.get("customer")
        if isinstance(customer, Mapping):
            customer = customer.get("id")

        return cls(
            subscription_id=str(subscription["id"]),
            customer_id=customer if isinstance(customer, str) else None,
            price_id=price.get("id") if isinstance(price, Mapping) else None,
            current_period_end=(
                datetime.fromtimestamp(int(period_end_seconds), tz=UTC)
                if period_end_seconds is not None
                else None
            ),
        )


def _event_object(event: Mapping[str, Any]) -> Mapping[str, Any]:
    data = event.get("data")
    if not isinstance(data, Mapping):
        return {}
    obj = data.get("object")
    return obj if isinstance(obj, Mapping) else {}


def _subscription_id_of(obj: Mapping[str, Any]) -> str | None:
    subscription = obj.get("subscription")
    if isinstance(subscription, Mapping):
        subscription = subscription.get("id")
    return subscription if isinstance(subscription, str) and subscription else None


def process_event(
    event: Mapping[str, Any], gateway: BillingGateway, store: SubscriptionStore
) -> str:
    """Apply one verified event to the store and return what was done.

    Events without ``metadata.userId`` are acknowledged without changes so the
    processor does not retry them.
    """
    event_type = str(event.get("type", ""))
    obj = _event_object(event)
    metadata = obj.get("metadata")
    user_id = metadata.get("userId") if isinstance(metadata, Mapping) else None
    if not user_id:
        LOGGER.info(
            "billing.event.ignored",
            extra={
                "event": "billing.event.ignored",
                "event_type": event_type,
                "reason": "missing metadata.userId",
            },
        )
        return "ignored"

    if event_type not in (CHECKOUT_COMPLETED, PAYMENT_SUCCEEDED):
        return "ignored"

    subscription_id = _subscription_id_of(obj)
    if subscription_id is None:
        raise BillingError(f"{event_type} event carries no subscription id.")
    details = SubscriptionDetails.from_stripe(
        gateway.retrieve_subscription(subscription_id)
    )

    if event_type == CHECKOUT_COMPLETED:
        store.upsert_for_user(
            str(user_id),
            stripe_subscription_id=details.subscription_id,
            stripe_customer_id=details.customer_id,
            stripe_price_id=details.price_id,
            stripe_current_period_end=details.current_period_end,
        )
        outcome = "subscription.created"
    else:
        store.update_by_subscription(
            details.subscription_id,
            stripe_price_id=details.price_id,
            stripe_current_period_end=details.current_period_end,
        )
        outcome = "subscription.renewed"

    LOGGER.info(
        "billing.event.applied",
        extra={
            "event": "billing.event.applied",
            "event_type": event_type,
            "outcome": outcome,
            "user_id": str(user_id),
            "subscription_id": details.subscription_id,
        },
    )
    return outcome


def create_app(gateway: BillingGateway, store: SubscriptionStore) -> FastAPI:
    """Build the webhook application around an injected gateway and store."""
    app = FastAPI(title="docchat billing")

    @app.get("/healthz")
    async def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/api/webhooks/stripe")
    async def stripe_webhook(request: Request) -> Response:
        body = await request.body()
        signature = request.headers.get(SIGNATURE_HEADER, "")
        try:
            event = gateway.construct_event(body, signature)
        except WebhookVerificationError as exc:
            LOGGER.warning(
                "billing.webhook.rejected",
                extra={"event": "billing.webhook.rejected", "reason": str(exc)},
            )
            return PlainTextResponse(f"Webhook Error: {exc}", status_code=400)

        try:
            await run_in_threadpool(process_event, event, gateway, store)
        except (BillingError, PersistenceError) as exc:
            # A 5xx makes Stripe retry the delivery later.
            LOGGER.error(
                "billing.event.failed",
                extra={
                    "event": "billing.event.failed",
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            return PlainTextResponse(str(exc), status_code=500)

        return Response(status_code=200)

    return app


def build_app_from_config(config: dict[str, dict[str, Any]]) -> FastAPI:
    billing_cfg = config["billing"]
    gateway = StripeGateway(
        api_key=str(billing_cfg["stripe_secret_key"]),
        webhook_secret=str(billing_cfg["stripe_webhook_secret"]),
    )
    return create_app(gateway, SubscriptionStore(str(billing_cfg["store_path"])))
