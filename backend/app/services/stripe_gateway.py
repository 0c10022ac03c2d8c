"""Stripe access: checkout sessions, webhook signature verification and price resolution."""

from __future__ import annotations

import json
import logging
from typing import Any, Literal

import stripe

from backend.app.core.config import settings
from backend.app.core.errors import CheckoutUnavailable, InvalidSignature, PriceResolutionError

logger = logging.getLogger(__name__)

CheckoutMode = Literal["payment", "subscription"]


def first_price_id(items: Any) -> str | None:
    """Return ``data[0].price.id`` from a Stripe list payload, if present."""
    try:
        data = items["data"]
        if not data:
            return None
        price = data[0]["price"]
    except (KeyError, IndexError, TypeError):
        return None
    if isinstance(price, str):
        return price or None
    try:
        return price["id"] or None
    except (KeyError, TypeError):
        return None


class StripeGateway:
    def __init__(
        self,
        *,
        api_key: str | None = None,
        webhook_secret: str | None = None,
        tolerance_seconds: int | None = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.stripe_secret_key
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.stripe_webhook_secret
        self.tolerance_seconds = (
            tolerance_seconds if tolerance_seconds is not None else settings.stripe_webhook_tolerance_seconds
        )

    def verify_event(self, payload: bytes, sig_header: str | None) -> dict[str, Any]:
        """Verify the ``Stripe-Signature`` header and return the decoded event."""
        if not self.webhook_secret:
            logger.error("Stripe webhook secret is not configured")
            raise InvalidSignature("Webhook secret is not configured")
        if not sig_header:
            raise InvalidSignature("Missing Stripe-Signature header")

        try:
            text = payload.decode("utf-8") if isinstance(payload, bytes) else str(payload)
        except UnicodeDecodeError as exc:
            raise InvalidSignature("Invalid webhook payload") from exc
        try:
            stripe.WebhookSignature.verify_header(
                text,
                sig_header,
                self.webhook_secret,
                self.tolerance_seconds,
            )
        except stripe.SignatureVerificationError as exc:
            raise InvalidSignature("Invalid webhook signature") from exc

        try:
            event = json.loads(text)
        except ValueError as exc:
            raise InvalidSignature("Invalid webhook payload") from exc
        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise InvalidSignature("Invalid webhook payload")
        return event

    def price_id_for_subscription(self, subscription_id: str) -> str:
        try:
            subscription = stripe.Subscription.retrieve(subscription_id, api_key=self.api_key)
        except stripe.StripeError as exc:
            logger.warning("Failed to retrieve subscription %s: %s", subscription_id, exc)
            raise PriceResolutionError("Could not retrieve subscription from Stripe") from exc

        try:
            items = subscription["items"]
        except (KeyError, TypeError):
            items = None
        price_id = first_price_id(items)
        if not price_id:
            raise PriceResolutionError("No price found in subscription")
        return price_id

    def price_id_for_checkout_session(self, session_id: str) -> str:
        try:
            line_items = stripe.checkout.Session.list_line_items(
                session_id, limit=1, api_key=self.api_key
            )
        except stripe.StripeError as exc:
            logger.warning("Failed to list line items for session %s: %s", session_id, exc)
            raise PriceResolutionError("Could not retrieve checkout line items from Stripe") from exc

        price_id = first_price_id(line_items)
        if not price_id:
            raise PriceResolutionError("No price found in checkout session")
        return price_id

    def find_or_create_customer(self, account_id: str, email: str) -> str:
        """Reuse the Stripe customer registered for ``email`` or create one tagged with the account."""
        customers = stripe.Customer.list(email=email, limit=1, api_key=self.api_key)
        data = customers["data"]
        if data:
            return data[0]["id"]
        customer = stripe.Customer.create(
            email=email,
            metadata={"account_id": account_id},
            api_key=self.api_key,
        )
        logger.info("Created Stripe customer", extra={"data": {"account_id": account_id}})
        return customer["id"]

    def create_checkout_session(
        self,
        account_id: str,
        price_id: str,
        mode: CheckoutMode = "subscription",
        *,
        email: str | None = None,
        success_url: str | None = None,
        cancel_url: str | None = None,
    ) -> dict[str, Any]:
        """
        Start a hosted checkout for one unit of ``price_id``.

        The account id travels as ``client_reference_id`` and in the session
        (and subscription) metadata, which is what the webhook reconciler
        reads to credit the right account.
        """
        if not self.api_key:
            logger.error("Stripe secret key is not configured")
            raise CheckoutUnavailable("Payments are not configured")

        metadata = {"account_id": account_id}
        params: dict[str, Any] = {
            "line_items": [{"price": price_id, "quantity": 1}],
            "mode": mode,
            "success_url": success_url or settings.checkout_success_url,
            "cancel_url": cancel_url or settings.checkout_cancel_url,
            "allow_promotion_codes": True,
            "client_reference_id": account_id,
            "metadata": metadata,
        }
        if mode == "subscription":
            params["subscription_data"] = {"metadata": metadata}

        try:
            if email:
                params["customer"] = self.find_or_create_customer(account_id, email)
            session = stripe.checkout.Session.create(api_key=self.api_key, **params)
        except stripe.StripeError as exc:
            logger.warning("Failed to create checkout session for %s: %s", account_id, exc)
            raise CheckoutUnavailable() from exc

        logger.info(
            "Checkout session created",
            extra={"data": {"account_id": account_id, "price_id": price_id, "mode": mode}},
        )
        return {"id": session["id"], "url": session["url"], "customer_id": params.get("customer")}
