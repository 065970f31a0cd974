"""
Stripe Payment Provider Implementation.

NO DICTIONARIES - All data uses strongly typed models.
"""

import asyncio
import json
from typing import Any

import stripe
from structlog import get_logger

from gateway.exceptions import PaymentProviderError, WebhookVerificationError
from gateway.models.api import PurchaseType
from gateway.services.payment_provider import (
    CheckoutIntent,
    CheckoutResult,
    WebhookEvent,
)

logger = get_logger(__name__)

SIGNATURE_TOLERANCE_SECONDS = 300


def _ref_id(value: Any) -> str | None:
    """Stripe references are ids, or objects when expanded."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        ref = value.get("id")
        return ref if isinstance(ref, str) else None
    return None


def _parse_int(value: Any) -> int | None:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _invoice_subscription(invoice: dict[str, Any]) -> str | None:
    """Subscription id of an invoice (top-level on older API versions, under parent on newer)."""
    subscription = _ref_id(invoice.get("subscription"))
    if subscription:
        return subscription
    parent = invoice.get("parent")
    if isinstance(parent, dict):
        details = parent.get("subscription_details")
        if isinstance(details, dict):
            return _ref_id(details.get("subscription"))
    return None


def parse_stripe_event(event: dict[str, Any]) -> WebhookEvent:
    """Map a verified Stripe event payload to a WebhookEvent."""
    data = event.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(obj, dict):
        obj = {}

    metadata = obj.get("metadata")
    if not isinstance(metadata, dict):
        metadata = {}

    object_id = _ref_id(obj.get("id"))
    if obj.get("object") == "invoice":
        payment_id = object_id
        subscription_id = _invoice_subscription(obj)
    else:
        payment_id = _ref_id(obj.get("payment_intent")) or object_id
        subscription_id = _ref_id(obj.get("subscription"))

    return WebhookEvent(
        event_id=str(event.get("id", "")),
        event_type=str(event.get("type", "")),
        object_id=object_id,
        payment_id=payment_id,
        customer_id=_ref_id(obj.get("customer")),
        subscription_id=subscription_id,
        payment_status=obj.get("payment_status"),
        purchase_type=metadata.get("type"),
        user_id=_parse_int(metadata.get("user_id")),
        credits_minor=_parse_int(metadata.get("credits_minor")),
    )


class StripeProvider:
    """
    Stripe payment provider implementation.

    Implements the PaymentProvider protocol for Stripe. Stripe's client is
    synchronous, so API calls run in a worker thread.
    """

    def __init__(self, api_key: str, webhook_secret: str, currency: str = "usd") -> None:
        """
        Initialize Stripe provider.

        Args:
            api_key: Stripe secret API key
            webhook_secret: Stripe webhook signing secret
        """
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.currency = currency
        stripe.api_key = api_key

    def _require_api_key(self) -> None:
        if not self.api_key:
            raise PaymentProviderError("Stripe API key not configured")

    async def create_customer(self, email: str, user_id: int) -> str:
        """Create a Stripe customer for a gateway user."""
        self._require_api_key()
        try:
            customer = await asyncio.to_thread(
                stripe.Customer.create,
                email=email,
                metadata={"gateway_user_id": str(user_id)},
            )
        except stripe.StripeError as exc:
            logger.error(
                "stripe_customer_create_failed",
                user_id=user_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(f"Failed to create customer: {exc}") from exc

        logger.info("stripe_customer_created", user_id=user_id, customer_id=customer.id)
        customer_id: str = customer.id
        return customer_id

    def _session_params(self, intent: CheckoutIntent) -> dict[str, Any]:
        base: dict[str, Any] = {
            "customer": intent.customer_id,
            "success_url": intent.success_url,
            "cancel_url": intent.cancel_url,
        }

        if intent.purchase_type is PurchaseType.CREDITS:
            return {
                **base,
                "mode": "payment",
                "line_items": [
                    {
                        "price_data": {
                            "currency": self.currency,
                            "product_data": {
                                "name": intent.label,
                                "description": "Prepaid API credits",
                            },
                            "unit_amount": intent.amount_minor,
                        },
                        "quantity": 1,
                    }
                ],
                "metadata": {
                    "type": PurchaseType.CREDITS.value,
                    "credits_minor": str(intent.credits_minor),
                    "user_id": str(intent.user_id),
                },
            }

        if intent.price_id:
            line_item: dict[str, Any] = {"price": intent.price_id, "quantity": 1}
        else:
            line_item = {
                "price_data": {
                    "currency": self.currency,
                    "product_data": {
                        "name": intent.label,
                        "description": "Subscription - bring your own provider key",
                    },
                    "unit_amount": intent.amount_minor,
                    "recurring": {"interval": "month"},
                },
                "quantity": 1,
            }
        return {
            **base,
            "mode": "subscription",
            "line_items": [line_item],
            "metadata": {
                "type": PurchaseType.SUBSCRIPTION.value,
                "user_id": str(intent.user_id),
            },
        }

    async def create_checkout_session(self, intent: CheckoutIntent) -> CheckoutResult:
        """
        Create a Stripe Checkout session.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        self._require_api_key()
        try:
            logger.info(
                "creating_stripe_checkout_session",
                user_id=intent.user_id,
                purchase_type=intent.purchase_type.value,
                amount_minor=intent.amount_minor,
            )
            session = await asyncio.to_thread(
                stripe.checkout.Session.create, **self._session_params(intent)
            )
        except stripe.StripeError as exc:
            logger.error(
                "stripe_checkout_session_failed",
                user_id=intent.user_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(f"Failed to create checkout session: {exc}") from exc

        logger.info("stripe_checkout_session_created", session_id=session.id)
        return CheckoutResult(session_id=session.id, url=session.url or "")

    async def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """Create a Stripe billing portal session and return its URL."""
        self._require_api_key()
        try:
            portal = await asyncio.to_thread(
                stripe.billing_portal.Session.create,
                customer=customer_id,
                return_url=return_url,
            )
        except stripe.StripeError as exc:
            logger.error("stripe_portal_session_failed", customer_id=customer_id, error=str(exc))
            raise PaymentProviderError(f"Failed to create portal session: {exc}") from exc

        url: str = portal.url
        return url

    async def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """
        Verify and parse Stripe webhook event.

        Args:
            payload: Raw webhook payload
            signature: Stripe-Signature header value

        Returns:
            Parsed webhook event

        Raises:
            WebhookVerificationError: If signature verification fails
            PaymentProviderError: If no webhook secret is configured
        """
        if not self.webhook_secret:
            logger.error("stripe_webhook_secret_missing")
            raise PaymentProviderError("Webhook secret not configured")

        try:
            payload_str = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                payload_str, signature, self.webhook_secret, SIGNATURE_TOLERANCE_SECONDS
            )
        except stripe.SignatureVerificationError as exc:
            logger.error("stripe_webhook_verification_failed", error=str(exc))
            raise WebhookVerificationError("Invalid Stripe webhook signature") from exc
        except UnicodeDecodeError as exc:
            raise WebhookVerificationError("Webhook payload is not UTF-8") from exc

        try:
            event = json.loads(payload_str)
        except ValueError as exc:
            logger.error("stripe_webhook_parsing_failed", error=str(exc))
            raise WebhookVerificationError(f"Failed to parse Stripe webhook: {exc}") from exc
        if not isinstance(event, dict):
            raise WebhookVerificationError("Stripe webhook payload is not an object")

        webhook_event = parse_stripe_event(event)
        logger.info(
            "stripe_webhook_verified",
            event_id=webhook_event.event_id,
            event_type=webhook_event.event_type,
        )
        return webhook_event
