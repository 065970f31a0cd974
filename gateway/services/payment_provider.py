"""
Payment Provider Protocol - Provider-agnostic interface.

NO DICTIONARIES - All data uses strongly typed models.
"""

from dataclasses import dataclass
from typing import Protocol

from gateway.models.api import PurchaseType


@dataclass(frozen=True)
class CheckoutIntent:
    """
    Provider-agnostic hosted checkout request.

    credits_minor is what the purchase adds to the balance (credit purchases only).
    """

    user_id: int
    customer_id: str
    purchase_type: PurchaseType
    amount_minor: int
    credits_minor: int
    label: str
    success_url: str
    cancel_url: str
    price_id: str | None = None


@dataclass(frozen=True)
class CheckoutResult:
    """Hosted checkout page created by the provider."""

    session_id: str
    url: str


@dataclass(frozen=True)
class WebhookEvent:
    """
    Provider-agnostic webhook event.

    Only produced after the signature has been verified.
    """

    event_id: str
    event_type: str
    object_id: str | None
    payment_id: str | None  # Dedup key for the payment this event reports
    customer_id: str | None
    subscription_id: str | None
    payment_status: str | None
    purchase_type: str | None
    user_id: int | None
    credits_minor: int | None


class PaymentProvider(Protocol):
    """
    Payment provider protocol.

    Any payment processor must implement this interface so billing logic
    stays provider-agnostic.
    """

    async def create_customer(self, email: str, user_id: int) -> str:
        """
        Create a customer record with the provider.

        Returns:
            Provider customer id

        Raises:
            PaymentProviderError: If creation fails
        """
        ...

    async def create_checkout_session(self, intent: CheckoutIntent) -> CheckoutResult:
        """
        Create a hosted checkout session.

        Raises:
            PaymentProviderError: If creation fails
        """
        ...

    async def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """
        Create a hosted self-service billing page.

        Returns:
            Portal URL

        Raises:
            PaymentProviderError: If creation fails
        """
        ...

    async def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """
        Verify and parse a webhook event.

        Args:
            payload: Raw, unparsed webhook body
            signature: Signature header value

        Raises:
            WebhookVerificationError: If signature verification fails
            PaymentProviderError: If no webhook secret is configured
        """
        ...
