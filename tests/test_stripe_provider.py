"""
Tests for the Stripe payment provider.

Stripe API calls are patched; signature verification uses the real scheme.
"""

import json
import time
from types import SimpleNamespace

import pytest
import stripe

from gateway.exceptions import PaymentProviderError, WebhookVerificationError
from gateway.models.api import PurchaseType
from gateway.services.payment_provider import CheckoutIntent
from gateway.services.stripe_provider import StripeProvider, parse_stripe_event
from conftest import WEBHOOK_SECRET, sign_payload, stripe_event


def intent(**overrides) -> CheckoutIntent:
    values = {
        "user_id": 7,
        "customer_id": "cus_7",
        "purchase_type": PurchaseType.CREDITS,
        "amount_minor": 2500,
        "credits_minor": 2500,
        "label": "$25 Credits",
        "success_url": "https://app.test/ok",
        "cancel_url": "https://app.test/cancel",
    }
    values.update(overrides)
    return CheckoutIntent(**values)


@pytest.fixture
def provider() -> StripeProvider:
    return StripeProvider(api_key="sk_test_fake_key", webhook_secret=WEBHOOK_SECRET)


class TestParseStripeEvent:
    def test_credit_checkout(self):
        event = json.loads(
            stripe_event(
                "checkout.session.completed",
                {
                    "id": "cs_1",
                    "object": "checkout.session",
                    "payment_intent": "pi_1",
                    "customer": "cus_1",
                    "payment_status": "paid",
                    "metadata": {"type": "credits", "user_id": "7", "credits_minor": "2500"},
                },
            )
        )
        parsed = parse_stripe_event(event)

        assert parsed.event_type == "checkout.session.completed"
        assert parsed.payment_id == "pi_1"
        assert parsed.object_id == "cs_1"
        assert parsed.customer_id == "cus_1"
        assert parsed.purchase_type == "credits"
        assert parsed.user_id == 7
        assert parsed.credits_minor == 2500

    def test_subscription_checkout_falls_back_to_session_id(self):
        event = json.loads(
            stripe_event(
                "checkout.session.completed",
                {
                    "id": "cs_sub",
                    "object": "checkout.session",
                    "payment_intent": None,
                    "subscription": {"id": "sub_1", "object": "subscription"},
                    "customer": "cus_1",
                    "metadata": {"type": "subscription", "user_id": "7"},
                },
            )
        )
        parsed = parse_stripe_event(event)

        assert parsed.payment_id == "cs_sub"
        assert parsed.subscription_id == "sub_1"
        assert parsed.credits_minor is None

    def test_invoice_uses_invoice_id(self):
        event = json.loads(
            stripe_event(
                "invoice.paid",
                {
                    "id": "in_1",
                    "object": "invoice",
                    "payment_intent": "pi_ignored",
                    "customer": "cus_1",
                    "parent": {"subscription_details": {"subscription": "sub_9"}},
                },
            )
        )
        parsed = parse_stripe_event(event)

        assert parsed.payment_id == "in_1"
        assert parsed.subscription_id == "sub_9"

    def test_malformed_payload(self):
        parsed = parse_stripe_event({"id": "evt", "type": "x", "data": "nope"})
        assert parsed.payment_id is None
        assert parsed.user_id is None

    @pytest.mark.parametrize("raw", ["abc", "", None, True, "-5"])
    def test_bad_metadata_numbers(self, raw):
        event = {"data": {"object": {"metadata": {"user_id": raw, "credits_minor": raw}}}}
        parsed = parse_stripe_event(event)
        assert parsed.user_id is None
        assert parsed.credits_minor is None


class TestVerifyWebhook:
    async def test_valid_signature(self, provider: StripeProvider):
        payload = stripe_event("invoice.paid", {"id": "in_1", "object": "invoice"})
        event = await provider.verify_webhook(payload.encode(), sign_payload(payload))

        assert event.event_id == "evt_test_1"
        assert event.payment_id == "in_1"

    async def test_tampered_payload(self, provider: StripeProvider):
        payload = stripe_event("invoice.paid", {"id": "in_1", "object": "invoice"})
        signature = sign_payload(payload)

        with pytest.raises(WebhookVerificationError):
            await provider.verify_webhook(payload.replace("in_1", "in_2").encode(), signature)

    async def test_wrong_secret(self, provider: StripeProvider):
        payload = stripe_event("invoice.paid", {"id": "in_1"})
        with pytest.raises(WebhookVerificationError):
            await provider.verify_webhook(payload.encode(), sign_payload(payload, "whsec_other"))

    async def test_stale_timestamp(self, provider: StripeProvider):
        payload = stripe_event("invoice.paid", {"id": "in_1"})
        old = int(time.time()) - 3600
        with pytest.raises(WebhookVerificationError):
            await provider.verify_webhook(payload.encode(), sign_payload(payload, timestamp=old))

    async def test_missing_header(self, provider: StripeProvider):
        payload = stripe_event("invoice.paid", {"id": "in_1"})
        with pytest.raises(WebhookVerificationError):
            await provider.verify_webhook(payload.encode(), "")

    async def test_missing_secret(self):
        provider = StripeProvider(api_key="sk_test_fake_key", webhook_secret="")
        payload = stripe_event("invoice.paid", {"id": "in_1"})
        with pytest.raises(PaymentProviderError):
            await provider.verify_webhook(payload.encode(), sign_payload(payload))


class TestCheckoutSessions:
    async def test_credit_session_params(self, provider: StripeProvider, monkeypatch):
        captured = {}

        def fake_create(**params):
            captured.update(params)
            return SimpleNamespace(id="cs_new", url="https://checkout.stripe.test/cs_new")

        monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)

        result = await provider.create_checkout_session(intent())

        assert result.session_id == "cs_new"
        assert captured["mode"] == "payment"
        assert captured["customer"] == "cus_7"
        assert captured["line_items"][0]["price_data"]["unit_amount"] == 2500
        assert captured["metadata"] == {
            "type": "credits",
            "credits_minor": "2500",
            "user_id": "7",
        }

    async def test_subscription_session_with_price_id(self, provider: StripeProvider, monkeypatch):
        captured = {}

        def fake_create(**params):
            captured.update(params)
            return SimpleNamespace(id="cs_sub", url="https://checkout.stripe.test/cs_sub")

        monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)

        await provider.create_checkout_session(
            intent(
                purchase_type=PurchaseType.SUBSCRIPTION,
                amount_minor=1000,
                credits_minor=0,
                label="Subscription",
                price_id="price_123",
            )
        )

        assert captured["mode"] == "subscription"
        assert captured["line_items"] == [{"price": "price_123", "quantity": 1}]
        assert captured["metadata"] == {"type": "subscription", "user_id": "7"}

    async def test_inline_recurring_price(self, provider: StripeProvider, monkeypatch):
        captured = {}

        def fake_create(**params):
            captured.update(params)
            return SimpleNamespace(id="cs_sub", url=None)

        monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)

        result = await provider.create_checkout_session(
            intent(purchase_type=PurchaseType.SUBSCRIPTION, credits_minor=0, amount_minor=1000)
        )

        price_data = captured["line_items"][0]["price_data"]
        assert price_data["recurring"] == {"interval": "month"}
        assert price_data["unit_amount"] == 1000
        assert result.url == ""

    async def test_stripe_error_wrapped(self, provider: StripeProvider, monkeypatch):
        def fake_create(**params):
            raise stripe.APIConnectionError("network down")

        monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)

        with pytest.raises(PaymentProviderError):
            await provider.create_checkout_session(intent())

    async def test_requires_api_key(self):
        provider = StripeProvider(api_key="", webhook_secret=WEBHOOK_SECRET)
        with pytest.raises(PaymentProviderError):
            await provider.create_customer("a@example.com", 1)
