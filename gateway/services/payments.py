"""
Payment Event Processor - Applies verified payment notifications exactly once.

A payment_events row keyed by the processor's payment id is the dedup record.
The balance/subscription change and that row commit in one transaction, so a
payment is either fully applied or not at all.
"""

from datetime import UTC, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from gateway.config import Settings
from gateway.db.models import PaymentEvent
from gateway.exceptions import InvalidRequestError
from gateway.models.api import CheckoutRequest, PurchaseType
from gateway.models.domain import PaymentOutcome, UserData
from gateway.observability.metrics import metrics
from gateway.services.identity import IdentityService
from gateway.services.ledger import LedgerService
from gateway.services.payment_provider import (
    CheckoutIntent,
    CheckoutResult,
    PaymentProvider,
    WebhookEvent,
)

logger = get_logger(__name__)

# Credit tier (price in minor units) -> label. Credits granted equal the price.
CREDIT_TIERS: dict[int, str] = {
    1000: "$10 Credits",
    2500: "$25 Credits",
    5000: "$50 Credits",
    10000: "$100 Credits",
}

CHECKOUT_COMPLETED = "checkout.session.completed"
INVOICE_PAID = "invoice.paid"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"


class PaymentEventProcessor:
    """Applies payment webhook events to the ledger and subscriptions."""

    def __init__(self, session: AsyncSession, settings: Settings) -> None:
        self.session = session
        self.settings = settings
        self.identity = IdentityService(session)
        self.ledger = LedgerService(session)

    async def handle(self, event: WebhookEvent, now: datetime | None = None) -> PaymentOutcome:
        """
        Dispatch a verified event.

        Cancellations and failed renewals are only logged: access lapses at the
        existing expiry because the processor retries failed charges.
        """
        now = now or datetime.now(UTC)
        log = logger.bind(event_id=event.event_id, event_type=event.event_type)

        if event.event_type == CHECKOUT_COMPLETED:
            if event.purchase_type == PurchaseType.CREDITS.value:
                outcome = await self._apply_credit_purchase(event)
            elif event.purchase_type == PurchaseType.SUBSCRIPTION.value:
                outcome = await self._apply_subscription_checkout(event, now)
            else:
                log.info("checkout_without_purchase_type", session_id=event.object_id)
                outcome = PaymentOutcome(applied=False)

        elif event.event_type == INVOICE_PAID:
            outcome = await self._apply_invoice_paid(event, now)

        elif event.event_type in (SUBSCRIPTION_DELETED, INVOICE_PAYMENT_FAILED):
            user = (
                await self.identity.get_user_by_customer(event.customer_id)
                if event.customer_id
                else None
            )
            log.info(
                "subscription_lapse_pending",
                user_id=user.user_id if user else None,
                expires_at=(
                    user.subscription_expires_at.isoformat()
                    if user and user.subscription_expires_at
                    else None
                ),
            )
            outcome = PaymentOutcome(applied=False, user_id=user.user_id if user else None)

        else:
            log.info("webhook_event_ignored")
            outcome = PaymentOutcome(applied=False)

        metrics.record_webhook_event(
            event.event_type,
            "duplicate" if outcome.duplicate else ("applied" if outcome.applied else "ignored"),
        )
        return outcome

    # ========================================================================
    # Branches
    # ========================================================================

    async def _apply_credit_purchase(self, event: WebhookEvent) -> PaymentOutcome:
        if event.payment_status != "paid":
            logger.info(
                "credit_checkout_not_paid",
                event_id=event.event_id,
                payment_status=event.payment_status,
            )
            return PaymentOutcome(applied=False)

        if not event.payment_id or not event.user_id or not event.credits_minor:
            logger.error("credit_checkout_missing_metadata", event_id=event.event_id)
            return PaymentOutcome(applied=False)

        if event.credits_minor <= 0:
            logger.error(
                "credit_checkout_invalid_amount",
                event_id=event.event_id,
                credits_minor=event.credits_minor,
            )
            return PaymentOutcome(applied=False)

        user = await self.identity.get_user(event.user_id)
        if user is None:
            logger.error("payment_user_not_found", event_id=event.event_id, user_id=event.user_id)
            return PaymentOutcome(applied=False)

        return await self._apply_once(
            payment_id=event.payment_id,
            user=user,
            kind=PurchaseType.CREDITS,
            credits_minor=event.credits_minor,
        )

    async def _apply_subscription_checkout(
        self, event: WebhookEvent, now: datetime
    ) -> PaymentOutcome:
        if not event.payment_id or not event.user_id:
            logger.error("subscription_checkout_missing_metadata", event_id=event.event_id)
            return PaymentOutcome(applied=False)

        user = await self.identity.get_user(event.user_id)
        if user is None:
            logger.error("payment_user_not_found", event_id=event.event_id, user_id=event.user_id)
            return PaymentOutcome(applied=False)

        return await self._apply_once(
            payment_id=event.payment_id,
            user=user,
            kind=PurchaseType.SUBSCRIPTION,
            extend_until=now + timedelta(days=self.settings.subscription_extension_days),
            customer_id=event.customer_id,
        )

    async def _apply_invoice_paid(self, event: WebhookEvent, now: datetime) -> PaymentOutcome:
        if not event.subscription_id:
            logger.info("invoice_not_for_subscription", invoice_id=event.object_id)
            return PaymentOutcome(applied=False)

        if not event.customer_id or not event.payment_id:
            logger.error("invoice_missing_customer", event_id=event.event_id)
            return PaymentOutcome(applied=False)

        user = await self.identity.get_user_by_customer(event.customer_id)
        if user is None:
            logger.warning(
                "invoice_customer_unknown",
                event_id=event.event_id,
                customer_id=event.customer_id,
            )
            return PaymentOutcome(applied=False)

        return await self._apply_once(
            payment_id=event.payment_id,
            user=user,
            kind=PurchaseType.SUBSCRIPTION,
            extend_until=now + timedelta(days=self.settings.subscription_extension_days),
        )

    # ========================================================================
    # Atomic application
    # ========================================================================

    async def _apply_once(
        self,
        payment_id: str,
        user: UserData,
        kind: PurchaseType,
        credits_minor: int = 0,
        extend_until: datetime | None = None,
        customer_id: str | None = None,
    ) -> PaymentOutcome:
        """
        Apply a payment and insert its dedup record in one transaction.

        A concurrent delivery of the same payment loses on the primary key and
        rolls back, leaving exactly one application.
        """
        if await self._payment_exists(payment_id):
            logger.info("payment_duplicate_skipped", payment_id=payment_id, user_id=user.user_id)
            return PaymentOutcome(applied=False, duplicate=True, user_id=user.user_id)

        expires_at: datetime | None = None
        try:
            if credits_minor > 0:
                await self.ledger.credit(user.user_id, credits_minor, commit=False)
            if extend_until is not None:
                expires_at = await self.identity.extend_subscription(
                    user.user_id, extend_until, commit=False
                )
            if customer_id and user.stripe_customer_id is None:
                await self.identity.set_customer_id(user.user_id, customer_id, commit=False)

            self.session.add(
                PaymentEvent(
                    payment_id=payment_id,
                    user_id=user.user_id,
                    kind=kind.value,
                    credits_minor=credits_minor,
                    subscription_expires_at=expires_at,
                )
            )
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            logger.info("payment_duplicate_race", payment_id=payment_id, user_id=user.user_id)
            return PaymentOutcome(applied=False, duplicate=True, user_id=user.user_id)

        metrics.record_credit_addition(kind.value, credits_minor)
        logger.info(
            "payment_applied",
            payment_id=payment_id,
            user_id=user.user_id,
            kind=kind.value,
            credits_minor=credits_minor,
            subscription_expires_at=expires_at.isoformat() if expires_at else None,
        )
        return PaymentOutcome(
            applied=True,
            user_id=user.user_id,
            credits_minor=credits_minor,
            subscription_expires_at=expires_at,
        )

    async def _payment_exists(self, payment_id: str) -> bool:
        result = await self.session.execute(
            select(PaymentEvent.payment_id).where(PaymentEvent.payment_id == payment_id)
        )
        return result.scalar_one_or_none() is not None


class CheckoutService:
    """Creates hosted checkout and billing portal sessions."""

    def __init__(self, session: AsyncSession, settings: Settings, provider: PaymentProvider) -> None:
        self.settings = settings
        self.provider = provider
        self.identity = IdentityService(session)

    async def create_checkout(self, user: UserData, request: CheckoutRequest) -> CheckoutResult:
        """
        Start a credit purchase or subscription checkout.

        Raises:
            InvalidRequestError: Unknown credit tier
            PaymentProviderError: Provider call failed
        """
        purchase_type = PurchaseType(request.type)
        if purchase_type is PurchaseType.CREDITS:
            if request.amount not in CREDIT_TIERS:
                raise InvalidRequestError("Invalid amount", valid_amounts=sorted(CREDIT_TIERS))
            amount = request.amount
            credits = request.amount
            label = CREDIT_TIERS[request.amount]
        else:
            amount = self.settings.subscription_price_minor
            credits = 0
            label = "Subscription"

        customer_id = await self._ensure_customer(user)
        intent = CheckoutIntent(
            user_id=user.user_id,
            customer_id=customer_id,
            purchase_type=purchase_type,
            amount_minor=amount,
            credits_minor=credits,
            label=label,
            success_url=self.settings.checkout_success_url,
            cancel_url=self.settings.checkout_cancel_url,
            price_id=self.settings.stripe_subscription_price_id or None,
        )
        return await self.provider.create_checkout_session(intent)

    async def create_portal(self, user: UserData) -> str:
        """
        Get the hosted billing portal URL.

        Raises:
            InvalidRequestError: The user has never purchased anything
        """
        if not user.stripe_customer_id:
            raise InvalidRequestError("No billing account found. Make a purchase first.")
        return await self.provider.create_portal_session(
            user.stripe_customer_id, self.settings.portal_return_url
        )

    async def _ensure_customer(self, user: UserData) -> str:
        if user.stripe_customer_id:
            return user.stripe_customer_id
        customer_id = await self.provider.create_customer(user.email, user.user_id)
        await self.identity.set_customer_id(user.user_id, customer_id)
        return customer_id
