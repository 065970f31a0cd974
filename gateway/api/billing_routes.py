"""
Billing Routes - Hosted checkout, billing portal and payment webhooks.

Served under /v1/billing and /billing. Checkout and portal use soft
authentication and reject anonymous callers themselves.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from gateway.api.dependencies import get_context, optional_user
from gateway.context import ServiceContext
from gateway.db.session import get_db
from gateway.exceptions import AuthenticationError
from gateway.models.api import CheckoutRequest, CheckoutResponse, PortalResponse, WebhookAck
from gateway.models.domain import UserData
from gateway.observability.metrics import metrics
from gateway.services.payments import CheckoutService, PaymentEventProcessor

logger = get_logger(__name__)

router = APIRouter()


def _authenticated(user: UserData | None) -> UserData:
    if user is None:
        raise AuthenticationError("Authentication required")
    return user


@router.post("/v1/billing/checkout", response_model=CheckoutResponse)
@router.post("/billing/checkout", response_model=CheckoutResponse, include_in_schema=False)
async def create_checkout(
    request: CheckoutRequest,
    user: Annotated[UserData | None, Depends(optional_user)],
    context: Annotated[ServiceContext, Depends(get_context)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> CheckoutResponse:
    """Create a hosted checkout session for credits or a subscription."""
    caller = _authenticated(user)
    service = CheckoutService(db, context.settings, context.payment_provider)
    result = await service.create_checkout(caller, request)
    return CheckoutResponse(url=result.url, session_id=result.session_id)


@router.get("/v1/billing/portal", response_model=PortalResponse)
@router.get("/billing/portal", response_model=PortalResponse, include_in_schema=False)
async def billing_portal(
    user: Annotated[UserData | None, Depends(optional_user)],
    context: Annotated[ServiceContext, Depends(get_context)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> PortalResponse:
    """Get the hosted self-service billing page."""
    caller = _authenticated(user)
    service = CheckoutService(db, context.settings, context.payment_provider)
    return PortalResponse(url=await service.create_portal(caller))


@router.post("/v1/billing/webhook", response_model=WebhookAck)
@router.post("/billing/webhook", response_model=WebhookAck, include_in_schema=False)
async def payment_webhook(
    request: Request,
    context: Annotated[ServiceContext, Depends(get_context)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> WebhookAck:
    """
    Ingest a signed payment event.

    The signature is checked against the exact raw body before anything else;
    failures are rejected with 400. Once verified, every event is acknowledged
    so the processor does not retry-storm. Processing failures are logged in
    full and monitored from server logs.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature", "")

    event = await context.payment_provider.verify_webhook(payload, signature)
    logger.info("payment_webhook_received", event_id=event.event_id, event_type=event.event_type)

    try:
        await PaymentEventProcessor(db, context.settings).handle(event)
    except Exception as exc:
        metrics.record_webhook_event(event.event_type, "failed")
        metrics.record_error(type(exc).__name__, "payment_webhook")
        logger.error(
            "payment_webhook_processing_failed",
            event_id=event.event_id,
            event_type=event.event_type,
            payment_id=event.payment_id,
            error=str(exc),
            exc_info=True,
        )

    return WebhookAck()
