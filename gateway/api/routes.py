"""
API Routes - Key issuance, usage and health endpoints.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from gateway.api.dependencies import get_context, require_user
from gateway.context import ServiceContext
from gateway.db.session import get_db
from gateway.exceptions import NotFoundError
from gateway.models.api import (
    CreateKeyRequest,
    CreateKeyResponse,
    HealthResponse,
    KeyItem,
    KeyListResponse,
    RecentRequestEntry,
    RevokeKeyResponse,
    UsageResponse,
    UsageSummaryEntry,
)
from gateway.models.domain import KeyInfo, UserData
from gateway.services.identity import IdentityService, is_subscription_active
from gateway.services.ledger import LedgerService
from gateway.services.usage import UsageJournal

router = APIRouter()

RECENT_REQUESTS_LIMIT = 10


def _key_item(key: KeyInfo) -> KeyItem:
    return KeyItem(
        prefix=key.prefix,
        name=key.name,
        created_at=key.created_at.isoformat(),
        revoked=key.revoked,
    )


# =============================================================================
# Keys
# =============================================================================


@router.post(
    "/v1/keys",
    response_model=CreateKeyResponse,
    status_code=status.HTTP_201_CREATED,
)
@router.post(
    "/keys",
    response_model=CreateKeyResponse,
    status_code=status.HTTP_201_CREATED,
    include_in_schema=False,
)
async def create_key(
    request: CreateKeyRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> CreateKeyResponse:
    """
    Issue a new API key.

    Finds or creates the user by email and always issues a fresh key.
    The raw key is returned only in this response.
    """
    identity = IdentityService(db)
    user = await identity.find_or_create_user(request.email)
    issued = await identity.issue_key(user.user_id, request.name)
    return CreateKeyResponse(api_key=issued.raw_key, prefix=issued.prefix, name=issued.name)


@router.get("/v1/keys", response_model=KeyListResponse)
async def list_keys(
    user: Annotated[UserData, Depends(require_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> KeyListResponse:
    """List the caller's keys, newest first."""
    keys = await IdentityService(db).list_keys(user.user_id)
    return KeyListResponse(keys=[_key_item(key) for key in keys])


@router.delete("/v1/keys/{prefix}", response_model=RevokeKeyResponse)
async def revoke_key(
    prefix: str,
    user: Annotated[UserData, Depends(require_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> RevokeKeyResponse:
    """Revoke one of the caller's keys by display prefix."""
    if not await IdentityService(db).revoke(user.user_id, prefix):
        raise NotFoundError(f"No active key with prefix {prefix}")
    return RevokeKeyResponse(prefix=prefix)


# =============================================================================
# Usage
# =============================================================================


@router.get("/v1/usage", response_model=UsageResponse)
@router.get("/usage", response_model=UsageResponse, include_in_schema=False)
async def get_usage(
    user: Annotated[UserData, Depends(require_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> UsageResponse:
    """Balance, subscription state, 30-day usage summary, recent requests and keys."""
    balance = await LedgerService(db).get_balance(user.user_id)
    journal = UsageJournal(db)
    summary = await journal.summary(user.user_id)
    recent = await journal.recent(user.user_id, RECENT_REQUESTS_LIMIT)
    keys = await IdentityService(db).list_keys(user.user_id)

    return UsageResponse(
        balance=balance,
        balance_usd=f"${balance / 100:.2f}",
        subscription_active=is_subscription_active(user),
        subscription_expires_at=(
            user.subscription_expires_at.isoformat() if user.subscription_expires_at else None
        ),
        usage_last_30_days=[
            UsageSummaryEntry(
                provider=item.provider,
                model=item.model,
                requests=item.requests,
                total_input_tokens=item.total_input_tokens,
                total_output_tokens=item.total_output_tokens,
                total_cost=item.total_cost,
            )
            for item in summary
        ],
        recent_requests=[
            RecentRequestEntry(
                provider=item.provider,
                model=item.model,
                input_tokens=item.input_tokens,
                output_tokens=item.output_tokens,
                cost=item.cost,
                created_at=item.created_at.isoformat(),
            )
            for item in recent
        ],
        keys=[_key_item(key) for key in keys],
    )


# =============================================================================
# Health
# =============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(
    context: Annotated[ServiceContext, Depends(get_context)],
) -> HealthResponse:
    """Liveness check."""
    return HealthResponse(
        status="ok",
        service=context.settings.service_name,
        version=context.settings.api_version,
    )
