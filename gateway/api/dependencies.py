"""
FastAPI Dependencies - Service context and bearer key authentication.

NO DICTIONARIES - All dependencies return typed objects.
"""

from fastapi import Depends, Header, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from gateway.context import ServiceContext
from gateway.db.session import get_db
from gateway.exceptions import AuthenticationError
from gateway.models.domain import UserData
from gateway.services.identity import KEY_PREFIX, IdentityService, display_prefix

logger = get_logger(__name__)

# Bearer token scheme; missing/other schemes are reported by require_user itself
bearer_scheme = HTTPBearer(auto_error=False)


def get_context(request: Request) -> ServiceContext:
    """The process-wide service context built at startup."""
    context: ServiceContext = request.app.state.context
    return context


async def require_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> UserData:
    """
    FastAPI dependency resolving `Authorization: Bearer cgk_...` to a user.

    Usage:
        @router.get("/v1/usage")
        async def usage(user: UserData = Depends(require_user)):
            ...

    Raises:
        AuthenticationError: Missing, malformed, unknown or revoked key
    """
    if credentials is None:
        raise AuthenticationError(
            f"Missing or invalid Authorization header. Use: Bearer {KEY_PREFIX}..."
        )

    token = credentials.credentials
    if not token.startswith(KEY_PREFIX):
        raise AuthenticationError(f"Invalid API key format. Keys start with {KEY_PREFIX}")

    user = await IdentityService(db).resolve(token)
    if user is None:
        logger.info("auth_rejected", prefix=display_prefix(token))
        raise AuthenticationError("Invalid or revoked API key")
    return user


async def optional_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> UserData | None:
    """
    Soft authentication - the user when a valid key is presented, else None.

    Useful for endpoints that work anonymously but personalize when a key is present.
    """
    if credentials is None or not credentials.credentials.startswith(KEY_PREFIX):
        return None
    return await IdentityService(db).resolve(credentials.credentials)


def get_provider_key(
    x_provider_key: str | None = Header(None, description="Caller's own upstream key (BYOK)"),
) -> str | None:
    """BYOK side-channel header. Only honored for active subscribers."""
    return x_provider_key or None
