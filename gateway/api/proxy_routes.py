"""
Proxy Routes - OpenAI and Anthropic pass-through endpoints.

The provider is chosen by the route, never by the model field. Bodies are
forwarded as received.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from gateway.api.dependencies import get_context, get_provider_key, require_user
from gateway.context import ServiceContext
from gateway.db.session import get_db
from gateway.models.domain import UserData
from gateway.services.providers import Provider, get_provider_spec
from gateway.services.relay import RelayService

router = APIRouter()


async def _relay(
    provider: Provider,
    request: Request,
    user: UserData,
    provider_key: str | None,
    context: ServiceContext,
    db: AsyncSession,
) -> Response:
    body = await request.body()
    return await RelayService(context, db).relay(
        get_provider_spec(provider),
        user,
        body,
        request.headers,
        provider_key,
    )


@router.post("/v1/chat/completions")
async def chat_completions(
    request: Request,
    user: Annotated[UserData, Depends(require_user)],
    provider_key: Annotated[str | None, Depends(get_provider_key)],
    context: Annotated[ServiceContext, Depends(get_context)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> Response:
    """OpenAI-compatible chat completions."""
    return await _relay(Provider.OPENAI, request, user, provider_key, context, db)


@router.post("/v1/messages")
async def messages(
    request: Request,
    user: Annotated[UserData, Depends(require_user)],
    provider_key: Annotated[str | None, Depends(get_provider_key)],
    context: Annotated[ServiceContext, Depends(get_context)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> Response:
    """Anthropic-compatible messages."""
    return await _relay(Provider.ANTHROPIC, request, user, provider_key, context, db)
