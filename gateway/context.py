"""
Service Context - Explicitly constructed process-wide resources.

Settings, the store, the upstream HTTP client and the payment provider are
built once and passed around, so tests can substitute any of them.
"""

import asyncio
from dataclasses import dataclass, field

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from structlog import get_logger

from gateway.config import Settings
from gateway.db.session import create_engine, create_session_factory
from gateway.services.payment_provider import PaymentProvider
from gateway.services.stripe_provider import StripeProvider

logger = get_logger(__name__)


@dataclass
class ServiceContext:
    """Resources shared by every request for the process lifetime."""

    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    http_client: httpx.AsyncClient
    payment_provider: PaymentProvider
    pending_settlements: set["asyncio.Task[None]"] = field(default_factory=set)

    def track_settlement(self, task: "asyncio.Task[None]") -> None:
        """Keep a reference to a background settlement until it finishes."""
        self.pending_settlements.add(task)
        task.add_done_callback(self.pending_settlements.discard)

    async def drain_settlements(self) -> None:
        """Wait for in-flight stream settlements."""
        if self.pending_settlements:
            logger.info("draining_settlements", count=len(self.pending_settlements))
            await asyncio.gather(*self.pending_settlements, return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain_settlements()
        await self.http_client.aclose()
        await self.engine.dispose()


def build_upstream_timeout(settings: Settings) -> httpx.Timeout:
    """Upstream bounds. The read timeout also bounds gaps between stream chunks."""
    return httpx.Timeout(
        connect=settings.upstream_connect_timeout,
        read=settings.upstream_read_timeout,
        write=settings.upstream_write_timeout,
        pool=settings.upstream_pool_timeout,
    )


def build_http_client(settings: Settings) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=build_upstream_timeout(settings),
        limits=httpx.Limits(max_connections=200, max_keepalive_connections=50),
    )


def build_context(
    settings: Settings,
    *,
    engine: AsyncEngine | None = None,
    http_client: httpx.AsyncClient | None = None,
    payment_provider: PaymentProvider | None = None,
) -> ServiceContext:
    """Build a context, creating any resource not supplied."""
    engine = engine or create_engine(settings)
    return ServiceContext(
        settings=settings,
        engine=engine,
        session_factory=create_session_factory(engine),
        http_client=http_client or build_http_client(settings),
        payment_provider=payment_provider
        or StripeProvider(
            api_key=settings.stripe_api_key,
            webhook_secret=settings.stripe_webhook_secret,
        ),
    )
