"""
Pytest Configuration and Centralized Fixtures.

Provides:
- A disposable SQLite store per test (schema created from ORM metadata)
- A scriptable upstream behind httpx.MockTransport
- A payment provider that verifies real Stripe signatures but never calls Stripe
- An ASGI test client over an app built with an explicit service context
"""

import hashlib
import hmac
import json
import os
import time
from collections.abc import AsyncGenerator, Callable
from dataclasses import dataclass, field
from typing import Any

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

# Set required environment variables BEFORE importing gateway modules
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("AUTO_MIGRATE", "false")
os.environ.setdefault("OPENAI_API_KEY", "sk-test-openai-master")
os.environ.setdefault("ANTHROPIC_API_KEY", "sk-ant-test-master")
os.environ.setdefault("STRIPE_API_KEY", "sk_test_fake_key")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_fake_secret")

from gateway.config import Settings
from gateway.context import ServiceContext, build_context
from gateway.db.models import Base
from gateway.db.session import create_engine, create_session_factory
from gateway.main import create_app
from gateway.models.domain import UserData
from gateway.services.identity import IdentityService
from gateway.services.ledger import LedgerService
from gateway.services.payment_provider import CheckoutIntent, CheckoutResult, WebhookEvent
from gateway.services.stripe_provider import StripeProvider

WEBHOOK_SECRET = "whsec_test_fake_secret"
OPENAI_BASE = "https://api.openai.test"
ANTHROPIC_BASE = "https://api.anthropic.test"


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a Stripe-Signature header for a payload."""
    ts = timestamp if timestamp is not None else int(time.time())
    signature = hmac.new(
        secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256
    ).hexdigest()
    return f"t={ts},v1={signature}"


def stripe_event(event_type: str, obj: dict[str, Any], event_id: str = "evt_test_1") -> str:
    """Serialize a minimal Stripe event envelope."""
    return json.dumps(
        {"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}}
    )


# ============================================================================
# Settings & Store
# ============================================================================


@pytest.fixture
def settings_overrides() -> dict[str, Any]:
    """Override in a test module to tweak settings."""
    return {}


@pytest.fixture
def test_settings(tmp_path, settings_overrides: dict[str, Any]) -> Settings:
    values: dict[str, Any] = {
        "database_url": f"sqlite+aiosqlite:///{tmp_path / 'gateway.db'}",
        "auto_migrate": False,
        "openai_api_key": "sk-test-openai-master",
        "openai_base_url": OPENAI_BASE,
        "anthropic_api_key": "sk-ant-test-master",
        "anthropic_base_url": ANTHROPIC_BASE,
        "stripe_api_key": "sk_test_fake_key",
        "stripe_webhook_secret": WEBHOOK_SECRET,
        "stripe_subscription_price_id": "",
    }
    values.update(settings_overrides)
    return Settings(**values)


@pytest.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    engine = create_engine(test_settings)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ============================================================================
# Upstream
# ============================================================================


@dataclass
class FakeUpstream:
    """Scriptable upstream: set `handler`, inspect `requests`."""

    handler: Callable[[httpx.Request], httpx.Response] | None = None
    requests: list[httpx.Request] = field(default_factory=list)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.handler is None:
            raise AssertionError(f"Unexpected upstream call: {request.method} {request.url}")
        return self.handler(request)

    def reply_json(
        self,
        body: dict[str, Any],
        status_code: int = 200,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.handler = lambda request: httpx.Response(status_code, json=body, headers=headers)

    def reply_stream(
        self,
        chunks: list[bytes],
        fail_with: Exception | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        async def body():
            for chunk in chunks:
                yield chunk
            if fail_with is not None:
                raise fail_with

        self.handler = lambda request: httpx.Response(
            200,
            headers={"content-type": "text/event-stream", **(headers or {})},
            content=body(),
        )

    def fail(self, exc_factory: Callable[[httpx.Request], Exception]) -> None:
        def raiser(request: httpx.Request) -> httpx.Response:
            raise exc_factory(request)

        self.handler = raiser


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


# ============================================================================
# Payment provider
# ============================================================================


class FakePaymentProvider:
    """Records checkout calls; verifies webhooks with the real Stripe scheme."""

    def __init__(self, webhook_secret: str) -> None:
        self.verifier = StripeProvider(api_key="", webhook_secret=webhook_secret)
        self.customers: list[tuple[str, int]] = []
        self.checkouts: list[CheckoutIntent] = []
        self.portals: list[tuple[str, str]] = []

    async def create_customer(self, email: str, user_id: int) -> str:
        self.customers.append((email, user_id))
        return f"cus_test_{user_id}"

    async def create_checkout_session(self, intent: CheckoutIntent) -> CheckoutResult:
        self.checkouts.append(intent)
        session_id = f"cs_test_{len(self.checkouts)}"
        return CheckoutResult(session_id=session_id, url=f"https://checkout.test/{session_id}")

    async def create_portal_session(self, customer_id: str, return_url: str) -> str:
        self.portals.append((customer_id, return_url))
        return f"https://billing.test/portal/{customer_id}"

    async def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        return await self.verifier.verify_webhook(payload, signature)


@pytest.fixture
def payment_provider(test_settings: Settings) -> FakePaymentProvider:
    return FakePaymentProvider(test_settings.stripe_webhook_secret)


# ============================================================================
# Application
# ============================================================================


@pytest.fixture
async def context(
    test_settings: Settings,
    engine: AsyncEngine,
    upstream: FakeUpstream,
    payment_provider: FakePaymentProvider,
) -> AsyncGenerator[ServiceContext, None]:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
    context = build_context(
        test_settings,
        engine=engine,
        http_client=http_client,
        payment_provider=payment_provider,
    )
    yield context
    await context.drain_settlements()
    await http_client.aclose()


@pytest.fixture
async def client(context: ServiceContext) -> AsyncGenerator[AsyncClient, None]:
    app = create_app(context)
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://testserver"
    ) as client:
        yield client


@dataclass
class Account:
    user: UserData
    api_key: str

    @property
    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}


@pytest.fixture
def make_account(session_factory: async_sessionmaker[AsyncSession]):
    """Factory: create a user with a key and an optional starting balance."""

    async def _make(email: str = "user@example.com", balance: int = 0) -> Account:
        async with session_factory() as session:
            identity = IdentityService(session)
            user = await identity.find_or_create_user(email)
            issued = await identity.issue_key(user.user_id)
            if balance > 0:
                await LedgerService(session).credit(user.user_id, balance)
        return Account(user=user, api_key=issued.raw_key)

    return _make


@pytest.fixture
def balance_of(session_factory: async_sessionmaker[AsyncSession]):
    async def _balance(user_id: int) -> int:
        async with session_factory() as session:
            return await LedgerService(session).get_balance(user_id)

    return _balance
