"""
Request Relay - Admission, upstream proxying and billing for LLM requests.

Per request: authenticate (done by the route dependency), admit or reject on
the balance pre-flight, relay to the upstream, then bill exactly once. BYOK
requests from active subscribers skip both the gate and billing.

Upstream bytes are returned to the caller unmodified. For streams, a tracker
parses a copy of each chunk for usage, and billing settles after close.
"""

import asyncio
import json
import time
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass
from typing import Any

import httpx
from fastapi import Response
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from gateway.context import ServiceContext
from gateway.exceptions import (
    InsufficientCreditsError,
    InvalidRequestError,
    ProviderNotConfiguredError,
    UpstreamError,
    UpstreamTimeoutError,
)
from gateway.models.domain import TokenUsage, UserData
from gateway.observability.metrics import metrics
from gateway.observability.tracing import add_span_attributes, get_tracer, set_span_error
from gateway.services import pricing
from gateway.services.identity import is_subscription_active
from gateway.services.ledger import LedgerService
from gateway.services.providers import ProviderSpec
from gateway.services.streaming import StreamUsageTracker
from gateway.services.usage import UsageJournal

logger = get_logger(__name__)
tracer = get_tracer(__name__)

ERROR_BODY_LOG_LIMIT = 500

# Upstream response headers relayed to the caller besides content-type.
FORWARDED_HEADERS = frozenset(
    {"x-request-id", "request-id", "retry-after", "openai-processing-ms", "openai-version"}
)
FORWARDED_HEADER_PREFIXES = ("x-ratelimit-", "anthropic-ratelimit-")


@dataclass(frozen=True)
class RelayPlan:
    """Everything decided about a request before it goes upstream."""

    spec: ProviderSpec
    user: UserData
    model: str
    stream: bool
    byok: bool
    api_key: str
    estimated_input_tokens: int
    estimated_cost: int


def resolve_usage(usage: TokenUsage, estimated_input_tokens: int, text: str) -> tuple[int, int]:
    """
    Final token counts for billing.

    Provider-reported counts win; each missing field falls back to the
    character heuristic (input from the request, output from generated text).
    """
    input_tokens = (
        usage.input_tokens if usage.input_tokens is not None else estimated_input_tokens
    )
    output_tokens = (
        usage.output_tokens
        if usage.output_tokens is not None
        else pricing.estimate_output_tokens(text)
    )
    return input_tokens, output_tokens


def _parse_body(body: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(body)
    except ValueError as exc:
        raise InvalidRequestError("Request body must be valid JSON") from exc
    if not isinstance(payload, dict):
        raise InvalidRequestError("Request body must be a JSON object")
    return payload


def forwarded_headers(upstream: httpx.Response) -> dict[str, str]:
    """Request ids and rate-limit headers from the upstream response."""
    return {
        name: value
        for name, value in upstream.headers.items()
        if name in FORWARDED_HEADERS or name.startswith(FORWARDED_HEADER_PREFIXES)
    }


def _passthrough(upstream: httpx.Response, content: bytes) -> Response:
    return Response(
        content=content,
        status_code=upstream.status_code,
        media_type=upstream.headers.get("content-type", "application/json"),
        headers=forwarded_headers(upstream),
    )


class RelayService:
    """Proxies one request to its upstream provider and bills it."""

    def __init__(self, context: ServiceContext, session: AsyncSession) -> None:
        self.context = context
        self.settings = context.settings
        self.session = session
        self.ledger = LedgerService(session)
        self.journal = UsageJournal(session)

    async def relay(
        self,
        spec: ProviderSpec,
        user: UserData,
        body: bytes,
        headers: Mapping[str, str],
        provider_key: str | None = None,
    ) -> Response:
        """
        Relay a request.

        Raises:
            InvalidRequestError: Body is not a JSON object
            InsufficientCreditsError: Balance below the pre-flight estimate, or
                the final debit failed (non-streaming)
            ProviderNotConfiguredError: No master key for the provider
            UpstreamTimeoutError: No upstream response in time
            UpstreamError: Upstream transport failure
        """
        plan = await self._admit(spec, user, _parse_body(body), provider_key)

        with tracer.start_as_current_span("upstream_relay") as span:
            add_span_attributes(
                span,
                provider=spec.provider.value,
                model=plan.model,
                stream=plan.stream,
                byok=plan.byok,
            )
            try:
                upstream = await self._send(plan, body, headers)
            except UpstreamError as exc:
                set_span_error(span, exc)
                raise
            add_span_attributes(span, status_code=upstream.status_code)

        if plan.stream and upstream.status_code < 400:
            return self._stream(plan, upstream)
        return await self._buffered(plan, upstream)

    # ========================================================================
    # Admission
    # ========================================================================

    async def _admit(
        self,
        spec: ProviderSpec,
        user: UserData,
        payload: dict[str, Any],
        provider_key: str | None,
    ) -> RelayPlan:
        model = payload.get("model")
        if not isinstance(model, str) or not model:
            model = spec.default_model

        estimated_input = pricing.estimate_input_tokens(
            payload.get("messages"), payload.get("system")
        )
        byok = bool(provider_key) and is_subscription_active(user)
        if provider_key and not byok:
            logger.debug("provider_key_ignored", user_id=user.user_id)

        estimated_cost = 0
        if byok:
            api_key = provider_key or ""
            metrics.record_byok(spec.provider.value)
        else:
            max_output = spec.max_output_tokens(payload, self.settings.default_max_output_tokens)
            estimated_cost = pricing.estimate_max_cost(model, estimated_input, max_output)
            balance = await self.ledger.get_balance(user.user_id)
            if balance < estimated_cost:
                metrics.record_preflight_rejection(spec.provider.value)
                logger.info(
                    "preflight_rejected",
                    user_id=user.user_id,
                    provider=spec.provider.value,
                    model=model,
                    balance=balance,
                    estimated_cost=estimated_cost,
                )
                raise InsufficientCreditsError(balance, estimated_cost)
            api_key = spec.master_key(self.settings)

        if not api_key:
            raise ProviderNotConfiguredError(spec.display_name)

        return RelayPlan(
            spec=spec,
            user=user,
            model=model,
            stream=payload.get("stream") is True,
            byok=byok,
            api_key=api_key,
            estimated_input_tokens=estimated_input,
            estimated_cost=estimated_cost,
        )

    # ========================================================================
    # Upstream
    # ========================================================================

    async def _send(
        self, plan: RelayPlan, body: bytes, headers: Mapping[str, str]
    ) -> httpx.Response:
        provider = plan.spec.provider.value
        request = self.context.http_client.build_request(
            "POST",
            plan.spec.url(self.settings),
            content=body,
            headers=plan.spec.build_headers(plan.api_key, headers, self.settings),
        )

        start = time.perf_counter()
        try:
            upstream = await self.context.http_client.send(request, stream=True)
        except httpx.TimeoutException as exc:
            metrics.record_upstream(provider, "timeout", time.perf_counter() - start)
            logger.warning("upstream_timeout", provider=provider, error=str(exc))
            raise UpstreamTimeoutError(plan.spec.display_name) from exc
        except httpx.HTTPError as exc:
            metrics.record_upstream(provider, "error", time.perf_counter() - start)
            logger.error(
                "upstream_request_failed",
                provider=provider,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise UpstreamError(plan.spec.display_name) from exc

        metrics.record_upstream(provider, upstream.status_code, time.perf_counter() - start)
        return upstream

    async def _read_all(self, plan: RelayPlan, upstream: httpx.Response) -> bytes:
        try:
            return await upstream.aread()
        except httpx.TimeoutException as exc:
            logger.warning("upstream_body_timeout", provider=plan.spec.provider.value)
            raise UpstreamTimeoutError(plan.spec.display_name) from exc
        except httpx.HTTPError as exc:
            logger.error(
                "upstream_body_failed", provider=plan.spec.provider.value, error=str(exc)
            )
            raise UpstreamError(plan.spec.display_name) from exc
        finally:
            await upstream.aclose()

    # ========================================================================
    # Buffered responses
    # ========================================================================

    async def _buffered(self, plan: RelayPlan, upstream: httpx.Response) -> Response:
        content = await self._read_all(plan, upstream)

        if upstream.status_code >= 400:
            logger.warning(
                "upstream_error_response",
                provider=plan.spec.provider.value,
                status_code=upstream.status_code,
                body=content[:ERROR_BODY_LOG_LIMIT].decode("utf-8", errors="replace"),
            )
            return _passthrough(upstream, content)

        if plan.byok:
            return _passthrough(upstream, content)

        try:
            data = json.loads(content)
        except ValueError:
            data = None
        if not isinstance(data, dict):
            data = {}

        input_tokens, output_tokens = resolve_usage(
            plan.spec.extract_usage(data),
            plan.estimated_input_tokens,
            plan.spec.extract_text(data),
        )
        cost = pricing.cost(plan.model, input_tokens, output_tokens)

        try:
            debited = await self.ledger.debit(plan.user.user_id, cost, commit=False)
            if debited:
                await self.journal.record(
                    plan.user.user_id,
                    plan.spec.provider.value,
                    plan.model,
                    input_tokens,
                    output_tokens,
                    cost,
                    commit=False,
                )
                await self.session.commit()
            else:
                await self.session.rollback()
        except Exception:
            await self.session.rollback()
            raise

        metrics.record_debit(debited, cost)
        if not debited:
            balance = await self.ledger.get_balance(plan.user.user_id)
            logger.warning(
                "settlement_debit_failed",
                user_id=plan.user.user_id,
                cost_minor=cost,
                balance=balance,
            )
            raise InsufficientCreditsError(
                balance, cost, message="Insufficient credits for this request"
            )

        logger.info(
            "usage_billed",
            user_id=plan.user.user_id,
            provider=plan.spec.provider.value,
            model=plan.model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_minor=cost,
        )
        return _passthrough(upstream, content)

    # ========================================================================
    # Streaming responses
    # ========================================================================

    def _stream(self, plan: RelayPlan, upstream: httpx.Response) -> StreamingResponse:
        tracker = plan.spec.new_tracker()

        async def forward() -> AsyncIterator[bytes]:
            try:
                async for chunk in upstream.aiter_bytes():
                    tracker.feed(chunk)
                    yield chunk
            except httpx.HTTPError as exc:
                logger.warning(
                    "upstream_stream_interrupted",
                    provider=plan.spec.provider.value,
                    user_id=plan.user.user_id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
            finally:
                settlement = asyncio.ensure_future(self._settle_stream(plan, upstream, tracker))
                self.context.track_settlement(settlement)
                await asyncio.shield(settlement)

        return StreamingResponse(
            forward(),
            status_code=upstream.status_code,
            media_type=upstream.headers.get("content-type", "text/event-stream"),
            headers={**forwarded_headers(upstream), "Cache-Control": "no-cache"},
        )

    async def _settle_stream(
        self, plan: RelayPlan, upstream: httpx.Response, tracker: StreamUsageTracker
    ) -> None:
        """
        Bill a closed stream exactly once.

        Runs on its own session, detached from the request, so it completes
        even when the client has disconnected. The debit and its usage record
        commit together. A failed debit is logged only; content already
        delivered is never retracted.
        """
        provider = plan.spec.provider.value
        try:
            await upstream.aclose()
        except httpx.HTTPError as exc:
            logger.warning("upstream_close_failed", provider=provider, error=str(exc))
        tracker.finish()

        if plan.byok:
            metrics.record_stream_settlement(provider, "byok")
            return

        input_tokens, output_tokens = resolve_usage(
            tracker.usage, plan.estimated_input_tokens, tracker.text
        )
        cost = pricing.cost(plan.model, input_tokens, output_tokens)

        try:
            async with self.context.session_factory() as session:
                debited = await LedgerService(session).debit(
                    plan.user.user_id, cost, commit=False
                )
                if not debited:
                    await session.rollback()
                    metrics.record_debit(False, cost)
                    metrics.record_stream_settlement(provider, "debit_failed")
                    logger.error(
                        "stream_settlement_debit_failed",
                        user_id=plan.user.user_id,
                        provider=provider,
                        model=plan.model,
                        cost_minor=cost,
                    )
                    return

                await UsageJournal(session).record(
                    plan.user.user_id,
                    provider,
                    plan.model,
                    input_tokens,
                    output_tokens,
                    cost,
                    commit=False,
                )
                await session.commit()
        except Exception as exc:
            metrics.record_error(type(exc).__name__, "stream_settlement")
            logger.error(
                "stream_settlement_failed",
                user_id=plan.user.user_id,
                provider=provider,
                cost_minor=cost,
                error=str(exc),
                exc_info=True,
            )
            return

        metrics.record_debit(True, cost)
        metrics.record_stream_settlement(provider, "billed")
        logger.info(
            "usage_billed",
            user_id=plan.user.user_id,
            provider=provider,
            model=plan.model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_minor=cost,
            stream=True,
            usage_reported=tracker.usage.complete,
        )
