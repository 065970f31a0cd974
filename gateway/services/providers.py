"""
Upstream Providers - Closed set of proxied LLM APIs.

Each provider is a variant of the Provider enum with one ProviderSpec row:
endpoint, credential source, header construction and usage extraction. The
set is fixed; routes pick the provider, never the model name.
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from gateway.config import Settings
from gateway.models.domain import TokenUsage
from gateway.services.streaming import (
    AnthropicStreamTracker,
    OpenAIStreamTracker,
    StreamUsageTracker,
)


class Provider(str, Enum):
    """Proxied upstream providers."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"


def _int_or_none(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


# Relayed bytes are parsed for usage and must arrive uncompressed.
UPSTREAM_ACCEPT_ENCODING = "identity"


def _content_type(incoming: Mapping[str, str]) -> str:
    return incoming.get("content-type", "application/json")


# ============================================================================
# OpenAI
# ============================================================================


def _openai_headers(api_key: str, incoming: Mapping[str, str], settings: Settings) -> dict[str, str]:
    return {
        "Content-Type": _content_type(incoming),
        "Authorization": f"Bearer {api_key}",
        "Accept-Encoding": UPSTREAM_ACCEPT_ENCODING,
    }


def _openai_usage(body: Mapping[str, Any]) -> TokenUsage:
    usage = body.get("usage")
    if not isinstance(usage, dict):
        return TokenUsage()
    return TokenUsage(
        input_tokens=_int_or_none(usage.get("prompt_tokens")),
        output_tokens=_int_or_none(usage.get("completion_tokens")),
    )


def _openai_text(body: Mapping[str, Any]) -> str:
    parts: list[str] = []
    for choice in body.get("choices") or []:
        message = choice.get("message") if isinstance(choice, dict) else None
        if isinstance(message, dict) and isinstance(message.get("content"), str):
            parts.append(message["content"])
    return "".join(parts)


# ============================================================================
# Anthropic
# ============================================================================


def _anthropic_headers(
    api_key: str, incoming: Mapping[str, str], settings: Settings
) -> dict[str, str]:
    headers = {
        "Content-Type": _content_type(incoming),
        "x-api-key": api_key,
        "Accept-Encoding": UPSTREAM_ACCEPT_ENCODING,
        "anthropic-version": incoming.get("anthropic-version") or settings.anthropic_version,
    }
    beta = incoming.get("anthropic-beta")
    if beta:
        headers["anthropic-beta"] = beta
    return headers


def _anthropic_usage(body: Mapping[str, Any]) -> TokenUsage:
    usage = body.get("usage")
    if not isinstance(usage, dict):
        return TokenUsage()
    return TokenUsage(
        input_tokens=_int_or_none(usage.get("input_tokens")),
        output_tokens=_int_or_none(usage.get("output_tokens")),
    )


def _anthropic_text(body: Mapping[str, Any]) -> str:
    parts: list[str] = []
    for block in body.get("content") or []:
        if isinstance(block, dict) and isinstance(block.get("text"), str):
            parts.append(block["text"])
    return "".join(parts)


# ============================================================================
# Provider table
# ============================================================================


@dataclass(frozen=True)
class ProviderSpec:
    """Per-provider relay behavior."""

    provider: Provider
    display_name: str
    path: str
    default_model: str
    base_url_setting: str
    api_key_setting: str
    max_output_fields: tuple[str, ...]
    build_headers: Callable[[str, Mapping[str, str], Settings], dict[str, str]]
    extract_usage: Callable[[Mapping[str, Any]], TokenUsage]
    extract_text: Callable[[Mapping[str, Any]], str]
    new_tracker: Callable[[], StreamUsageTracker]

    def master_key(self, settings: Settings) -> str:
        """Operator credential for this provider ('' when not configured)."""
        return str(getattr(settings, self.api_key_setting) or "")

    def url(self, settings: Settings) -> str:
        return str(getattr(settings, self.base_url_setting)).rstrip("/") + self.path

    def max_output_tokens(self, body: Mapping[str, Any], default: int) -> int:
        """Output cap requested by the client, or the configured default."""
        for field in self.max_output_fields:
            value = _int_or_none(body.get(field))
            if value is not None and value > 0:
                return value
        return default


PROVIDERS: dict[Provider, ProviderSpec] = {
    Provider.OPENAI: ProviderSpec(
        provider=Provider.OPENAI,
        display_name="OpenAI",
        path="/v1/chat/completions",
        default_model="gpt-4o-mini",
        base_url_setting="openai_base_url",
        api_key_setting="openai_api_key",
        max_output_fields=("max_tokens", "max_completion_tokens"),
        build_headers=_openai_headers,
        extract_usage=_openai_usage,
        extract_text=_openai_text,
        new_tracker=OpenAIStreamTracker,
    ),
    Provider.ANTHROPIC: ProviderSpec(
        provider=Provider.ANTHROPIC,
        display_name="Anthropic",
        path="/v1/messages",
        default_model="claude-sonnet-4-20250514",
        base_url_setting="anthropic_base_url",
        api_key_setting="anthropic_api_key",
        max_output_fields=("max_tokens",),
        build_headers=_anthropic_headers,
        extract_usage=_anthropic_usage,
        extract_text=_anthropic_text,
        new_tracker=AnthropicStreamTracker,
    ),
}


def get_provider_spec(provider: Provider) -> ProviderSpec:
    return PROVIDERS[provider]
