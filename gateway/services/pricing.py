"""
Pricing Table and Cost Estimator.

Sell rates are minor units (cents) per million tokens. All cost arithmetic is
exact integer math; fractional cents always round up.
"""

from collections.abc import Iterable, Mapping
from typing import Any

from gateway.models.domain import ModelPrice

TOKENS_PER_RATE_UNIT = 1_000_000
CHARS_PER_TOKEN = 4
MESSAGE_OVERHEAD_TOKENS = 50

# Unknown models are billed at GPT-4o level so new models are never undercharged.
DEFAULT_PRICE = ModelPrice(input_rate=300, output_rate=1200)

PRICING: dict[str, ModelPrice] = {
    # OpenAI
    "gpt-4o": ModelPrice(300, 1200),
    "gpt-4o-mini": ModelPrice(18, 75),
    "gpt-4o-2024-11-20": ModelPrice(300, 1200),
    "gpt-4o-2024-08-06": ModelPrice(300, 1200),
    "gpt-4o-mini-2024-07-18": ModelPrice(18, 75),
    "gpt-4-turbo": ModelPrice(1200, 3600),
    "gpt-4-turbo-preview": ModelPrice(1200, 3600),
    "gpt-4": ModelPrice(3600, 7200),
    "gpt-3.5-turbo": ModelPrice(60, 180),
    "o1": ModelPrice(1800, 7200),
    "o1-mini": ModelPrice(360, 1440),
    "o1-preview": ModelPrice(1800, 7200),
    "o3-mini": ModelPrice(135, 540),
    "o3": ModelPrice(1200, 4800),
    "o3-2025-04-16": ModelPrice(1200, 4800),
    "gpt-4.1": ModelPrice(240, 960),
    "gpt-4.1-2025-04-14": ModelPrice(240, 960),
    "gpt-4.1-mini": ModelPrice(48, 192),
    "gpt-4.1-mini-2025-04-14": ModelPrice(48, 192),
    "gpt-4.1-nano": ModelPrice(12, 48),
    "gpt-4.1-nano-2025-04-14": ModelPrice(12, 48),
    # Anthropic
    "claude-sonnet-4-20250514": ModelPrice(360, 1800),
    "claude-opus-4-20250514": ModelPrice(1800, 7200),
    "claude-3-5-sonnet-20241022": ModelPrice(360, 1800),
    "claude-3-5-sonnet-20240620": ModelPrice(360, 1800),
    "claude-3-5-haiku-20241022": ModelPrice(96, 480),
    "claude-3-opus-20240229": ModelPrice(1800, 7200),
    "claude-3-sonnet-20240229": ModelPrice(360, 1800),
    "claude-3-haiku-20240307": ModelPrice(30, 150),
}

ALIASES: dict[str, str] = {
    "claude-sonnet-4": "claude-sonnet-4-20250514",
    "claude-opus-4": "claude-opus-4-20250514",
    "claude-3.5-sonnet": "claude-3-5-sonnet-20241022",
    "claude-3.5-haiku": "claude-3-5-haiku-20241022",
    "claude-3-opus": "claude-3-opus-20240229",
    "claude-3-sonnet": "claude-3-sonnet-20240229",
    "claude-3-haiku": "claude-3-haiku-20240307",
}


def _ceil_div(numerator: int, denominator: int) -> int:
    return -(-numerator // denominator)


def resolve_alias(model: str) -> str:
    """Map a friendly alias to its canonical model name; unknown names pass through."""
    return ALIASES.get(model, model)


def price_of(model: str) -> ModelPrice:
    """Get the sell price for a model, falling back to DEFAULT_PRICE."""
    return PRICING.get(resolve_alias(model), DEFAULT_PRICE)


def cost(model: str, input_tokens: int, output_tokens: int) -> int:
    """
    Exact cost in minor units for a request.

    ceil((in * in_rate + out * out_rate) / 1e6), computed on integers so the
    result is never fractional and never rounded down.
    """
    if input_tokens < 0 or output_tokens < 0:
        raise ValueError(f"Token counts cannot be negative: {input_tokens}/{output_tokens}")
    price = price_of(model)
    numerator = input_tokens * price.input_rate + output_tokens * price.output_rate
    return _ceil_div(numerator, TOKENS_PER_RATE_UNIT)


def estimate_max_cost(model: str, input_tokens: int, max_output_tokens: int) -> int:
    """Pre-flight admission bound: the cost if the full output cap is used."""
    return cost(model, input_tokens, max_output_tokens)


def _content_chars(content: Any) -> int:
    if isinstance(content, str):
        return len(content)
    if isinstance(content, list):
        chars = 0
        for part in content:
            if isinstance(part, Mapping) and isinstance(part.get("text"), str):
                chars += len(part["text"])
        return chars
    return 0


def estimate_input_tokens(messages: Any, system: Any = None) -> int:
    """
    Coarse input token estimate from message text (~4 chars/token + overhead).

    Only used for admission and as a fallback when the provider omits usage.
    """
    if not messages and not system:
        return 0

    chars = _content_chars(system)
    if isinstance(messages, str):
        chars += len(messages)
    elif isinstance(messages, Iterable):
        for message in messages:
            if isinstance(message, Mapping):
                chars += _content_chars(message.get("content"))

    return _ceil_div(chars, CHARS_PER_TOKEN) + MESSAGE_OVERHEAD_TOKENS


def estimate_output_tokens(text: str) -> int:
    """Output token estimate from generated text (~4 chars/token)."""
    return _ceil_div(len(text), CHARS_PER_TOKEN)
