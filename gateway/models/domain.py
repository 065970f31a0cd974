"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class UserData:
    """Immutable user snapshot."""

    user_id: int
    email: str
    stripe_customer_id: str | None
    subscription_expires_at: datetime | None
    created_at: datetime

    def __post_init__(self) -> None:
        """Validate user fields."""
        if "@" not in self.email:
            raise ValueError(f"Invalid email: {self.email}")


@dataclass(frozen=True)
class IssuedKey:
    """Newly issued API key. The raw secret is only ever available here."""

    raw_key: str
    prefix: str
    name: str
    user_id: int


@dataclass(frozen=True)
class KeyInfo:
    """Listing view of an API key (no secret material)."""

    prefix: str
    name: str
    created_at: datetime
    revoked: bool


@dataclass(frozen=True)
class ModelPrice:
    """Sell rates in minor units per million tokens."""

    input_rate: int
    output_rate: int

    def __post_init__(self) -> None:
        """Validate rate constraints."""
        if self.input_rate < 0 or self.output_rate < 0:
            raise ValueError(f"Rates cannot be negative: {self.input_rate}/{self.output_rate}")


@dataclass(frozen=True)
class TokenUsage:
    """Token counts for one request. None means the provider did not report it."""

    input_tokens: int | None = None
    output_tokens: int | None = None

    @property
    def complete(self) -> bool:
        return self.input_tokens is not None and self.output_tokens is not None


@dataclass(frozen=True)
class UsageSummaryItem:
    """Aggregated usage for one provider/model pair."""

    provider: str
    model: str
    requests: int
    total_input_tokens: int
    total_output_tokens: int
    total_cost: int


@dataclass(frozen=True)
class RecentUsage:
    """One journaled request."""

    provider: str
    model: str
    input_tokens: int
    output_tokens: int
    cost: int
    created_at: datetime


@dataclass(frozen=True)
class PaymentOutcome:
    """Result of applying one payment notification."""

    applied: bool
    duplicate: bool = False
    user_id: int | None = None
    credits_minor: int = 0
    subscription_expires_at: datetime | None = None
