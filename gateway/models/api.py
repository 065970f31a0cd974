"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field, field_validator


class PurchaseType(str, Enum):
    """Kinds of purchase recorded in payment metadata."""

    CREDITS = "credits"
    SUBSCRIPTION = "subscription"


# ============================================================================
# Key Models
# ============================================================================


class CreateKeyRequest(BaseModel):
    """POST /v1/keys request body."""

    email: str = Field(..., min_length=3, max_length=320)
    name: str = Field(default="default", min_length=1, max_length=255)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        """Lower-case and strip the email; require an @."""
        v = v.strip().lower()
        if "@" not in v or v.startswith("@") or v.endswith("@"):
            raise ValueError("Valid email is required")
        return v


class CreateKeyResponse(BaseModel):
    """POST /v1/keys response. api_key is shown exactly once."""

    api_key: str
    prefix: str
    name: str
    message: str = "Save this key - it cannot be retrieved again."


class KeyItem(BaseModel):
    """Single key in list responses."""

    prefix: str
    name: str
    created_at: str  # ISO 8601 timestamp
    revoked: bool


class KeyListResponse(BaseModel):
    """GET /v1/keys response."""

    keys: list[KeyItem]


class RevokeKeyResponse(BaseModel):
    """DELETE /v1/keys/{prefix} response."""

    prefix: str
    revoked: bool = True


# ============================================================================
# Usage Models
# ============================================================================


class UsageSummaryEntry(BaseModel):
    """Aggregated usage per provider/model over the last 30 days."""

    provider: str
    model: str
    requests: int
    total_input_tokens: int
    total_output_tokens: int
    total_cost: int


class RecentRequestEntry(BaseModel):
    """A single recent billed request."""

    provider: str
    model: str
    input_tokens: int
    output_tokens: int
    cost: int
    created_at: str  # ISO 8601 timestamp


class UsageResponse(BaseModel):
    """GET /v1/usage response."""

    balance: int
    balance_usd: str
    subscription_active: bool
    subscription_expires_at: str | None = None
    usage_last_30_days: list[UsageSummaryEntry]
    recent_requests: list[RecentRequestEntry]
    keys: list[KeyItem]


# ============================================================================
# Billing Models
# ============================================================================


class CheckoutRequest(BaseModel):
    """POST /v1/billing/checkout request body."""

    type: Literal["credits", "subscription"]
    amount: int | None = Field(None, gt=0, description="Credit tier in minor units")


class CheckoutResponse(BaseModel):
    """POST /v1/billing/checkout response."""

    url: str
    session_id: str


class PortalResponse(BaseModel):
    """GET /v1/billing/portal response."""

    url: str


class WebhookAck(BaseModel):
    """POST /v1/billing/webhook response. Always returned for verified events."""

    received: bool = True


# ============================================================================
# Health
# ============================================================================


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    service: str
    version: str
