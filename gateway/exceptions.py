"""
Exception Classes - Strongly typed exception hierarchy.

Every gateway error knows its HTTP status and wire error type, so the
outer exception handler can render the error envelope uniformly.
"""

from enum import Enum
from typing import Any


class ErrorType(str, Enum):
    """Closed set of error types exposed in the error envelope."""

    AUTH_ERROR = "auth_error"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    PROVIDER_ERROR = "provider_error"
    PROXY_ERROR = "proxy_error"
    NOT_FOUND = "not_found"
    SERVER_ERROR = "server_error"
    INVALID_REQUEST = "invalid_request"


def error_body(message: str, error_type: ErrorType, **context: Any) -> dict[str, Any]:
    """Build the `{"error": {...}}` envelope."""
    return {"error": {"message": message, "type": error_type.value, **context}}


class GatewayError(Exception):
    """Base exception for all gateway errors."""

    status_code: int = 500
    error_type: ErrorType = ErrorType.SERVER_ERROR

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def context(self) -> dict[str, Any]:
        """Extra fields merged into the error envelope."""
        return {}

    def to_body(self) -> dict[str, Any]:
        return error_body(self.message, self.error_type, **self.context())


class AuthenticationError(GatewayError):
    """Raised when a bearer token is missing, malformed, unknown or revoked."""

    status_code = 401
    error_type = ErrorType.AUTH_ERROR


class InsufficientCreditsError(GatewayError):
    """Raised when balance cannot cover the pre-flight estimate or the final debit."""

    status_code = 402
    error_type = ErrorType.INSUFFICIENT_CREDITS

    def __init__(self, balance: int, required: int, message: str | None = None) -> None:
        self.balance = balance
        self.required = required
        super().__init__(
            message
            or (
                f"Insufficient credits. Balance: ${balance / 100:.2f}, "
                f"estimated cost: ${required / 100:.2f}"
            )
        )

    def context(self) -> dict[str, Any]:
        return {"balance": self.balance, "estimated_cost": self.required}


class InvalidRequestError(GatewayError):
    """Raised when a request body or parameter is invalid."""

    status_code = 400
    error_type = ErrorType.INVALID_REQUEST

    def __init__(self, message: str, **details: Any) -> None:
        self.details = details
        super().__init__(message)

    def context(self) -> dict[str, Any]:
        return dict(self.details)


class NotFoundError(GatewayError):
    """Raised when a route or resource doesn't exist."""

    status_code = 404
    error_type = ErrorType.NOT_FOUND


class ProviderNotConfiguredError(GatewayError):
    """Raised when no master credential is configured for a provider."""

    status_code = 503
    error_type = ErrorType.PROVIDER_ERROR

    def __init__(self, provider: str) -> None:
        self.provider = provider
        super().__init__(f"{provider} provider not configured")


class UpstreamError(GatewayError):
    """Raised when the upstream request fails at the transport level."""

    status_code = 502
    error_type = ErrorType.PROXY_ERROR

    def __init__(self, provider: str, message: str = "Upstream request failed") -> None:
        self.provider = provider
        super().__init__(message)


class UpstreamTimeoutError(UpstreamError):
    """Raised when the upstream does not respond within the configured bounds."""

    status_code = 504

    def __init__(self, provider: str) -> None:
        super().__init__(provider, "Upstream request timed out")


class PaymentProviderError(GatewayError):
    """Raised when a payment provider operation fails."""

    status_code = 500
    error_type = ErrorType.SERVER_ERROR

    def __init__(self, message: str) -> None:
        super().__init__(f"Payment provider error: {message}")


class WebhookVerificationError(GatewayError):
    """Raised when webhook signature verification fails."""

    status_code = 400
    error_type = ErrorType.INVALID_REQUEST

    def __init__(self, message: str) -> None:
        super().__init__(f"Webhook verification error: {message}")
