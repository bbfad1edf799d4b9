from __future__ import annotations

from typing import Any


class TenantGateError(Exception):
    """Base error for TenantGate."""

    code = "TENANTGATE_ERROR"
    # Client-facing message; never carries internal reason codes.
    public_message = "Request failed"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.public_message)
        self.message = message or self.public_message


class AuthenticationError(TenantGateError):
    """Missing, invalid, expired, tampered or revoked token, or a wrong credential."""

    code = "AUTH_UNAUTHORIZED"
    public_message = "Authentication required"


class AuthorizationError(TenantGateError):
    """Permission not granted, self-scope, privilege-rank or cross-tenant violation."""

    code = "AUTH_FORBIDDEN"
    public_message = "Insufficient permissions"

    def __init__(self, message: str | None = None, *, reason: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason


class ValidationError(TenantGateError):
    """Malformed input or an attempt to set a protected field."""

    code = "VALIDATION_ERROR"
    public_message = "Invalid request"

    def __init__(
        self,
        message: str | None = None,
        *,
        field: str | None = None,
        errors: list[str] | None = None,
    ) -> None:
        super().__init__(message)
        self.field = field
        self.errors = errors or []

    def details(self) -> dict[str, Any]:
        details: dict[str, Any] = {}
        if self.field:
            details["field"] = self.field
        if self.errors:
            details["errors"] = list(self.errors)
        return details


class RateLimitError(TenantGateError):
    """Login lockout or an exhausted per-route request budget."""

    code = "RATE_LIMITED"
    public_message = "Too many attempts. Please try again later."

    def __init__(self, message: str | None = None, *, retry_after_s: int | None = None) -> None:
        super().__init__(message)
        self.retry_after_s = retry_after_s


class ConflictError(TenantGateError):
    """Uniqueness violation reported by the store."""

    code = "CONFLICT"
    public_message = "Resource already exists"


class NotFoundError(TenantGateError):
    """Record missing, or hidden from the caller's tenant."""

    code = "NOT_FOUND"
    public_message = "Not found"


class StoreUnavailableError(TenantGateError):
    """Backing store failure; the only fault that propagates from the core."""

    code = "SERVICE_UNAVAILABLE"
    public_message = "Service unavailable"
