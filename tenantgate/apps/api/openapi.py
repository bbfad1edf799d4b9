from __future__ import annotations

from typing import Any

from tenantgate.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": _error_example(code=code, message=message, details=details),
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _response(
        "Invalid input or protected field",
        code="VALIDATION_ERROR",
        message="Field 'organization_id' cannot be modified",
        details={"field": "organization_id"},
    ),
    401: _response("Unauthenticated", code="AUTH_UNAUTHORIZED", message="Authentication required"),
    403: _response("Forbidden", code="AUTH_FORBIDDEN", message="Insufficient permissions"),
    404: _response("Not found", code="NOT_FOUND", message="Not found"),
    409: _response("Conflict", code="CONFLICT", message="Email already registered"),
    422: _response("Request validation error", code="REQUEST_VALIDATION_ERROR", message="Validation error"),
    429: _response(
        "Login temporarily suspended",
        code="RATE_LIMITED",
        message="Too many attempts. Please try again later.",
    ),
    503: _response("Service unavailable", code="SERVICE_UNAVAILABLE", message="Service unavailable"),
}
