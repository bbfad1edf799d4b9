from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantgate.apps.api.response import error_response, not_found_response
from tenantgate.core.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    RateLimitError,
    StoreUnavailableError,
    TenantGateError,
    ValidationError,
)
from tenantgate.services.authz.decisions import TENANT_REASONS


logger = logging.getLogger(__name__)

ENDPOINT_CLASS_RESOURCE = "resource"
ENDPOINT_CLASS_ORGANIZATION = "organization"

_TENANT_REASON_VALUES = frozenset(reason.value for reason in TENANT_REASONS)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def _masked_as_not_found(request: Request, exc: AuthorizationError) -> bool:
    # Resource-by-id endpoints hide other tenants' records behind the missing-record response.
    endpoint_class = getattr(request.state, "endpoint_class", None)
    return endpoint_class == ENDPOINT_CLASS_RESOURCE and exc.reason in _TENANT_REASON_VALUES


def render_tenantgate_error(
    request: Request, exc: TenantGateError
) -> tuple[int, dict[str, Any], dict[str, str]]:
    headers: dict[str, str] = {}
    if isinstance(exc, AuthenticationError):
        headers["WWW-Authenticate"] = "Bearer"
        return 401, error_response(request=request, code=exc.code, message=exc.message), headers
    if isinstance(exc, AuthorizationError):
        if _masked_as_not_found(request, exc):
            return 404, not_found_response(request=request), headers
        return 403, error_response(request=request, code=exc.code, message=exc.public_message), headers
    if isinstance(exc, NotFoundError):
        return 404, not_found_response(request=request), headers
    if isinstance(exc, ValidationError):
        payload = error_response(
            request=request,
            code=exc.code,
            message=exc.message,
            details=exc.details() or None,
        )
        return 400, payload, headers
    if isinstance(exc, RateLimitError):
        if exc.retry_after_s:
            headers["Retry-After"] = str(exc.retry_after_s)
        return 429, error_response(request=request, code=exc.code, message=exc.public_message), headers
    if isinstance(exc, ConflictError):
        return 409, error_response(request=request, code=exc.code, message=exc.message), headers
    if isinstance(exc, StoreUnavailableError):
        return 503, error_response(request=request, code=exc.code, message=exc.public_message), headers
    return 500, error_response(request=request, code="INTERNAL_ERROR", message="Internal server error"), headers


async def tenantgate_exception_handler(request: Request, exc: TenantGateError) -> JSONResponse:
    status_code, payload, headers = render_tenantgate_error(request, exc)
    return JSONResponse(content=payload, status_code=status_code, headers=headers or None)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    # Drop submitted values from the details so passwords never echo back.
    errors = [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": errors},
    )
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.error("unhandled_exception path=%s", request.url.path, exc_info=exc)
    payload = error_response(
        request=request,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )
    return JSONResponse(content=payload, status_code=500)
