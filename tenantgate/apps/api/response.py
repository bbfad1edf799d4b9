from __future__ import annotations

import re
from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, Field, model_validator

from tenantgate.core.errors import NotFoundError


API_VERSION = "v1"
REQUEST_ID_HEADER = "X-Request-Id"

# Request ids end up in logs and audit rows, so client-chosen values must be short and inert.
_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:-]{0,127}$")

T = TypeVar("T")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = Field(default=API_VERSION)


class ErrorDetail(BaseModel):
    # Stable code plus a generic message; internal reason codes never appear here.
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


class ItemList(BaseModel, Generic[T]):
    items: list[T]
    count: int = 0

    @model_validator(mode="after")
    def _fill_count(self) -> "ItemList[T]":
        self.count = len(self.items)
        return self


def resolve_request_id(header_value: str | None) -> str:
    """Return the caller's request id when it is well formed, else a fresh one.

    Malformed ids are replaced rather than rejected so tracing never fails a request.
    """
    if header_value and _REQUEST_ID_PATTERN.match(header_value):
        return header_value
    return uuid4().hex


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    # Outside the middleware (e.g. handlers invoked directly in tests).
    request_id = resolve_request_id(request.headers.get(REQUEST_ID_HEADER))
    request.state.request_id = request_id
    return request_id


def is_versioned_request(request: Request) -> bool:
    return request.url.path.startswith(f"/{API_VERSION}")


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    if not is_versioned_request(request):
        return data
    meta = ResponseMeta(request_id=get_request_id(request))
    return {"data": data, "meta": meta.model_dump()}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    meta = ResponseMeta(request_id=get_request_id(request))
    error = ErrorDetail(code=code, message=message, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": meta.model_dump()}


def not_found_response(*, request: Request) -> dict[str, Any]:
    # Single body for missing records and masked cross-tenant denials.
    return error_response(
        request=request,
        code=NotFoundError.code,
        message=NotFoundError.public_message,
    )
