from __future__ import annotations

import logging
import time

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantgate.apps.api.errors import (
    http_exception_handler,
    starlette_http_exception_handler,
    tenantgate_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from tenantgate.apps.api.response import API_VERSION, REQUEST_ID_HEADER, resolve_request_id
from tenantgate.apps.api.routes.auth import router as auth_router
from tenantgate.apps.api.routes.health import router as health_router
from tenantgate.apps.api.routes.invitations import router as invitations_router
from tenantgate.apps.api.routes.organizations import router as organizations_router
from tenantgate.apps.api.routes.users import router as users_router
from tenantgate.core.config import get_settings
from tenantgate.core.errors import TenantGateError
from tenantgate.core.logging import configure_logging
from tenantgate.services.container import AuthServices, build_services


logger = logging.getLogger(__name__)


def create_app(services: AuthServices | None = None) -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title="TenantGate API", version=API_VERSION)
    # Tests inject isolated in-memory services; deployments build from settings.
    app.state.services = services or build_services(settings)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = resolve_request_id(request.headers.get(REQUEST_ID_HEADER))
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.info(
            "request path=%s method=%s status=%s latency_ms=%.1f request_id=%s",
            request.url.path,
            request.method,
            response.status_code,
            latency_ms,
            request_id,
        )
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response

    @app.exception_handler(TenantGateError)
    async def _tenantgate_exception_handler(request: Request, exc: TenantGateError):
        return await tenantgate_exception_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    app.include_router(health_router)
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(auth_router, prefix=f"/{API_VERSION}")
    app.include_router(users_router, prefix=f"/{API_VERSION}")
    app.include_router(organizations_router, prefix=f"/{API_VERSION}")
    app.include_router(invitations_router, prefix=f"/{API_VERSION}")
    return app
