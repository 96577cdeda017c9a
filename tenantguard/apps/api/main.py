from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantguard.apps.api.errors import (
    http_exception_handler,
    starlette_http_exception_handler,
    tenant_predicate_exception_handler,
    tenant_reassignment_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from tenantguard.apps.api.routes.audit import router as audit_router
from tenantguard.apps.api.routes.contacts import router as contacts_router
from tenantguard.apps.api.routes.health import router as health_router
from tenantguard.apps.api.routes.organizations import router as organizations_router
from tenantguard.core.errors import TenantPredicateError, TenantReassignmentError
from tenantguard.core.logging import configure_logging
from tenantguard.services.audit import get_audit_writer


API_VERSION = "v1"

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield
    # Flush dispatched audit writes before the loop goes away.
    await get_audit_writer().drain()
    logger.info("audit_writer_drained")


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="TenantGuard API", lifespan=lifespan)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(TenantPredicateError)
    async def _tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError):
        return await tenant_predicate_exception_handler(request, exc)

    @app.exception_handler(TenantReassignmentError)
    async def _tenant_reassignment_exception_handler(request: Request, exc: TenantReassignmentError):
        return await tenant_reassignment_exception_handler(request, exc)

    # Mount versioned v1 API routes.
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(contacts_router, prefix=f"/{API_VERSION}")
    app.include_router(organizations_router, prefix=f"/{API_VERSION}")
    # Expose audit queries; mutations on audit events are always rejected.
    app.include_router(audit_router, prefix=f"/{API_VERSION}")

    return app


app = create_app()
