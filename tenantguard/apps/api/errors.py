from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantguard.core.errors import TenantPredicateError, TenantReassignmentError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "unauthenticated",
    403: "forbidden",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "throttled",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    # Map status codes to fallback error codes when none are provided.
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> dict[str, Any]:
    # Flatten HTTPException details into {code, message, ...extra} bodies.
    if isinstance(detail, dict):
        payload = {k: v for k, v in detail.items() if v is not None}
        payload["code"] = str(detail.get("code") or _default_code(status_code))
        payload["message"] = str(detail.get("message") or "Request failed")
        return payload
    if isinstance(detail, str):
        return {"code": _default_code(status_code), "message": detail}
    return {"code": _default_code(status_code), "message": "Request failed"}


def _respond(request: Request, payload: dict[str, Any], status_code: int, headers=None) -> JSONResponse:
    response = JSONResponse(content=payload, status_code=status_code, headers=headers)
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        response.headers["X-Request-Id"] = request_id
    return response


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return _respond(request, _split_detail(exc.detail, exc.status_code), exc.status_code, exc.headers)


async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Ensure Starlette-raised exceptions (404/405 from routing) share the same body.
    return _respond(request, _split_detail(exc.detail, exc.status_code), exc.status_code, exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    payload = {
        "code": "REQUEST_VALIDATION_ERROR",
        "message": "Validation error",
        "details": {"errors": jsonable_encoder(exc.errors())},
    }
    return _respond(request, payload, 422)


async def tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError) -> JSONResponse:
    # A query without a usable tenant predicate never runs; report it as a client-side scope gap.
    logger.warning("tenant_predicate_rejected path=%s message=%s", request.url.path, exc.message)
    payload = {"code": "TENANT_SCOPE_REQUIRED", "message": "Operation requires a tenant scope"}
    return _respond(request, payload, 400)


async def tenant_reassignment_exception_handler(request: Request, exc: TenantReassignmentError) -> JSONResponse:
    payload = {"code": "TENANT_ID_IMMUTABLE", "message": "tenant_id cannot be changed"}
    return _respond(request, payload, 409)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error body.
    logger.error("unhandled_exception path=%s", request.url.path, exc_info=exc)
    return _respond(request, {"code": "INTERNAL_ERROR", "message": "Internal server error"}, 500)
