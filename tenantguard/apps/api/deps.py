from __future__ import annotations

from functools import lru_cache
from typing import AsyncGenerator, Awaitable, Callable

from fastapi import Depends, HTTPException, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.core.config import get_settings
from tenantguard.domain.authz import Operation, TenantContext
from tenantguard.persistence.db import get_session
from tenantguard.persistence.rls import apply_session_context
from tenantguard.services.audit import get_request_context
from tenantguard.services.chain import (
    CODE_THROTTLED,
    CODE_UNAUTHENTICATED,
    AuthorizationChain,
    ChainContext,
    ChainOutcome,
    Loader,
    RouteSpec,
    build_authorization_chain,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


@lru_cache
def get_authorization_chain() -> AuthorizationChain:
    # Process-wide chain; tests override this dependency with their own wiring.
    return build_authorization_chain()


async def reject_tenant_id_in_body(request: Request) -> None:
    # Reject client-supplied tenant_id to enforce credential-bound tenancy.
    content_type = (request.headers.get("content-type") or "").lower()
    if not content_type.startswith("application/json"):
        return
    try:
        payload = await request.json()
    except ValueError:
        return
    if isinstance(payload, dict) and "tenant_id" in payload:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "code": "TENANT_ID_NOT_ALLOWED",
                "message": "tenant_id must be derived from the credential",
            },
        )


def _rate_headers(outcome: ChainOutcome) -> dict[str, str]:
    rate = outcome.rate
    if rate is None:
        return {}
    headers = {"X-RateLimit-Limit": str(rate.limit), "X-RateLimit-Remaining": str(rate.remaining)}
    if rate.reset_at_s is not None:
        headers["X-RateLimit-Reset"] = str(rate.reset_at_s)
    return headers


def _rejection_error(outcome: ChainOutcome) -> HTTPException:
    rejection = outcome.rejection
    assert rejection is not None
    headers = _rate_headers(outcome)
    if rejection.code == CODE_UNAUTHENTICATED:
        headers["WWW-Authenticate"] = "Bearer"
    if rejection.code == CODE_THROTTLED and rejection.retry_after is not None:
        headers["Retry-After"] = str(rejection.retry_after)
    return HTTPException(status_code=rejection.status_code, detail=rejection.body(), headers=headers or None)


def require_access(
    route_class: str,
    resource_type: str | None = None,
    operation: Operation = Operation.READ,
    *,
    loader: Loader | None = None,
    target_param: str | None = None,
    api_immutable: bool = False,
) -> Callable[..., Awaitable[TenantContext]]:
    """Build a dependency that runs the authorization chain for one endpoint.

    The handler receives the resolved, frozen :class:`TenantContext`; the four-field
    read-only view is also published on ``request.state.request_context``.
    """
    route = RouteSpec(
        route_class=route_class,
        resource_type=resource_type,
        operation=operation,
        loader=loader,
        target_param=target_param,
        api_immutable=api_immutable,
    )

    async def dependency(
        request: Request,
        response: Response,
        db: AsyncSession = Depends(get_db),
        chain: AuthorizationChain = Depends(get_authorization_chain),
    ) -> TenantContext:
        settings = get_settings()
        request_ctx = get_request_context(request)
        ctx = ChainContext(
            route=route,
            authorization=request.headers.get(settings.auth_api_key_header),
            path=request.url.path,
            method=request.method,
            request_id=request_ctx["request_id"],
            source_ip=request_ctx["source_ip"],
            user_agent=request_ctx["user_agent"],
            path_params=dict(request.path_params),
        )
        outcome = await chain.run(ctx)
        if not outcome.allowed:
            raise _rejection_error(outcome)
        assert outcome.tenant is not None
        for key, value in _rate_headers(outcome).items():
            response.headers[key] = value
        request.state.request_context = outcome.context
        # Second enforcement point: storage policies see the same principal facts.
        await apply_session_context(db, outcome.tenant)
        return outcome.tenant

    return dependency
