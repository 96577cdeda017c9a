"""Authorization middleware chain.

Four independent stages run in a fixed order for every request:
authenticate -> resolve_tenant -> rate_check -> authorize. The first stage that
terminates ends the run; the chain then writes exactly one denial audit record and
returns a minimal :class:`Rejection`. Stages never see each other, only the shared
:class:`ChainContext`.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
from typing import Any, Awaitable, Callable, Protocol, Union

from tenantguard.core.config import Settings, get_settings
from tenantguard.core.errors import (
    AuthenticationError,
    AuthzError,
    InsufficientRoleError,
    PolicyEvaluationError,
    RateLimitExceededError,
    TenantMismatchError,
)
from tenantguard.domain.authz import (
    Decision,
    Operation,
    PolicyPattern,
    RequestContext,
    ResourceDescriptor,
    TenantContext,
)
from tenantguard.persistence.db import SessionLocal
from tenantguard.persistence.rls import apply_system_context
from tenantguard.services.audit import (
    ACTION_ADMIN_ACTION,
    ACTION_DENIED,
    ACTION_SUPER_ADMIN_BYPASS,
    OUTCOME_ALLOWED,
    OUTCOME_DENIED,
    RISK_CRITICAL,
    RISK_LOW,
    RISK_MEDIUM,
    AuditLogWriter,
    AuditRecord,
    get_audit_writer,
    risk_level_for,
)
from tenantguard.services.auth.api_keys import parse_bearer_token
from tenantguard.services.auth.context import TenantContextResolver, build_resolver
from tenantguard.services.authz.policy import PolicyEngine, check_route_requirements
from tenantguard.services.rate_limit import (
    RateLimitDecision,
    RateLimiter,
    RouteClassConfig,
    build_rate_limiter,
    route_classes_from_settings,
)


logger = logging.getLogger(__name__)

STAGE_AUTHENTICATE = "authenticate"
STAGE_RESOLVE_TENANT = "resolve_tenant"
STAGE_RATE_CHECK = "rate_check"
STAGE_AUTHORIZE = "authorize"
STAGE_ORDER = (STAGE_AUTHENTICATE, STAGE_RESOLVE_TENANT, STAGE_RATE_CHECK, STAGE_AUTHORIZE)

CODE_UNAUTHENTICATED = "unauthenticated"
CODE_FORBIDDEN = "forbidden"
CODE_THROTTLED = "throttled"

# Fixed per code; never mention the resource, its tenant or the internal reason.
REJECTION_MESSAGES: dict[str, str] = {
    CODE_UNAUTHENTICATED: "Authentication required",
    CODE_FORBIDDEN: "Access denied",
    CODE_THROTTLED: "Rate limit exceeded",
}
REJECTION_STATUS: dict[str, int] = {
    CODE_UNAUTHENTICATED: 401,
    CODE_FORBIDDEN: 403,
    CODE_THROTTLED: 429,
}

# Reasons produced by the policy engine that describe a role gap rather than ownership.
_ROLE_REASONS = frozenset({"insufficient_role", "missing_permission", "super_admin_required", "immutable_record"})

Loader = Callable[[Any, dict[str, Any]], Awaitable[ResourceDescriptor | None]]
SessionFactory = Callable[[], Any]


@dataclass(frozen=True)
class RouteSpec:
    """Per-endpoint declaration: route class plus the resource it touches.

    ``loader(session, path_params)`` returns ownership facts for the targeted
    record, or ``None`` when it does not exist. Endpoints without a loader are
    checked against a prospective record owned by the principal's tenant.
    ``api_immutable`` marks endpoints whose writes are refused for every
    principal, super-admins included, whatever the policy pattern allows.
    """

    route_class: str
    resource_type: str | None = None
    operation: Operation = Operation.READ
    loader: Loader | None = None
    target_param: str | None = None
    api_immutable: bool = False


@dataclass
class ChainContext:
    route: RouteSpec
    # Raw value of the credential header; parsed by the authenticate stage.
    authorization: str | None = None
    path: str | None = None
    method: str | None = None
    request_id: str | None = None
    source_ip: str | None = None
    user_agent: str | None = None
    path_params: dict[str, Any] = field(default_factory=dict)
    route_class: RouteClassConfig | None = None
    principal_id: str | None = None
    tenant: TenantContext | None = None
    rate: RateLimitDecision | None = None
    resource: ResourceDescriptor | None = None
    decision: Decision | None = None
    bypass: bool = False

    @property
    def target_id(self) -> str | None:
        if self.resource is not None and self.resource.resource_id is not None:
            return self.resource.resource_id
        if self.route.target_param:
            value = self.path_params.get(self.route.target_param)
            return str(value) if value is not None else None
        return None


@dataclass(frozen=True)
class Continue:
    pass


@dataclass(frozen=True)
class Terminate:
    error: AuthzError


CONTINUE = Continue()
StageResult = Union[Continue, Terminate]


class Stage(Protocol):
    name: str

    async def evaluate(self, ctx: ChainContext) -> StageResult: ...


@dataclass(frozen=True)
class Rejection:
    code: str
    message: str
    retry_after: int | None = None
    limit: int | None = None
    remaining: int | None = None

    @property
    def status_code(self) -> int:
        return REJECTION_STATUS[self.code]

    @classmethod
    def from_error(cls, error: AuthzError, rate: RateLimitDecision | None = None) -> "Rejection":
        code = error.code if error.code in REJECTION_MESSAGES else CODE_FORBIDDEN
        if code != CODE_THROTTLED:
            return cls(code=code, message=REJECTION_MESSAGES[code])
        return cls(
            code=code,
            message=REJECTION_MESSAGES[code],
            retry_after=error.retry_after_s,
            limit=rate.limit if rate is not None else None,
            remaining=rate.remaining if rate is not None else None,
        )

    def body(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.retry_after is not None:
            payload["retry_after"] = self.retry_after
        return payload


@dataclass(frozen=True)
class ChainOutcome:
    context: RequestContext | None = None
    tenant: TenantContext | None = None
    rejection: Rejection | None = None
    rate: RateLimitDecision | None = None

    @property
    def allowed(self) -> bool:
        return self.rejection is None and self.context is not None


def _route_class(ctx: ChainContext) -> RouteClassConfig:
    if ctx.route_class is None:
        raise PolicyEvaluationError(
            f"Unknown route class {ctx.route.route_class}", reason="unknown_route_class"
        )
    return ctx.route_class


def _bucket_for(tenant: TenantContext) -> str:
    # Tenant-less super-admins get a bucket of their own.
    if tenant.tenant_id is not None:
        return tenant.tenant_id
    return f"principal:{tenant.principal_id}"


def _denial_error(reason: str) -> AuthzError:
    if reason in _ROLE_REASONS:
        return InsufficientRoleError("Operation not permitted for role", reason=reason)
    return TenantMismatchError("Resource outside principal scope", reason=reason)


class AuthenticateStage:
    name = STAGE_AUTHENTICATE

    def __init__(self, resolver: TenantContextResolver) -> None:
        self._resolver = resolver

    async def evaluate(self, ctx: ChainContext) -> StageResult:
        token = parse_bearer_token(ctx.authorization)
        ctx.principal_id = await self._resolver.authenticate(token)
        return CONTINUE


class ResolveTenantStage:
    name = STAGE_RESOLVE_TENANT

    def __init__(self, resolver: TenantContextResolver) -> None:
        self._resolver = resolver

    async def evaluate(self, ctx: ChainContext) -> StageResult:
        if ctx.principal_id is None:
            return Terminate(AuthenticationError("No authenticated principal", reason="missing_principal"))
        ctx.tenant = await self._resolver.load_context(ctx.principal_id)
        return CONTINUE


class RateCheckStage:
    name = STAGE_RATE_CHECK

    def __init__(self, limiter: RateLimiter, *, enabled: bool = True) -> None:
        self._limiter = limiter
        self._enabled = enabled

    async def evaluate(self, ctx: ChainContext) -> StageResult:
        route_class = _route_class(ctx)
        if not self._enabled:
            return CONTINUE
        assert ctx.tenant is not None
        decision = await self._limiter.check_and_increment(_bucket_for(ctx.tenant), route_class)
        ctx.rate = decision
        if decision.allowed:
            return CONTINUE
        reason = "store_unavailable" if decision.degraded else "rate_limited"
        return Terminate(
            RateLimitExceededError(
                "Rate limit exceeded",
                reason=reason,
                retry_after_s=decision.retry_after_s,
            )
        )


class AuthorizeStage:
    name = STAGE_AUTHORIZE

    def __init__(
        self,
        engine: PolicyEngine,
        *,
        session_factory: SessionFactory | None = None,
        loader_timeout_s: float = 2.0,
    ) -> None:
        self._engine = engine
        self._session_factory = session_factory
        self._loader_timeout_s = loader_timeout_s

    async def _load(self, ctx: ChainContext) -> ResourceDescriptor | None:
        loader = ctx.route.loader
        assert loader is not None
        if self._session_factory is None:
            return await asyncio.wait_for(loader(None, ctx.path_params), timeout=self._loader_timeout_s)
        # Ownership lookups run before any tenant context is published to storage.
        async with self._session_factory() as session:
            await apply_system_context(session)
            return await asyncio.wait_for(loader(session, ctx.path_params), timeout=self._loader_timeout_s)

    async def evaluate(self, ctx: ChainContext) -> StageResult:
        route_class = _route_class(ctx)
        tenant = ctx.tenant
        assert tenant is not None

        gate = check_route_requirements(
            tenant,
            minimum_role=route_class.minimum_role,
            required_permissions=route_class.required_permissions,
        )
        if not gate.allowed:
            ctx.decision = gate
            return Terminate(_denial_error(gate.reason))

        route = ctx.route
        if route.resource_type is None:
            ctx.decision = gate
            ctx.bypass = gate.bypass
            return CONTINUE

        if route.loader is not None:
            resource = await self._load(ctx)
            if resource is None:
                # Indistinguishable from a cross-tenant record for the caller.
                return Terminate(TenantMismatchError("Resource not available", reason="resource_not_found"))
        else:
            resource = ResourceDescriptor(
                resource_type=route.resource_type,
                tenant_id=tenant.tenant_id,
                owner_principal_id=tenant.principal_id,
            )
        ctx.resource = resource

        decision = self._engine.decide(tenant, resource, route.operation)
        ctx.decision = decision
        if not decision.allowed:
            return Terminate(_denial_error(decision.reason))
        if route.api_immutable and route.operation.is_write:
            # Records behind this endpoint change only out of band; no bypass applies.
            return Terminate(_denial_error("immutable_record"))
        ctx.bypass = decision.bypass
        return CONTINUE


class AuthorizationChain:
    """Run the fixed stage pipeline and translate the outcome for the HTTP edge."""

    def __init__(
        self,
        resolver: TenantContextResolver,
        limiter: RateLimiter,
        engine: PolicyEngine,
        audit: AuditLogWriter,
        route_classes: dict[str, RouteClassConfig],
        *,
        rate_limit_enabled: bool = True,
        session_factory: SessionFactory | None = None,
        loader_timeout_s: float = 2.0,
    ) -> None:
        self._audit = audit
        self._route_classes = dict(route_classes)
        # Built here, in one place, so callers cannot reorder or drop stages.
        self._stages: tuple[Stage, ...] = (
            AuthenticateStage(resolver),
            ResolveTenantStage(resolver),
            RateCheckStage(limiter, enabled=rate_limit_enabled),
            AuthorizeStage(engine, session_factory=session_factory, loader_timeout_s=loader_timeout_s),
        )

    @property
    def stage_names(self) -> tuple[str, ...]:
        return tuple(stage.name for stage in self._stages)

    @property
    def route_classes(self) -> dict[str, RouteClassConfig]:
        return dict(self._route_classes)

    async def run(self, ctx: ChainContext) -> ChainOutcome:
        ctx.route_class = self._route_classes.get(ctx.route.route_class)
        for stage in self._stages:
            unexpected = False
            try:
                result = await stage.evaluate(ctx)
            except AuthzError as exc:
                result = Terminate(exc)
            except Exception as exc:
                # Any fault inside a stage denies; it is never read as an allow.
                logger.error("authz_stage_failed stage=%s path=%s", stage.name, ctx.path, exc_info=exc)
                result = Terminate(PolicyEvaluationError("Unexpected policy failure"))
                unexpected = True
            if isinstance(result, Terminate):
                self._record_denial(ctx, stage.name, result.error, unexpected=unexpected)
                return ChainOutcome(
                    tenant=ctx.tenant,
                    rejection=Rejection.from_error(result.error, ctx.rate),
                    rate=ctx.rate,
                )

        assert ctx.tenant is not None
        self._record_allow(ctx)
        return ChainOutcome(context=ctx.tenant.request_context(), tenant=ctx.tenant, rate=ctx.rate)

    def _base_metadata(self, ctx: ChainContext) -> dict[str, Any]:
        return {
            "route_class": ctx.route.route_class,
            "operation": ctx.route.operation.value,
            "path": ctx.path,
            "method": ctx.method,
        }

    def _record_denial(self, ctx: ChainContext, stage: str, error: AuthzError, *, unexpected: bool) -> None:
        tenant = ctx.tenant
        metadata = self._base_metadata(ctx)
        metadata.update(
            {
                "stage": stage,
                "reason": error.reason,
                "error_kind": type(error).__name__,
                "code": error.code,
            }
        )
        if error.retry_after_s is not None:
            metadata["retry_after"] = error.retry_after_s
        risk = RISK_CRITICAL if unexpected else risk_level_for(error.reason, default=RISK_MEDIUM)
        self._audit.record(
            AuditRecord(
                action=ACTION_DENIED,
                outcome=OUTCOME_DENIED,
                tenant_id=tenant.tenant_id if tenant is not None else None,
                actor_id=tenant.principal_id if tenant is not None else ctx.principal_id,
                actor_role=tenant.role.value if tenant is not None and tenant.role is not None else None,
                target_type=ctx.route.resource_type,
                target_id=ctx.target_id,
                request_id=ctx.request_id,
                source_ip=ctx.source_ip,
                user_agent=ctx.user_agent,
                metadata=metadata,
                risk_level=risk,
            )
        )

    def _record_allow(self, ctx: ChainContext) -> None:
        tenant = ctx.tenant
        assert tenant is not None
        if ctx.bypass:
            action, reason, risk = ACTION_SUPER_ADMIN_BYPASS, "super_admin_bypass", RISK_MEDIUM
        elif self._is_admin_action(ctx):
            action, reason, risk = ACTION_ADMIN_ACTION, ctx.decision.reason if ctx.decision else None, RISK_LOW
        else:
            return
        # Record the target's tenant so cross-tenant bypasses show up in that tenant's log.
        target_tenant = tenant.tenant_id
        if ctx.resource is not None and ctx.resource.tenant_id:
            target_tenant = ctx.resource.tenant_id
        metadata = self._base_metadata(ctx)
        metadata["reason"] = reason
        if ctx.decision is not None and ctx.decision.pattern is not None:
            metadata["pattern"] = ctx.decision.pattern.value
        self._audit.record(
            AuditRecord(
                action=action,
                outcome=OUTCOME_ALLOWED,
                tenant_id=target_tenant,
                actor_id=tenant.principal_id,
                actor_role=tenant.role.value if tenant.role is not None else None,
                target_type=ctx.route.resource_type,
                target_id=ctx.target_id,
                request_id=ctx.request_id,
                source_ip=ctx.source_ip,
                user_agent=ctx.user_agent,
                metadata=metadata,
                risk_level=risk,
            )
        )

    @staticmethod
    def _is_admin_action(ctx: ChainContext) -> bool:
        decision = ctx.decision
        if decision is None or not ctx.route.operation.is_write:
            return False
        return decision.pattern in (PolicyPattern.ADMIN_ONLY_MUTATION, PolicyPattern.ROOT_ENTITY)


def build_authorization_chain(
    settings: Settings | None = None,
    *,
    resolver: TenantContextResolver | None = None,
    limiter: RateLimiter | None = None,
    engine: PolicyEngine | None = None,
    audit: AuditLogWriter | None = None,
    session_factory: SessionFactory | None = None,
) -> AuthorizationChain:
    settings = settings or get_settings()
    session_factory = session_factory or SessionLocal
    return AuthorizationChain(
        resolver or build_resolver(session_factory),
        limiter or build_rate_limiter(settings),
        engine or PolicyEngine(),
        audit or get_audit_writer(),
        route_classes_from_settings(settings),
        rate_limit_enabled=settings.rate_limit_enabled,
        session_factory=session_factory,
        loader_timeout_s=settings.auth_timeout_ms / 1000.0,
    )
