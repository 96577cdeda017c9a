"""Tenant context resolution.

Turns a raw bearer credential into a validated :class:`TenantContext`. Both
collaborators (credential validation and principal lookup) sit behind small
protocols and every call is bounded by ``auth_timeout_ms``; timeouts and storage
faults deny the request instead of leaving it pending.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any, Awaitable, Callable, Protocol, TypeVar

from sqlalchemy import select

from tenantguard.core.config import get_settings
from tenantguard.core.errors import (
    AuthenticationError,
    AuthzError,
    ProfileNotFoundError,
    TenantContextUnavailableError,
    TenantMismatchError,
)
from tenantguard.domain.authz import (
    Role,
    TenantContext,
    effective_permissions,
    normalize_role,
    parse_permissions,
)
from tenantguard.domain.models import ApiKey, Profile
from tenantguard.persistence.db import SessionLocal
from tenantguard.persistence.rls import apply_system_context
from tenantguard.services.auth.api_keys import hash_api_key


logger = logging.getLogger(__name__)

T = TypeVar("T")
SessionFactory = Callable[[], Any]


@dataclass(frozen=True)
class PrincipalRecord:
    # Raw principal row as stored; nothing here is trusted until validated.
    principal_id: str
    tenant_id: str | None
    role: str | None
    permissions: Any
    is_super_admin: bool = False
    is_active: bool = True


class CredentialValidator(Protocol):
    async def validate(self, raw_credential: str) -> str: ...


class PrincipalLookup(Protocol):
    async def lookup(self, principal_id: str) -> PrincipalRecord | None: ...


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ApiKeyCredentialValidator:
    def __init__(
        self,
        session_factory: SessionFactory = SessionLocal,
        *,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._now = now or (lambda: datetime.now(timezone.utc))

    async def validate(self, raw_credential: str) -> str:
        key_hash = hash_api_key(raw_credential)
        async with self._session_factory() as session:
            await apply_system_context(session)
            result = await session.execute(select(ApiKey).where(ApiKey.key_hash == key_hash))
            api_key = result.scalar_one_or_none()
        if api_key is None:
            raise AuthenticationError("Invalid API key", reason="invalid_credential")
        if api_key.revoked_at is not None:
            raise AuthenticationError("API key is revoked", reason="revoked_credential")
        if api_key.expires_at is not None and _as_utc(api_key.expires_at) <= self._now():
            raise AuthenticationError("API key is expired", reason="expired_credential")
        return api_key.profile_id


class SqlPrincipalLookup:
    def __init__(self, session_factory: SessionFactory = SessionLocal) -> None:
        self._session_factory = session_factory

    async def lookup(self, principal_id: str) -> PrincipalRecord | None:
        async with self._session_factory() as session:
            await apply_system_context(session)
            result = await session.execute(select(Profile).where(Profile.id == principal_id))
            profile = result.scalar_one_or_none()
        if profile is None:
            return None
        return PrincipalRecord(
            principal_id=profile.id,
            tenant_id=profile.tenant_id,
            role=profile.role,
            permissions=profile.permissions,
            is_super_admin=bool(profile.is_super_admin),
            is_active=bool(profile.is_active),
        )


def build_tenant_context(record: PrincipalRecord | None) -> TenantContext:
    """Validate a stored principal into a :class:`TenantContext`.

    Every ambiguity denies: there is no default role, no default tenant and no
    trust in loosely typed permission payloads.
    """
    if record is None:
        raise ProfileNotFoundError("No principal record for credential")
    if not record.is_active:
        raise AuthenticationError("Principal is inactive", reason="inactive_principal")

    role: Role | None = None
    if record.role:
        try:
            role = normalize_role(record.role)
        except ValueError as exc:
            if not record.is_super_admin:
                raise ProfileNotFoundError("Principal role is invalid", reason="invalid_profile") from exc
            logger.warning("super_admin_role_ignored principal_id=%s", record.principal_id)
    elif not record.is_super_admin:
        raise ProfileNotFoundError("Principal has no role", reason="invalid_profile")

    try:
        granted = parse_permissions(record.permissions)
    except ValueError as exc:
        raise ProfileNotFoundError("Principal permissions are invalid", reason="invalid_profile") from exc

    if record.tenant_id is None and not record.is_super_admin:
        raise TenantMismatchError("Principal has no tenant", reason="no_tenant_membership")

    return TenantContext(
        principal_id=record.principal_id,
        tenant_id=record.tenant_id,
        role=role,
        permissions=effective_permissions(role, granted),
        is_super_admin=record.is_super_admin,
    )


class TenantContextResolver:
    def __init__(
        self,
        validator: CredentialValidator,
        lookup: PrincipalLookup,
        *,
        timeout_s: float | None = None,
    ) -> None:
        self._validator = validator
        self._lookup = lookup
        self._timeout_s = timeout_s if timeout_s is not None else get_settings().auth_timeout_ms / 1000.0

    async def _bounded(self, step: str, call: Awaitable[T]) -> T:
        # Domain errors pass through; anything else (timeouts included) fails closed.
        try:
            return await asyncio.wait_for(call, timeout=self._timeout_s)
        except AuthzError:
            raise
        except asyncio.TimeoutError as exc:
            logger.warning("tenant_context_timeout step=%s timeout_s=%s", step, self._timeout_s)
            raise TenantContextUnavailableError(
                "Tenant context lookup timed out", reason="context_timeout"
            ) from exc
        except Exception as exc:
            logger.warning("tenant_context_unavailable step=%s", step, exc_info=exc)
            raise TenantContextUnavailableError("Tenant context lookup failed") from exc

    async def authenticate(self, raw_credential: str | None) -> str:
        if not raw_credential:
            raise AuthenticationError("Missing bearer credential", reason="missing_credential")
        principal_id = await self._bounded("credential", self._validator.validate(raw_credential))
        if not principal_id:
            raise AuthenticationError("Credential did not map to a principal", reason="invalid_credential")
        return principal_id

    async def load_context(self, principal_id: str) -> TenantContext:
        record = await self._bounded("principal", self._lookup.lookup(principal_id))
        return build_tenant_context(record)

    async def resolve(self, raw_credential: str | None) -> TenantContext:
        principal_id = await self.authenticate(raw_credential)
        return await self.load_context(principal_id)


def build_resolver(session_factory: SessionFactory = SessionLocal) -> TenantContextResolver:
    return TenantContextResolver(
        ApiKeyCredentialValidator(session_factory),
        SqlPrincipalLookup(session_factory),
    )
