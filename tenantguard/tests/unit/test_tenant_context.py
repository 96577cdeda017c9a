from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from tenantguard.core.errors import (
    AuthenticationError,
    ProfileNotFoundError,
    TenantContextUnavailableError,
    TenantMismatchError,
)
from tenantguard.domain.authz import MANAGE_BILLING, VIEW_ANALYTICS, VIEW_AUDIT_LOGS, Role
from tenantguard.domain.models import Profile
from tenantguard.services.auth.api_keys import parse_bearer_token
from tenantguard.services.auth.context import (
    ApiKeyCredentialValidator,
    PrincipalRecord,
    SqlPrincipalLookup,
    TenantContextResolver,
    build_resolver,
    build_tenant_context,
)
from tenantguard.tests.utils.auth import create_organization, create_test_api_key


class StaticValidator:
    def __init__(self, principal_id: str | None = "p-1", *, delay_s: float = 0.0) -> None:
        self._principal_id = principal_id
        self._delay_s = delay_s

    async def validate(self, raw_credential: str) -> str:
        if self._delay_s:
            await asyncio.sleep(self._delay_s)
        return self._principal_id


class StaticLookup:
    def __init__(self, record: PrincipalRecord | None = None, *, error: Exception | None = None) -> None:
        self._record = record
        self._error = error

    async def lookup(self, principal_id: str) -> PrincipalRecord | None:
        if self._error is not None:
            raise self._error
        return self._record


def _record(**overrides) -> PrincipalRecord:
    values = {
        "principal_id": "p-1",
        "tenant_id": "t-a",
        "role": "agent",
        "permissions": [],
        "is_super_admin": False,
        "is_active": True,
    }
    values.update(overrides)
    return PrincipalRecord(**values)


def test_parse_bearer_token() -> None:
    assert parse_bearer_token("Bearer abc") == "abc"
    assert parse_bearer_token("bearer abc") == "abc"
    with pytest.raises(AuthenticationError) as missing:
        parse_bearer_token(None)
    assert missing.value.reason == "missing_credential"
    for malformed in ("abc", "Basic abc", "Bearer", "Bearer a b"):
        with pytest.raises(AuthenticationError) as exc_info:
            parse_bearer_token(malformed)
        assert exc_info.value.reason == "malformed_credential"


def test_build_context_combines_role_bundle_and_grants() -> None:
    context = build_tenant_context(_record(role="Viewer", permissions=["manage_billing", "bogus"]))
    assert context.role is Role.VIEWER
    assert context.permissions == frozenset({VIEW_ANALYTICS, MANAGE_BILLING})
    assert context.tenant_id == "t-a"
    assert context.is_super_admin is False


def test_missing_record_is_profile_not_found() -> None:
    with pytest.raises(ProfileNotFoundError):
        build_tenant_context(None)


def test_inactive_profile_is_unauthenticated() -> None:
    with pytest.raises(AuthenticationError) as exc_info:
        build_tenant_context(_record(is_active=False))
    assert exc_info.value.reason == "inactive_principal"


@pytest.mark.parametrize(
    "overrides",
    [
        {"role": "superuser"},
        {"role": None},
        {"permissions": "view_audit_logs"},
        {"permissions": {"view_audit_logs": True}},
        {"permissions": ["view_audit_logs", 7]},
    ],
)
def test_malformed_profile_is_rejected(overrides) -> None:
    with pytest.raises(ProfileNotFoundError) as exc_info:
        build_tenant_context(_record(**overrides))
    assert exc_info.value.reason == "invalid_profile"


def test_tenantless_member_is_never_given_a_default_tenant() -> None:
    with pytest.raises(TenantMismatchError) as exc_info:
        build_tenant_context(_record(tenant_id=None))
    assert exc_info.value.reason == "no_tenant_membership"


def test_super_admin_without_tenant_or_role_resolves() -> None:
    context = build_tenant_context(_record(tenant_id=None, role=None, is_super_admin=True))
    assert context.is_super_admin is True
    assert context.tenant_id is None
    assert context.role is None


def test_context_is_frozen() -> None:
    context = build_tenant_context(_record())
    with pytest.raises(ValidationError):
        context.tenant_id = "t-b"  # type: ignore[misc]
    view = context.request_context()
    assert view.principal_id == "p-1"
    assert not hasattr(view, "is_super_admin")


@pytest.mark.asyncio
async def test_resolver_rejects_empty_credential() -> None:
    resolver = TenantContextResolver(StaticValidator(), StaticLookup(_record()), timeout_s=1.0)
    with pytest.raises(AuthenticationError):
        await resolver.resolve("")


@pytest.mark.asyncio
async def test_resolver_times_out_closed() -> None:
    resolver = TenantContextResolver(StaticValidator(delay_s=1.0), StaticLookup(_record()), timeout_s=0.01)
    with pytest.raises(TenantContextUnavailableError) as exc_info:
        await resolver.resolve("token")
    assert exc_info.value.reason == "context_timeout"
    assert exc_info.value.code == "forbidden"


@pytest.mark.asyncio
async def test_resolver_store_error_fails_closed() -> None:
    resolver = TenantContextResolver(
        StaticValidator(), StaticLookup(error=ConnectionError("db down")), timeout_s=1.0
    )
    with pytest.raises(TenantContextUnavailableError):
        await resolver.resolve("token")


@pytest.mark.asyncio
async def test_resolver_passes_domain_errors_through() -> None:
    resolver = TenantContextResolver(StaticValidator(), StaticLookup(None), timeout_s=1.0)
    with pytest.raises(ProfileNotFoundError):
        await resolver.resolve("token")


@pytest.mark.asyncio
async def test_api_key_resolution_end_to_end(session_factory) -> None:
    tenant_id = await create_organization(session_factory)
    raw_key, _headers, profile_id = await create_test_api_key(
        session_factory, tenant_id=tenant_id, role="admin", permissions=[VIEW_AUDIT_LOGS]
    )
    resolver = build_resolver(session_factory)

    context = await resolver.resolve(raw_key)
    assert context.principal_id == profile_id
    assert context.tenant_id == tenant_id
    assert context.role is Role.ADMIN

    with pytest.raises(AuthenticationError) as exc_info:
        await resolver.resolve("tgk_unknown")
    assert exc_info.value.reason == "invalid_credential"


@pytest.mark.asyncio
async def test_revoked_and_expired_keys_are_rejected(session_factory) -> None:
    tenant_id = await create_organization(session_factory)
    revoked, _, _ = await create_test_api_key(session_factory, tenant_id=tenant_id, key_revoked=True)
    expired, _, _ = await create_test_api_key(
        session_factory,
        tenant_id=tenant_id,
        key_expires_at=datetime.now(timezone.utc) - timedelta(minutes=1),
    )
    validator = ApiKeyCredentialValidator(session_factory)

    with pytest.raises(AuthenticationError) as revoked_exc:
        await validator.validate(revoked)
    assert revoked_exc.value.reason == "revoked_credential"
    with pytest.raises(AuthenticationError) as expired_exc:
        await validator.validate(expired)
    assert expired_exc.value.reason == "expired_credential"


@pytest.mark.asyncio
async def test_role_change_applies_on_next_resolution(session_factory) -> None:
    tenant_id = await create_organization(session_factory)
    raw_key, _, profile_id = await create_test_api_key(session_factory, tenant_id=tenant_id, role="viewer")
    resolver = build_resolver(session_factory)
    assert (await resolver.resolve(raw_key)).role is Role.VIEWER

    async with session_factory() as session:
        profile = await session.get(Profile, profile_id)
        profile.role = "owner"
        await session.commit()

    assert (await resolver.resolve(raw_key)).role is Role.OWNER
    assert (await SqlPrincipalLookup(session_factory).lookup("missing")) is None
