from __future__ import annotations

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from tenantguard.core.config import get_settings
from tenantguard.core.errors import TenantGuardError, TenantReassignmentError
from tenantguard.domain.authz import Operation, Role
from tenantguard.domain.models import AuditEvent, Contact, Conversation, Message
from tenantguard.persistence.guards import (
    TenantPredicateError,
    policy_predicate,
    scoped_select,
    tenant_predicate,
)
from tenantguard.persistence.repos import audit as audit_repo
from tenantguard.persistence.repos import contacts as contacts_repo
from tenantguard.persistence.repos import organizations as organizations_repo
from tenantguard.services.authz.policy import RESOURCE_AUDIT_EVENT, RESOURCE_MESSAGE
from tenantguard.services.maintenance import prune_audit_events
from tenantguard.tests.utils.auth import create_organization, make_principal


async def _seed_contacts(session_factory) -> tuple[str, str]:
    tenant_a = await create_organization(session_factory, "t-a")
    tenant_b = await create_organization(session_factory, "t-b")
    async with session_factory() as session:
        session.add_all(
            [
                Contact(id="c-a1", tenant_id=tenant_a, name="Ana"),
                Contact(id="c-a2", tenant_id=tenant_a, name="Alan"),
                Contact(id="c-b1", tenant_id=tenant_b, name="Bea"),
            ]
        )
        await session.commit()
    return tenant_a, tenant_b


def test_tenant_predicate_requires_tenant(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AUTHZ_REQUIRE_TENANT_PREDICATE", "true")
    get_settings.cache_clear()
    with pytest.raises(TenantPredicateError):
        tenant_predicate(Contact, None)  # type: ignore[arg-type]
    member_without_tenant = make_principal(tenant_id=None)
    with pytest.raises(TenantPredicateError):
        scoped_select("contact", member_without_tenant)


def test_tenant_predicate_error_unwinds_through_context_managers() -> None:
    error = TenantPredicateError("Tenant predicate required but tenant_id is missing")
    assert isinstance(error, TenantGuardError)
    assert error.message == "Tenant predicate required but tenant_id is missing"
    # Exit hooks of async context managers rewrite the traceback on the way out.
    error.__traceback__ = None
    with pytest.raises(TenantPredicateError):
        raise error


def test_unknown_resource_has_no_storage_policy() -> None:
    with pytest.raises(TenantPredicateError):
        policy_predicate("invoice", make_principal(), Operation.READ)


@pytest.mark.asyncio
async def test_list_and_get_are_scoped_to_tenant(session_factory) -> None:
    await _seed_contacts(session_factory)
    member_a = make_principal(tenant_id="t-a")
    root = make_principal(tenant_id=None, role=None, is_super_admin=True)

    async with session_factory() as session:
        visible = await contacts_repo.list_contacts(session, member_a)
        assert {contact.id for contact in visible} == {"c-a1", "c-a2"}
        # A handler that skipped the chain still cannot read across tenants.
        assert await contacts_repo.get_contact(session, member_a, "c-b1") is None
        everything = await contacts_repo.list_contacts(session, root)
        assert len(everything) == 3


@pytest.mark.asyncio
async def test_create_binds_tenant_from_principal(session_factory) -> None:
    await create_organization(session_factory, "t-a")
    member_a = make_principal(tenant_id="t-a")
    tenantless_root = make_principal(tenant_id=None, role=None, is_super_admin=True)

    async with session_factory() as session:
        contact = await contacts_repo.create_contact(session, member_a, name="New")
        assert contact.tenant_id == "t-a"
        assert contact.created_by == member_a.principal_id
        assert contact.created_at is not None
        with pytest.raises(TenantPredicateError):
            await contacts_repo.create_contact(session, tenantless_root, name="Nowhere")


@pytest.mark.asyncio
async def test_update_and_delete_respect_scope(session_factory) -> None:
    await _seed_contacts(session_factory)
    member_a = make_principal(tenant_id="t-a")

    async with session_factory() as session:
        with pytest.raises(TenantPredicateError):
            await contacts_repo.update_contact(session, member_a, "c-a1", {"tenant_id": "t-b"})
        assert await contacts_repo.update_contact(session, member_a, "c-b1", {"name": "Hijack"}) is None
        updated = await contacts_repo.update_contact(session, member_a, "c-a1", {"name": "Ana Maria"})
        assert updated.name == "Ana Maria"
        assert await contacts_repo.delete_contact(session, member_a, "c-b1") is False
        assert await contacts_repo.delete_contact(session, member_a, "c-a2") is True

    async with session_factory() as session:
        untouched = await session.get(Contact, "c-b1")
        assert untouched.name == "Bea"


@pytest.mark.asyncio
async def test_tenant_id_cannot_be_reassigned_on_persistent_record(session_factory) -> None:
    await _seed_contacts(session_factory)
    async with session_factory() as session:
        contact = await session.get(Contact, "c-a1")
        with pytest.raises(TenantReassignmentError):
            contact.tenant_id = "t-b"
        # Re-assigning the same value is a no-op.
        contact.tenant_id = "t-a"


@pytest.mark.asyncio
async def test_relationship_derived_rows_follow_parent_tenant(session_factory) -> None:
    await _seed_contacts(session_factory)
    async with session_factory() as session:
        session.add_all(
            [
                Conversation(id="conv-a", tenant_id="t-a"),
                Conversation(id="conv-b", tenant_id="t-b"),
            ]
        )
        await session.flush()
        session.add_all(
            [
                Message(id="m-a", conversation_id="conv-a", body="hi"),
                Message(id="m-b", conversation_id="conv-b", body="hello"),
            ]
        )
        await session.commit()

    member_a = make_principal(tenant_id="t-a")
    async with session_factory() as session:
        result = await session.execute(scoped_select(RESOURCE_MESSAGE, member_a))
        assert [message.id for message in result.scalars().all()] == ["m-a"]


@pytest.mark.asyncio
async def test_audit_rows_are_never_updatable(session_factory) -> None:
    root = make_principal(tenant_id=None, role=None, is_super_admin=True)
    member = make_principal(tenant_id="t-a", role=Role.OWNER)
    async with session_factory() as session:
        await audit_repo.append(
            session,
            AuditEvent(
                occurred_at=datetime.now(timezone.utc),
                tenant_id="t-a",
                action="authz.denied",
                outcome="denied",
            ),
        )

    async with session_factory() as session:
        for principal in (root, member):
            stmt = select(func.count()).select_from(AuditEvent).where(
                policy_predicate(RESOURCE_AUDIT_EVENT, principal, Operation.UPDATE)
            )
            assert (await session.execute(stmt)).scalar_one() == 0
        delete_scope = select(func.count()).select_from(AuditEvent).where(
            policy_predicate(RESOURCE_AUDIT_EVENT, member, Operation.DELETE)
        )
        assert (await session.execute(delete_scope)).scalar_one() == 0
        assert len(await audit_repo.list_events(session, member)) == 1


@pytest.mark.asyncio
async def test_billing_settings_writes_need_admin(session_factory) -> None:
    await create_organization(session_factory, "t-a")
    agent = make_principal(tenant_id="t-a", role=Role.AGENT)
    admin = make_principal(tenant_id="t-a", role=Role.ADMIN)
    outsider = make_principal(tenant_id="t-b", role=Role.OWNER)

    async with session_factory() as session:
        assert await organizations_repo.upsert_billing_settings(session, agent, "t-a", {"billing_plan": "pro"}) is None
        assert await organizations_repo.upsert_billing_settings(session, outsider, "t-a", {"billing_plan": "pro"}) is None
        row = await organizations_repo.upsert_billing_settings(session, admin, "t-a", {"billing_plan": "pro"})
        assert row.billing_plan == "pro"
        assert row.tenant_id == "t-a"
        # Reads stay open to every member of the tenant.
        assert (await organizations_repo.get_billing_settings(session, agent, "t-a")).billing_plan == "pro"
        assert await organizations_repo.get_billing_settings(session, outsider, "t-a") is None
        with pytest.raises(TenantPredicateError):
            await organizations_repo.upsert_billing_settings(session, admin, "t-a", {"tenant_id": "t-b"})


@pytest.mark.asyncio
async def test_only_super_admins_create_organizations(session_factory) -> None:
    owner = make_principal(tenant_id="t-a", role=Role.OWNER)
    root = make_principal(tenant_id=None, role=None, is_super_admin=True)
    async with session_factory() as session:
        with pytest.raises(TenantPredicateError):
            await organizations_repo.create_organization(session, owner, name="Rogue")
        org = await organizations_repo.create_organization(session, root, name="Acme")
        assert org.status == "active"


@pytest.mark.asyncio
async def test_prune_removes_only_expired_audit_rows(session_factory, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AUDIT_RETENTION_DAYS", "30")
    get_settings.cache_clear()
    now = datetime.now(timezone.utc)
    async with session_factory() as session:
        for age_days in (45, 31, 5):
            session.add(
                AuditEvent(
                    occurred_at=now - timedelta(days=age_days),
                    tenant_id="t-a",
                    actor_id=uuid4().hex,
                    action="authz.denied",
                    outcome="denied",
                )
            )
        await session.commit()

    async with session_factory() as session:
        deleted = await prune_audit_events(session, now=now)
        await session.commit()
    assert deleted == 2

    async with session_factory() as session:
        remaining = (await session.execute(select(func.count()).select_from(AuditEvent))).scalar_one()
    assert remaining == 1
