from __future__ import annotations

from typing import Any
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.domain.authz import ADMIN_ROLES, Operation, ResourceDescriptor, TenantContext
from tenantguard.domain.models import Organization, OrganizationSettings
from tenantguard.persistence.guards import TenantPredicateError, reject_tenant_reassignment, scoped_select
from tenantguard.services.authz.policy import RESOURCE_ORGANIZATION, RESOURCE_ORGANIZATION_SETTINGS


_BILLING_FIELDS = ("billing_email", "billing_plan", "settings_json")


async def load_organization_ownership(session: AsyncSession, org_id: str) -> ResourceDescriptor | None:
    result = await session.execute(select(Organization.id).where(Organization.id == org_id))
    found = result.scalar_one_or_none()
    if found is None:
        return None
    # The tenant record owns itself.
    return ResourceDescriptor(resource_type=RESOURCE_ORGANIZATION, resource_id=found, tenant_id=found)


async def load_settings_ownership(session: AsyncSession, org_id: str) -> ResourceDescriptor | None:
    # Settings are addressed by their organization; a missing org is a missing record.
    result = await session.execute(select(Organization.id).where(Organization.id == org_id))
    found = result.scalar_one_or_none()
    if found is None:
        return None
    return ResourceDescriptor(
        resource_type=RESOURCE_ORGANIZATION_SETTINGS,
        resource_id=found,
        tenant_id=found,
    )


async def get_organization(
    session: AsyncSession,
    principal: TenantContext,
    org_id: str,
    *,
    operation: Operation = Operation.READ,
) -> Organization | None:
    result = await session.execute(
        scoped_select(RESOURCE_ORGANIZATION, principal, operation).where(Organization.id == org_id)
    )
    return result.scalar_one_or_none()


async def update_organization(
    session: AsyncSession,
    principal: TenantContext,
    org_id: str,
    *,
    name: str | None = None,
) -> Organization | None:
    org = await get_organization(session, principal, org_id, operation=Operation.UPDATE)
    if org is None:
        return None
    if name is not None:
        org.name = name
    await session.flush()
    await session.refresh(org)
    await session.commit()
    return org


async def get_billing_settings(
    session: AsyncSession,
    principal: TenantContext,
    org_id: str,
    *,
    operation: Operation = Operation.READ,
) -> OrganizationSettings | None:
    result = await session.execute(
        scoped_select(RESOURCE_ORGANIZATION_SETTINGS, principal, operation).where(
            OrganizationSettings.tenant_id == org_id
        )
    )
    return result.scalar_one_or_none()


async def upsert_billing_settings(
    session: AsyncSession,
    principal: TenantContext,
    org_id: str,
    values: dict[str, Any],
) -> OrganizationSettings | None:
    """Update the organization's settings row, creating it on first write.

    Returns ``None`` when the storage predicate hides the row from ``principal``.
    """
    reject_tenant_reassignment(values)
    row = await get_billing_settings(session, principal, org_id, operation=Operation.UPDATE)
    if row is None:
        existing = await session.execute(
            select(OrganizationSettings.id).where(OrganizationSettings.tenant_id == org_id)
        )
        if existing.scalar_one_or_none() is not None:
            return None
        # No row yet: apply the create rule against the target tenant.
        if not _may_create_settings(principal, org_id):
            return None
        row = OrganizationSettings(id=uuid4().hex, tenant_id=org_id)
        session.add(row)
    for key in _BILLING_FIELDS:
        if key in values and values[key] is not None:
            setattr(row, key, values[key])
    await session.flush()
    await session.refresh(row)
    await session.commit()
    return row


def _may_create_settings(principal: TenantContext, org_id: str) -> bool:
    if principal.is_super_admin:
        return True
    return principal.tenant_id == org_id and principal.role in ADMIN_ROLES


async def create_organization(session: AsyncSession, principal: TenantContext, *, name: str) -> Organization:
    # Tenants are provisioned by super-admins only; storage re-checks the route decision.
    if not principal.is_super_admin:
        raise TenantPredicateError("Only super-admins can create organizations")
    org = Organization(id=uuid4().hex, name=name)
    session.add(org)
    await session.flush()
    await session.refresh(org)
    await session.commit()
    return org
