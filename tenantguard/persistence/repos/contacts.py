from __future__ import annotations

from typing import Any
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.domain.authz import Operation, ResourceDescriptor, TenantContext
from tenantguard.domain.models import Contact
from tenantguard.persistence.guards import reject_tenant_reassignment, require_tenant_id, scoped_select
from tenantguard.services.authz.policy import RESOURCE_CONTACT


async def load_ownership(session: AsyncSession, contact_id: str) -> ResourceDescriptor | None:
    # Ownership facts only; the chain decides before any scoped read happens.
    result = await session.execute(select(Contact.id, Contact.tenant_id).where(Contact.id == contact_id))
    row = result.one_or_none()
    if row is None:
        return None
    return ResourceDescriptor(resource_type=RESOURCE_CONTACT, resource_id=row.id, tenant_id=row.tenant_id)


async def list_contacts(
    session: AsyncSession,
    principal: TenantContext,
    *,
    offset: int = 0,
    limit: int = 50,
) -> list[Contact]:
    # Stable ordering avoids non-deterministic API responses for the same tenant.
    stmt = (
        scoped_select(RESOURCE_CONTACT, principal, Operation.READ)
        .order_by(Contact.created_at, Contact.id)
        .offset(offset)
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_contact(
    session: AsyncSession,
    principal: TenantContext,
    contact_id: str,
    *,
    operation: Operation = Operation.READ,
) -> Contact | None:
    result = await session.execute(
        scoped_select(RESOURCE_CONTACT, principal, operation).where(Contact.id == contact_id)
    )
    return result.scalar_one_or_none()


async def create_contact(
    session: AsyncSession,
    principal: TenantContext,
    *,
    name: str,
    phone: str | None = None,
) -> Contact:
    # The owning tenant always comes from the resolved principal, never from input.
    require_tenant_id(principal.tenant_id)
    contact = Contact(
        id=uuid4().hex,
        tenant_id=principal.tenant_id,
        name=name,
        phone=phone,
        created_by=principal.principal_id,
    )
    session.add(contact)
    # Refresh inside the transaction so server defaults load under the same session context.
    await session.flush()
    await session.refresh(contact)
    await session.commit()
    return contact


async def update_contact(
    session: AsyncSession,
    principal: TenantContext,
    contact_id: str,
    values: dict[str, Any],
) -> Contact | None:
    # Fetch first to enforce tenant scoping and avoid accidental upserts.
    reject_tenant_reassignment(values)
    contact = await get_contact(session, principal, contact_id, operation=Operation.UPDATE)
    if contact is None:
        return None
    for key in ("name", "phone"):
        if key in values:
            setattr(contact, key, values[key])
    await session.flush()
    await session.refresh(contact)
    await session.commit()
    return contact


async def delete_contact(session: AsyncSession, principal: TenantContext, contact_id: str) -> bool:
    contact = await get_contact(session, principal, contact_id, operation=Operation.DELETE)
    if contact is None:
        return False
    await session.delete(contact)
    await session.commit()
    return True
