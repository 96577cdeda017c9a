from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.domain.authz import Operation, ResourceDescriptor, TenantContext
from tenantguard.domain.models import AuditEvent
from tenantguard.persistence.guards import scoped_select
from tenantguard.services.authz.policy import RESOURCE_AUDIT_EVENT


# Append-only: no update or delete helpers exist for audit events.


async def append(session: AsyncSession, event: AuditEvent, *, commit: bool = True) -> AuditEvent:
    session.add(event)
    if commit:
        await session.commit()
    return event


async def list_events(
    session: AsyncSession,
    principal: TenantContext,
    *,
    tenant_id: str | None = None,
    actor_id: str | None = None,
    action: str | None = None,
    outcome: str | None = None,
    risk_level: str | None = None,
    occurred_from: datetime | None = None,
    occurred_to: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[AuditEvent]:
    # Filters narrow the principal's visible scope; they never widen it.
    stmt = scoped_select(RESOURCE_AUDIT_EVENT, principal, Operation.READ)
    if tenant_id:
        stmt = stmt.where(AuditEvent.tenant_id == tenant_id)
    if actor_id:
        stmt = stmt.where(AuditEvent.actor_id == actor_id)
    if action:
        stmt = stmt.where(AuditEvent.action == action)
    if outcome:
        stmt = stmt.where(AuditEvent.outcome == outcome)
    if risk_level:
        stmt = stmt.where(AuditEvent.risk_level == risk_level)
    if occurred_from:
        stmt = stmt.where(AuditEvent.occurred_at >= occurred_from)
    if occurred_to:
        stmt = stmt.where(AuditEvent.occurred_at <= occurred_to)

    stmt = stmt.order_by(AuditEvent.occurred_at.desc(), AuditEvent.id.desc())
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_event_by_id(
    session: AsyncSession,
    principal: TenantContext,
    *,
    event_id: int,
) -> AuditEvent | None:
    result = await session.execute(
        scoped_select(RESOURCE_AUDIT_EVENT, principal, Operation.READ).where(AuditEvent.id == event_id)
    )
    return result.scalar_one_or_none()


async def load_ownership(session: AsyncSession, event_id: int) -> ResourceDescriptor | None:
    # Ownership facts only; used by the chain before the scoped read.
    result = await session.execute(
        select(AuditEvent.id, AuditEvent.tenant_id).where(AuditEvent.id == event_id)
    )
    row = result.one_or_none()
    if row is None:
        return None
    return ResourceDescriptor(
        resource_type=RESOURCE_AUDIT_EVENT,
        resource_id=str(row.id),
        tenant_id=row.tenant_id,
    )
