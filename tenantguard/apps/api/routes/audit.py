from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.apps.api.deps import get_db, require_access
from tenantguard.domain.authz import Operation, ResourceDescriptor, TenantContext
from tenantguard.persistence.repos import audit as audit_repo
from tenantguard.services.authz.policy import RESOURCE_AUDIT_EVENT
from tenantguard.services.rate_limit import ROUTE_CLASS_STRICT


router = APIRouter(prefix="/audit", tags=["audit"])


class AuditEventResponse(BaseModel):
    id: int
    occurred_at: str
    tenant_id: str | None
    actor_id: str | None
    actor_role: str | None
    action: str
    outcome: str
    target_type: str | None
    target_id: str | None
    request_id: str | None
    source_ip: str | None
    user_agent: str | None
    metadata: dict[str, Any] | None
    risk_level: str


class AuditEventsPage(BaseModel):
    items: list[AuditEventResponse]
    next_offset: int | None


async def _load_event(session, path_params: dict[str, Any]) -> ResourceDescriptor | None:
    try:
        event_id = int(path_params["event_id"])
    except (KeyError, TypeError, ValueError):
        return None
    return await audit_repo.load_ownership(session, event_id)


def _to_response(event) -> AuditEventResponse:
    # Serialize audit event datetimes to ISO 8601 for API clients.
    return AuditEventResponse(
        id=event.id,
        occurred_at=event.occurred_at.isoformat(),
        tenant_id=event.tenant_id,
        actor_id=event.actor_id,
        actor_role=event.actor_role,
        action=event.action,
        outcome=event.outcome,
        target_type=event.target_type,
        target_id=event.target_id,
        request_id=event.request_id,
        source_ip=event.source_ip,
        user_agent=event.user_agent,
        metadata=event.metadata_json,
        risk_level=event.risk_level,
    )


def _immutable() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_405_METHOD_NOT_ALLOWED,
        detail={"code": "AUDIT_IMMUTABLE", "message": "Audit events cannot be modified"},
    )


@router.get("/events")
async def list_audit_events(
    tenant_id: str | None = None,
    actor_id: str | None = None,
    action: str | None = None,
    outcome: str | None = None,
    risk_level: str | None = None,
    occurred_from: datetime | None = Query(default=None, alias="from"),
    occurred_to: datetime | None = Query(default=None, alias="to"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    principal: TenantContext = Depends(require_access(ROUTE_CLASS_STRICT, RESOURCE_AUDIT_EVENT)),
    db: AsyncSession = Depends(get_db),
) -> AuditEventsPage:
    # The tenant filter narrows results; storage predicates still bound them to the principal.
    try:
        events = await audit_repo.list_events(
            db,
            principal,
            tenant_id=tenant_id,
            actor_id=actor_id,
            action=action,
            outcome=outcome,
            risk_level=risk_level,
            occurred_from=occurred_from,
            occurred_to=occurred_to,
            offset=offset,
            limit=limit + 1,
        )
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while fetching audit events") from exc

    next_offset = None
    if len(events) > limit:
        events = events[:limit]
        next_offset = offset + limit

    return AuditEventsPage(items=[_to_response(event) for event in events], next_offset=next_offset)


@router.get("/events/{event_id}")
async def get_audit_event(
    event_id: int,
    principal: TenantContext = Depends(
        require_access(ROUTE_CLASS_STRICT, RESOURCE_AUDIT_EVENT, loader=_load_event, target_param="event_id")
    ),
    db: AsyncSession = Depends(get_db),
) -> AuditEventResponse:
    try:
        event = await audit_repo.get_event_by_id(db, principal, event_id=event_id)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while fetching audit event") from exc
    if event is None:
        raise HTTPException(status_code=404, detail="Audit event not found")
    return _to_response(event)


@router.patch("/events/{event_id}")
async def update_audit_event(
    event_id: int,
    principal: TenantContext = Depends(
        require_access(
            ROUTE_CLASS_STRICT,
            RESOURCE_AUDIT_EVENT,
            Operation.UPDATE,
            loader=_load_event,
            target_param="event_id",
            api_immutable=True,
        )
    ),
) -> None:
    # The chain refuses every caller first; this only answers if that wiring is removed.
    raise _immutable()


@router.delete("/events/{event_id}")
async def delete_audit_event(
    event_id: int,
    principal: TenantContext = Depends(
        require_access(
            ROUTE_CLASS_STRICT,
            RESOURCE_AUDIT_EVENT,
            Operation.DELETE,
            loader=_load_event,
            target_param="event_id",
            api_immutable=True,
        )
    ),
) -> None:
    # Purges happen only through the out-of-band retention job.
    raise _immutable()
