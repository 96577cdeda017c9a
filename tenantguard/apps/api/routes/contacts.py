from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.apps.api.deps import get_db, reject_tenant_id_in_body, require_access
from tenantguard.domain.authz import Operation, ResourceDescriptor, TenantContext
from tenantguard.persistence.repos import contacts as contacts_repo
from tenantguard.services.authz.policy import RESOURCE_CONTACT
from tenantguard.services.rate_limit import ROUTE_CLASS_STANDARD


router = APIRouter(prefix="/contacts", tags=["contacts"])


class ContactResponse(BaseModel):
    id: str
    tenant_id: str
    name: str
    phone: str | None
    created_by: str | None
    created_at: str


class ContactCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    phone: str | None = Field(default=None, max_length=32)

    # Reject unknown fields so tenant_id cannot be supplied in the payload.
    model_config = {"extra": "forbid"}


class ContactPatchRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    phone: str | None = Field(default=None, max_length=32)

    model_config = {"extra": "forbid"}

    @field_validator("name")
    @classmethod
    def _name_not_null(cls, value: str | None) -> str:
        # Omit the field to keep the current name; null would violate the column.
        if value is None:
            raise ValueError("name cannot be null")
        return value


async def _load_contact(session, path_params: dict[str, Any]) -> ResourceDescriptor | None:
    return await contacts_repo.load_ownership(session, str(path_params["contact_id"]))


def _to_response(contact) -> ContactResponse:
    return ContactResponse(
        id=contact.id,
        tenant_id=contact.tenant_id,
        name=contact.name,
        phone=contact.phone,
        created_by=contact.created_by,
        created_at=contact.created_at.isoformat(),
    )


def _db_error(exc: SQLAlchemyError) -> HTTPException:
    # Shield clients from raw database errors while still returning a useful status.
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"code": "DB_ERROR", "message": "Database error while processing contacts"},
    )


def _not_found() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"code": "NOT_FOUND", "message": "Contact not found"},
    )


@router.get("")
async def list_contacts(
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    principal: TenantContext = Depends(require_access(ROUTE_CLASS_STANDARD, RESOURCE_CONTACT)),
    db: AsyncSession = Depends(get_db),
) -> list[ContactResponse]:
    try:
        contacts = await contacts_repo.list_contacts(db, principal, offset=offset, limit=limit)
    except SQLAlchemyError as exc:
        raise _db_error(exc) from exc
    return [_to_response(contact) for contact in contacts]


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_contact(
    payload: ContactCreateRequest,
    principal: TenantContext = Depends(
        require_access(ROUTE_CLASS_STANDARD, RESOURCE_CONTACT, Operation.CREATE)
    ),
    _reject_tenant: None = Depends(reject_tenant_id_in_body),
    db: AsyncSession = Depends(get_db),
) -> ContactResponse:
    # Bind tenant scope from the authenticated principal to prevent spoofing.
    try:
        contact = await contacts_repo.create_contact(db, principal, name=payload.name, phone=payload.phone)
    except SQLAlchemyError as exc:
        raise _db_error(exc) from exc
    return _to_response(contact)


@router.get("/{contact_id}")
async def get_contact(
    contact_id: str,
    principal: TenantContext = Depends(
        require_access(ROUTE_CLASS_STANDARD, RESOURCE_CONTACT, loader=_load_contact, target_param="contact_id")
    ),
    db: AsyncSession = Depends(get_db),
) -> ContactResponse:
    try:
        contact = await contacts_repo.get_contact(db, principal, contact_id)
    except SQLAlchemyError as exc:
        raise _db_error(exc) from exc
    if contact is None:
        raise _not_found()
    return _to_response(contact)


@router.patch("/{contact_id}")
async def patch_contact(
    contact_id: str,
    payload: ContactPatchRequest,
    principal: TenantContext = Depends(
        require_access(
            ROUTE_CLASS_STANDARD,
            RESOURCE_CONTACT,
            Operation.UPDATE,
            loader=_load_contact,
            target_param="contact_id",
        )
    ),
    _reject_tenant: None = Depends(reject_tenant_id_in_body),
    db: AsyncSession = Depends(get_db),
) -> ContactResponse:
    try:
        contact = await contacts_repo.update_contact(
            db, principal, contact_id, payload.model_dump(exclude_unset=True)
        )
    except SQLAlchemyError as exc:
        raise _db_error(exc) from exc
    if contact is None:
        raise _not_found()
    return _to_response(contact)


@router.delete("/{contact_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_contact(
    contact_id: str,
    principal: TenantContext = Depends(
        require_access(
            ROUTE_CLASS_STANDARD,
            RESOURCE_CONTACT,
            Operation.DELETE,
            loader=_load_contact,
            target_param="contact_id",
        )
    ),
    db: AsyncSession = Depends(get_db),
) -> None:
    try:
        deleted = await contacts_repo.delete_contact(db, principal, contact_id)
    except SQLAlchemyError as exc:
        raise _db_error(exc) from exc
    if not deleted:
        raise _not_found()
