from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.apps.api.deps import get_db, reject_tenant_id_in_body, require_access
from tenantguard.domain.authz import Operation, ResourceDescriptor, TenantContext
from tenantguard.persistence.repos import organizations as organizations_repo
from tenantguard.services.authz.policy import RESOURCE_ORGANIZATION, RESOURCE_ORGANIZATION_SETTINGS
from tenantguard.services.rate_limit import ROUTE_CLASS_ADMIN, ROUTE_CLASS_RELAXED


router = APIRouter(prefix="/organizations", tags=["organizations"])


class OrganizationResponse(BaseModel):
    id: str
    name: str
    status: str


class OrganizationCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)

    model_config = {"extra": "forbid"}


class OrganizationPatchRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)

    model_config = {"extra": "forbid"}

    @field_validator("name")
    @classmethod
    def _name_not_null(cls, value: str | None) -> str:
        if value is None:
            raise ValueError("name cannot be null")
        return value


class BillingSettingsResponse(BaseModel):
    organization_id: str
    billing_email: str | None
    billing_plan: str
    settings: dict[str, Any] | None


class BillingSettingsPatchRequest(BaseModel):
    billing_email: str | None = Field(default=None, max_length=320)
    billing_plan: str | None = Field(default=None, max_length=64)
    settings_json: dict[str, Any] | None = None

    # Reject unknown fields so tenant_id cannot be supplied in the payload.
    model_config = {"extra": "forbid"}

    @field_validator("billing_plan")
    @classmethod
    def _plan_not_null(cls, value: str | None) -> str:
        if value is None:
            raise ValueError("billing_plan cannot be null")
        return value


async def _load_org(session, path_params: dict[str, Any]) -> ResourceDescriptor | None:
    return await organizations_repo.load_organization_ownership(session, str(path_params["org_id"]))


async def _load_settings(session, path_params: dict[str, Any]) -> ResourceDescriptor | None:
    return await organizations_repo.load_settings_ownership(session, str(path_params["org_id"]))


def _org_response(org) -> OrganizationResponse:
    return OrganizationResponse(id=org.id, name=org.name, status=org.status)


def _settings_response(row) -> BillingSettingsResponse:
    return BillingSettingsResponse(
        organization_id=row.tenant_id,
        billing_email=row.billing_email,
        billing_plan=row.billing_plan,
        settings=row.settings_json,
    )


def _db_error(exc: SQLAlchemyError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"code": "DB_ERROR", "message": "Database error while processing organizations"},
    )


def _not_found(message: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail={"code": "NOT_FOUND", "message": message})


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_organization(
    payload: OrganizationCreateRequest,
    principal: TenantContext = Depends(require_access(ROUTE_CLASS_ADMIN, RESOURCE_ORGANIZATION, Operation.CREATE)),
    _reject_tenant: None = Depends(reject_tenant_id_in_body),
    db: AsyncSession = Depends(get_db),
) -> OrganizationResponse:
    try:
        org = await organizations_repo.create_organization(db, principal, name=payload.name)
    except SQLAlchemyError as exc:
        raise _db_error(exc) from exc
    return _org_response(org)


@router.get("/{org_id}")
async def get_organization(
    org_id: str,
    principal: TenantContext = Depends(
        require_access(ROUTE_CLASS_RELAXED, RESOURCE_ORGANIZATION, loader=_load_org, target_param="org_id")
    ),
    db: AsyncSession = Depends(get_db),
) -> OrganizationResponse:
    try:
        org = await organizations_repo.get_organization(db, principal, org_id)
    except SQLAlchemyError as exc:
        raise _db_error(exc) from exc
    if org is None:
        raise _not_found("Organization not found")
    return _org_response(org)


@router.patch("/{org_id}")
async def patch_organization(
    org_id: str,
    payload: OrganizationPatchRequest,
    principal: TenantContext = Depends(
        require_access(
            ROUTE_CLASS_ADMIN,
            RESOURCE_ORGANIZATION,
            Operation.UPDATE,
            loader=_load_org,
            target_param="org_id",
        )
    ),
    _reject_tenant: None = Depends(reject_tenant_id_in_body),
    db: AsyncSession = Depends(get_db),
) -> OrganizationResponse:
    try:
        org = await organizations_repo.update_organization(db, principal, org_id, name=payload.name)
    except SQLAlchemyError as exc:
        raise _db_error(exc) from exc
    if org is None:
        raise _not_found("Organization not found")
    return _org_response(org)


@router.get("/{org_id}/billing-settings")
async def get_billing_settings(
    org_id: str,
    principal: TenantContext = Depends(
        require_access(
            ROUTE_CLASS_RELAXED,
            RESOURCE_ORGANIZATION_SETTINGS,
            loader=_load_settings,
            target_param="org_id",
        )
    ),
    db: AsyncSession = Depends(get_db),
) -> BillingSettingsResponse:
    try:
        row = await organizations_repo.get_billing_settings(db, principal, org_id)
    except SQLAlchemyError as exc:
        raise _db_error(exc) from exc
    if row is None:
        raise _not_found("Billing settings not found")
    return _settings_response(row)


@router.patch("/{org_id}/billing-settings")
async def patch_billing_settings(
    org_id: str,
    payload: BillingSettingsPatchRequest,
    principal: TenantContext = Depends(
        require_access(
            ROUTE_CLASS_ADMIN,
            RESOURCE_ORGANIZATION_SETTINGS,
            Operation.UPDATE,
            loader=_load_settings,
            target_param="org_id",
        )
    ),
    _reject_tenant: None = Depends(reject_tenant_id_in_body),
    db: AsyncSession = Depends(get_db),
) -> BillingSettingsResponse:
    try:
        row = await organizations_repo.upsert_billing_settings(
            db, principal, org_id, payload.model_dump(exclude_unset=True)
        )
    except SQLAlchemyError as exc:
        raise _db_error(exc) from exc
    if row is None:
        raise _not_found("Billing settings not found")
    return _settings_response(row)
