from __future__ import annotations

from fastapi import APIRouter
from pydantic import BaseModel

from tenantguard.core.config import get_settings


router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    service: str


# Public liveness probe; it never touches tenant data and bypasses the chain.
@router.get("/health")
async def health() -> HealthResponse:
    return HealthResponse(status="ok", service=get_settings().app_name)
