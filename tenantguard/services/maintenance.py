from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.core.config import get_settings
from tenantguard.domain.models import AuditEvent
from tenantguard.persistence.rls import apply_system_context


logger = logging.getLogger(__name__)


async def prune_audit_events(session: AsyncSession, *, now: datetime | None = None) -> int:
    """Delete audit events older than the retention window.

    This is the only code path that removes audit rows. It opts into the
    retention context that the immutability trigger checks for, so the caller
    must commit (or roll back) the surrounding transaction.
    """
    settings = get_settings()
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=settings.audit_retention_days)
    await apply_system_context(session, audit_retention=True)
    result = await session.execute(delete(AuditEvent).where(AuditEvent.occurred_at < cutoff))
    deleted = result.rowcount or 0
    logger.info("audit_events_pruned deleted=%s retention_days=%s", deleted, settings.audit_retention_days)
    return deleted
