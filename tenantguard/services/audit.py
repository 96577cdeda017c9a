"""Audit log writer.

``record()`` never blocks or fails the caller: it stamps and sanitizes the event
synchronously, then hands the write to a tracked background task. Failures are
reported on the ``tenantguard.ops`` logger only.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from functools import lru_cache
import logging
from typing import Any, Callable, Protocol

from sqlalchemy.exc import SQLAlchemyError
from starlette.requests import Request

from tenantguard.core.config import get_settings
from tenantguard.domain.authz import TenantContext
from tenantguard.domain.models import AuditEvent
from tenantguard.persistence.db import SessionLocal
from tenantguard.persistence.repos import audit as audit_repo
from tenantguard.persistence.rls import apply_session_context, apply_system_context


ops_logger = logging.getLogger("tenantguard.ops")

OUTCOME_ALLOWED = "allowed"
OUTCOME_DENIED = "denied"

ACTION_DENIED = "authz.denied"
ACTION_SUPER_ADMIN_BYPASS = "authz.super_admin_bypass"
ACTION_ADMIN_ACTION = "authz.admin_action"

RISK_LOW = "low"
RISK_MEDIUM = "medium"
RISK_HIGH = "high"
RISK_CRITICAL = "critical"

_REASON_RISK: dict[str, str] = {
    "tenant_mismatch": RISK_HIGH,
    "not_owner": RISK_HIGH,
    "no_tenant_membership": RISK_HIGH,
    "immutable_record": RISK_HIGH,
    "super_admin_required": RISK_MEDIUM,
    "super_admin_bypass": RISK_MEDIUM,
    "insufficient_role": RISK_MEDIUM,
    "missing_permission": RISK_MEDIUM,
    "unauthenticated": RISK_MEDIUM,
    "invalid_credential": RISK_MEDIUM,
    "revoked_credential": RISK_MEDIUM,
    "expired_credential": RISK_MEDIUM,
    "policy_error": RISK_CRITICAL,
    "context_unavailable": RISK_CRITICAL,
    "context_timeout": RISK_CRITICAL,
    "unregistered_resource": RISK_CRITICAL,
    "unknown_route_class": RISK_CRITICAL,
    "resource_not_found": RISK_MEDIUM,
    "rate_limited": RISK_LOW,
}

_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "token", "secret", "password", "credential", "cookie"]
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    return value


def get_request_context(request: Request | None) -> dict[str, str | None]:
    # Extract request identifiers and client hints without persisting credentials.
    if request is None:
        return {"request_id": None, "source_ip": None, "user_agent": None}
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    source_ip = request.client.host if request.client else None
    user_agent = request.headers.get("user-agent")
    return {"request_id": request_id, "source_ip": source_ip, "user_agent": user_agent}


def risk_level_for(reason: str | None, *, default: str = RISK_LOW) -> str:
    if reason is None:
        return default
    return _REASON_RISK.get(reason, default)


@dataclass(frozen=True)
class AuditRecord:
    action: str
    outcome: str
    tenant_id: str | None = None
    actor_id: str | None = None
    actor_role: str | None = None
    target_type: str | None = None
    target_id: str | None = None
    request_id: str | None = None
    source_ip: str | None = None
    user_agent: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    risk_level: str = RISK_LOW
    occurred_at: datetime | None = None
    id: int | None = None


@dataclass(frozen=True)
class AuditQuery:
    tenant_id: str | None = None
    actor_id: str | None = None
    action: str | None = None
    occurred_from: datetime | None = None
    occurred_to: datetime | None = None
    offset: int = 0
    limit: int = 50


class AuditSink(Protocol):
    async def append(self, record: AuditRecord) -> None: ...

    async def query(self, principal: TenantContext, query: AuditQuery) -> list[AuditRecord]: ...


def record_from_event(event: AuditEvent) -> AuditRecord:
    return AuditRecord(
        id=event.id,
        action=event.action,
        outcome=event.outcome,
        tenant_id=event.tenant_id,
        actor_id=event.actor_id,
        actor_role=event.actor_role,
        target_type=event.target_type,
        target_id=event.target_id,
        request_id=event.request_id,
        source_ip=event.source_ip,
        user_agent=event.user_agent,
        metadata=dict(event.metadata_json or {}),
        risk_level=event.risk_level,
        occurred_at=event.occurred_at,
    )


class SqlAuditSink:
    def __init__(self, session_factory: Callable[[], Any] = SessionLocal) -> None:
        self._session_factory = session_factory

    async def append(self, record: AuditRecord) -> None:
        event = AuditEvent(
            occurred_at=record.occurred_at or datetime.now(timezone.utc),
            tenant_id=record.tenant_id,
            actor_id=record.actor_id,
            actor_role=record.actor_role,
            action=record.action,
            outcome=record.outcome,
            target_type=record.target_type,
            target_id=record.target_id,
            request_id=record.request_id,
            source_ip=record.source_ip,
            user_agent=record.user_agent,
            metadata_json=record.metadata,
            risk_level=record.risk_level,
        )
        async with self._session_factory() as session:
            try:
                await apply_system_context(session)
                await audit_repo.append(session, event)
            except SQLAlchemyError:
                await session.rollback()
                raise

    async def query(self, principal: TenantContext, query: AuditQuery) -> list[AuditRecord]:
        async with self._session_factory() as session:
            await apply_session_context(session, principal)
            events = await audit_repo.list_events(
                session,
                principal,
                tenant_id=query.tenant_id,
                actor_id=query.actor_id,
                action=query.action,
                occurred_from=query.occurred_from,
                occurred_to=query.occurred_to,
                offset=query.offset,
                limit=query.limit,
            )
        return [record_from_event(event) for event in events]


class AuditLogWriter:
    def __init__(
        self,
        sink: AuditSink,
        *,
        timeout_s: float,
        monotonic_cache_size: int = 10000,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._sink = sink
        self._timeout_s = timeout_s
        self._cache_size = max(1, monotonic_cache_size)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._last_by_actor: OrderedDict[str, datetime] = OrderedDict()
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def sink(self) -> AuditSink:
        return self._sink

    @property
    def pending(self) -> int:
        return len(self._pending)

    def _stamp(self, actor_id: str | None) -> datetime:
        # Successive events of one actor get strictly increasing timestamps.
        now = self._clock()
        if actor_id is None:
            return now
        last = self._last_by_actor.get(actor_id)
        if last is not None and now <= last:
            now = last + timedelta(microseconds=1)
        self._last_by_actor[actor_id] = now
        self._last_by_actor.move_to_end(actor_id)
        while len(self._last_by_actor) > self._cache_size:
            self._last_by_actor.popitem(last=False)
        return now

    def record(self, record: AuditRecord) -> None:
        """Schedule ``record`` for persistence and return immediately."""
        prepared = replace(
            record,
            occurred_at=self._stamp(record.actor_id),
            metadata=sanitize_metadata(dict(record.metadata)),
        )
        try:
            task = asyncio.get_running_loop().create_task(self._write(prepared))
        except RuntimeError:
            ops_logger.error(
                "audit_write_not_scheduled action=%s request_id=%s",
                prepared.action,
                prepared.request_id,
            )
            return
        # Keep a strong reference so the write survives the request that started it.
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write(self, record: AuditRecord) -> None:
        try:
            await asyncio.wait_for(self._sink.append(record), timeout=self._timeout_s)
        except Exception as exc:
            ops_logger.error(
                "audit_write_failed action=%s outcome=%s request_id=%s",
                record.action,
                record.outcome,
                record.request_id,
                exc_info=exc,
            )

    async def drain(self) -> None:
        # Await every dispatched write, including ones scheduled while draining.
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def query(self, principal: TenantContext, query: AuditQuery) -> list[AuditRecord]:
        return await self._sink.query(principal, query)


def build_audit_writer(sink: AuditSink | None = None) -> AuditLogWriter:
    settings = get_settings()
    return AuditLogWriter(
        sink or SqlAuditSink(),
        timeout_s=settings.audit_write_timeout_ms / 1000.0,
        monotonic_cache_size=settings.audit_monotonic_cache_size,
    )


@lru_cache
def get_audit_writer() -> AuditLogWriter:
    return build_audit_writer()
