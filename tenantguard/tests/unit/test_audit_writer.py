from __future__ import annotations

import asyncio
import logging

import pytest

from tenantguard.services.audit import (
    ACTION_DENIED,
    OUTCOME_DENIED,
    AuditLogWriter,
    AuditQuery,
    AuditRecord,
    risk_level_for,
    sanitize_metadata,
)
from tenantguard.tests.utils.audit import FailingAuditSink, FrozenClock, InMemoryAuditSink, SlowAuditSink
from tenantguard.tests.utils.auth import make_principal


def _denial(actor_id: str | None = "p-1", **metadata) -> AuditRecord:
    return AuditRecord(
        action=ACTION_DENIED,
        outcome=OUTCOME_DENIED,
        tenant_id="t-a",
        actor_id=actor_id,
        metadata=metadata,
    )


def test_audit_metadata_redacts_sensitive_keys() -> None:
    payload = {
        "api_key": "secret",
        "Authorization": "Bearer token",
        "nested": {"password": "p@ss", "ok": "value"},
        "items": [{"refresh_token": "t"}, {"safe": "yes"}],
        "reason": "tenant_mismatch",
    }
    sanitized = sanitize_metadata(payload)
    assert sanitized["api_key"] == "[REDACTED]"
    assert sanitized["Authorization"] == "[REDACTED]"
    assert sanitized["nested"]["password"] == "[REDACTED]"
    assert sanitized["nested"]["ok"] == "value"
    assert sanitized["items"][0]["refresh_token"] == "[REDACTED]"
    assert sanitized["items"][1]["safe"] == "yes"
    assert sanitized["reason"] == "tenant_mismatch"


@pytest.mark.asyncio
async def test_record_returns_before_write_and_drain_flushes() -> None:
    sink = SlowAuditSink(delay_s=0.05)
    writer = AuditLogWriter(sink, timeout_s=1.0)

    writer.record(_denial())
    assert sink.records == []
    assert writer.pending == 1

    await writer.drain()
    assert writer.pending == 0
    assert len(sink.records) == 1


@pytest.mark.asyncio
async def test_record_sanitizes_metadata_before_persisting() -> None:
    sink = InMemoryAuditSink()
    writer = AuditLogWriter(sink, timeout_s=1.0)

    writer.record(_denial(authorization="Bearer tgk_abc", reason="tenant_mismatch"))
    await writer.drain()

    stored = sink.records[0]
    assert stored.metadata == {"authorization": "[REDACTED]", "reason": "tenant_mismatch"}
    assert stored.occurred_at is not None


@pytest.mark.asyncio
async def test_timestamps_strictly_increase_per_actor() -> None:
    clock = FrozenClock()
    sink = InMemoryAuditSink()
    writer = AuditLogWriter(sink, timeout_s=1.0, clock=clock)

    for _ in range(3):
        writer.record(_denial(actor_id="p-1"))
    writer.record(_denial(actor_id="p-2"))
    await writer.drain()

    p1 = [record.occurred_at for record in sink.records if record.actor_id == "p-1"]
    assert p1 == sorted(p1)
    assert len(set(p1)) == 3
    p2 = [record.occurred_at for record in sink.records if record.actor_id == "p-2"]
    # Other actors are stamped from the clock, not from p-1's history.
    assert p2 == [clock.now]


@pytest.mark.asyncio
async def test_clock_going_backwards_keeps_actor_order() -> None:
    clock = FrozenClock()
    sink = InMemoryAuditSink()
    writer = AuditLogWriter(sink, timeout_s=1.0, clock=clock)

    writer.record(_denial(actor_id="p-1"))
    clock.advance(seconds=-5)
    writer.record(_denial(actor_id="p-1"))
    await writer.drain()

    first, second = sorted(sink.records, key=lambda record: record.occurred_at)
    assert second.occurred_at > first.occurred_at


@pytest.mark.asyncio
async def test_write_failure_is_logged_not_raised(caplog: pytest.LogCaptureFixture) -> None:
    writer = AuditLogWriter(FailingAuditSink(), timeout_s=1.0)

    with caplog.at_level(logging.ERROR, logger="tenantguard.ops"):
        writer.record(_denial())
        await writer.drain()

    failures = [record for record in caplog.records if record.name == "tenantguard.ops"]
    assert failures
    assert "audit_write_failed" in failures[0].getMessage()


@pytest.mark.asyncio
async def test_write_timeout_is_logged(caplog: pytest.LogCaptureFixture) -> None:
    sink = SlowAuditSink(delay_s=1.0)
    writer = AuditLogWriter(sink, timeout_s=0.01)

    with caplog.at_level(logging.ERROR, logger="tenantguard.ops"):
        writer.record(_denial())
        await writer.drain()

    assert sink.records == []
    assert any("audit_write_failed" in record.getMessage() for record in caplog.records)


@pytest.mark.asyncio
async def test_dispatched_write_survives_caller_cancellation() -> None:
    sink = SlowAuditSink(delay_s=0.05)
    writer = AuditLogWriter(sink, timeout_s=1.0)

    async def handler() -> None:
        writer.record(_denial())
        await asyncio.sleep(10)

    task = asyncio.create_task(handler())
    await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    await writer.drain()
    assert len(sink.records) == 1


@pytest.mark.asyncio
async def test_query_is_scoped_by_sink() -> None:
    sink = InMemoryAuditSink()
    writer = AuditLogWriter(sink, timeout_s=1.0)
    writer.record(_denial())
    writer.record(AuditRecord(action=ACTION_DENIED, outcome=OUTCOME_DENIED, tenant_id="t-b", actor_id="p-9"))
    await writer.drain()

    member = make_principal(tenant_id="t-a")
    rows = await writer.query(member, AuditQuery())
    assert [row.tenant_id for row in rows] == ["t-a"]


def test_risk_levels() -> None:
    assert risk_level_for("tenant_mismatch") == "high"
    assert risk_level_for("policy_error") == "critical"
    assert risk_level_for("rate_limited") == "low"
    assert risk_level_for("something_new", default="medium") == "medium"
    assert risk_level_for(None, default="low") == "low"
