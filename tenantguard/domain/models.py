from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, validates

from tenantguard.core.errors import TenantReassignmentError


# JSONB on Postgres, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    pass


def guard_tenant_assignment(current: str | None, value: str | None) -> str | None:
    # tenant_id is write-once: set at creation, never reassigned afterwards.
    if current is not None and value != current:
        raise TenantReassignmentError("tenant_id cannot be reassigned on an existing record")
    return value


class Organization(Base):
    __tablename__ = "organizations"

    # The tenant record itself; its id is the tenant identifier.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="active")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Profile(Base):
    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # Null only for super-admins; resolution denies any other tenant-less profile.
    tenant_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("organizations.id"), index=True, nullable=True
    )
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    # Stored loosely; validated into Role at resolution time.
    role: Mapped[str | None] = mapped_column(String, nullable=True)
    # Stored loosely; validated into known capability strings at resolution time.
    permissions: Mapped[list[str] | None] = mapped_column(JSONType, default=list)
    is_super_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    @validates("tenant_id")
    def _validate_tenant_id(self, key: str, value: str | None) -> str | None:
        return guard_tenant_assignment(self.tenant_id, value)


class ApiKey(Base):
    __tablename__ = "api_keys"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    profile_id: Mapped[str] = mapped_column(String, ForeignKey("profiles.id"), index=True)
    # Keep a short prefix for operator display without exposing the secret.
    key_prefix: Mapped[str] = mapped_column(String)
    # Store only the hashed key to avoid plaintext credentials at rest.
    key_hash: Mapped[str] = mapped_column(String, unique=True, index=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Contact(Base):
    __tablename__ = "contacts"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"), index=True)
    name: Mapped[str] = mapped_column(String)
    phone: Mapped[str | None] = mapped_column(String, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    @validates("tenant_id")
    def _validate_tenant_id(self, key: str, value: str) -> str:
        return guard_tenant_assignment(self.tenant_id, value)


class Conversation(Base):
    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"), index=True)
    contact_id: Mapped[str | None] = mapped_column(String, ForeignKey("contacts.id"), nullable=True)
    status: Mapped[str] = mapped_column(String, default="open")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    @validates("tenant_id")
    def _validate_tenant_id(self, key: str, value: str) -> str:
        return guard_tenant_assignment(self.tenant_id, value)


class Message(Base):
    __tablename__ = "messages"

    # Ownership is derived from the parent conversation; no tenant column here.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    conversation_id: Mapped[str] = mapped_column(String, ForeignKey("conversations.id"), index=True)
    sender_id: Mapped[str | None] = mapped_column(String, nullable=True)
    body: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class OrganizationSettings(Base):
    __tablename__ = "organization_settings"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(
        String, ForeignKey("organizations.id"), unique=True, index=True
    )
    billing_email: Mapped[str | None] = mapped_column(String, nullable=True)
    billing_plan: Mapped[str] = mapped_column(String, default="starter")
    settings_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    @validates("tenant_id")
    def _validate_tenant_id(self, key: str, value: str) -> str:
        return guard_tenant_assignment(self.tenant_id, value)


class AuditEvent(Base):
    __tablename__ = "audit_events"
    __table_args__ = (
        Index("ix_audit_events_tenant_occurred_at", "tenant_id", "occurred_at"),
        Index("ix_audit_events_actor_occurred_at", "actor_id", "occurred_at"),
    )

    # Use a monotonic numeric id for efficient pagination and ordering.
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    # Store the event timestamp separately from creation to preserve writer ordering.
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    # Allow null tenant_id for pre-auth events and tenant-less super-admins.
    tenant_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    actor_role: Mapped[str | None] = mapped_column(String, nullable=True)
    action: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    target_type: Mapped[str | None] = mapped_column(String, nullable=True)
    target_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    source_ip: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    # Keep metadata sanitized; internal denial reasons live here only.
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)
    risk_level: Mapped[str] = mapped_column(String, default="low")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
