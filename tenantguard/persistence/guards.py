"""Storage-side enforcement of the policy patterns.

Repositories build every query through :func:`scoped_select` / :func:`policy_predicate`,
which restate the middleware decision as SQL predicates. A handler that forgets to
check authorization still cannot read or write outside the principal's scope.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy import ColumnElement, Select, false, select, true

from tenantguard.core.config import get_settings
from tenantguard.core.errors import TenantPredicateError
from tenantguard.domain.authz import ADMIN_ROLES, Operation, PolicyPattern, TenantContext
from tenantguard.domain.models import (
    AuditEvent,
    Contact,
    Conversation,
    Message,
    Organization,
    OrganizationSettings,
    Profile,
)
from tenantguard.services.authz.policy import (
    DEFAULT_RESOURCE_PATTERNS,
    RESOURCE_AUDIT_EVENT,
    RESOURCE_CONTACT,
    RESOURCE_CONVERSATION,
    RESOURCE_MESSAGE,
    RESOURCE_ORGANIZATION,
    RESOURCE_ORGANIZATION_SETTINGS,
    RESOURCE_PROFILE,
)


@dataclass(frozen=True)
class ParentLink:
    # Single-hop ownership: child.fk -> parent.id, parent carries tenant_id.
    foreign_key: Any
    parent_model: Any


@dataclass(frozen=True)
class StoragePolicy:
    model: Any
    pattern: PolicyPattern
    tenant_column: str | None = "tenant_id"
    owner_column: str | None = None
    parent: ParentLink | None = None


STORAGE_POLICIES: dict[str, StoragePolicy] = {
    RESOURCE_CONTACT: StoragePolicy(Contact, DEFAULT_RESOURCE_PATTERNS[RESOURCE_CONTACT]),
    RESOURCE_CONVERSATION: StoragePolicy(
        Conversation, DEFAULT_RESOURCE_PATTERNS[RESOURCE_CONVERSATION]
    ),
    RESOURCE_MESSAGE: StoragePolicy(
        Message,
        DEFAULT_RESOURCE_PATTERNS[RESOURCE_MESSAGE],
        tenant_column=None,
        parent=ParentLink(Message.conversation_id, Conversation),
    ),
    RESOURCE_ORGANIZATION: StoragePolicy(
        Organization, DEFAULT_RESOURCE_PATTERNS[RESOURCE_ORGANIZATION], tenant_column="id"
    ),
    RESOURCE_ORGANIZATION_SETTINGS: StoragePolicy(
        OrganizationSettings, DEFAULT_RESOURCE_PATTERNS[RESOURCE_ORGANIZATION_SETTINGS]
    ),
    RESOURCE_PROFILE: StoragePolicy(
        Profile,
        DEFAULT_RESOURCE_PATTERNS[RESOURCE_PROFILE],
        tenant_column=None,
        owner_column="id",
    ),
    RESOURCE_AUDIT_EVENT: StoragePolicy(AuditEvent, DEFAULT_RESOURCE_PATTERNS[RESOURCE_AUDIT_EVENT]),
}


def require_tenant_id(tenant_id: str | None) -> None:
    # Enforce non-empty tenant identifiers when tenant guard checks are enabled.
    settings = get_settings()
    if not settings.authz_require_tenant_predicate:
        return
    if not tenant_id:
        raise TenantPredicateError("Tenant predicate required but tenant_id is missing")


def tenant_predicate(model, tenant_id: str, *, column: str = "tenant_id") -> ColumnElement[bool]:
    # Build tenant predicates through a single helper to guarantee guard coverage.
    require_tenant_id(tenant_id)
    return getattr(model, column) == tenant_id


def _tenant_scope(policy: StoragePolicy, principal: TenantContext) -> ColumnElement[bool]:
    if policy.parent is not None:
        parent = policy.parent
        require_tenant_id(principal.tenant_id)
        owned_parents = select(parent.parent_model.id).where(
            parent.parent_model.tenant_id == principal.tenant_id
        )
        return parent.foreign_key.in_(owned_parents)
    return tenant_predicate(policy.model, principal.tenant_id, column=policy.tenant_column or "tenant_id")


def policy_predicate(
    resource_type: str,
    principal: TenantContext,
    operation: Operation,
) -> ColumnElement[bool]:
    """Return the WHERE clause that limits ``resource_type`` rows for ``principal``."""
    policy = STORAGE_POLICIES.get(resource_type)
    if policy is None:
        raise TenantPredicateError(f"No storage policy registered for {resource_type}")
    pattern = policy.pattern

    if pattern is PolicyPattern.APPEND_ONLY and operation is Operation.UPDATE:
        return false()
    if principal.is_super_admin:
        return true()

    if pattern is PolicyPattern.PERSONAL_SCOPE:
        return getattr(policy.model, policy.owner_column or "id") == principal.principal_id
    if pattern is PolicyPattern.APPEND_ONLY and operation is Operation.DELETE:
        return false()
    if pattern is PolicyPattern.ROOT_ENTITY and operation in (Operation.CREATE, Operation.DELETE):
        return false()
    if pattern in (PolicyPattern.ADMIN_ONLY_MUTATION, PolicyPattern.ROOT_ENTITY):
        if operation.is_write and principal.role not in ADMIN_ROLES:
            return false()
    return _tenant_scope(policy, principal)


def scoped_select(resource_type: str, principal: TenantContext, operation: Operation = Operation.READ) -> Select:
    policy = STORAGE_POLICIES[resource_type]
    return select(policy.model).where(policy_predicate(resource_type, principal, operation))


def reject_tenant_reassignment(values: dict[str, Any]) -> None:
    # Updates go through explicit value maps; tenant ownership is never part of them.
    if "tenant_id" in values:
        raise TenantPredicateError("tenant_id cannot be changed by an update")
