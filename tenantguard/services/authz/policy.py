"""Policy predicate engine.

Pure decisions over ownership facts. Every resource type is tagged with exactly one
:class:`PolicyPattern` when the registry is built; nothing here performs I/O, so the
same inputs always yield the same :class:`Decision`.
"""

from __future__ import annotations

from typing import Iterable, Mapping

from tenantguard.core.errors import PolicyEvaluationError, PolicyRegistrationError
from tenantguard.domain.authz import (
    ADMIN_ROLES,
    Decision,
    Operation,
    PolicyPattern,
    ResourceDescriptor,
    Role,
    TenantContext,
    role_allows,
)


RESOURCE_CONTACT = "contact"
RESOURCE_CONVERSATION = "conversation"
RESOURCE_MESSAGE = "message"
RESOURCE_ORGANIZATION = "organization"
RESOURCE_ORGANIZATION_SETTINGS = "organization_settings"
RESOURCE_PROFILE = "profile"
RESOURCE_AUDIT_EVENT = "audit_event"

DEFAULT_RESOURCE_PATTERNS: dict[str, PolicyPattern] = {
    RESOURCE_CONTACT: PolicyPattern.TENANT_SCOPED,
    RESOURCE_CONVERSATION: PolicyPattern.TENANT_SCOPED,
    RESOURCE_MESSAGE: PolicyPattern.RELATIONSHIP_DERIVED,
    RESOURCE_ORGANIZATION: PolicyPattern.ROOT_ENTITY,
    RESOURCE_ORGANIZATION_SETTINGS: PolicyPattern.ADMIN_ONLY_MUTATION,
    RESOURCE_PROFILE: PolicyPattern.PERSONAL_SCOPE,
    RESOURCE_AUDIT_EVENT: PolicyPattern.APPEND_ONLY,
}


class PolicyRegistry:
    # Map resource types to their single, schema-time policy pattern.
    def __init__(self, patterns: Mapping[str, PolicyPattern] | None = None) -> None:
        self._patterns: dict[str, PolicyPattern] = {}
        for resource_type, pattern in (patterns or {}).items():
            self.register(resource_type, pattern)

    def register(self, resource_type: str, pattern: PolicyPattern) -> None:
        existing = self._patterns.get(resource_type)
        if existing is not None and existing is not pattern:
            raise PolicyRegistrationError(
                f"{resource_type} already uses {existing.value}; cannot switch to {pattern.value}"
            )
        self._patterns[resource_type] = pattern

    def pattern_for(self, resource_type: str) -> PolicyPattern:
        pattern = self._patterns.get(resource_type)
        if pattern is None:
            raise PolicyEvaluationError(
                f"No policy pattern registered for {resource_type}",
                reason="unregistered_resource",
            )
        return pattern

    def items(self) -> Iterable[tuple[str, PolicyPattern]]:
        return self._patterns.items()


def default_registry() -> PolicyRegistry:
    return PolicyRegistry(DEFAULT_RESOURCE_PATTERNS)


def _allow(reason: str, pattern: PolicyPattern) -> Decision:
    return Decision(allowed=True, reason=reason, pattern=pattern)


def _deny(reason: str, pattern: PolicyPattern) -> Decision:
    return Decision(allowed=False, reason=reason, pattern=pattern)


def _tenant_rule(tenant_id: str | None, principal: TenantContext, pattern: PolicyPattern) -> Decision:
    # A record with no tenant never matches; None == None is not ownership.
    if tenant_id is not None and principal.tenant_id is not None and tenant_id == principal.tenant_id:
        return _allow("tenant_match", pattern)
    return _deny("tenant_mismatch", pattern)


def _is_admin(principal: TenantContext) -> bool:
    return principal.role in ADMIN_ROLES


def _evaluate_pattern(
    pattern: PolicyPattern,
    principal: TenantContext,
    resource: ResourceDescriptor,
    operation: Operation,
) -> Decision:
    if pattern is PolicyPattern.TENANT_SCOPED:
        return _tenant_rule(resource.tenant_id, principal, pattern)

    if pattern is PolicyPattern.ADMIN_ONLY_MUTATION:
        decision = _tenant_rule(resource.tenant_id, principal, pattern)
        if decision.allowed and operation.is_write and not _is_admin(principal):
            return _deny("insufficient_role", pattern)
        return decision

    if pattern is PolicyPattern.RELATIONSHIP_DERIVED:
        # One indirection only; the parent's own parent is never consulted.
        parent = resource.parent
        if parent is None or parent.tenant_id is None:
            return _deny("missing_parent", pattern)
        return _tenant_rule(parent.tenant_id, principal, pattern)

    if pattern is PolicyPattern.PERSONAL_SCOPE:
        if resource.owner_principal_id is not None and resource.owner_principal_id == principal.principal_id:
            return _allow("owner_match", pattern)
        return _deny("not_owner", pattern)

    if pattern is PolicyPattern.APPEND_ONLY:
        if operation is Operation.UPDATE:
            return _deny("immutable_record", pattern)
        if operation is Operation.DELETE:
            return _deny("super_admin_required", pattern)
        return _tenant_rule(resource.tenant_id, principal, pattern)

    if pattern is PolicyPattern.ROOT_ENTITY:
        # The tenant record's own id is its tenant.
        tenant_id = resource.tenant_id or resource.resource_id
        if operation in (Operation.CREATE, Operation.DELETE):
            return _deny("super_admin_required", pattern)
        decision = _tenant_rule(tenant_id, principal, pattern)
        if decision.allowed and operation is Operation.UPDATE and not _is_admin(principal):
            return _deny("insufficient_role", pattern)
        return decision

    raise PolicyEvaluationError(f"Unhandled policy pattern: {pattern}")


class PolicyEngine:
    def __init__(self, registry: PolicyRegistry | None = None) -> None:
        self.registry = registry or default_registry()

    def decide(
        self,
        principal: TenantContext,
        resource: ResourceDescriptor,
        operation: Operation,
    ) -> Decision:
        # Evaluate the pattern first so immutability can override the super-admin bypass.
        pattern = self.registry.pattern_for(resource.resource_type)
        decision = _evaluate_pattern(pattern, principal, resource, operation)
        if not principal.is_super_admin:
            return decision
        if pattern is PolicyPattern.APPEND_ONLY and operation is Operation.UPDATE:
            return decision
        return Decision(allowed=True, reason="super_admin_bypass", pattern=pattern, bypass=True)


def check_route_requirements(
    principal: TenantContext,
    *,
    minimum_role: Role | None,
    required_permissions: frozenset[str],
) -> Decision:
    # Route-class gates share the bypass semantics of resource decisions.
    if principal.is_super_admin:
        return Decision(allowed=True, reason="super_admin_bypass", bypass=True)
    if minimum_role is not None and not role_allows(role=principal.role, minimum_role=minimum_role):
        return Decision(allowed=False, reason="insufficient_role")
    missing = required_permissions - principal.permissions
    if missing:
        return Decision(allowed=False, reason="missing_permission")
    return Decision(allowed=True, reason="route_requirements_met")
