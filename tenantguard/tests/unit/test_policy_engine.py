from __future__ import annotations

import pytest

from tenantguard.core.errors import PolicyEvaluationError, PolicyRegistrationError
from tenantguard.domain.authz import (
    VIEW_AUDIT_LOGS,
    Operation,
    PolicyPattern,
    ResourceDescriptor,
    Role,
)
from tenantguard.services.authz.policy import (
    RESOURCE_AUDIT_EVENT,
    RESOURCE_CONTACT,
    RESOURCE_CONVERSATION,
    RESOURCE_MESSAGE,
    RESOURCE_ORGANIZATION,
    RESOURCE_ORGANIZATION_SETTINGS,
    RESOURCE_PROFILE,
    PolicyEngine,
    PolicyRegistry,
    check_route_requirements,
)
from tenantguard.tests.utils.auth import make_principal


engine = PolicyEngine()


def _contact(tenant_id: str | None) -> ResourceDescriptor:
    return ResourceDescriptor(resource_type=RESOURCE_CONTACT, resource_id="c1", tenant_id=tenant_id)


def test_tenant_scoped_allows_only_matching_tenant() -> None:
    principal = make_principal(tenant_id="t-a")

    allowed = engine.decide(principal, _contact("t-a"), Operation.UPDATE)
    assert allowed.allowed is True
    assert allowed.reason == "tenant_match"
    assert allowed.pattern is PolicyPattern.TENANT_SCOPED

    denied = engine.decide(principal, _contact("t-b"), Operation.READ)
    assert denied.allowed is False
    assert denied.reason == "tenant_mismatch"


def test_record_without_tenant_never_matches() -> None:
    principal = make_principal(tenant_id="t-a")
    assert engine.decide(principal, _contact(None), Operation.READ).allowed is False


def test_admin_only_mutation_reads_for_members_writes_for_admins() -> None:
    settings = ResourceDescriptor(resource_type=RESOURCE_ORGANIZATION_SETTINGS, resource_id="t-a", tenant_id="t-a")
    agent = make_principal(tenant_id="t-a", role=Role.AGENT)
    admin = make_principal(tenant_id="t-a", role=Role.ADMIN)
    outsider_admin = make_principal(tenant_id="t-b", role=Role.OWNER)

    assert engine.decide(agent, settings, Operation.READ).allowed is True
    denied = engine.decide(agent, settings, Operation.UPDATE)
    assert denied.allowed is False
    assert denied.reason == "insufficient_role"
    assert engine.decide(admin, settings, Operation.UPDATE).allowed is True
    assert engine.decide(outsider_admin, settings, Operation.UPDATE).reason == "tenant_mismatch"


def test_relationship_derived_uses_parent_tenant_only() -> None:
    principal = make_principal(tenant_id="t-a")
    parent = ResourceDescriptor(resource_type=RESOURCE_CONVERSATION, resource_id="conv-1", tenant_id="t-a")
    message = ResourceDescriptor(resource_type=RESOURCE_MESSAGE, resource_id="m1", parent=parent)
    assert engine.decide(principal, message, Operation.READ).allowed is True

    foreign_parent = ResourceDescriptor(resource_type=RESOURCE_CONVERSATION, resource_id="conv-2", tenant_id="t-b")
    # A tenant_id on the child itself is ignored; only the parent counts.
    spoofed = ResourceDescriptor(
        resource_type=RESOURCE_MESSAGE, resource_id="m2", tenant_id="t-a", parent=foreign_parent
    )
    assert engine.decide(principal, spoofed, Operation.READ).reason == "tenant_mismatch"

    orphan = ResourceDescriptor(resource_type=RESOURCE_MESSAGE, resource_id="m3")
    decision = engine.decide(principal, orphan, Operation.READ)
    assert decision.allowed is False
    assert decision.reason == "missing_parent"


def test_personal_scope_requires_owner() -> None:
    owner = make_principal(tenant_id="t-a", principal_id="p-1")
    teammate = make_principal(tenant_id="t-a", principal_id="p-2", role=Role.OWNER)
    profile = ResourceDescriptor(
        resource_type=RESOURCE_PROFILE, resource_id="p-1", tenant_id="t-a", owner_principal_id="p-1"
    )
    assert engine.decide(owner, profile, Operation.UPDATE).reason == "owner_match"
    assert engine.decide(teammate, profile, Operation.READ).reason == "not_owner"


def test_append_only_rules() -> None:
    event = ResourceDescriptor(resource_type=RESOURCE_AUDIT_EVENT, resource_id="1", tenant_id="t-a")
    member = make_principal(tenant_id="t-a", role=Role.OWNER)

    assert engine.decide(member, event, Operation.READ).allowed is True
    assert engine.decide(member, event, Operation.CREATE).allowed is True
    assert engine.decide(member, event, Operation.UPDATE).reason == "immutable_record"
    assert engine.decide(member, event, Operation.DELETE).reason == "super_admin_required"


def test_append_only_update_denied_even_for_super_admin() -> None:
    event = ResourceDescriptor(resource_type=RESOURCE_AUDIT_EVENT, resource_id="1", tenant_id="t-a")
    root = make_principal(tenant_id=None, role=None, is_super_admin=True)

    update = engine.decide(root, event, Operation.UPDATE)
    assert update.allowed is False
    assert update.bypass is False
    assert update.reason == "immutable_record"

    delete = engine.decide(root, event, Operation.DELETE)
    assert delete.allowed is True
    assert delete.bypass is True


def test_root_entity_rules() -> None:
    org = ResourceDescriptor(resource_type=RESOURCE_ORGANIZATION, resource_id="t-a")
    agent = make_principal(tenant_id="t-a", role=Role.AGENT)
    admin = make_principal(tenant_id="t-a", role=Role.ADMIN)

    assert engine.decide(agent, org, Operation.READ).allowed is True
    assert engine.decide(agent, org, Operation.UPDATE).reason == "insufficient_role"
    assert engine.decide(admin, org, Operation.UPDATE).allowed is True
    assert engine.decide(admin, org, Operation.DELETE).reason == "super_admin_required"
    new_org = ResourceDescriptor(resource_type=RESOURCE_ORGANIZATION)
    assert engine.decide(admin, new_org, Operation.CREATE).reason == "super_admin_required"

    other = ResourceDescriptor(resource_type=RESOURCE_ORGANIZATION, resource_id="t-b")
    assert engine.decide(admin, other, Operation.READ).reason == "tenant_mismatch"


def test_super_admin_bypass_overrides_tenant_mismatch() -> None:
    root = make_principal(tenant_id="t-x", role=None, is_super_admin=True)
    decision = engine.decide(root, _contact("t-b"), Operation.DELETE)
    assert decision.allowed is True
    assert decision.bypass is True
    assert decision.reason == "super_admin_bypass"
    assert decision.pattern is PolicyPattern.TENANT_SCOPED


def test_decisions_are_deterministic() -> None:
    principal = make_principal(tenant_id="t-a", principal_id="p-1")
    resource = _contact("t-b")
    first = engine.decide(principal, resource, Operation.READ)
    for _ in range(5):
        assert engine.decide(principal, resource, Operation.READ) == first


def test_unregistered_resource_fails_closed() -> None:
    principal = make_principal(is_super_admin=True)
    with pytest.raises(PolicyEvaluationError) as exc_info:
        engine.decide(principal, ResourceDescriptor(resource_type="invoice"), Operation.READ)
    assert exc_info.value.reason == "unregistered_resource"


def test_registry_rejects_conflicting_patterns() -> None:
    registry = PolicyRegistry({"widget": PolicyPattern.TENANT_SCOPED})
    registry.register("widget", PolicyPattern.TENANT_SCOPED)
    with pytest.raises(PolicyRegistrationError):
        registry.register("widget", PolicyPattern.PERSONAL_SCOPE)
    assert registry.pattern_for("widget") is PolicyPattern.TENANT_SCOPED


def test_route_requirements_gate_role_and_permissions() -> None:
    viewer = make_principal(role=Role.VIEWER)
    admin = make_principal(role=Role.ADMIN)
    root = make_principal(tenant_id=None, role=None, is_super_admin=True)

    assert check_route_requirements(viewer, minimum_role=Role.ADMIN, required_permissions=frozenset()).reason == (
        "insufficient_role"
    )
    assert check_route_requirements(admin, minimum_role=Role.ADMIN, required_permissions=frozenset()).allowed
    missing = check_route_requirements(
        viewer, minimum_role=None, required_permissions=frozenset({VIEW_AUDIT_LOGS})
    )
    assert missing.reason == "missing_permission"
    assert check_route_requirements(
        admin, minimum_role=None, required_permissions=frozenset({VIEW_AUDIT_LOGS})
    ).allowed
    bypass = check_route_requirements(root, minimum_role=Role.OWNER, required_permissions=frozenset({VIEW_AUDIT_LOGS}))
    assert bypass.allowed is True
    assert bypass.bypass is True
