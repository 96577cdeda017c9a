from __future__ import annotations

import pytest

from tenantguard.persistence.guards import STORAGE_POLICIES
from tenantguard.persistence.rls import (
    AUDIT_IMMUTABILITY,
    SESSION_FUNCTIONS,
    apply_session_context,
    apply_system_context,
    render_all_policies,
    render_drop_policies,
    render_policies,
)
from tenantguard.services.authz.policy import (
    DEFAULT_RESOURCE_PATTERNS,
    RESOURCE_AUDIT_EVENT,
    RESOURCE_CONTACT,
    RESOURCE_MESSAGE,
    RESOURCE_ORGANIZATION,
    RESOURCE_ORGANIZATION_SETTINGS,
    RESOURCE_PROFILE,
)
from tenantguard.tests.utils.auth import make_principal


def test_every_registered_resource_has_a_storage_policy() -> None:
    assert set(STORAGE_POLICIES) == set(DEFAULT_RESOURCE_PATTERNS)
    for resource_type, policy in STORAGE_POLICIES.items():
        assert policy.pattern is DEFAULT_RESOURCE_PATTERNS[resource_type]


@pytest.mark.parametrize("resource_type", sorted(DEFAULT_RESOURCE_PATTERNS))
def test_rls_is_enabled_and_forced(resource_type: str) -> None:
    statements = render_policies(resource_type)
    table = STORAGE_POLICIES[resource_type].model.__tablename__
    assert statements[0] == f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY"
    assert statements[1] == f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY"


def test_tenant_scoped_policy_checks_reads_and_writes() -> None:
    [policy] = render_policies(RESOURCE_CONTACT)[2:]
    assert policy.startswith("CREATE POLICY contacts_tenant_isolation ON contacts FOR ALL")
    assert "USING (app_is_super_admin() OR app_is_system() OR tenant_id = app_current_tenant())" in policy
    assert "WITH CHECK (app_is_super_admin() OR app_is_system() OR tenant_id = app_current_tenant())" in policy


def test_relationship_policy_goes_through_parent() -> None:
    [policy] = render_policies(RESOURCE_MESSAGE)[2:]
    assert "conversation_id IN (SELECT id FROM conversations WHERE tenant_id = app_current_tenant())" in policy


def test_personal_scope_policy_matches_owner() -> None:
    [policy] = render_policies(RESOURCE_PROFILE)[2:]
    assert "profiles_owner_only" in policy
    assert "id = app_current_principal()" in policy


def test_admin_only_mutation_splits_read_and_write() -> None:
    statements = render_policies(RESOURCE_ORGANIZATION_SETTINGS)[2:]
    by_name = {statement.split()[2]: statement for statement in statements}
    assert set(by_name) == {
        "organization_settings_select",
        "organization_settings_insert",
        "organization_settings_update",
        "organization_settings_delete",
    }
    assert "app_current_role()" not in by_name["organization_settings_select"]
    assert "app_current_role() IN ('admin', 'owner')" in by_name["organization_settings_update"]


def test_root_entity_create_and_delete_need_bypass() -> None:
    statements = render_policies(RESOURCE_ORGANIZATION)[2:]
    by_name = {statement.split()[2]: statement for statement in statements}
    assert by_name["organizations_insert"].endswith("WITH CHECK (app_is_super_admin() OR app_is_system())")
    assert by_name["organizations_delete"].endswith("USING (app_is_super_admin() OR app_is_system())")
    assert "id = app_current_tenant()" in by_name["organizations_select"]


def test_append_only_has_no_update_policy() -> None:
    statements = render_policies(RESOURCE_AUDIT_EVENT)[2:]
    names = [statement.split()[2] for statement in statements]
    assert names == ["audit_events_select", "audit_events_insert", "audit_events_delete"]
    trigger_sql = " ".join(AUDIT_IMMUTABILITY)
    assert "BEFORE UPDATE OR DELETE ON audit_events" in trigger_sql
    assert "app.audit_retention" in trigger_sql


def test_render_all_starts_with_session_functions() -> None:
    statements = render_all_policies()
    assert statements[: len(SESSION_FUNCTIONS)] == SESSION_FUNCTIONS
    assert sum(1 for statement in statements if "ENABLE ROW LEVEL SECURITY" in statement) == len(STORAGE_POLICIES)


def test_drop_policies_disable_rls() -> None:
    statements = render_drop_policies(RESOURCE_CONTACT)
    assert statements[-1] == "ALTER TABLE contacts DISABLE ROW LEVEL SECURITY"
    assert "DROP POLICY IF EXISTS contacts_tenant_isolation ON contacts" in statements


@pytest.mark.asyncio
async def test_session_context_is_noop_off_postgres(session_factory) -> None:
    async with session_factory() as session:
        await apply_session_context(session, make_principal())
        await apply_system_context(session, audit_retention=True)
        assert not session.in_transaction()
