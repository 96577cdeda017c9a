"""Postgres row-level security rendered from the storage policy table.

The same :data:`~tenantguard.persistence.guards.STORAGE_POLICIES` that drive the
repository predicates produce the database policies, so the two layers cannot
drift. Sessions publish the resolved principal through transaction-local
``app.*`` settings that the policy helper functions read back.
"""

from __future__ import annotations

import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.domain.authz import ADMIN_ROLES, PolicyPattern, TenantContext
from tenantguard.persistence.guards import STORAGE_POLICIES, StoragePolicy


logger = logging.getLogger(__name__)

SETTING_TENANT = "app.current_tenant"
SETTING_PRINCIPAL = "app.current_principal"
SETTING_ROLE = "app.current_role"
SETTING_SUPER_ADMIN = "app.is_super_admin"
# Trusted internal components (resolver lookups, audit writer) run under this flag.
SETTING_SYSTEM = "app.system_access"
# Set only by the retention job; unlocks audit deletes in the immutability trigger.
SETTING_AUDIT_RETENTION = "app.audit_retention"

SESSION_FUNCTIONS: list[str] = [
    f"""
    CREATE OR REPLACE FUNCTION app_current_tenant() RETURNS text
    LANGUAGE sql STABLE AS $$ SELECT NULLIF(current_setting('{SETTING_TENANT}', true), '') $$
    """,
    f"""
    CREATE OR REPLACE FUNCTION app_current_principal() RETURNS text
    LANGUAGE sql STABLE AS $$ SELECT NULLIF(current_setting('{SETTING_PRINCIPAL}', true), '') $$
    """,
    f"""
    CREATE OR REPLACE FUNCTION app_current_role() RETURNS text
    LANGUAGE sql STABLE AS $$ SELECT NULLIF(current_setting('{SETTING_ROLE}', true), '') $$
    """,
    f"""
    CREATE OR REPLACE FUNCTION app_is_super_admin() RETURNS boolean
    LANGUAGE sql STABLE AS $$ SELECT COALESCE(current_setting('{SETTING_SUPER_ADMIN}', true), '') = 'on' $$
    """,
    f"""
    CREATE OR REPLACE FUNCTION app_is_system() RETURNS boolean
    LANGUAGE sql STABLE AS $$ SELECT COALESCE(current_setting('{SETTING_SYSTEM}', true), '') = 'on' $$
    """,
]

AUDIT_IMMUTABILITY: list[str] = [
    f"""
    CREATE OR REPLACE FUNCTION audit_events_immutable() RETURNS trigger
    LANGUAGE plpgsql AS $$
    BEGIN
      IF TG_OP = 'DELETE' AND COALESCE(current_setting('{SETTING_AUDIT_RETENTION}', true), '') = 'on' THEN
        RETURN OLD;
      END IF;
      RAISE EXCEPTION 'audit_events is append-only (% rejected)', TG_OP;
    END;
    $$
    """,
    """
    CREATE TRIGGER audit_events_immutable
    BEFORE UPDATE OR DELETE ON audit_events
    FOR EACH ROW EXECUTE FUNCTION audit_events_immutable()
    """,
]

DROP_AUDIT_IMMUTABILITY: list[str] = [
    "DROP TRIGGER IF EXISTS audit_events_immutable ON audit_events",
    "DROP FUNCTION IF EXISTS audit_events_immutable()",
]

DROP_SESSION_FUNCTIONS: list[str] = [
    "DROP FUNCTION IF EXISTS app_current_tenant()",
    "DROP FUNCTION IF EXISTS app_current_principal()",
    "DROP FUNCTION IF EXISTS app_current_role()",
    "DROP FUNCTION IF EXISTS app_is_super_admin()",
    "DROP FUNCTION IF EXISTS app_is_system()",
]

_BYPASS = "app_is_super_admin() OR app_is_system()"
_ADMIN_ROLE_SQL = ", ".join(f"'{role.value}'" for role in sorted(ADMIN_ROLES, key=lambda r: r.value))


def _tenant_clause(policy: StoragePolicy) -> str:
    if policy.parent is not None:
        parent_table = policy.parent.parent_model.__tablename__
        fk = policy.parent.foreign_key.key
        return f"{fk} IN (SELECT id FROM {parent_table} WHERE tenant_id = app_current_tenant())"
    return f"{policy.tenant_column} = app_current_tenant()"


def _policy(name: str, table: str, command: str, *, using: str | None = None, check: str | None = None) -> str:
    statement = f"CREATE POLICY {name} ON {table} FOR {command}"
    if using is not None:
        statement += f" USING ({using})"
    if check is not None:
        statement += f" WITH CHECK ({check})"
    return statement


def render_policies(resource_type: str) -> list[str]:
    """Render ENABLE/FORCE RLS plus the CREATE POLICY statements for one resource type."""
    policy = STORAGE_POLICIES[resource_type]
    table = policy.model.__tablename__
    statements = [
        f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY",
        f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY",
    ]
    pattern = policy.pattern

    if pattern in (PolicyPattern.TENANT_SCOPED, PolicyPattern.RELATIONSHIP_DERIVED):
        scoped = f"{_BYPASS} OR {_tenant_clause(policy)}"
        statements.append(_policy(f"{table}_tenant_isolation", table, "ALL", using=scoped, check=scoped))

    elif pattern is PolicyPattern.PERSONAL_SCOPE:
        owned = f"{_BYPASS} OR {policy.owner_column} = app_current_principal()"
        statements.append(_policy(f"{table}_owner_only", table, "ALL", using=owned, check=owned))

    elif pattern is PolicyPattern.ADMIN_ONLY_MUTATION:
        scoped = f"{_BYPASS} OR {_tenant_clause(policy)}"
        admin = f"{_BYPASS} OR ({_tenant_clause(policy)} AND app_current_role() IN ({_ADMIN_ROLE_SQL}))"
        statements.extend(
            [
                _policy(f"{table}_select", table, "SELECT", using=scoped),
                _policy(f"{table}_insert", table, "INSERT", check=admin),
                _policy(f"{table}_update", table, "UPDATE", using=admin, check=admin),
                _policy(f"{table}_delete", table, "DELETE", using=admin),
            ]
        )

    elif pattern is PolicyPattern.ROOT_ENTITY:
        scoped = f"{_BYPASS} OR {_tenant_clause(policy)}"
        admin = f"{_BYPASS} OR ({_tenant_clause(policy)} AND app_current_role() IN ({_ADMIN_ROLE_SQL}))"
        statements.extend(
            [
                _policy(f"{table}_select", table, "SELECT", using=scoped),
                _policy(f"{table}_insert", table, "INSERT", check=_BYPASS),
                _policy(f"{table}_update", table, "UPDATE", using=admin, check=admin),
                _policy(f"{table}_delete", table, "DELETE", using=_BYPASS),
            ]
        )

    elif pattern is PolicyPattern.APPEND_ONLY:
        # No UPDATE policy: with RLS forced, updates match zero rows for everyone.
        scoped = f"{_BYPASS} OR {_tenant_clause(policy)}"
        statements.extend(
            [
                _policy(f"{table}_select", table, "SELECT", using=scoped),
                _policy(f"{table}_insert", table, "INSERT", check=scoped),
                _policy(f"{table}_delete", table, "DELETE", using=_BYPASS),
            ]
        )

    return statements


def render_all_policies() -> list[str]:
    statements = list(SESSION_FUNCTIONS)
    for resource_type in STORAGE_POLICIES:
        statements.extend(render_policies(resource_type))
    return statements


def render_drop_policies(resource_type: str) -> list[str]:
    table = STORAGE_POLICIES[resource_type].model.__tablename__
    statements = [
        f"DROP POLICY IF EXISTS {table}_{suffix} ON {table}"
        for suffix in ("tenant_isolation", "owner_only", "select", "insert", "update", "delete")
    ]
    statements.append(f"ALTER TABLE {table} DISABLE ROW LEVEL SECURITY")
    return statements


def _is_postgres(session: AsyncSession) -> bool:
    bind = session.bind
    return bind is not None and bind.dialect.name == "postgresql"


async def _set(session: AsyncSession, values: dict[str, str]) -> None:
    # set_config(..., true) is transaction-local, so pooled connections never leak context.
    for key, value in values.items():
        await session.execute(
            text("SELECT set_config(:key, :value, true)"),
            {"key": key, "value": value},
        )


async def apply_session_context(session: AsyncSession, principal: TenantContext) -> None:
    """Publish the resolved principal to the RLS helper functions for this transaction."""
    if not _is_postgres(session):
        return
    await _set(
        session,
        {
            SETTING_TENANT: principal.tenant_id or "",
            SETTING_PRINCIPAL: principal.principal_id,
            SETTING_ROLE: principal.role.value if principal.role is not None else "",
            SETTING_SUPER_ADMIN: "on" if principal.is_super_admin else "off",
        },
    )


async def apply_system_context(session: AsyncSession, *, audit_retention: bool = False) -> None:
    # Internal lookups and audit appends run before (or outside) any tenant context.
    if not _is_postgres(session):
        return
    values = {SETTING_SYSTEM: "on"}
    if audit_retention:
        values[SETTING_AUDIT_RETENTION] = "on"
        logger.info("audit_retention_context_enabled")
    await _set(session, values)
