"""enable row-level security and audit immutability

Revision ID: 0002_rls_policies
Revises: 0001_init
Create Date: 2026-10-18
"""

from __future__ import annotations

from alembic import op

from tenantguard.persistence.guards import STORAGE_POLICIES
from tenantguard.persistence.rls import (
    AUDIT_IMMUTABILITY,
    DROP_AUDIT_IMMUTABILITY,
    DROP_SESSION_FUNCTIONS,
    render_all_policies,
    render_drop_policies,
)


revision = "0002_rls_policies"
down_revision = "0001_init"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Storage-side enforcement mirrors the middleware patterns table by table.
    for statement in render_all_policies():
        op.execute(statement)
    # Audit rows reject UPDATE/DELETE for every role unless the retention job opts in.
    for statement in AUDIT_IMMUTABILITY:
        op.execute(statement)


def downgrade() -> None:
    for statement in DROP_AUDIT_IMMUTABILITY:
        op.execute(statement)
    for resource_type in STORAGE_POLICIES:
        for statement in render_drop_policies(resource_type):
            op.execute(statement)
    for statement in DROP_SESSION_FUNCTIONS:
        op.execute(statement)
