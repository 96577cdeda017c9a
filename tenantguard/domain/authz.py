from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable
import logging

from pydantic import BaseModel, ConfigDict


logger = logging.getLogger(__name__)


class Role(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    AGENT = "agent"
    VIEWER = "viewer"


ROLE_ORDER: dict[Role, int] = {
    Role.VIEWER: 1,
    Role.AGENT: 2,
    Role.ADMIN: 3,
    Role.OWNER: 4,
}

# Roles allowed to mutate admin-governed resources.
ADMIN_ROLES: frozenset[Role] = frozenset({Role.OWNER, Role.ADMIN})


class Operation(str, Enum):
    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"

    @property
    def is_write(self) -> bool:
        return self is not Operation.READ


class PolicyPattern(str, Enum):
    TENANT_SCOPED = "tenant_scoped"
    ADMIN_ONLY_MUTATION = "admin_only_mutation"
    RELATIONSHIP_DERIVED = "relationship_derived"
    PERSONAL_SCOPE = "personal_scope"
    APPEND_ONLY = "append_only"
    ROOT_ENTITY = "root_entity"


MANAGE_BILLING = "manage_billing"
MANAGE_USERS = "manage_users"
MANAGE_SETTINGS = "manage_settings"
MANAGE_CONTACTS = "manage_contacts"
MANAGE_TEMPLATES = "manage_templates"
MANAGE_API_KEYS = "manage_api_keys"
VIEW_ANALYTICS = "view_analytics"
VIEW_AUDIT_LOGS = "view_audit_logs"
EXPORT_DATA = "export_data"

KNOWN_PERMISSIONS: frozenset[str] = frozenset(
    {
        MANAGE_BILLING,
        MANAGE_USERS,
        MANAGE_SETTINGS,
        MANAGE_CONTACTS,
        MANAGE_TEMPLATES,
        MANAGE_API_KEYS,
        VIEW_ANALYTICS,
        VIEW_AUDIT_LOGS,
        EXPORT_DATA,
    }
)

ROLE_PERMISSIONS: dict[Role, frozenset[str]] = {
    Role.OWNER: KNOWN_PERMISSIONS,
    Role.ADMIN: KNOWN_PERMISSIONS - {MANAGE_BILLING},
    Role.AGENT: frozenset({MANAGE_CONTACTS, MANAGE_TEMPLATES, VIEW_ANALYTICS}),
    Role.VIEWER: frozenset({VIEW_ANALYTICS}),
}


def normalize_role(role: str) -> Role:
    # Enforce a stable, lowercased role vocabulary for RBAC checks.
    normalized = role.strip().lower()
    try:
        return Role(normalized)
    except ValueError as exc:
        raise ValueError(f"Unsupported role: {role}") from exc


def role_allows(*, role: Role | None, minimum_role: Role) -> bool:
    # Compare roles using numeric ordering for least-privilege enforcement.
    if role is None:
        return False
    return ROLE_ORDER[role] >= ROLE_ORDER[minimum_role]


def parse_permissions(raw: Any) -> frozenset[str]:
    """Validate a stored permission payload into a set of known capabilities.

    The payload must be a list (or other non-string iterable) of strings; anything
    else raises ``ValueError``. Well-formed but unknown capability strings are
    dropped so stale grants never widen access.
    """
    if raw is None:
        return frozenset()
    if isinstance(raw, (str, bytes, dict)) or not isinstance(raw, Iterable):
        raise ValueError("permissions must be a list of strings")
    granted: set[str] = set()
    for item in raw:
        if not isinstance(item, str):
            raise ValueError("permissions must be a list of strings")
        value = item.strip().lower()
        if value in KNOWN_PERMISSIONS:
            granted.add(value)
        else:
            logger.warning("permission_dropped permission=%s", value)
    return frozenset(granted)


def effective_permissions(role: Role | None, granted: frozenset[str]) -> frozenset[str]:
    # Combine the role bundle with explicit grants.
    bundle = ROLE_PERMISSIONS.get(role, frozenset()) if role is not None else frozenset()
    return frozenset(bundle | granted)


class TenantContext(BaseModel):
    # Resolved identity used by every later stage; immutable for the request.
    model_config = ConfigDict(frozen=True)

    principal_id: str
    tenant_id: str | None
    role: Role | None
    permissions: frozenset[str] = frozenset()
    is_super_admin: bool = False

    def request_context(self) -> "RequestContext":
        return RequestContext(
            principal_id=self.principal_id,
            tenant_id=self.tenant_id,
            role=self.role,
            permissions=self.permissions,
        )


class RequestContext(BaseModel):
    # Read-only view injected into business handlers.
    model_config = ConfigDict(frozen=True)

    principal_id: str
    tenant_id: str | None
    role: Role | None
    permissions: frozenset[str] = frozenset()


@dataclass(frozen=True)
class ResourceDescriptor:
    # Ownership facts about the targeted record; never the record itself.
    resource_type: str
    resource_id: str | None = None
    tenant_id: str | None = None
    owner_principal_id: str | None = None
    parent: ResourceDescriptor | None = None


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str
    pattern: PolicyPattern | None = None
    bypass: bool = False
