from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timedelta, timezone
import sys
from uuid import uuid4

from tenantguard.domain.authz import normalize_role, parse_permissions
from tenantguard.domain.models import ApiKey, Organization, Profile
from tenantguard.persistence.db import SessionLocal
from tenantguard.persistence.rls import apply_system_context
from tenantguard.services.audit import OUTCOME_ALLOWED, RISK_LOW, RISK_MEDIUM, AuditRecord, SqlAuditSink
from tenantguard.services.auth.api_keys import generate_api_key


def _build_parser() -> argparse.ArgumentParser:
    # Keep CLI arguments explicit to avoid accidental key misuse.
    parser = argparse.ArgumentParser(description="Provision a profile and API key")
    parser.add_argument("--tenant", default=None, help="Organization id (omit only with --super-admin)")
    parser.add_argument("--role", default=None, help="Role: owner|admin|agent|viewer")
    parser.add_argument("--name", required=True, help="Key label for auditing")
    parser.add_argument("--profile-id", default=None, help="Existing profile id to attach")
    parser.add_argument("--email", default=None, help="Optional profile email")
    parser.add_argument("--permissions", default="", help="Comma-separated extra capability grants")
    parser.add_argument("--super-admin", action="store_true", help="Grant platform-wide super-admin")
    parser.add_argument("--expires-days", type=int, default=None, help="Optional key lifetime in days")
    return parser


def _validate(args: argparse.Namespace) -> tuple[str | None, list[str]]:
    # Refuse to mint keys for profiles that resolution would reject anyway.
    if args.tenant is None and not args.super_admin:
        raise ValueError("--tenant is required unless --super-admin is set")
    role = normalize_role(args.role).value if args.role else None
    if role is None and not args.super_admin:
        raise ValueError("--role is required unless --super-admin is set")
    permissions = [item for item in args.permissions.split(",") if item.strip()]
    parse_permissions(permissions)
    return role, permissions


async def _create_key(args: argparse.Namespace) -> int:
    role, permissions = _validate(args)
    profile_id = args.profile_id or uuid4().hex
    key_id, raw_key, key_prefix, key_hash = generate_api_key()
    expires_at = None
    if args.expires_days is not None:
        expires_at = datetime.now(timezone.utc) + timedelta(days=args.expires_days)

    async with SessionLocal() as session:
        await apply_system_context(session)
        if args.tenant is not None and await session.get(Organization, args.tenant) is None:
            session.add(Organization(id=args.tenant, name=args.tenant))
            await session.flush()

        profile = await session.get(Profile, profile_id)
        if profile is None:
            profile = Profile(
                id=profile_id,
                tenant_id=args.tenant,
                email=args.email,
                role=role,
                permissions=permissions,
                is_super_admin=args.super_admin,
                is_active=True,
            )
            session.add(profile)
        else:
            # Keys never move a profile to another tenant.
            if profile.tenant_id != args.tenant:
                raise ValueError("Profile tenant_id does not match requested tenant")
            if role is not None:
                profile.role = role
            if permissions:
                profile.permissions = permissions
            if args.email and profile.email != args.email:
                profile.email = args.email
        # Flush the profile row before inserting API keys to satisfy FK constraints.
        await session.flush()

        session.add(
            ApiKey(
                id=key_id,
                profile_id=profile.id,
                key_prefix=key_prefix,
                key_hash=key_hash,
                name=args.name,
                expires_at=expires_at,
            )
        )
        await session.commit()

    # Record key creation for security investigations; provisioning fails if this fails.
    await SqlAuditSink(SessionLocal).append(
        AuditRecord(
            action="auth.api_key.created",
            outcome=OUTCOME_ALLOWED,
            tenant_id=args.tenant,
            actor_id="create_api_key",
            actor_role=role,
            target_type="api_key",
            target_id=key_id,
            metadata={
                "profile_id": profile_id,
                "key_prefix": key_prefix,
                "key_name": args.name,
                "super_admin": args.super_admin,
            },
            risk_level=RISK_MEDIUM if args.super_admin else RISK_LOW,
            occurred_at=datetime.now(timezone.utc),
        )
    )

    print("API key created:")
    print(f"  key_id: {key_id}")
    print(f"  profile_id: {profile_id}")
    print(f"  key_prefix: {key_prefix}")
    print("  api_key: ")
    print(f"    {raw_key}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_create_key(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
