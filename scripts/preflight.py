from __future__ import annotations

import argparse
import asyncio
import json
import os
from pathlib import Path
import sys
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy import text

from tenantguard.core.config import get_settings
from tenantguard.persistence.db import SessionLocal
from tenantguard.persistence.guards import STORAGE_POLICIES


def _latest_revision() -> str | None:
    # Resolve repository head revision directly from migration files.
    versions = sorted(Path("tenantguard/persistence/alembic/versions").glob("*.py"))
    if not versions:
        return None
    for line in versions[-1].read_text(encoding="utf-8").splitlines():
        if line.startswith("revision ="):
            return line.split("=", 1)[1].strip().strip('"')
    return None


async def _db_revision() -> str | None:
    async with SessionLocal() as session:
        return (await session.execute(text("SELECT version_num FROM alembic_version LIMIT 1"))).scalar_one_or_none()


async def _tables_without_forced_rls() -> list[str]:
    # Every policy-governed table must have RLS enabled and forced for the app role.
    tables = sorted({policy.model.__tablename__ for policy in STORAGE_POLICIES.values()})
    async with SessionLocal() as session:
        rows = (
            await session.execute(
                text(
                    "SELECT relname FROM pg_class "
                    "WHERE relname = ANY(:tables) AND relrowsecurity AND relforcerowsecurity"
                ),
                {"tables": tables},
            )
        ).scalars().all()
    return [table for table in tables if table not in set(rows)]


async def _check_redis() -> bool:
    # Counter store reachability matters only when shared rate limiting is on.
    settings = get_settings()
    if not settings.rate_limit_enabled or settings.rl_backend != "redis":
        return True
    client = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
    try:
        return bool(await client.ping())
    except (RedisError, OSError):
        return False
    finally:
        await client.aclose()


def _required_env_names() -> list[str]:
    return ["DATABASE_URL", "REDIS_URL"]


async def run_preflight(*, output_json: str | None) -> int:
    results: list[dict[str, Any]] = []

    db_rev = await _db_revision()
    head_rev = _latest_revision()
    results.append(
        {
            "check": "alembic_current_matches_head",
            "status": "pass" if db_rev == head_rev else "fail",
            "detail": {"db_revision": db_rev, "head_revision": head_rev},
        }
    )

    missing_env = [name for name in _required_env_names() if not os.environ.get(name)]
    results.append(
        {
            "check": "required_env_present",
            "status": "pass" if not missing_env else "fail",
            "detail": {"missing": missing_env},
        }
    )

    unguarded = await _tables_without_forced_rls()
    results.append(
        {
            "check": "row_level_security_forced",
            "status": "pass" if not unguarded else "fail",
            "detail": {"unguarded_tables": unguarded},
        }
    )

    redis_ok = await _check_redis()
    results.append({"check": "redis_reachable", "status": "pass" if redis_ok else "fail", "detail": {}})

    failed = [row for row in results if row["status"] == "fail"]
    summary = {"status": "pass" if not failed else "fail", "checks": results}
    if output_json:
        output_path = Path(output_json)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(json.dumps(summary, indent=2, sort_keys=True), encoding="utf-8")
    print(json.dumps(summary, indent=2, sort_keys=True))
    return 0 if not failed else 1


def main() -> int:
    parser = argparse.ArgumentParser(description="Run deploy preflight checks for tenant isolation.")
    parser.add_argument("--output-json", default=None)
    args = parser.parse_args()
    return asyncio.run(run_preflight(output_json=args.output_json))


if __name__ == "__main__":
    sys.exit(main())
