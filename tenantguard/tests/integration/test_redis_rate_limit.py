from __future__ import annotations

import asyncio
from uuid import uuid4

import pytest
from redis.asyncio import Redis
from redis.exceptions import RedisError

from tenantguard.core.config import get_settings
from tenantguard.services.rate_limit import (
    ROUTE_CLASS_STANDARD,
    RateLimiter,
    RedisCounterStore,
    RouteClassConfig,
)


def _bucket() -> str:
    # Use unique buckets to avoid cross-test interference on a shared Redis.
    return f"t-rl-{uuid4().hex}"


@pytest.fixture
async def redis_client():
    client = Redis.from_url(get_settings().redis_url, encoding="utf-8", decode_responses=True)
    try:
        await client.ping()
    except (RedisError, OSError):
        await client.aclose()
        pytest.skip("Redis is not reachable")
    yield client
    await client.aclose()


@pytest.mark.asyncio
async def test_redis_window_is_atomic_under_concurrency(redis_client: Redis) -> None:
    limiter = RateLimiter(
        RedisCounterStore(redis_client),
        prefix="tenantguard:test:rl",
        timeout_s=2.0,
        unavailable_retry_after_s=30,
    )
    route = RouteClassConfig(name=ROUTE_CLASS_STANDARD, limit=5, window_s=60)
    bucket = _bucket()

    decisions = await asyncio.gather(*(limiter.check_and_increment(bucket, route) for _ in range(12)))
    assert sum(1 for decision in decisions if decision.allowed) == 5
    assert await limiter.usage(bucket, route) == 5

    throttled = [decision for decision in decisions if not decision.allowed]
    assert all(1 <= decision.retry_after_s <= 60 for decision in throttled)

    # The key carries an expiry so abandoned buckets do not linger.
    ttl_ms = await redis_client.pttl(limiter.key_for(bucket, ROUTE_CLASS_STANDARD))
    assert 0 < ttl_ms <= 60_000

    await limiter.reset(bucket, route)
    assert await limiter.usage(bucket, route) == 0


@pytest.mark.asyncio
async def test_unreachable_redis_fails_closed() -> None:
    client = Redis.from_url("redis://127.0.0.1:1/0", socket_connect_timeout=0.1)
    limiter = RateLimiter(
        RedisCounterStore(client),
        prefix="tenantguard:test:rl",
        timeout_s=0.5,
        unavailable_retry_after_s=30,
    )
    decision = await limiter.check_and_increment(_bucket(), RouteClassConfig(name=ROUTE_CLASS_STANDARD, limit=5, window_s=60))
    await client.aclose()

    assert decision.allowed is False
    assert decision.degraded is True
    assert decision.retry_after_s == 30
