from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
import logging
import math
import time
from typing import Callable, Protocol
from uuid import uuid4

from redis.asyncio import Redis

from tenantguard.core.config import Settings, get_settings
from tenantguard.domain.authz import Role


logger = logging.getLogger(__name__)

ROUTE_CLASS_ADMIN = "admin"
ROUTE_CLASS_STRICT = "strict"
ROUTE_CLASS_STANDARD = "standard"
ROUTE_CLASS_RELAXED = "relaxed"


@dataclass(frozen=True)
class RouteClassConfig:
    # Threshold, window and entry requirements shared by every endpoint in the class.
    name: str
    limit: int
    window_s: int
    minimum_role: Role | None = None
    required_permissions: frozenset[str] = frozenset()

    @property
    def window_ms(self) -> int:
        return self.window_s * 1000


@dataclass(frozen=True)
class WindowState:
    # Result of one atomic trim/count/admit pass over a sliding window.
    allowed: bool
    count: int
    oldest_ms: int | None
    now_ms: int


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    route_class: str
    limit: int
    remaining: int
    retry_after_s: int | None = None
    # Epoch seconds at which the oldest admitted request leaves the window.
    reset_at_s: int | None = None
    degraded: bool = False


class CounterStore(Protocol):
    async def hit(self, key: str, *, limit: int, window_ms: int) -> WindowState: ...

    async def usage(self, key: str, *, window_ms: int) -> int: ...

    async def reset(self, key: str) -> None: ...


_SLIDING_WINDOW_LUA = r"""
local key = KEYS[1]
local limit = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])
local member = ARGV[3]

local t = redis.call("TIME")
local now_ms = tonumber(t[1]) * 1000 + math.floor(tonumber(t[2]) / 1000)

redis.call("ZREMRANGEBYSCORE", key, "-inf", now_ms - window_ms)
local count = redis.call("ZCARD", key)
local allowed = 0
if count < limit then
  redis.call("ZADD", key, now_ms, member)
  count = count + 1
  allowed = 1
end
redis.call("PEXPIRE", key, window_ms)

local oldest = redis.call("ZRANGE", key, 0, 0, "WITHSCORES")
local oldest_ms = -1
if oldest[2] then
  oldest_ms = tonumber(oldest[2])
end
return {allowed, count, oldest_ms, now_ms}
"""

_USAGE_LUA = r"""
local t = redis.call("TIME")
local now_ms = tonumber(t[1]) * 1000 + math.floor(tonumber(t[2]) / 1000)
redis.call("ZREMRANGEBYSCORE", KEYS[1], "-inf", now_ms - tonumber(ARGV[1]))
return redis.call("ZCARD", KEYS[1])
"""


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


async def _get_redis() -> Redis:
    # Cache Redis connections to avoid reconnecting per request.
    global _redis_pool, _redis_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = Redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            _redis_loop = current_loop
    return _redis_pool


class RedisCounterStore:
    """Sliding-window log in a Redis sorted set.

    Trim, count, admit and expiry run inside one Lua script, and timestamps come
    from the Redis server clock, so concurrent instances with skewed clocks still
    see a single timeline.
    """

    def __init__(self, redis: Redis | None = None) -> None:
        self._redis = redis

    async def _client(self) -> Redis:
        if self._redis is not None:
            return self._redis
        return await _get_redis()

    async def hit(self, key: str, *, limit: int, window_ms: int) -> WindowState:
        redis = await self._client()
        result = await redis.eval(_SLIDING_WINDOW_LUA, 1, key, limit, window_ms, uuid4().hex)
        oldest_ms = int(result[2])
        return WindowState(
            allowed=int(result[0]) == 1,
            count=int(result[1]),
            oldest_ms=oldest_ms if oldest_ms >= 0 else None,
            now_ms=int(result[3]),
        )

    async def usage(self, key: str, *, window_ms: int) -> int:
        redis = await self._client()
        return int(await redis.eval(_USAGE_LUA, 1, key, window_ms))

    async def reset(self, key: str) -> None:
        redis = await self._client()
        await redis.delete(key)


class InMemoryCounterStore:
    """Process-local sliding-window log.

    Correct only while a single service instance runs; counters are not shared
    across processes. Windows that empty out are dropped, and every
    ``sweep_every`` hits the whole map is swept for buckets that went idle.
    """

    def __init__(
        self,
        *,
        time_provider: Callable[[], float] | None = None,
        sweep_every: int = 1000,
    ) -> None:
        # Allow injecting time for deterministic tests.
        self._time_provider = time_provider or time.time
        self._windows: dict[str, deque[int]] = {}
        self._window_ms: dict[str, int] = {}
        self._sweep_every = max(1, sweep_every)
        self._hits_since_sweep = 0
        self._lock = asyncio.Lock()

    def _now_ms(self) -> int:
        return int(self._time_provider() * 1000)

    @staticmethod
    def _trim(window: deque[int], *, now_ms: int, window_ms: int) -> None:
        cutoff = now_ms - window_ms
        while window and window[0] <= cutoff:
            window.popleft()

    def _drop(self, key: str) -> None:
        self._windows.pop(key, None)
        self._window_ms.pop(key, None)

    def _sweep(self, now_ms: int) -> None:
        for key in list(self._windows):
            window = self._windows[key]
            self._trim(window, now_ms=now_ms, window_ms=self._window_ms[key])
            if not window:
                self._drop(key)

    @property
    def tracked_keys(self) -> int:
        return len(self._windows)

    async def hit(self, key: str, *, limit: int, window_ms: int) -> WindowState:
        async with self._lock:
            now_ms = self._now_ms()
            self._hits_since_sweep += 1
            if self._hits_since_sweep >= self._sweep_every:
                self._hits_since_sweep = 0
                self._sweep(now_ms)
            window = self._windows.get(key, deque())
            self._trim(window, now_ms=now_ms, window_ms=window_ms)
            allowed = len(window) < limit
            if allowed:
                window.append(now_ms)
            if window:
                self._windows[key] = window
                self._window_ms[key] = window_ms
            else:
                self._drop(key)
            return WindowState(
                allowed=allowed,
                count=len(window),
                oldest_ms=window[0] if window else None,
                now_ms=now_ms,
            )

    async def usage(self, key: str, *, window_ms: int) -> int:
        async with self._lock:
            window = self._windows.get(key)
            if not window:
                return 0
            self._trim(window, now_ms=self._now_ms(), window_ms=window_ms)
            if not window:
                self._drop(key)
            return len(window)

    async def reset(self, key: str) -> None:
        async with self._lock:
            self._drop(key)


def _reset_at_s(*, oldest_ms: int | None, now_ms: int, window_ms: int) -> int:
    start_ms = oldest_ms if oldest_ms is not None else now_ms
    return int(math.ceil((start_ms + window_ms) / 1000.0))


def _retry_after_s(*, oldest_ms: int | None, now_ms: int, window_ms: int) -> int:
    # Seconds until the oldest admitted request leaves the window.
    if oldest_ms is None:
        return max(1, int(math.ceil(window_ms / 1000.0)))
    remaining_ms = oldest_ms + window_ms - now_ms
    return max(1, int(math.ceil(remaining_ms / 1000.0)))


class RateLimiter:
    def __init__(
        self,
        store: CounterStore,
        *,
        prefix: str,
        timeout_s: float,
        unavailable_retry_after_s: int,
    ) -> None:
        self._store = store
        self._prefix = prefix
        self._timeout_s = timeout_s
        self._unavailable_retry_after_s = unavailable_retry_after_s

    def key_for(self, bucket: str, route_class: str) -> str:
        return f"{self._prefix}:{bucket}:{route_class}"

    async def check_and_increment(self, bucket: str, route_class: RouteClassConfig) -> RateLimitDecision:
        # Fail closed: an unreachable store throttles instead of disabling limits.
        key = self.key_for(bucket, route_class.name)
        try:
            state = await asyncio.wait_for(
                self._store.hit(key, limit=route_class.limit, window_ms=route_class.window_ms),
                timeout=self._timeout_s,
            )
        except Exception as exc:  # noqa: BLE001 - any store fault is an outage
            logger.warning(
                "rate_limit_store_unavailable bucket=%s route_class=%s",
                bucket,
                route_class.name,
                exc_info=exc,
            )
            return RateLimitDecision(
                allowed=False,
                route_class=route_class.name,
                limit=route_class.limit,
                remaining=0,
                retry_after_s=self._unavailable_retry_after_s,
                degraded=True,
            )

        remaining = max(0, route_class.limit - state.count)
        reset_at_s = _reset_at_s(oldest_ms=state.oldest_ms, now_ms=state.now_ms, window_ms=route_class.window_ms)
        if state.allowed:
            return RateLimitDecision(
                allowed=True,
                route_class=route_class.name,
                limit=route_class.limit,
                remaining=remaining,
                reset_at_s=reset_at_s,
            )
        return RateLimitDecision(
            allowed=False,
            route_class=route_class.name,
            limit=route_class.limit,
            remaining=0,
            retry_after_s=_retry_after_s(
                oldest_ms=state.oldest_ms,
                now_ms=state.now_ms,
                window_ms=route_class.window_ms,
            ),
            reset_at_s=reset_at_s,
        )

    async def usage(self, bucket: str, route_class: RouteClassConfig) -> int:
        key = self.key_for(bucket, route_class.name)
        return await self._store.usage(key, window_ms=route_class.window_ms)

    async def reset(self, bucket: str, route_class: RouteClassConfig) -> None:
        await self._store.reset(self.key_for(bucket, route_class.name))


def _split_permissions(raw: str) -> frozenset[str]:
    return frozenset(item.strip().lower() for item in raw.split(",") if item.strip())


def route_classes_from_settings(settings: Settings | None = None) -> dict[str, RouteClassConfig]:
    # Build the per-class thresholds and gates from configuration.
    settings = settings or get_settings()
    return {
        ROUTE_CLASS_ADMIN: RouteClassConfig(
            name=ROUTE_CLASS_ADMIN,
            limit=settings.rl_admin_limit,
            window_s=settings.rl_admin_window_s,
            minimum_role=Role.ADMIN,
            required_permissions=_split_permissions(settings.rl_admin_permissions),
        ),
        ROUTE_CLASS_STRICT: RouteClassConfig(
            name=ROUTE_CLASS_STRICT,
            limit=settings.rl_strict_limit,
            window_s=settings.rl_strict_window_s,
            required_permissions=_split_permissions(settings.rl_strict_permissions),
        ),
        ROUTE_CLASS_STANDARD: RouteClassConfig(
            name=ROUTE_CLASS_STANDARD,
            limit=settings.rl_standard_limit,
            window_s=settings.rl_standard_window_s,
            required_permissions=_split_permissions(settings.rl_standard_permissions),
        ),
        ROUTE_CLASS_RELAXED: RouteClassConfig(
            name=ROUTE_CLASS_RELAXED,
            limit=settings.rl_relaxed_limit,
            window_s=settings.rl_relaxed_window_s,
            required_permissions=_split_permissions(settings.rl_relaxed_permissions),
        ),
    }


def build_counter_store(settings: Settings | None = None) -> CounterStore:
    settings = settings or get_settings()
    if settings.rl_backend.lower() == "memory":
        logger.warning("rate_limit_in_memory_store counters are not shared across instances")
        return InMemoryCounterStore()
    return RedisCounterStore()


def build_rate_limiter(settings: Settings | None = None, *, store: CounterStore | None = None) -> RateLimiter:
    settings = settings or get_settings()
    return RateLimiter(
        store or build_counter_store(settings),
        prefix=settings.rl_redis_prefix,
        timeout_s=settings.rl_store_timeout_ms / 1000.0,
        unavailable_retry_after_s=settings.rl_unavailable_retry_after_s,
    )


def reset_rate_limiter_state() -> None:
    # Reset cached Redis connections for deterministic test setup.
    global _redis_pool, _redis_loop
    _redis_pool = None
    _redis_loop = None
