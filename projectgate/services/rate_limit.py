from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import math
import time
from typing import Callable, Protocol

from redis.asyncio import Redis

from projectgate.core.config import Settings, get_settings
from projectgate.domain.access import Role, normalize_role


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitTier:
    # Fixed window: at most `limit` requests per `window_s` seconds.
    limit: int
    window_s: int


@dataclass(frozen=True)
class RateDecision:
    # Outcome of one check-and-increment against a window.
    allowed: bool
    key: str
    limit: int
    count: int
    remaining: int
    retry_after_s: int
    reset_after_s: float


@dataclass
class RateWindow:
    window_start: float
    count: int
    window_s: int

    def expired(self, now: float) -> bool:
        return now - self.window_start >= self.window_s


class RateLimitStore(Protocol):
    async def check_and_increment(self, key: str, limit: int, window_s: int) -> RateDecision: ...


def _decision(*, key: str, limit: int, count: int, elapsed_s: float, window_s: int) -> RateDecision:
    # Translate a window snapshot into an admit/deny decision with retry hints.
    reset_after_s = max(0.0, window_s - elapsed_s)
    allowed = count <= limit
    retry_after_s = 0 if allowed else max(1, int(math.ceil(reset_after_s)))
    return RateDecision(
        allowed=allowed,
        key=key,
        limit=limit,
        count=count,
        remaining=max(0, limit - count),
        retry_after_s=retry_after_s,
        reset_after_s=reset_after_s,
    )


class InMemoryRateLimitStore:
    """Single-process fixed-window store.

    Windows are keyed by an opaque string and guarded by one asyncio lock, so
    concurrent requests for the same key never lose an increment. Expired
    windows are swept every ``sweep_every`` calls so idle keys do not
    accumulate. The clock is injectable for deterministic tests.
    """

    def __init__(
        self,
        *,
        time_provider: Callable[[], float] | None = None,
        sweep_every: int = 1000,
    ) -> None:
        self._time_provider = time_provider or time.monotonic
        self._windows: dict[str, RateWindow] = {}
        self._lock = asyncio.Lock()
        self._sweep_every = max(1, sweep_every)
        self._calls = 0

    @property
    def tracked_keys(self) -> int:
        return len(self._windows)

    def _sweep(self, now: float) -> None:
        # Caller holds the lock.
        expired = [key for key, window in self._windows.items() if window.expired(now)]
        for key in expired:
            del self._windows[key]
        if expired:
            logger.debug("rate_limit_sweep removed=%s remaining=%s", len(expired), len(self._windows))

    async def check_and_increment(self, key: str, limit: int, window_s: int) -> RateDecision:
        async with self._lock:
            now = self._time_provider()
            self._calls += 1
            if self._calls % self._sweep_every == 0:
                self._sweep(now)
            window = self._windows.get(key)
            if window is None or now - window.window_start >= window_s:
                window = RateWindow(window_start=now, count=0, window_s=window_s)
                self._windows[key] = window
            window.count += 1
            return _decision(
                key=key,
                limit=limit,
                count=window.count,
                elapsed_s=now - window.window_start,
                window_s=window_s,
            )

    async def reset(self) -> None:
        async with self._lock:
            self._windows.clear()


# KEYS[1] = window hash; ARGV = now_ms, window_ms.
# Returns {count, window_start_ms}.
_FIXED_WINDOW_LUA = r"""
local now_ms = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])

local data = redis.call("HMGET", KEYS[1], "start", "count")
local start = tonumber(data[1])
local count = tonumber(data[2])

if start == nil or now_ms - start >= window_ms or now_ms < start then
  start = now_ms
  count = 0
  redis.call("HSET", KEYS[1], "start", start)
end

count = count + 1
redis.call("HSET", KEYS[1], "count", count)
redis.call("PEXPIRE", KEYS[1], window_ms)

return {count, start}
"""


class RedisRateLimitStore:
    def __init__(
        self,
        *,
        redis: Redis | None = None,
        prefix: str | None = None,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        # Allow injecting the client and time for deterministic tests.
        self._redis = redis
        self._redis_loop: asyncio.AbstractEventLoop | None = None
        self._prefix = prefix or get_settings().rl_redis_prefix
        self._time_provider = time_provider or time.time

    async def _get_redis(self) -> Redis:
        # Cache the connection per event loop to avoid reconnecting per request.
        current_loop = asyncio.get_running_loop()
        if self._redis is not None and self._redis_loop in (None, current_loop):
            self._redis_loop = current_loop
            return self._redis
        self._redis = Redis.from_url(
            get_settings().redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        self._redis_loop = current_loop
        return self._redis

    async def check_and_increment(self, key: str, limit: int, window_s: int) -> RateDecision:
        now_ms = int(self._time_provider() * 1000)
        window_ms = int(window_s * 1000)
        redis = await self._get_redis()
        result = await redis.eval(_FIXED_WINDOW_LUA, 1, f"{self._prefix}:{key}", now_ms, window_ms)
        count = int(result[0])
        window_start_ms = int(result[1])
        return _decision(
            key=key,
            limit=limit,
            count=count,
            elapsed_s=(now_ms - window_start_ms) / 1000.0,
            window_s=window_s,
        )

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


def resolve_tier(role: Role | str, settings: Settings | None = None) -> RateLimitTier:
    # Pure function of the principal's global role.
    settings = settings or get_settings()
    resolved = normalize_role(role)
    if resolved == Role.ADMIN:
        return RateLimitTier(settings.rl_admin_limit, settings.rl_admin_window_s)
    if resolved == Role.STAFF:
        return RateLimitTier(settings.rl_staff_limit, settings.rl_staff_window_s)
    if resolved == Role.CONTRACTOR:
        return RateLimitTier(settings.rl_contractor_limit, settings.rl_contractor_window_s)
    return RateLimitTier(settings.rl_viewer_limit, settings.rl_viewer_window_s)


def rate_limit_key(*, principal_id: str, origin: str | None = None, include_origin: bool = False) -> str:
    if include_origin and origin:
        return f"principal:{principal_id}:origin:{origin}"
    return f"principal:{principal_id}"


def build_rate_limit_store(settings: Settings | None = None) -> RateLimitStore:
    settings = settings or get_settings()
    backend = settings.rate_limit_backend.lower()
    if backend == "redis":
        return RedisRateLimitStore(prefix=settings.rl_redis_prefix)
    if backend != "memory":
        logger.warning("rate_limit_backend_unknown backend=%s fallback=memory", backend)
    return InMemoryRateLimitStore()
