from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from app.core.config import Settings

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass(slots=True)
class RateLimitEntry:
    count: int
    reset_at: float


@dataclass(slots=True, frozen=True)
class RateLimitConfig:
    window_seconds: float
    max_requests: int
    key_prefix: str = "rate_limit"
    key_generator: Callable[[str], str] | None = None
    skip_successful_requests: bool = False
    skip_failed_requests: bool = False

    def key_for(self, identifier: str) -> str:
        if self.key_generator is not None:
            return self.key_generator(identifier)
        return f"{self.key_prefix}:{identifier}"


@dataclass(slots=True, frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float
    total_hits: int
    limit: int

    def retry_after_seconds(self, now: float) -> int:
        return max(0, math.ceil(self.reset_at - now))


class RateLimitStore(Protocol):
    async def get(self, key: str) -> RateLimitEntry | None: ...

    async def set(self, key: str, entry: RateLimitEntry, ttl_seconds: float) -> None: ...

    async def increment(self, key: str, ttl_seconds: float) -> RateLimitEntry: ...

    async def acquire(self, key: str, limit: int, ttl_seconds: float) -> tuple[bool, RateLimitEntry]:
        """Count one hit if the window is below ``limit``, as a single atomic step."""
        ...

    async def delete(self, key: str) -> None: ...


class MemoryRateLimitStore:
    """Process-local store. Expired entries go on read or on the periodic sweep."""

    def __init__(self, clock: Clock = time.time) -> None:
        self._clock = clock
        self._entries: dict[str, RateLimitEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, key: str) -> RateLimitEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() > entry.reset_at:
            del self._entries[key]
            return None
        return RateLimitEntry(count=entry.count, reset_at=entry.reset_at)

    async def set(self, key: str, entry: RateLimitEntry, ttl_seconds: float) -> None:
        self._entries[key] = RateLimitEntry(count=entry.count, reset_at=entry.reset_at)

    async def increment(self, key: str, ttl_seconds: float) -> RateLimitEntry:
        now = self._clock()
        existing = self._entries.get(key)
        if existing is None or now > existing.reset_at:
            existing = RateLimitEntry(count=0, reset_at=now + ttl_seconds)
            self._entries[key] = existing
        existing.count += 1
        return RateLimitEntry(count=existing.count, reset_at=existing.reset_at)

    async def acquire(self, key: str, limit: int, ttl_seconds: float) -> tuple[bool, RateLimitEntry]:
        # No await between read and write, so the event loop cannot interleave callers.
        now = self._clock()
        existing = self._entries.get(key)
        if existing is None or now > existing.reset_at:
            existing = RateLimitEntry(count=0, reset_at=now + ttl_seconds)
            self._entries[key] = existing
        allowed = existing.count < limit
        if allowed:
            existing.count += 1
        return allowed, RateLimitEntry(count=existing.count, reset_at=existing.reset_at)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def sweep(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if now > entry.reset_at]
        for key in expired:
            del self._entries[key]
        return len(expired)


# Atomic fixed-window acquire.
# Returns: [allowed (0/1), count, window_remaining_ms]
FIXED_WINDOW_LUA = """
local key = KEYS[1]
local limit = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])

local count = tonumber(redis.call('GET', key) or '0')
local ttl = redis.call('PTTL', key)
if count == 0 or ttl <= 0 then
    redis.call('SET', key, 1, 'PX', window_ms)
    return {1, 1, window_ms}
end
if count >= limit then
    return {0, count, ttl}
end
count = redis.call('INCR', key)
return {1, count, ttl}
"""


class RedisRateLimitStore:
    """Redis-backed store; any backend error drops to an owned in-memory store."""

    def __init__(self, redis_client: Any, *, clock: Clock = time.time) -> None:
        self._redis = redis_client
        self._clock = clock
        self.fallback = MemoryRateLimitStore(clock=clock)

    async def get(self, key: str) -> RateLimitEntry | None:
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.get(key)
                pipe.pttl(key)
                raw_count, ttl_ms = await pipe.execute()
        except Exception as exc:
            logger.warning("redis rate limit get failed key=%s; using memory store: %s", key, exc)
            return await self.fallback.get(key)

        if raw_count is None or ttl_ms is None or int(ttl_ms) <= 0:
            return None
        return RateLimitEntry(count=int(raw_count), reset_at=self._clock() + int(ttl_ms) / 1000.0)

    async def set(self, key: str, entry: RateLimitEntry, ttl_seconds: float) -> None:
        ttl_ms = max(1, int(ttl_seconds * 1000))
        try:
            await self._redis.set(key, entry.count, px=ttl_ms)
        except Exception as exc:
            logger.warning("redis rate limit set failed key=%s; using memory store: %s", key, exc)
            await self.fallback.set(key, entry, ttl_seconds)

    async def increment(self, key: str, ttl_seconds: float) -> RateLimitEntry:
        ttl_ms = max(1, int(ttl_seconds * 1000))
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.incr(key)
                pipe.pexpire(key, ttl_ms, nx=True)
                pipe.pttl(key)
                count, _, remaining_ms = await pipe.execute()
        except Exception as exc:
            logger.warning("redis rate limit increment failed key=%s; using memory store: %s", key, exc)
            return await self.fallback.increment(key, ttl_seconds)

        remaining_ms = int(remaining_ms) if remaining_ms is not None and int(remaining_ms) > 0 else ttl_ms
        return RateLimitEntry(count=int(count), reset_at=self._clock() + remaining_ms / 1000.0)

    async def acquire(self, key: str, limit: int, ttl_seconds: float) -> tuple[bool, RateLimitEntry]:
        ttl_ms = max(1, int(ttl_seconds * 1000))
        try:
            allowed, count, remaining_ms = await self._redis.eval(FIXED_WINDOW_LUA, 1, key, limit, ttl_ms)
        except Exception as exc:
            logger.warning("redis rate limit acquire failed key=%s; using memory store: %s", key, exc)
            return await self.fallback.acquire(key, limit, ttl_seconds)

        remaining_ms = int(remaining_ms) if int(remaining_ms) > 0 else ttl_ms
        return bool(int(allowed)), RateLimitEntry(count=int(count), reset_at=self._clock() + remaining_ms / 1000.0)

    async def delete(self, key: str) -> None:
        await self.fallback.delete(key)
        try:
            await self._redis.delete(key)
        except Exception as exc:
            logger.warning("redis rate limit delete failed key=%s: %s", key, exc)


class RateLimiter:
    def __init__(self, config: RateLimitConfig, store: RateLimitStore | None = None, clock: Clock = time.time) -> None:
        if config.max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if config.window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.config = config
        self.store: RateLimitStore = store if store is not None else MemoryRateLimitStore(clock=clock)
        self._clock = clock

    def now(self) -> float:
        return self._clock()

    async def check_limit(self, identifier: str) -> RateLimitResult:
        limit = self.config.max_requests
        allowed, entry = await self.store.acquire(self.config.key_for(identifier), limit, self.config.window_seconds)
        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, limit - entry.count) if allowed else 0,
            reset_at=entry.reset_at,
            total_hits=entry.count,
            limit=limit,
        )

    async def record_request(self, identifier: str, success: bool = True) -> None:
        if success and self.config.skip_successful_requests:
            return
        if not success and self.config.skip_failed_requests:
            return
        await self.store.increment(self.config.key_for(identifier), self.config.window_seconds)

    async def reset_limit(self, identifier: str) -> None:
        await self.store.delete(self.config.key_for(identifier))


RATE_LIMIT_PROFILES = ("ai_operations", "research", "enrichment", "duplicate_detection", "ip_based", "admin")

_PROFILE_KEY_PREFIXES = {
    "ai_operations": "ai_ops",
    "research": "research",
    "enrichment": "enrichment",
    "duplicate_detection": "duplicate",
    "ip_based": "ip",
    "admin": "admin",
}


def build_rate_limiters(
    settings: Settings,
    store: RateLimitStore | None = None,
    clock: Clock = time.time,
) -> dict[str, RateLimiter]:
    shared_store = store if store is not None else MemoryRateLimitStore(clock=clock)
    windows = {
        "ai_operations": (settings.rate_limit_ai_operations_window_seconds, settings.rate_limit_ai_operations_max),
        "research": (settings.rate_limit_research_window_seconds, settings.rate_limit_research_max),
        "enrichment": (settings.rate_limit_enrichment_window_seconds, settings.rate_limit_enrichment_max),
        "duplicate_detection": (
            settings.rate_limit_duplicate_detection_window_seconds,
            settings.rate_limit_duplicate_detection_max,
        ),
        "ip_based": (settings.rate_limit_ip_window_seconds, settings.rate_limit_ip_max),
        "admin": (settings.rate_limit_admin_window_seconds, settings.rate_limit_admin_max),
    }
    return {
        profile: RateLimiter(
            RateLimitConfig(
                window_seconds=window_seconds,
                max_requests=max_requests,
                key_prefix=_PROFILE_KEY_PREFIXES[profile],
            ),
            store=shared_store,
            clock=clock,
        )
        for profile, (window_seconds, max_requests) in windows.items()
    }


def rate_limit_headers(result: RateLimitResult, now: float | None = None) -> dict[str, str]:
    current = time.time() if now is None else now
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(math.ceil(result.reset_at)),
        "Retry-After": str(result.retry_after_seconds(current)),
    }
