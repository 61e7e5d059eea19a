"""
Fixed-window rate limiter keyed by (identifier, action class).

The window arithmetic lives here; the atomic read-check-write lives in the
backend, because that is the only place that can make it atomic:

- InMemoryRateLimitBackend: one process, a lock around the critical section
- RedisRateLimitBackend: a Lua script evaluated server-side, so several API
  instances share one counter without racing
"""

import asyncio
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from src.core.config import settings
from src.core.exceptions import RateLimitedError
from src.core.rate_limit_config import (
    ACTION_LIMITS,
    ActionClass,
    RateLimitRule,
    get_rate_limit_message
)

logger = logging.getLogger(__name__)


@dataclass
class RateLimitEntry:
    count: int
    window_end: float  # epoch seconds


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_at: float  # epoch seconds


def apply_window(
    entry: Optional[RateLimitEntry],
    rule: RateLimitRule,
    now: float
) -> Tuple[RateLimitEntry, bool]:
    """
    Compute the next entry for one request.

    Returns:
        (entry, allowed). When denied, the returned entry is the unchanged
        current one and must not be written back.
    """
    if entry is None or entry.window_end < now:
        entry = RateLimitEntry(count=0, window_end=now + rule.window_seconds)

    if entry.count >= rule.max_requests:
        return entry, False

    return RateLimitEntry(count=entry.count + 1, window_end=entry.window_end), True


class RateLimitBackend(ABC):
    """Storage for rate limit entries"""

    @abstractmethod
    async def check_and_increment(
        self, key: str, rule: RateLimitRule, now: float
    ) -> Tuple[RateLimitEntry, bool]:
        """Atomically apply ``apply_window`` to the entry stored under ``key``"""

    @abstractmethod
    async def get(self, key: str) -> Optional[RateLimitEntry]:
        pass

    @abstractmethod
    async def delete(self, key: Optional[str] = None) -> None:
        """Delete one entry, or every entry when ``key`` is None"""

    @abstractmethod
    async def sweep(self, now: float) -> int:
        """Remove entries whose window has elapsed; returns how many"""


class InMemoryRateLimitBackend(RateLimitBackend):
    """Single-process backend"""

    def __init__(self):
        self._entries: Dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()

    async def check_and_increment(self, key, rule, now):
        with self._lock:
            current = self._entries.get(key)
            entry, allowed = apply_window(current, rule, now)
            if allowed:
                self._entries[key] = entry
            return entry, allowed

    async def get(self, key):
        with self._lock:
            entry = self._entries.get(key)
            return RateLimitEntry(entry.count, entry.window_end) if entry else None

    async def delete(self, key=None):
        with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)

    async def sweep(self, now):
        with self._lock:
            stale = [k for k, e in self._entries.items() if e.window_end < now]
            for k in stale:
                del self._entries[k]
            return len(stale)

    def __len__(self) -> int:
        return len(self._entries)


# KEYS[1] = entry key; ARGV = now, max_requests, window_seconds
_CHECK_AND_INCREMENT_LUA = """
local count = tonumber(redis.call('HGET', KEYS[1], 'count') or '0')
local window_end = tonumber(redis.call('HGET', KEYS[1], 'windowEnd') or '0')
local now = tonumber(ARGV[1])
if window_end < now then
  count = 0
  window_end = now + tonumber(ARGV[3])
end
if count >= tonumber(ARGV[2]) then
  return {0, count, tostring(window_end)}
end
count = count + 1
redis.call('HSET', KEYS[1], 'count', count, 'windowEnd', tostring(window_end))
redis.call('PEXPIREAT', KEYS[1], math.ceil(window_end * 1000))
return {1, count, tostring(window_end)}
"""


class RedisRateLimitBackend(RateLimitBackend):
    """
    Shared backend for multi-instance deployments.

    Entries expire on their own via PEXPIREAT, so ``sweep`` has nothing to do.
    """

    def __init__(self, redis_service, prefix: str = "ratelimit"):
        self._redis = redis_service
        self._prefix = prefix

    def _full_key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    async def check_and_increment(self, key, rule, now):
        allowed, count, window_end = await self._redis.eval(
            _CHECK_AND_INCREMENT_LUA,
            [self._full_key(key)],
            [repr(now), rule.max_requests, rule.window_seconds]
        )
        return RateLimitEntry(count=int(count), window_end=float(window_end)), bool(int(allowed))

    async def get(self, key):
        data = await self._redis.hgetall(self._full_key(key))
        if not data:
            return None
        return RateLimitEntry(count=int(data["count"]), window_end=float(data["windowEnd"]))

    async def delete(self, key=None):
        if key is None:
            # Shared state is never wiped wholesale from an API instance
            logger.warning("Refusing to clear all Redis rate limit entries")
            return
        await self._redis.delete(self._full_key(key))

    async def sweep(self, now):
        return 0


class RateLimiter:
    """
    Bounds request volume per identifier and action class.

    Usage:
        limiter = RateLimiter()
        await limiter.enforce(client_ip, ActionClass.SESSION_CREATE)
    """

    def __init__(
        self,
        backend: Optional[RateLimitBackend] = None,
        rules: Optional[Dict[ActionClass, RateLimitRule]] = None,
        clock: Callable[[], float] = time.time,
        sweep_interval: Optional[float] = None
    ):
        self.backend = backend or InMemoryRateLimitBackend()
        self.rules = dict(rules or ACTION_LIMITS)
        self._clock = clock
        self._sweep_interval = sweep_interval if sweep_interval is not None else settings.RATE_LIMIT_SWEEP_INTERVAL
        self._last_sweep = clock()

    @staticmethod
    def _key(identifier: str, action: ActionClass) -> str:
        return f"{ActionClass(action).value}:{identifier}"

    def _rule(self, action: ActionClass) -> RateLimitRule:
        return self.rules[ActionClass(action)]

    async def check_and_increment(self, identifier: str, action: ActionClass) -> RateLimitDecision:
        """
        Count one request against the quota.

        Denied requests are not counted.
        """
        now = self._clock()
        rule = self._rule(action)
        entry, allowed = await self.backend.check_and_increment(self._key(identifier, action), rule, now)

        await self._maybe_sweep(now)

        if not allowed:
            logger.warning(f"🚦 Rate limit hit: {ActionClass(action).value} for {identifier}")

        return RateLimitDecision(
            allowed=allowed,
            remaining=max(0, rule.max_requests - entry.count),
            reset_at=entry.window_end
        )

    async def enforce(self, identifier: str, action: ActionClass) -> RateLimitDecision:
        """
        Like check_and_increment, but raise when the quota is exhausted.

        Raises:
            RateLimitedError: With remaining count and reset time
        """
        decision = await self.check_and_increment(identifier, action)
        if not decision.allowed:
            raise RateLimitedError(
                get_rate_limit_message(ActionClass(action)),
                action=ActionClass(action).value,
                remaining=decision.remaining,
                reset_at=decision.reset_at
            )
        return decision

    async def _current(self, identifier: str, action: ActionClass) -> Optional[RateLimitEntry]:
        entry = await self.backend.get(self._key(identifier, action))
        if entry is None or entry.window_end < self._clock():
            return None
        return entry

    async def remaining(self, identifier: str, action: ActionClass) -> int:
        """Remaining requests in the current window (read-only)"""
        rule = self._rule(action)
        entry = await self._current(identifier, action)
        if entry is None:
            return rule.max_requests
        return max(0, rule.max_requests - entry.count)

    async def reset_at(self, identifier: str, action: ActionClass) -> float:
        """Epoch seconds when the current window ends, 0 if none (read-only)"""
        entry = await self._current(identifier, action)
        return entry.window_end if entry else 0

    async def reset(self, identifier: Optional[str] = None, action: Optional[ActionClass] = None) -> None:
        """Forget one entry, or all entries when called without arguments"""
        if identifier is None or action is None:
            await self.backend.delete(None)
        else:
            await self.backend.delete(self._key(identifier, action))

    async def sweep(self) -> int:
        now = self._clock()
        removed = await self.backend.sweep(now)
        self._last_sweep = now
        if removed:
            logger.info(f"🧹 Swept {removed} stale rate limit entries")
        return removed

    async def _maybe_sweep(self, now: float) -> None:
        if now - self._last_sweep >= self._sweep_interval:
            await self.sweep()

    async def run_periodic_sweep(self, interval: Optional[float] = None) -> None:
        """Background loop; cancel the task to stop it"""
        interval = interval or self._sweep_interval
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Rate limit sweep failed: {e}")
