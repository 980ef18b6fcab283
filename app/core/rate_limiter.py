"""
Fixed-window rate limiting for authentication endpoints.

Counters are keyed by "action:identifier" and live in a counter store that is
injected at construction. Both stores perform the read-reset-increment step
atomically, so two concurrent requests can never both take the last slot.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple

import redis

from app.core.database import utcnow
from app.core.exceptions import RateLimitExceeded

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitPolicy:
    action: str
    window_ms: int
    max_attempts: int
    message: str


LOGIN_POLICY = RateLimitPolicy(
    action="login",
    window_ms=15 * 60 * 1000,
    max_attempts=5,
    message="Too many login attempts. Please try again in 15 minutes.",
)
VERIFICATION_POLICY = RateLimitPolicy(
    action="verification",
    window_ms=5 * 60 * 1000,
    max_attempts=3,
    message="Too many verification attempts. Please wait 5 minutes.",
)
TWO_FA_POLICY = RateLimitPolicy(
    action="2fa",
    window_ms=10 * 60 * 1000,
    max_attempts=5,
    message="Too many 2FA attempts. Please wait 10 minutes.",
)
SMS_POLICY = RateLimitPolicy(
    action="sms",
    window_ms=60 * 60 * 1000,
    max_attempts=3,
    message="Too many SMS requests. Please wait 1 hour.",
)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_time: datetime

    def retry_after(self, now: datetime) -> int:
        """Whole seconds until the window resets."""
        seconds = (self.reset_time - now).total_seconds()
        return max(0, int(-(-seconds // 1)))


class InMemoryCounterStore:
    """
    Process-local counter store with one lock per key.

    Only correct for a single-process deployment; use RedisCounterStore when
    more than one worker serves traffic. Expired windows are dropped, along
    with their locks, at most once per ``prune_interval``.
    """

    def __init__(
        self,
        clock: Callable[[], datetime] = utcnow,
        prune_interval: timedelta = timedelta(minutes=1),
    ):
        self.clock = clock
        self.prune_interval = prune_interval
        self._counters: Dict[str, Tuple[int, datetime]] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._last_prune = clock()

    def __len__(self) -> int:
        return len(self._counters)

    def _lock_for(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def _locked(self, key: str):
        # A lock pruned between lookup and acquire is stale; fetch the live one
        while True:
            lock = self._lock_for(key)
            lock.acquire()
            with self._locks_guard:
                current = self._locks.get(key) is lock
            if current:
                break
            lock.release()
        try:
            yield
        finally:
            lock.release()

    def prune(self) -> int:
        """
        Drop every counter whose window has elapsed.

        Keys that are busy right now are left for the next pass.

        Returns:
            int: Number of counters removed
        """
        removed = 0
        with self._locks_guard:
            now = self.clock()
            self._last_prune = now
            for key, (_, reset_time) in list(self._counters.items()):
                if reset_time >= now:
                    continue
                lock = self._locks.get(key)
                if lock is not None and not lock.acquire(blocking=False):
                    continue
                try:
                    del self._counters[key]
                    self._locks.pop(key, None)
                    removed += 1
                finally:
                    if lock is not None:
                        lock.release()
            # Locks left behind by delete() or by keys never counted
            for key in [k for k in self._locks if k not in self._counters]:
                lock = self._locks[key]
                if lock.acquire(blocking=False):
                    del self._locks[key]
                    lock.release()
        if removed:
            logger.debug(f"Pruned {removed} expired rate limit counters")
        return removed

    def _maybe_prune(self) -> None:
        if self.clock() - self._last_prune >= self.prune_interval:
            self.prune()

    def increment(self, key: str, window_ms: int) -> Tuple[int, datetime]:
        """Reset the window if it has elapsed, then count this hit."""
        self._maybe_prune()
        with self._locked(key):
            now = self.clock()
            count, reset_time = self._counters.get(key, (0, now + timedelta(milliseconds=window_ms)))
            if now > reset_time:
                count, reset_time = 0, now + timedelta(milliseconds=window_ms)
            count += 1
            self._counters[key] = (count, reset_time)
            return count, reset_time

    def delete(self, key: str) -> None:
        with self._locked(key):
            self._counters.pop(key, None)

    def ping(self) -> bool:
        return True


# INCR and PEXPIRE run as one script so the first hit of a window always gets
# its TTL, even if the caller dies between the two commands.
_INCREMENT_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
local ttl = redis.call('PTTL', KEYS[1])
if count == 1 or ttl < 0 then
    redis.call('PEXPIRE', KEYS[1], ARGV[1])
    ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""


class RedisCounterStore:
    """Counter store shared by every API instance. The key TTL is the window."""

    def __init__(self, client: redis.Redis, prefix: str = "rate_limit", clock: Callable[[], datetime] = utcnow):
        self.client = client
        self.prefix = prefix
        self.clock = clock
        self._increment = client.register_script(_INCREMENT_SCRIPT)

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisCounterStore":
        return cls(redis.Redis.from_url(url, decode_responses=True), **kwargs)

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def increment(self, key: str, window_ms: int) -> Tuple[int, datetime]:
        try:
            count, ttl_ms = self._increment(keys=[self._key(key)], args=[window_ms])
        except redis.RedisError as e:
            logger.error(f"Redis rate limiter error for action {key.split(':', 1)[0]}: {e}")
            raise
        return int(count), self.clock() + timedelta(milliseconds=int(ttl_ms))

    def delete(self, key: str) -> None:
        try:
            self.client.delete(self._key(key))
        except redis.RedisError as e:
            logger.error(f"Redis reset error: {e}")
            raise

    def ping(self) -> bool:
        return bool(self.client.ping())


class RateLimiter:
    """
    Fixed-window limiter over an injected counter store.

    No success path clears a counter; reset() exists for administrators.
    """

    def __init__(self, store, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    def check_and_increment(
        self,
        action: str,
        identifier: str,
        window_ms: int,
        max_attempts: int,
    ) -> RateLimitResult:
        """
        Count one attempt and report whether it is within the limit.

        Args:
            action: Action name, e.g. "login"
            identifier: Who is acting, e.g. client IP or user id
            window_ms: Window length in milliseconds
            max_attempts: Attempts allowed per window

        Returns:
            RateLimitResult: allowed, remaining attempts and window reset time
        """
        count, reset_time = self.store.increment(f"{action}:{identifier}", window_ms)
        return RateLimitResult(
            allowed=count <= max_attempts,
            remaining=max(0, max_attempts - count),
            reset_time=reset_time,
        )

    def check(self, policy: RateLimitPolicy, identifier: str) -> RateLimitResult:
        return self.check_and_increment(policy.action, identifier, policy.window_ms, policy.max_attempts)

    def enforce(self, policy: RateLimitPolicy, identifier: str) -> RateLimitResult:
        """
        Count one attempt under a predefined policy.

        Raises:
            RateLimitExceeded: With the seconds left in the window
        """
        result = self.check(policy, identifier)
        if not result.allowed:
            retry_after = result.retry_after(self.clock())
            logger.warning(f"Rate limit hit for action '{policy.action}' (retry in {retry_after}s)")
            raise RateLimitExceeded(policy.message, retry_after=retry_after)
        return result

    def reset(self, action: str, identifier: str) -> None:
        """Administrative override: forget the counter for one key."""
        self.store.delete(f"{action}:{identifier}")
        logger.info(f"Rate limit counter reset for action '{action}'")


def build_counter_store(backend: str, redis_url: Optional[str] = None, clock: Callable[[], datetime] = utcnow):
    """Pick the counter store for this deployment."""
    if backend == "memory":
        return InMemoryCounterStore(clock=clock)
    return RedisCounterStore.from_url(redis_url, clock=clock)

