"""
Rate limiting with temporary lockout for MFA attempts.

Provides:
- KeyedLock: process-local lock table keyed by "scope:identity"
- RateLimiter: fixed-window counter that locks a key after too many attempts
- InMemoryRateLimitStore / RedisRateLimitStore: pluggable entry storage

The counting algorithm lives in RateLimiter and only talks to a store
through update(key, fn, ttl_seconds), which applies fn atomically per key.
"""
import os
import math
import time
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Callable, Dict, Optional, Tuple, TypeVar

import redis

from .models import RateLimitEntry, RateLimitResult

logger = logging.getLogger(__name__)

T = TypeVar("T")
EntryUpdate = Callable[[Optional[RateLimitEntry]], Tuple[Optional[RateLimitEntry], T]]

# Idle entries are kept this long before cleanup() drops them
IDLE_ENTRY_SECONDS = 3600

# RateLimiter sweeps its store at most this often
SWEEP_INTERVAL_SECONDS = 300


# ============================================
# Budgets
# ============================================

@dataclass(frozen=True)
class RateLimitRule:
    """A named attempt budget."""
    scope: str
    max_attempts: int
    window_seconds: int
    lockout_seconds: int = 900

    def key(self, *identity: str) -> str:
        return ":".join((self.scope,) + tuple(str(part) for part in identity))


CHALLENGE_RULE = RateLimitRule("mfa-challenge", max_attempts=5, window_seconds=60, lockout_seconds=900)
VERIFY_RULE = RateLimitRule("mfa-verify", max_attempts=5, window_seconds=300, lockout_seconds=1800)
DISABLE_RULE = RateLimitRule("mfa-disable", max_attempts=5, window_seconds=600, lockout_seconds=1800)
ENROLL_RULE = RateLimitRule("mfa-enroll", max_attempts=10, window_seconds=3600, lockout_seconds=900)
REGENERATE_RULE = RateLimitRule("mfa-recovery-regen", max_attempts=10, window_seconds=3600, lockout_seconds=900)


# ============================================
# Keyed locks
# ============================================

class KeyedLock:
    """
    Lock table with one lock per key.

    Locks are created on first use and dropped once no thread holds or
    waits for them, so the table only grows with concurrent keys.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @contextmanager
    def hold(self, key: str):
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._waiters[key] = self._waiters.get(key, 0) + 1

        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._waiters[key] -= 1
                if self._waiters[key] == 0:
                    del self._waiters[key]
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


# ============================================
# Stores
# ============================================

class InMemoryRateLimitStore:
    """
    Process-local entry store.

    Entries are lost on restart, which only resets abuse counters.
    """

    def __init__(self):
        self._entries: Dict[str, RateLimitEntry] = {}
        self._locks = KeyedLock()

    def update(self, key: str, fn: EntryUpdate, ttl_seconds: int) -> T:
        with self._locks.hold(key):
            new_entry, result = fn(self._entries.get(key))
            if new_entry is None:
                self._entries.pop(key, None)
            else:
                self._entries[key] = new_entry
            return result

    def get(self, key: str) -> Optional[RateLimitEntry]:
        return self._entries.get(key)

    def delete(self, key: str) -> None:
        with self._locks.hold(key):
            self._entries.pop(key, None)

    def cleanup(self, now: Optional[float] = None) -> int:
        """
        Drop idle entries.

        Unlocked entries go one hour after their window started, locked
        entries one hour after the lock expired.

        Returns:
            Number of entries removed.
        """
        now = time.time() if now is None else now
        expired = [
            key for key, entry in list(self._entries.items())
            if (entry.locked_until is None and now - entry.window_start > IDLE_ENTRY_SECONDS)
            or (entry.locked_until is not None and now > entry.locked_until + IDLE_ENTRY_SECONDS)
        ]
        for key in expired:
            self.delete(key)

        if expired:
            logger.info(f"Cleaned up {len(expired)} expired rate limit entries")
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class RedisRateLimitStore:
    """
    Redis-backed entry store with in-memory fallback.

    Each key is a Redis hash updated inside a WATCH/MULTI transaction, so
    concurrent workers cannot both increment past the limit. Falls back to
    in-memory storage if Redis is unavailable.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        prefix: str = "stepguard:ratelimit",
        fallback: Optional[InMemoryRateLimitStore] = None,
    ):
        self.redis = redis_client
        self.prefix = prefix
        self._fallback = fallback or InMemoryRateLimitStore()

    def _full_key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def update(self, key: str, fn: EntryUpdate, ttl_seconds: int) -> T:
        full_key = self._full_key(key)
        outcome = []

        def _apply(pipe):
            raw = pipe.hgetall(full_key)
            entry = RateLimitEntry.from_mapping(raw) if raw else None
            new_entry, result = fn(entry)
            pipe.multi()
            pipe.delete(full_key)
            if new_entry is not None:
                pipe.hset(full_key, mapping=new_entry.to_mapping())
                pipe.expire(full_key, ttl_seconds)
            outcome[:] = [result]

        try:
            self.redis.transaction(_apply, full_key)
        except redis.RedisError as e:
            logger.warning(f"Redis error in rate limit update: {e}")
            return self._fallback.update(key, fn, ttl_seconds)

        return outcome[0]

    def delete(self, key: str) -> None:
        try:
            self.redis.delete(self._full_key(key))
        except redis.RedisError as e:
            logger.warning(f"Redis error in rate limit reset: {e}")
        self._fallback.delete(key)

    def cleanup(self, now: Optional[float] = None) -> int:
        """Drop idle entries from the fallback store. Redis expires its own keys."""
        return self._fallback.cleanup(now)


# ============================================
# Rate limiter
# ============================================

class RateLimiter:
    """
    Fixed-window attempt counter with lockout.

    Example usage:
        limiter = RateLimiter()
        result = limiter.check("mfa-challenge:user-1:10.0.0.1", 5, 60, 900)
        if not result.allowed:
            ...
        limiter.reset("mfa-challenge:user-1:10.0.0.1")  # after success
    """

    def __init__(
        self,
        store=None,
        clock: Callable[[], float] = time.time,
        enabled: Optional[bool] = None,
    ):
        self.store = store if store is not None else InMemoryRateLimitStore()
        self.clock = clock
        if enabled is None:
            enabled = os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true"
        self.enabled = enabled
        self._last_sweep: Optional[float] = None
        self._sweep_lock = threading.Lock()

    def check(
        self,
        key: str,
        max_attempts: int,
        window_seconds: float,
        lockout_seconds: float,
        now: Optional[float] = None,
    ) -> RateLimitResult:
        """
        Count an attempt for key and decide whether it is allowed.

        Args:
            key: "scope:identity" string.
            max_attempts: Attempts allowed per window.
            window_seconds: Window length.
            lockout_seconds: Lock duration once the budget is exceeded.
            now: Epoch seconds (defaults to the limiter clock).

        Returns:
            RateLimitResult for this attempt.
        """
        now = self.clock() if now is None else now

        if not self.enabled:
            return RateLimitResult(allowed=True, remaining=max_attempts, reset_at=now + window_seconds)

        self._sweep(now)

        def _count(entry: Optional[RateLimitEntry]):
            if entry is not None and entry.locked_until is not None and now < entry.locked_until:
                return entry, RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_at=entry.locked_until,
                    locked=True,
                    locked_until=entry.locked_until,
                )

            if (
                entry is None
                or now - entry.window_start > window_seconds
                or entry.locked_until is not None
            ):
                fresh = RateLimitEntry(attempts=1, window_start=now)
                return fresh, RateLimitResult(
                    allowed=True,
                    remaining=max_attempts - 1,
                    reset_at=now + window_seconds,
                )

            counted = replace(entry, attempts=entry.attempts + 1)
            if counted.attempts > max_attempts:
                locked_until = now + lockout_seconds
                logger.warning(f"Rate limit lockout for {key} ({lockout_seconds:.0f}s)")
                return replace(counted, locked_until=locked_until), RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_at=locked_until,
                    locked=True,
                    locked_until=locked_until,
                )

            return counted, RateLimitResult(
                allowed=True,
                remaining=max_attempts - counted.attempts,
                reset_at=counted.window_start + window_seconds,
            )

        ttl_seconds = int(math.ceil(max(window_seconds, lockout_seconds)))
        return self.store.update(key, _count, ttl_seconds)

    def check_rule(self, rule: RateLimitRule, *identity: str, now: Optional[float] = None) -> RateLimitResult:
        """Check a named budget for an identity."""
        return self.check(
            rule.key(*identity),
            rule.max_attempts,
            rule.window_seconds,
            rule.lockout_seconds,
            now=now,
        )

    def reset(self, key: str) -> None:
        """Clear the entry for key (call once, after a successful verification)."""
        self.store.delete(key)
        logger.debug(f"Rate limit reset: {key}")

    def reset_rule(self, rule: RateLimitRule, *identity: str) -> None:
        self.reset(rule.key(*identity))

    def _sweep(self, now: float) -> None:
        """Drop idle store entries, at most once per SWEEP_INTERVAL_SECONDS."""
        cleanup = getattr(self.store, "cleanup", None)
        if cleanup is None:
            return

        with self._sweep_lock:
            if self._last_sweep is not None and now - self._last_sweep < SWEEP_INTERVAL_SECONDS:
                return
            self._last_sweep = now

        cleanup(now)


# ============================================
# Redis Client
# ============================================

_redis_client: Optional[redis.Redis] = None


def get_redis_client() -> Optional[redis.Redis]:
    """
    Get Redis client singleton.

    Returns None if Redis is not configured or unavailable.
    """
    global _redis_client

    if _redis_client is not None:
        return _redis_client

    host = os.getenv("REDIS_HOST")
    if not host:
        return None

    port = int(os.getenv("REDIS_PORT", "6379"))
    password = os.getenv("REDIS_PASSWORD", "") or None
    db = int(os.getenv("REDIS_DB", "0"))

    try:
        client = redis.Redis(
            host=host,
            port=port,
            password=password,
            db=db,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
        )
        client.ping()
        _redis_client = client
        logger.info(f"Redis connected: {host}:{port}")
        return _redis_client
    except redis.RedisError as e:
        logger.warning(f"Redis connection failed: {e}. Rate limiting will use in-memory storage.")
        return None


_rate_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    """Get singleton rate limiter (Redis-backed if available)."""
    global _rate_limiter
    if _rate_limiter is None:
        redis_client = get_redis_client()
        store = RedisRateLimitStore(redis_client) if redis_client is not None else InMemoryRateLimitStore()
        _rate_limiter = RateLimiter(store)
    return _rate_limiter
