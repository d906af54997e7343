"""Per-identity request limiting for the relay.

Two fixed windows are counted per identity, keyed ``ratelimit:minute:{id}``
and ``ratelimit:hour:{id}``. A request is admitted only when both counts are
below their limits. Counters live in Redis when ``REDIS_URL`` is configured,
otherwise in process memory with the same semantics.

``reserve`` admits a request by incrementing both counters first and comparing
the returned counts, so concurrent requests cannot all pass a stale check.
Rejected reservations are rolled back immediately; ``release`` refunds one
whose submission failed, so only relayed transactions spend budget.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock
from typing import Final, Protocol

import redis

from keystore_relay.core.errors import RateLimitExceededError, StorageUnavailableError
from keystore_relay.core.settings import settings

# Configure logger for this module
logger = logging.getLogger(__name__)

MINUTE_WINDOW_SECONDS: Final[int] = 60
HOUR_WINDOW_SECONDS: Final[int] = 3_600
CLEANUP_PROBABILITY: Final[float] = 0.01

# Decrement only a live, positive counter; a bare DECR would recreate expired keys without a TTL.
_DECREMENT_SCRIPT: Final[str] = """
local value = tonumber(redis.call("GET", KEYS[1]))
if value == nil or value <= 0 then
    return 0
end
return redis.call("DECR", KEYS[1])
"""


def minute_key(identity: str) -> str:
    return f"ratelimit:minute:{identity}"


def hour_key(identity: str) -> str:
    return f"ratelimit:hour:{identity}"


class RateLimitStore(Protocol):
    """Counter storage with per-key expiry."""

    def get(self, key: str) -> int:
        """Return the live count for ``key`` (0 if absent or expired)."""
        ...

    def increment(self, key: str, ttl_seconds: int) -> int:
        """Increment ``key``; a newly created key expires after ``ttl_seconds``."""
        ...

    def decrement(self, key: str) -> int:
        """Undo one increment of a live ``key``; an expired key stays absent."""
        ...


class RedisRateLimitStore:
    """Redis-backed counters shared between relay processes."""

    def __init__(self, client: redis.Redis) -> None:
        self._redis = client
        self._decrement = client.register_script(_DECREMENT_SCRIPT)

    @classmethod
    def from_url(cls, url: str) -> RedisRateLimitStore:
        return cls(redis.from_url(url))  # type: ignore[no-untyped-call]

    def get(self, key: str) -> int:
        try:
            value = self._redis.get(key)
        except redis.RedisError as exc:
            raise StorageUnavailableError(f"Redis GET {key} failed: {exc}") from exc
        return int(value) if value is not None else 0

    def increment(self, key: str, ttl_seconds: int) -> int:
        try:
            # Create with expiry only if missing, then bump; the window never slides.
            pipe = self._redis.pipeline(transaction=True)
            pipe.set(key, 0, ex=int(ttl_seconds), nx=True)
            pipe.incr(key)
            _, count = pipe.execute()
        except redis.RedisError as exc:
            raise StorageUnavailableError(f"Redis INCR {key} failed: {exc}") from exc
        return int(count)

    def decrement(self, key: str) -> int:
        try:
            count = self._decrement(keys=[key])
        except redis.RedisError as exc:
            raise StorageUnavailableError(f"Redis DECR {key} failed: {exc}") from exc
        return int(count)

    def close(self) -> None:
        try:
            self._redis.close()
        except redis.RedisError:  # pragma: no cover - best effort on shutdown
            logger.debug("Ignoring error while closing Redis connection", exc_info=True)


@dataclass
class _Counter:
    count: int
    reset_at: float


class MemoryRateLimitStore:
    """Process-local counters with lazy expiry.

    About one in a hundred increments also sweeps expired entries so idle
    identities do not accumulate.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        rng: Callable[[], float] = random.random,
        cleanup_probability: float = CLEANUP_PROBABILITY,
    ) -> None:
        self._clock = clock
        self._rng = rng
        self._cleanup_probability = cleanup_probability
        self._counters: dict[str, _Counter] = {}
        self._lock = Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._counters)

    def get(self, key: str) -> int:
        now = self._clock()
        with self._lock:
            entry = self._counters.get(key)
            if entry is None:
                return 0
            if entry.reset_at <= now:
                self._counters.pop(key, None)
                return 0
            return entry.count

    def increment(self, key: str, ttl_seconds: int) -> int:
        now = self._clock()
        with self._lock:
            entry = self._counters.get(key)
            if entry is None or entry.reset_at <= now:
                entry = _Counter(count=0, reset_at=now + ttl_seconds)
                self._counters[key] = entry
            entry.count += 1
            count = entry.count
        if self._rng() < self._cleanup_probability:
            self.cleanup()
        return count

    def decrement(self, key: str) -> int:
        now = self._clock()
        with self._lock:
            entry = self._counters.get(key)
            if entry is None or entry.reset_at <= now:
                return 0
            entry.count = max(entry.count - 1, 0)
            return entry.count

    def cleanup(self) -> int:
        """Drop expired counters and return how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._counters.items() if entry.reset_at <= now]
            for key in expired:
                del self._counters[key]
        return len(expired)


def build_rate_limit_store(redis_url: str | None = None) -> RateLimitStore:
    """Return a Redis store when a URL is configured, else a memory store."""
    url = redis_url if redis_url is not None else settings.redis_url
    if url:
        try:
            store = RedisRateLimitStore.from_url(url)
        except (redis.RedisError, ValueError) as exc:
            logger.warning("Redis unavailable at %s (%s); using in-memory rate limits", url, exc)
        else:
            logger.info("Using Redis rate limit store")
            return store
    logger.info("Using in-memory rate limit store")
    return MemoryRateLimitStore()


class RateLimiter:
    """Enforce per-minute and per-hour request ceilings per identity."""

    def __init__(
        self,
        store: RateLimitStore | None = None,
        *,
        max_per_minute: int | None = None,
        max_per_hour: int | None = None,
    ) -> None:
        self._store = store if store is not None else build_rate_limit_store()
        self.max_per_minute = (
            settings.max_requests_per_minute if max_per_minute is None else max_per_minute
        )
        self.max_per_hour = settings.max_requests_per_hour if max_per_hour is None else max_per_hour

    @property
    def store(self) -> RateLimitStore:
        return self._store

    def _fall_back(self, exc: StorageUnavailableError) -> None:
        logger.warning("Rate limit storage unavailable (%s); falling back to memory", exc)
        self._store = MemoryRateLimitStore()

    def is_allowed(self, identity: str) -> bool:
        """Return True if ``identity`` is under both window limits."""
        try:
            self.check_limit(identity)
        except RateLimitExceededError:
            return False
        return True

    def check_limit(self, identity: str) -> None:
        """Raise ``RateLimitExceededError`` naming the first exhausted window."""
        try:
            minute_count = self._store.get(minute_key(identity))
            hour_count = self._store.get(hour_key(identity))
        except StorageUnavailableError as exc:
            self._fall_back(exc)
            self.check_limit(identity)
            return
        if minute_count >= self.max_per_minute:
            raise RateLimitExceededError(identity, "per-minute")
        if hour_count >= self.max_per_hour:
            raise RateLimitExceededError(identity, "per-hour")

    def record_usage(self, identity: str) -> None:
        """Count one admitted request against both windows."""
        try:
            self._store.increment(minute_key(identity), MINUTE_WINDOW_SECONDS)
            self._store.increment(hour_key(identity), HOUR_WINDOW_SECONDS)
        except StorageUnavailableError as exc:
            self._fall_back(exc)
            self.record_usage(identity)

    def reserve(self, identity: str) -> None:
        """Atomically admit one request for ``identity`` or raise.

        Both counters are incremented first and the returned counts compared
        against the ceilings, so concurrent callers each see a distinct count.
        A rejected reservation is rolled back before raising.

        Raises:
            RateLimitExceededError: Naming the first exhausted window.
        """
        try:
            minute_count = self._store.increment(minute_key(identity), MINUTE_WINDOW_SECONDS)
            if minute_count > self.max_per_minute:
                self._store.decrement(minute_key(identity))
                raise RateLimitExceededError(identity, "per-minute")
            hour_count = self._store.increment(hour_key(identity), HOUR_WINDOW_SECONDS)
            if hour_count > self.max_per_hour:
                self._store.decrement(hour_key(identity))
                self._store.decrement(minute_key(identity))
                raise RateLimitExceededError(identity, "per-hour")
        except StorageUnavailableError as exc:
            self._fall_back(exc)
            self.reserve(identity)

    def release(self, identity: str) -> None:
        """Refund a reservation whose request was not carried out."""
        try:
            self._store.decrement(minute_key(identity))
            self._store.decrement(hour_key(identity))
        except StorageUnavailableError as exc:
            self._fall_back(exc)

    def close(self) -> None:
        close = getattr(self._store, "close", None)
        if close is not None:
            close()
