"""Fixed-window request counters keyed by (policy name, client key).

A window opens on the first request from a client and lasts ``window_ms``.
A request arriving at or after the window end starts a fresh window.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass

import redis

from woof_guard.models import CounterDecision

logger = logging.getLogger(__name__)

_DEFAULT_GRACE_MS = 60_000
_DEFAULT_SWEEP_INTERVAL = 1000


def _validate(policy_name: str, client_key: str, max_requests: int, window_ms: int) -> None:
    if not policy_name:
        raise ValueError("policy_name must be a non-empty string")
    if not client_key:
        raise ValueError("client_key must be a non-empty string")
    if max_requests < 1:
        raise ValueError(f"max_requests must be >= 1, got {max_requests}")
    if window_ms < 1:
        raise ValueError(f"window_ms must be >= 1, got {window_ms}")


@dataclass
class CounterEntry:
    count: int
    window_start: int
    window_end: int


class CounterStore(ABC):
    """Storage backend for rate-limit counters."""

    @abstractmethod
    def check_and_increment(
        self,
        policy_name: str,
        client_key: str,
        max_requests: int,
        window_ms: int,
        now: int,
    ) -> CounterDecision:
        """Record one request and report whether it fits in the window."""

    @abstractmethod
    def decrement(self, policy_name: str, client_key: str, now: int) -> None:
        """Undo one increment in the client's current window, if still open."""

    @abstractmethod
    def reset(self, policy_name: str | None = None) -> None:
        """Forget counters for one policy, or for all of them."""


class InMemoryCounterStore(CounterStore):
    """Process-local counter store.

    Entries are evicted by ``sweep`` once ``window_end + grace_ms`` has
    passed; a sweep also runs every ``sweep_interval`` increments.
    """

    def __init__(
        self,
        grace_ms: int = _DEFAULT_GRACE_MS,
        sweep_interval: int = _DEFAULT_SWEEP_INTERVAL,
    ) -> None:
        self._entries: dict[tuple[str, str], CounterEntry] = {}
        self._grace_ms = grace_ms
        self._sweep_interval = sweep_interval
        self._ops = 0
        self._lock = threading.Lock()

    def check_and_increment(
        self,
        policy_name: str,
        client_key: str,
        max_requests: int,
        window_ms: int,
        now: int,
    ) -> CounterDecision:
        _validate(policy_name, client_key, max_requests, window_ms)
        key = (policy_name, client_key)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or now >= entry.window_end:
                entry = CounterEntry(count=0, window_start=now, window_end=now + window_ms)
                self._entries[key] = entry
            entry.count += 1
            count = entry.count
            reset_at = entry.window_start + window_ms

            self._ops += 1
            if self._ops >= self._sweep_interval:
                self._ops = 0
                self._sweep_locked(now)

        return CounterDecision(
            allowed=count <= max_requests,
            count=count,
            limit=max_requests,
            remaining=max(0, max_requests - count),
            reset_at=reset_at,
        )

    def decrement(self, policy_name: str, client_key: str, now: int) -> None:
        with self._lock:
            entry = self._entries.get((policy_name, client_key))
            if entry is None or now >= entry.window_end:
                return
            entry.count = max(0, entry.count - 1)

    def reset(self, policy_name: str | None = None) -> None:
        with self._lock:
            if policy_name is None:
                self._entries.clear()
                return
            for key in [k for k in self._entries if k[0] == policy_name]:
                del self._entries[key]

    def get(self, policy_name: str, client_key: str) -> CounterEntry | None:
        return self._entries.get((policy_name, client_key))

    def sweep(self, now: int) -> int:
        """Evict expired entries; return how many were removed."""
        with self._lock:
            return self._sweep_locked(now)

    def _sweep_locked(self, now: int) -> int:
        expired = [
            key for key, entry in self._entries.items()
            if now >= entry.window_end + self._grace_ms
        ]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class RedisCounterStore(CounterStore):
    """Counter store shared by every gateway instance through Redis.

    The key's TTL is the window: the first INCR in a window sets PEXPIRE,
    so the window end is ``now + PTTL``. When a Redis call fails, that
    operation is served by a process-local fallback store instead.
    """

    def __init__(
        self,
        client: redis.Redis,
        prefix: str = "rate-limit:",
        fallback: CounterStore | None = None,
    ) -> None:
        self._client = client
        self._prefix = prefix
        self._fallback = fallback or InMemoryCounterStore()

    def _key(self, policy_name: str, client_key: str) -> str:
        return f"{self._prefix}{policy_name}:{client_key}"

    def check_and_increment(
        self,
        policy_name: str,
        client_key: str,
        max_requests: int,
        window_ms: int,
        now: int,
    ) -> CounterDecision:
        _validate(policy_name, client_key, max_requests, window_ms)
        key = self._key(policy_name, client_key)
        try:
            count = int(self._client.incr(key))
            if count == 1:
                self._client.pexpire(key, window_ms)
                ttl = window_ms
            else:
                ttl = int(self._client.pttl(key))
                if ttl < 0:
                    # Key lost its expiry (e.g. crash between INCR and PEXPIRE).
                    self._client.pexpire(key, window_ms)
                    ttl = window_ms
        except redis.RedisError as exc:
            logger.warning("Redis counter update failed, using in-memory store: %s", exc)
            return self._fallback.check_and_increment(
                policy_name, client_key, max_requests, window_ms, now,
            )
        return CounterDecision(
            allowed=count <= max_requests,
            count=count,
            limit=max_requests,
            remaining=max(0, max_requests - count),
            reset_at=now + ttl,
        )

    def decrement(self, policy_name: str, client_key: str, now: int) -> None:
        key = self._key(policy_name, client_key)
        try:
            if int(self._client.pttl(key)) <= 0:
                return
            if int(self._client.decr(key)) < 0:
                self._client.set(key, 0, keepttl=True)
        except redis.RedisError as exc:
            logger.warning("Redis counter decrement failed, using in-memory store: %s", exc)
            self._fallback.decrement(policy_name, client_key, now)

    def reset(self, policy_name: str | None = None) -> None:
        self._fallback.reset(policy_name)
        pattern = f"{self._prefix}{policy_name}:*" if policy_name else f"{self._prefix}*"
        keys = list(self._client.scan_iter(match=pattern))
        if keys:
            self._client.delete(*keys)


def build_store(redis_url: str | None) -> CounterStore:
    """Return a Redis-backed store when configured and reachable, else in-memory."""
    if not redis_url:
        return InMemoryCounterStore()

    try:
        client = redis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
        )
        client.ping()
    except redis.RedisError as exc:
        logger.warning(
            "Redis store not available, using in-memory store: %s", exc,
        )
        return InMemoryCounterStore()

    logger.info("Redis store initialized for distributed rate limiting")
    return RedisCounterStore(client)
