"""Ephemeral key-value state store shared by every gate.

Contract (all operations atomic per key):
 - get(key) -> value or None
 - set(key, value, ttl)      overwrite, reset TTL
 - incr(key) -> int          create at 1 if absent; never loses updates
 - expire(key, ttl)          set TTL on an existing key, value untouched
 - delete(key)
 - keys(prefix) -> set of keys

Keys vanish on their own once their TTL elapses. Callers must treat
"absent" and "expired" the same way; there is no tombstone state.

Two backends are provided:
 - InMemoryStateStore: per-process, lazy expiry checked on access
 - RedisStateStore: any Redis-compatible server via redis-py
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Callable, Dict, Optional, Set

from redis import Redis, RedisError

from .errors import StateStoreError

if TYPE_CHECKING:  # pragma: no cover
    from .config import GatewayConfig

logger = logging.getLogger("abuse_gateway.store")


class StateStore(ABC):
    """Interface for the shared ephemeral state."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the value stored at key, or None if absent or expired."""

    @abstractmethod
    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        """Store value at key, replacing any previous value and TTL."""

    @abstractmethod
    def incr(self, key: str) -> int:
        """Atomically increment the integer at key and return the new value."""

    @abstractmethod
    def expire(self, key: str, ttl_seconds: int) -> bool:
        """Set a TTL on an existing key. Returns False if the key is absent."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove key. Returns True if it existed."""

    @abstractmethod
    def keys(self, prefix: str = "") -> Set[str]:
        """Return every live key starting with prefix."""


def _check_ttl(ttl_seconds: Optional[int]) -> Optional[int]:
    if ttl_seconds is None:
        return None
    ttl = int(ttl_seconds)
    if ttl <= 0:
        raise ValueError("ttl_seconds must be positive")
    return ttl


class InMemoryStateStore(StateStore):
    """Lock-protected dict with per-key expiry deadlines.

    Expiry is evaluated lazily whenever a key is touched. A full sweep runs
    every `sweep_every` mutations (and on every `keys()` call) so keys that are
    never read again do not accumulate forever.
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None, sweep_every: int = 1024):
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()
        self._values: Dict[str, str] = {}
        # key -> absolute deadline on self._clock
        self._deadlines: Dict[str, float] = {}
        self._sweep_every = max(1, int(sweep_every))
        self._mutations = 0

    def _now(self) -> float:
        return self._clock()

    def _alive(self, key: str, now: float) -> bool:
        # Caller holds self._lock.
        deadline = self._deadlines.get(key)
        if deadline is not None and deadline <= now:
            self._values.pop(key, None)
            self._deadlines.pop(key, None)
            return False
        return key in self._values

    def _sweep(self, now: float) -> int:
        expired = [k for k, deadline in self._deadlines.items() if deadline <= now]
        for k in expired:
            self._values.pop(k, None)
            self._deadlines.pop(k, None)
        return len(expired)

    def _mutated(self, now: float) -> None:
        self._mutations += 1
        if self._mutations % self._sweep_every == 0:
            self._sweep(now)

    def get(self, key: str) -> Optional[str]:
        now = self._now()
        with self._lock:
            if not self._alive(key, now):
                return None
            return self._values[key]

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        ttl = _check_ttl(ttl_seconds)
        now = self._now()
        with self._lock:
            self._values[key] = str(value)
            if ttl is None:
                self._deadlines.pop(key, None)
            else:
                self._deadlines[key] = now + ttl
            self._mutated(now)

    def incr(self, key: str) -> int:
        now = self._now()
        with self._lock:
            current = 0
            if self._alive(key, now):
                try:
                    current = int(self._values[key])
                except ValueError as e:
                    raise StateStoreError(f"value at {key!r} is not an integer") from e
            current += 1
            # The deadline (if any) is kept as-is: a fixed window never slides.
            self._values[key] = str(current)
            self._mutated(now)
            return current

    def expire(self, key: str, ttl_seconds: int) -> bool:
        ttl = _check_ttl(ttl_seconds)
        now = self._now()
        with self._lock:
            if not self._alive(key, now):
                return False
            self._deadlines[key] = now + ttl
            return True

    def delete(self, key: str) -> bool:
        now = self._now()
        with self._lock:
            existed = self._alive(key, now)
            self._values.pop(key, None)
            self._deadlines.pop(key, None)
            return existed

    def keys(self, prefix: str = "") -> Set[str]:
        now = self._now()
        with self._lock:
            self._sweep(now)
            return {k for k in self._values if k.startswith(prefix)}

    def purge_expired(self) -> int:
        """Drop every expired key now. Returns the number removed."""
        now = self._now()
        with self._lock:
            return self._sweep(now)

    def __len__(self) -> int:
        now = self._now()
        with self._lock:
            self._sweep(now)
            return len(self._values)


def _glob_escape(prefix: str) -> str:
    out = []
    for ch in prefix:
        if ch in "*?[]\\":
            out.append("\\")
        out.append(ch)
    return "".join(out)


class RedisStateStore(StateStore):
    """State store backed by a Redis server.

    INCR is atomic server-side, which is all the gates need. TTL assignment
    after the first increment is a separate command; two requests racing on
    count==1 both set the same TTL, which is harmless.
    """

    def __init__(self, client: Redis, scan_count: int = 500):
        self._r = client
        self._scan_count = int(scan_count)

    @classmethod
    def from_url(cls, url: str, timeout_seconds: float = 2.0, max_connections: int = 50) -> "RedisStateStore":
        client = Redis.from_url(
            url,
            socket_connect_timeout=timeout_seconds,
            socket_timeout=timeout_seconds,
            max_connections=max_connections,
            decode_responses=True,
            encoding="utf-8",
        )
        return cls(client)

    def get(self, key: str) -> Optional[str]:
        try:
            value = self._r.get(key)
        except RedisError as e:
            raise StateStoreError(f"GET {key} failed: {e}") from e
        if value is None:
            return None
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return str(value)

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        ttl = _check_ttl(ttl_seconds)
        try:
            self._r.set(key, str(value), ex=ttl)
        except RedisError as e:
            raise StateStoreError(f"SET {key} failed: {e}") from e

    def incr(self, key: str) -> int:
        try:
            return int(self._r.incr(key))
        except RedisError as e:
            raise StateStoreError(f"INCR {key} failed: {e}") from e

    def expire(self, key: str, ttl_seconds: int) -> bool:
        ttl = _check_ttl(ttl_seconds)
        try:
            return bool(self._r.expire(key, ttl))
        except RedisError as e:
            raise StateStoreError(f"EXPIRE {key} failed: {e}") from e

    def delete(self, key: str) -> bool:
        try:
            return bool(self._r.delete(key))
        except RedisError as e:
            raise StateStoreError(f"DEL {key} failed: {e}") from e

    def keys(self, prefix: str = "") -> Set[str]:
        pattern = _glob_escape(prefix) + "*"
        try:
            found = set()
            for k in self._r.scan_iter(match=pattern, count=self._scan_count):
                found.add(k.decode("utf-8") if isinstance(k, bytes) else str(k))
            return found
        except RedisError as e:
            raise StateStoreError(f"SCAN {pattern} failed: {e}") from e

    def ping(self) -> bool:
        try:
            return bool(self._r.ping())
        except RedisError as e:
            raise StateStoreError(f"PING failed: {e}") from e


def build_state_store(config: "GatewayConfig") -> StateStore:
    """Create the store selected by configuration."""
    if config.store_backend == "redis":
        if not config.redis_url:
            raise ValueError("ABUSE_REDIS_URL is required when ABUSE_STATE_STORE=redis")
        logger.info("Using Redis state store")
        return RedisStateStore.from_url(config.redis_url, timeout_seconds=config.redis_timeout_seconds)
    logger.info("Using in-memory state store (per-process, lost on restart)")
    return InMemoryStateStore()
