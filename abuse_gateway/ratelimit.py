"""Fixed-window rate limiting over the shared state store.

This is intentionally simple:
 - One counter per identity, 60 second window anchored at the first request
 - The window TTL is set once, when the counter is created, never refreshed
 - Overflow escalates to a temporary block flag shared with the ban gate

Only the request that moves the count from LIMIT to LIMIT+1 sets the block
and raises the alert. Later requests in the same window (including ones that
raced past the block flag) are rejected without a second alert.
"""

from __future__ import annotations

import logging
from typing import Iterable, Tuple

from . import keyspace as ks
from .audit_log import ALERT_RATE_LIMIT_EXCEEDED, AlertRecorder, Severity
from .errors import (
    ABUSE_E_BLOCKED,
    ABUSE_E_FORBIDDEN,
    ABUSE_E_RATE_LIMITED,
    OUTCOME_BLOCKED,
    OUTCOME_FORBIDDEN,
    OUTCOME_TOO_MANY_REQUESTS,
    guard_error,
)
from .store import StateStore

logger = logging.getLogger("abuse_gateway.ratelimit")

RATE_LIMIT_MAX_REQUESTS = 100
RATE_LIMIT_WINDOW_SECONDS = 60
RATE_LIMIT_BLOCK_SECONDS = 60

# Administrative, diagnostic and monitoring routes.
RATE_LIMIT_EXEMPT_PREFIXES: Tuple[str, ...] = ("/dashboard", "/health", "/metrics")


def is_rate_limit_exempt(path: str, exempt_prefixes: Iterable[str] = RATE_LIMIT_EXEMPT_PREFIXES) -> bool:
    for prefix in exempt_prefixes:
        if path == prefix or path.startswith(prefix.rstrip("/") + "/"):
            return True
    return False


class RateLimiterGate:
    """Per-identity fixed-window limiter with block escalation."""

    def __init__(
        self,
        store: StateStore,
        alerts: AlertRecorder,
        max_requests: int = RATE_LIMIT_MAX_REQUESTS,
        window_seconds: int = RATE_LIMIT_WINDOW_SECONDS,
        block_seconds: int = RATE_LIMIT_BLOCK_SECONDS,
    ):
        if max_requests <= 0 or window_seconds <= 0 or block_seconds <= 0:
            raise ValueError("max_requests, window_seconds and block_seconds must be positive")
        self.store = store
        self.alerts = alerts
        self.max_requests = int(max_requests)
        self.window_seconds = int(window_seconds)
        self.block_seconds = int(block_seconds)

    def hit(self, identity: str) -> int:
        """Account one request. Returns the count in the current window.

        Raises GuardError when the request must be rejected.
        """
        if self.store.get(ks.k_blocked(identity)) is not None:
            raise guard_error(
                ABUSE_E_FORBIDDEN,
                "IP Blocked due to traffic abuse",
                outcome=OUTCOME_FORBIDDEN,
                http_status=403,
            )

        key = ks.k_rate(identity)
        count = self.store.incr(key)
        if count == 1:
            self.store.expire(key, self.window_seconds)

        if count <= self.max_requests:
            return count

        if count == self.max_requests + 1:
            self.store.set(ks.k_blocked(identity), ks.FLAG_VALUE, self.block_seconds)
            self.alerts.record(identity, ALERT_RATE_LIMIT_EXCEEDED, Severity.HIGH)
            logger.warning("Rate limit exceeded by %s; blocked for %ss", identity, self.block_seconds)
            raise guard_error(
                ABUSE_E_RATE_LIMITED,
                "Too Many Requests",
                outcome=OUTCOME_TOO_MANY_REQUESTS,
                retryable=True,
                http_status=429,
                count=count,
                retry_after_seconds=self.block_seconds,
            )

        raise guard_error(
            ABUSE_E_BLOCKED,
            "IP Blocked due to traffic abuse",
            outcome=OUTCOME_BLOCKED,
            http_status=403,
            count=count,
        )
