"""Brute-force protection for the authentication route.

Order of evaluation:

1. If the stored failure count is already at the limit, block the identity
   and reject without looking at the submitted credentials.
2. Otherwise check the credentials. A match clears the failure counter and
   any temporary block.
3. A mismatch increments the counter (window anchored on the first failure).

So the 5th failure is still reported as "attempt 5/5", and the 6th attempt
is the one that blocks, whether or not its credentials are correct.
"""

from __future__ import annotations

import logging
from typing import Protocol

from . import keyspace as ks
from .audit_log import ALERT_BRUTE_FORCE_ATTEMPT, AlertRecorder, Severity
from .errors import (
    ABUSE_E_INVALID_CREDENTIALS,
    ABUSE_E_LOGIN_LOCKED,
    OUTCOME_INVALID_CREDENTIALS,
    OUTCOME_TOO_MANY_FAILED_ATTEMPTS,
    guard_error,
)
from .store import StateStore

logger = logging.getLogger("abuse_gateway.login_guard")

LOGIN_MAX_FAILURES = 5
LOGIN_FAILURE_WINDOW_SECONDS = 600
LOGIN_BLOCK_SECONDS = 600


class CredentialVerifier(Protocol):
    def verify(self, username: str, password: str) -> bool: ...


class LoginGuard:
    def __init__(
        self,
        store: StateStore,
        alerts: AlertRecorder,
        credentials: CredentialVerifier,
        max_failures: int = LOGIN_MAX_FAILURES,
        failure_window_seconds: int = LOGIN_FAILURE_WINDOW_SECONDS,
        block_seconds: int = LOGIN_BLOCK_SECONDS,
    ):
        self.store = store
        self.alerts = alerts
        self.credentials = credentials
        self.max_failures = int(max_failures)
        self.failure_window_seconds = int(failure_window_seconds)
        self.block_seconds = int(block_seconds)

    def failures(self, identity: str) -> int:
        raw = self.store.get(ks.k_login_failures(identity))
        if raw is None:
            return 0
        try:
            return int(raw)
        except ValueError:
            return 0

    def attempt(self, identity: str, username: str, password: str) -> None:
        """Evaluate one login attempt. Returns on success, raises GuardError otherwise."""
        if self.failures(identity) >= self.max_failures:
            self.alerts.record(identity, ALERT_BRUTE_FORCE_ATTEMPT, Severity.HIGH)
            self.store.set(ks.k_blocked(identity), ks.FLAG_VALUE, self.block_seconds)
            logger.warning("Brute force suspected from %s; blocked for %ss", identity, self.block_seconds)
            raise guard_error(
                ABUSE_E_LOGIN_LOCKED,
                f"Too many failed attempts. IP blocked for {self.block_seconds // 60} minutes.",
                outcome=OUTCOME_TOO_MANY_FAILED_ATTEMPTS,
                retryable=True,
                http_status=429,
                block_seconds=self.block_seconds,
            )

        if self.credentials.verify(username, password):
            self.store.delete(ks.k_login_failures(identity))
            self.store.delete(ks.k_blocked(identity))
            return

        key = ks.k_login_failures(identity)
        count = self.store.incr(key)
        if count == 1:
            self.store.expire(key, self.failure_window_seconds)
        raise guard_error(
            ABUSE_E_INVALID_CREDENTIALS,
            f"Invalid credentials. Attempt {count}/{self.max_failures}",
            outcome=OUTCOME_INVALID_CREDENTIALS,
            http_status=401,
            attempt=count,
            max_attempts=self.max_failures,
            remaining_attempts=max(0, self.max_failures - count),
        )
