"""Access ban gate and identity administration.

The ban gate runs first on every route, before any accounting. It reads the
two shared restriction flags (`banned`, `blocked`) and rejects if either is
present. It never increments anything.

Per-identity state is not stored as such. It is derived from whichever keys
are alive at read time, so TTL expiry is the only "unblock" transition:

    CLEAN     no keys
    COUNTING  a rate or login-failure counter is alive
    BLOCKED   temporary automated block (rate overflow, brute force)
    BANNED    long-lived ban (flow violation)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from . import keyspace as ks
from .audit_log import RecordSink, SecurityAlert
from .errors import ABUSE_E_FORBIDDEN, OUTCOME_FORBIDDEN, guard_error
from .ops_stats import OPS_STATS
from .store import StateStore

logger = logging.getLogger("abuse_gateway.access")


class IdentityState(str, Enum):
    CLEAN = "clean"
    COUNTING = "counting"
    BLOCKED = "blocked"
    BANNED = "banned"


@dataclass(frozen=True)
class IdentitySnapshot:
    identity: str
    state: IdentityState
    banned: bool
    blocked: bool
    request_count: int
    login_failures: int
    checkpoint_active: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identity": self.identity,
            "state": self.state.value,
            "banned": self.banned,
            "blocked": self.blocked,
            "request_count": self.request_count,
            "login_failures": self.login_failures,
            "checkpoint_active": self.checkpoint_active,
        }


def _as_int(value: Optional[str]) -> int:
    if value is None:
        return 0
    try:
        return int(value)
    except ValueError:
        return 0


class AccessBanGate:
    def __init__(self, store: StateStore):
        self.store = store

    def is_restricted(self, identity: str) -> bool:
        if self.store.get(ks.k_banned(identity)) is not None:
            return True
        return self.store.get(ks.k_blocked(identity)) is not None

    def check(self, identity: str) -> None:
        """Raise a forbidden GuardError if the identity is banned or blocked."""
        if self.is_restricted(identity):
            raise guard_error(
                ABUSE_E_FORBIDDEN,
                "YOUR IP IS BANNED. Security violation detected.",
                outcome=OUTCOME_FORBIDDEN,
                http_status=403,
            )


class AccessAdmin:
    """Operator actions over the shared state (dashboard and CLI)."""

    def __init__(self, store: StateStore, alert_sink: Optional[RecordSink[SecurityAlert]] = None):
        self.store = store
        self.alert_sink = alert_sink

    def list_restricted(self) -> List[str]:
        """Identities currently under a ban or a block."""
        found = set()
        for ns in (ks.NS_BANNED, ks.NS_BLOCKED):
            for key in self.store.keys(ks.prefix_for(ns)):
                found.add(ks.identity_from_key(ns, key))
        return sorted(found)

    def inspect(self, identity: str) -> IdentitySnapshot:
        banned = self.store.get(ks.k_banned(identity)) is not None
        blocked = self.store.get(ks.k_blocked(identity)) is not None
        requests = _as_int(self.store.get(ks.k_rate(identity)))
        failures = _as_int(self.store.get(ks.k_login_failures(identity)))
        checkpoint = self.store.get(ks.k_checkpoint(identity)) is not None

        if banned:
            state = IdentityState.BANNED
        elif blocked:
            state = IdentityState.BLOCKED
        elif requests or failures:
            state = IdentityState.COUNTING
        else:
            state = IdentityState.CLEAN

        return IdentitySnapshot(
            identity=identity,
            state=state,
            banned=banned,
            blocked=blocked,
            request_count=requests,
            login_failures=failures,
            checkpoint_active=checkpoint,
        )

    def unban(self, identity: str) -> Dict[str, int]:
        """Clear every namespaced key for identity and drop its alert history.

        The next request from the identity is evaluated as if it were new.
        """
        deleted = 0
        for ns in ks.ALL_NAMESPACES:
            if self.store.delete(ks.key_for(ns, identity)):
                deleted += 1

        alerts_removed = 0
        if self.alert_sink is not None:
            alerts_removed = self.alert_sink.delete_for_identity(identity)

        OPS_STATS.record_unban()
        logger.info("Unbanned %s (keys=%d, alerts=%d)", identity, deleted, alerts_removed)
        return {"keys_deleted": deleted, "alerts_deleted": alerts_removed}

    def reset_all(self) -> int:
        """Delete every namespaced key for every identity."""
        deleted = 0
        for ns in ks.ALL_NAMESPACES:
            for key in self.store.keys(ks.prefix_for(ns)):
                if self.store.delete(key):
                    deleted += 1
        logger.warning("State reset: %d keys deleted", deleted)
        return deleted
