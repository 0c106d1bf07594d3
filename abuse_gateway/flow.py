"""Checkpoint-before-commit enforcement.

A client must perform the checkpoint action (read-only verification) before
the commit action (state-changing), per identity, within the checkpoint TTL.
A commit with no live checkpoint is treated as an automated client bypassing
the API contract: it earns a long ban, not a retryable error.
"""

from __future__ import annotations

import logging

from . import keyspace as ks
from .audit_log import ALERT_UNUSUAL_ACCESS_ORDER, AlertRecorder, Severity
from .errors import ABUSE_E_FLOW_VIOLATION, OUTCOME_FLAGGED_AND_BLOCKED, guard_error
from .store import StateStore

logger = logging.getLogger("abuse_gateway.flow")

CHECKPOINT_TTL_SECONDS = 300
FLOW_VIOLATION_BAN_SECONDS = 3600


class FlowSequenceEnforcer:
    def __init__(
        self,
        store: StateStore,
        alerts: AlertRecorder,
        checkpoint_ttl_seconds: int = CHECKPOINT_TTL_SECONDS,
        ban_seconds: int = FLOW_VIOLATION_BAN_SECONDS,
        consume_checkpoint: bool = False,
    ):
        self.store = store
        self.alerts = alerts
        self.checkpoint_ttl_seconds = int(checkpoint_ttl_seconds)
        self.ban_seconds = int(ban_seconds)
        self.consume_checkpoint = bool(consume_checkpoint)

    def record_checkpoint(self, identity: str) -> None:
        self.store.set(ks.k_checkpoint(identity), ks.FLAG_VALUE, self.checkpoint_ttl_seconds)

    def require_checkpoint(self, identity: str) -> None:
        """Raise (and ban) unless a checkpoint is live for identity."""
        key = ks.k_checkpoint(identity)
        if self.store.get(key) is None:
            self.alerts.record(identity, ALERT_UNUSUAL_ACCESS_ORDER, Severity.CRITICAL)
            self.store.set(ks.k_banned(identity), ks.FLAG_VALUE, self.ban_seconds)
            logger.warning("Commit without checkpoint from %s; banned for %ss", identity, self.ban_seconds)
            raise guard_error(
                ABUSE_E_FLOW_VIOLATION,
                "SECURITY ALERT: Abnormal behavior detected. Your IP has been flagged and blocked.",
                outcome=OUTCOME_FLAGGED_AND_BLOCKED,
                http_status=403,
                ban_seconds=self.ban_seconds,
            )
        if self.consume_checkpoint:
            self.store.delete(key)
