"""Stable error taxonomy for the abuse gateway.

Every policy rejection raised by a gate is a `GuardError` carrying:
- a stable `code` string suitable for programmatic handling
- the `outcome` recorded in the access log
- the `http_status` used by the transport layer
- structured `details` (attempt counts, block durations) without parsing messages

Infrastructure failures of the state store are a separate type
(`StateStoreError`) so they are never confused with policy decisions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


# Policy rejections
ABUSE_E_FORBIDDEN = "ABUSE_E_FORBIDDEN"
ABUSE_E_RATE_LIMITED = "ABUSE_E_RATE_LIMITED"
ABUSE_E_BLOCKED = "ABUSE_E_BLOCKED"
ABUSE_E_INVALID_CREDENTIALS = "ABUSE_E_INVALID_CREDENTIALS"
ABUSE_E_LOGIN_LOCKED = "ABUSE_E_LOGIN_LOCKED"
ABUSE_E_FLOW_VIOLATION = "ABUSE_E_FLOW_VIOLATION"

# Generic
ABUSE_E_BAD_REQUEST = "ABUSE_E_BAD_REQUEST"
ABUSE_E_ADMIN_UNAUTHORIZED = "ABUSE_E_ADMIN_UNAUTHORIZED"
ABUSE_E_STORE_UNAVAILABLE = "ABUSE_E_STORE_UNAVAILABLE"
ABUSE_E_INTERNAL = "ABUSE_E_INTERNAL"

# Outcomes written to the access log
OUTCOME_OK = "ok"
OUTCOME_FORBIDDEN = "forbidden"
OUTCOME_TOO_MANY_REQUESTS = "too_many_requests"
OUTCOME_BLOCKED = "blocked"
OUTCOME_INVALID_CREDENTIALS = "invalid_credentials"
OUTCOME_TOO_MANY_FAILED_ATTEMPTS = "too_many_failed_attempts"
OUTCOME_FLAGGED_AND_BLOCKED = "flagged_and_blocked"
OUTCOME_BAD_REQUEST = "bad_request"
OUTCOME_UNAUTHORIZED = "unauthorized"
OUTCOME_SERVER_ERROR = "server_error"


@dataclass
class GuardError(Exception):
    """A policy rejection with a stable error code and access-log outcome."""

    code: str
    message: str
    outcome: str
    retryable: bool = False
    http_status: int = 403
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "outcome": self.outcome,
            "retryable": bool(self.retryable),
            "http_status": int(self.http_status),
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


def guard_error(
    code: str,
    message: str,
    *,
    outcome: str,
    retryable: bool = False,
    http_status: int = 403,
    **details: Any,
) -> GuardError:
    return GuardError(
        code=code,
        message=message,
        outcome=outcome,
        retryable=retryable,
        http_status=http_status,
        details=details,
    )


class StateStoreError(RuntimeError):
    """Raised when the ephemeral state store cannot complete an operation."""
