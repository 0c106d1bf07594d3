"""Key naming for the ephemeral state store.

Every key is `<namespace>:<identity>`. Gates build keys only through these
helpers so the format lives in one place.
"""

from __future__ import annotations

from typing import Tuple

NS_RATE = "rate"
NS_LOGIN_FAILURES = "login_failures"
NS_BLOCKED = "blocked"
NS_BANNED = "banned"
NS_SESSION_CHECKPOINT = "session_checkpoint"

# Unban clears every one of these for an identity.
ALL_NAMESPACES: Tuple[str, ...] = (
    NS_BANNED,
    NS_BLOCKED,
    NS_RATE,
    NS_LOGIN_FAILURES,
    NS_SESSION_CHECKPOINT,
)

# Value written for flag keys. Only presence matters.
FLAG_VALUE = "true"


def key_for(namespace: str, identity: str) -> str:
    return f"{namespace}:{identity}"


def prefix_for(namespace: str) -> str:
    return f"{namespace}:"


def identity_from_key(namespace: str, key: str) -> str:
    """Strip the namespace prefix. IPv6 identities keep their own colons."""
    prefix = prefix_for(namespace)
    if not key.startswith(prefix):
        raise ValueError(f"key {key!r} is not in namespace {namespace!r}")
    return key[len(prefix):]


def k_rate(identity: str) -> str:
    """Request counter for the current fixed window."""
    return key_for(NS_RATE, identity)


def k_login_failures(identity: str) -> str:
    """Consecutive failed logins."""
    return key_for(NS_LOGIN_FAILURES, identity)


def k_blocked(identity: str) -> str:
    """Temporary automated block."""
    return key_for(NS_BLOCKED, identity)


def k_banned(identity: str) -> str:
    """Long-lived ban (flow violation or manual)."""
    return key_for(NS_BANNED, identity)


def k_checkpoint(identity: str) -> str:
    """Proof that the checkpoint action happened recently."""
    return key_for(NS_SESSION_CHECKPOINT, identity)
