"""Abuse Gateway package.

This package puts per-client abuse detection in front of an HTTP API using:

- Fixed-window rate limiting with block escalation
- Brute-force protection for the login route
- Checkpoint-before-commit flow enforcement
- Bans shared through one TTL state store (in-memory or Redis)
- Security alerts and an access log of every request

Convenience imports
------------------
The package avoids heavy import-time side effects. For convenience, these
are available as top-level imports:

    from abuse_gateway import AbuseGateway, create_app

The state store implementations are also re-exported:

    from abuse_gateway import InMemoryStateStore, RedisStateStore

All of the above are loaded lazily.
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Best-effort version discovery for dev/test environments."""

    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
        m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
        return m.group(1) if m else None
    except Exception:
        return None


__version__ = (
    _read_version_from_pyproject()
    or "0.3.0"
)

__all__ = [
    "__version__",
    "AbuseGateway",
    "create_app",
    "InMemoryStateStore",
    "RedisStateStore",
]

# Lazy export map: name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "AbuseGateway": ("abuse_gateway.server", "AbuseGateway"),
    "create_app": ("abuse_gateway.server", "create_app"),
    "InMemoryStateStore": ("abuse_gateway.store", "InMemoryStateStore"),
    "RedisStateStore": ("abuse_gateway.store", "RedisStateStore"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        module = import_module(module_name)
        value = getattr(module, attr)
        globals()[name] = value
        return value
    raise AttributeError(f"module 'abuse_gateway' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
