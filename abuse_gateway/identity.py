"""Client identity extraction.

The identity is the peer address of the connection, normalized so that one
client maps to one accounting key:
 - loopback aliases (::1, localhost, 127.0.0.0/8) -> 127.0.0.1
 - IPv4-mapped IPv6 (::ffff:203.0.113.7) -> 203.0.113.7
 - other IPv6 addresses in compressed canonical form

Reverse-proxy deployments should let uvicorn rewrite the peer address
(--proxy-headers) instead of reading X-Forwarded-For here.
"""

from __future__ import annotations

import ipaddress
from typing import Any, Optional

LOOPBACK_IDENTITY = "127.0.0.1"
UNKNOWN_IDENTITY = "unknown"


def normalize_identity(raw: Optional[str]) -> str:
    """Canonicalize a client address. Never raises."""
    s = (raw or "").strip()
    if not s:
        return UNKNOWN_IDENTITY
    if s.startswith("[") and s.endswith("]"):
        s = s[1:-1]
    if s.lower() == "localhost":
        return LOOPBACK_IDENTITY

    # Zone ids (fe80::1%eth0) are not part of the address.
    candidate = s.split("%", 1)[0]
    try:
        addr = ipaddress.ip_address(candidate)
    except ValueError:
        return s.lower()

    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        addr = addr.ipv4_mapped
    if addr.is_loopback:
        return LOOPBACK_IDENTITY
    return str(addr)


def client_identity(request: Any) -> str:
    """Identity for a Starlette/FastAPI request."""
    client = getattr(request, "client", None)
    host = getattr(client, "host", None) if client is not None else None
    return normalize_identity(host)
