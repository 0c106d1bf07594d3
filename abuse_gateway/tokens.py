"""Session tokens issued by the login route.

Tokens are opaque to clients but signed by the gateway (Ed25519), so a
token cannot be minted without the signing key:

    sess.<base64url(claims JSON)>.<base64url(signature)>

Claims: sub (username), idn (client identity), iat/exp (unix seconds), jti.

Env:
- ABUSE_SESSION_SIGNING_KEY: 64 hex chars (32-byte Ed25519 seed). If unset an
  ephemeral key is generated and tokens do not survive a restart.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
import secrets
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

ENV_SESSION_SIGNING_KEY = "ABUSE_SESSION_SIGNING_KEY"
TOKEN_PREFIX = "sess"

logger = logging.getLogger("abuse_gateway.tokens")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64url_decode(s: str) -> bytes:
    return base64.urlsafe_b64decode(s + "=" * (-len(s) % 4))


def load_signing_key_from_env(env_var: str = ENV_SESSION_SIGNING_KEY) -> Optional[Ed25519PrivateKey]:
    """Load an Ed25519 key from a hex seed. Returns None if not configured."""
    key_hex = (os.getenv(env_var, "") or "").strip()
    if not key_hex:
        return None
    seed = bytes.fromhex(key_hex)
    if len(seed) != 32:
        raise ValueError(f"{env_var} must be 32 bytes (64 hex chars), got {len(seed)}")
    return Ed25519PrivateKey.from_private_bytes(seed)


class SessionTokenIssuer:
    def __init__(self, signing_key: Ed25519PrivateKey, ttl_seconds: int = 3600):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._key = signing_key
        self._public: Ed25519PublicKey = signing_key.public_key()
        self.ttl_seconds = int(ttl_seconds)

    @classmethod
    def from_env(cls, ttl_seconds: int = 3600) -> "SessionTokenIssuer":
        key = load_signing_key_from_env()
        if key is None:
            logger.warning("%s not set; using an ephemeral session signing key", ENV_SESSION_SIGNING_KEY)
            key = Ed25519PrivateKey.generate()
        return cls(key, ttl_seconds=ttl_seconds)

    def issue(self, subject: str, identity: str) -> str:
        iat = int(_now_utc().timestamp())
        claims = {
            "sub": subject,
            "idn": identity,
            "iat": iat,
            "exp": iat + self.ttl_seconds,
            "jti": secrets.token_urlsafe(12),
        }
        body = _b64url(json.dumps(claims, separators=(",", ":"), sort_keys=True).encode("utf-8"))
        signing_input = f"{TOKEN_PREFIX}.{body}".encode("ascii")
        sig = self._key.sign(signing_input)
        return f"{TOKEN_PREFIX}.{body}.{_b64url(sig)}"

    def verify(self, token: str) -> Optional[Dict[str, Any]]:
        """Return the claims of a valid, unexpired token, otherwise None."""
        parts = (token or "").split(".")
        if len(parts) != 3 or parts[0] != TOKEN_PREFIX:
            return None
        try:
            sig = _b64url_decode(parts[2])
            self._public.verify(sig, f"{parts[0]}.{parts[1]}".encode("ascii"))
            claims = json.loads(_b64url_decode(parts[1]))
        except (InvalidSignature, binascii.Error, ValueError, UnicodeEncodeError):
            return None
        if not isinstance(claims, dict):
            return None
        try:
            if int(claims.get("exp", 0)) <= int(_now_utc().timestamp()):
                return None
        except (TypeError, ValueError):
            return None
        return claims
