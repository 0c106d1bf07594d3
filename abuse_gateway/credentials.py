"""Credential verification for the login route.

The credential store is a collaborator of the login guard: it answers
"do these credentials match" and nothing else.

Env vars:
  - ABUSE_CREDENTIALS_JSON: JSON dict mapping username -> password
  - ABUSE_CREDENTIALS_FILE: path to a JSON file with the same mapping

Outside production, an unconfigured gateway falls back to a single demo user.
"""

from __future__ import annotations

import hmac
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Optional

ENV_CREDENTIALS_JSON = "ABUSE_CREDENTIALS_JSON"
ENV_CREDENTIALS_FILE = "ABUSE_CREDENTIALS_FILE"

DEMO_USERS: Dict[str, str] = {"admin": "password123"}

logger = logging.getLogger("abuse_gateway.credentials")


@dataclass(frozen=True)
class StaticCredentialVerifier:
    """Username/password table loaded once at startup."""

    users: Dict[str, str] = field(default_factory=dict)
    config_error: Optional[str] = None

    @classmethod
    def load_from_env(cls, allow_demo_user: bool = True) -> "StaticCredentialVerifier":
        """Load the credential table from env/file.

        If configuration is *present* but malformed, the instance carries a
        config_error and verifies nothing (fail closed).
        """
        raw_json = os.getenv(ENV_CREDENTIALS_JSON)
        file_path = os.getenv(ENV_CREDENTIALS_FILE)

        if not raw_json and not file_path:
            if allow_demo_user:
                logger.warning("No credentials configured; using the demo user")
                return cls(users=dict(DEMO_USERS))
            return cls(users={})

        try:
            if raw_json:
                data = json.loads(raw_json)
                if not isinstance(data, dict):
                    raise ValueError("ABUSE_CREDENTIALS_JSON must be a JSON object")
            else:
                with open(file_path, "r", encoding="utf-8") as f:
                    data = json.load(f)
                if not isinstance(data, dict):
                    raise ValueError("ABUSE_CREDENTIALS_FILE must contain a JSON object")
            users = {str(k): str(v) for k, v in data.items()}
        except Exception as e:
            logger.warning("Invalid credential configuration: %s", e)
            return cls(users={}, config_error="CREDENTIALS_CONFIG_INVALID")

        return cls(users=users)

    def verify(self, username: str, password: str) -> bool:
        if self.config_error:
            return False
        expected = self.users.get(username)
        if expected is None:
            # Compare anyway so unknown users cost the same as wrong passwords.
            hmac.compare_digest(password.encode("utf-8"), b"\x00" * 16)
            return False
        return hmac.compare_digest(password.encode("utf-8"), expected.encode("utf-8"))
