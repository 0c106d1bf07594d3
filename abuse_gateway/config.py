"""Runtime configuration for the abuse gateway.

Thresholds and TTLs of the gates are fixed constants in their own modules.
This only covers deployment concerns: which store to use, where sinks write,
admin access and HTTP hardening.

Environment variables:
- ABUSE_ENV (fallback ENV): 'prod'/'production' tightens admin defaults.
- ABUSE_STATE_STORE: 'memory' or 'redis' (default: redis if ABUSE_REDIS_URL is set).
- ABUSE_REDIS_URL, ABUSE_REDIS_TIMEOUT_SECONDS
- ABUSE_ALERT_LOG_PATH, ABUSE_ACCESS_LOG_PATH: JSONL files (default: in-memory).
- ABUSE_ADMIN_TOKEN, ABUSE_ADMIN_REQUIRE_AUTH
- ABUSE_MAX_REQUEST_BYTES
- ABUSE_CORS_ORIGINS: comma separated.
- ABUSE_FLOW_CONSUME_CHECKPOINT: if '1', each commit needs a fresh checkpoint.
- ABUSE_SESSION_TTL_SECONDS
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Optional

_TRUE = ("1", "true", "yes", "on")


def _get_str(name: str) -> Optional[str]:
    v = (os.getenv(name, "") or "").strip()
    return v or None


def _get_bool(name: str, default: bool) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in _TRUE


def _get_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)).strip())
    except Exception:
        return default


def _get_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)).strip())
    except Exception:
        return default


@dataclass
class GatewayConfig:
    env: str = "dev"
    store_backend: str = "memory"
    redis_url: Optional[str] = None
    redis_timeout_seconds: float = 2.0
    alert_log_path: Optional[str] = None
    access_log_path: Optional[str] = None
    admin_token: Optional[str] = None
    admin_require_auth: bool = False
    max_request_bytes: int = 1048576
    cors_origins: List[str] = field(default_factory=lambda: ["http://localhost:3000"])
    flow_consume_checkpoint: bool = False
    session_ttl_seconds: int = 3600

    @property
    def is_prod(self) -> bool:
        return self.env in ("prod", "production")

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        env = str(os.getenv("ABUSE_ENV", os.getenv("ENV", "dev"))).strip().lower() or "dev"
        prod = env in ("prod", "production")

        redis_url = _get_str("ABUSE_REDIS_URL")
        backend = (_get_str("ABUSE_STATE_STORE") or ("redis" if redis_url else "memory")).lower()
        if backend not in ("memory", "redis"):
            raise ValueError(f"unsupported ABUSE_STATE_STORE: {backend}")

        timeout = _get_float("ABUSE_REDIS_TIMEOUT_SECONDS", cls.redis_timeout_seconds)
        max_bytes = _get_int("ABUSE_MAX_REQUEST_BYTES", cls.max_request_bytes)
        session_ttl = _get_int("ABUSE_SESSION_TTL_SECONDS", cls.session_ttl_seconds)

        # Clamp
        if timeout <= 0:
            timeout = 0.01
        if max_bytes < 1:
            max_bytes = cls.max_request_bytes
        if session_ttl < 60:
            session_ttl = 60

        raw_origins = os.getenv("ABUSE_CORS_ORIGINS")
        if raw_origins is None:
            origins = ["http://localhost:3000"]
        else:
            origins = [o.strip() for o in raw_origins.split(",") if o.strip()]

        return cls(
            env=env,
            store_backend=backend,
            redis_url=redis_url,
            redis_timeout_seconds=timeout,
            alert_log_path=_get_str("ABUSE_ALERT_LOG_PATH"),
            access_log_path=_get_str("ABUSE_ACCESS_LOG_PATH"),
            admin_token=_get_str("ABUSE_ADMIN_TOKEN"),
            admin_require_auth=_get_bool("ABUSE_ADMIN_REQUIRE_AUTH", prod),
            max_request_bytes=max_bytes,
            cors_origins=origins,
            flow_consume_checkpoint=_get_bool("ABUSE_FLOW_CONSUME_CHECKPOINT", False),
            session_ttl_seconds=session_ttl,
        )
