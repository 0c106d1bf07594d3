"""
Abuse Gateway Server

FastAPI application that puts a chain of stateful, per-client decision gates
in front of the business routes:

    identity -> ban gate -> rate limiter (unless exempt) -> route

The login route additionally consults the login guard; the transaction route
requires a prior balance check (flow sequence enforcer). Whichever gate ends
a request, the access log records the final status and outcome through a
post-handler hook, so gates never deal with logging.
"""

from __future__ import annotations

import hmac
import logging
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from . import metrics
from .access import AccessAdmin, AccessBanGate
from .audit_log import (
    AccessLogEntry,
    AlertRecorder,
    InMemoryRecordSink,
    RecordSink,
    SecurityAlert,
    _now_iso,
    build_access_log,
    build_alert_sink,
)
from .config import GatewayConfig
from .credentials import StaticCredentialVerifier
from .errors import (
    ABUSE_E_ADMIN_UNAUTHORIZED,
    ABUSE_E_BAD_REQUEST,
    ABUSE_E_STORE_UNAVAILABLE,
    OUTCOME_BAD_REQUEST,
    OUTCOME_OK,
    OUTCOME_SERVER_ERROR,
    OUTCOME_UNAUTHORIZED,
    GuardError,
    StateStoreError,
    guard_error,
)
from .flow import FlowSequenceEnforcer
from .identity import client_identity, normalize_identity
from .login_guard import CredentialVerifier, LoginGuard
from .ops_stats import OPS_STATS
from .ratelimit import RateLimiterGate, is_rate_limit_exempt
from .store import InMemoryStateStore, StateStore, build_state_store
from .tokens import SessionTokenIssuer

logger = logging.getLogger("abuse_gateway")


# ---------------------------
# Request/Response Models
# ---------------------------

class LoginRequest(BaseModel):
    username: str = Field(min_length=1, max_length=256)
    password: str = Field(min_length=1, max_length=1024)


class LoginResponse(BaseModel):
    message: str
    token: str
    token_type: str = "bearer"
    expires_in: int


class BalanceResponse(BaseModel):
    balance: int
    currency: str
    message: str


class TransactionRequest(BaseModel):
    amount: float = Field(default=100, gt=0)
    recipient: Optional[str] = Field(default=None, max_length=256)


class TransactionResponse(BaseModel):
    status: str
    message: str
    amount: float


class UnbanRequest(BaseModel):
    ip: str = Field(min_length=1, max_length=128)


# ---------------------------
# Gateway
# ---------------------------

class AbuseGateway:
    """Wires the state store, the gates and the record sinks together."""

    def __init__(
        self,
        store: Optional[StateStore] = None,
        alert_sink: Optional[RecordSink[SecurityAlert]] = None,
        access_log: Optional[RecordSink[AccessLogEntry]] = None,
        credentials: Optional[CredentialVerifier] = None,
        token_issuer: Optional[SessionTokenIssuer] = None,
        consume_checkpoint: bool = False,
        store_backend: str = "memory",
    ):
        self.store = store if store is not None else InMemoryStateStore()
        self.store_backend = store_backend
        self.alert_sink = alert_sink if alert_sink is not None else InMemoryRecordSink()
        self.access_log = access_log if access_log is not None else InMemoryRecordSink()
        self.alerts = AlertRecorder(self.alert_sink)
        self.tokens = token_issuer or SessionTokenIssuer.from_env()

        self.ban_gate = AccessBanGate(self.store)
        self.rate_limiter = RateLimiterGate(self.store, self.alerts)
        self.login_guard = LoginGuard(
            self.store,
            self.alerts,
            credentials if credentials is not None else StaticCredentialVerifier.load_from_env(),
        )
        self.flow = FlowSequenceEnforcer(self.store, self.alerts, consume_checkpoint=consume_checkpoint)
        self.admin = AccessAdmin(self.store, self.alert_sink)

    @classmethod
    def from_config(cls, config: GatewayConfig) -> "AbuseGateway":
        return cls(
            store=build_state_store(config),
            alert_sink=build_alert_sink(config.alert_log_path),
            access_log=build_access_log(config.access_log_path),
            credentials=StaticCredentialVerifier.load_from_env(allow_demo_user=not config.is_prod),
            token_issuer=SessionTokenIssuer.from_env(ttl_seconds=config.session_ttl_seconds),
            consume_checkpoint=config.flow_consume_checkpoint,
            store_backend=config.store_backend,
        )

    def screen(self, identity: str, path: str) -> None:
        """Gates that run before every route. Raises GuardError to reject."""
        self.ban_gate.check(identity)
        if not is_rate_limit_exempt(path):
            self.rate_limiter.hit(identity)

    def login(self, identity: str, username: str, password: str) -> str:
        self.login_guard.attempt(identity, username, password)
        logger.info("Login succeeded for %s from %s", username, identity)
        return self.tokens.issue(subject=username, identity=identity)

    def record_access(self, identity: str, endpoint: str, method: str, status: int, outcome: str) -> None:
        """Post-handler hook: one access log entry per finished request."""
        OPS_STATS.record_request(status, outcome)
        entry = AccessLogEntry(
            identity=identity,
            endpoint=endpoint,
            method=method,
            status=int(status),
            outcome_reason=outcome,
            timestamp=_now_iso(),
        )
        try:
            self.access_log.append(entry)
        except Exception as e:
            OPS_STATS.record_sink_error()
            logger.warning("Failed to write access log entry for %s: %s", identity, e)


def _outcome_for_status(status: int) -> str:
    if status < 400:
        return OUTCOME_OK
    if status == 404:
        return "not_found"
    return f"http_{status}"


def _token_matches(presented: str, expected: str) -> bool:
    # Header values are latin-1 decoded; compare bytes so non-ASCII input is a mismatch, not a TypeError.
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


def create_app(gateway: Optional[AbuseGateway] = None, config: Optional[GatewayConfig] = None) -> FastAPI:
    """Create FastAPI application with the gate chain and routes."""
    from . import __version__ as gateway_version

    config = config or GatewayConfig.from_env()
    if gateway is None:
        gateway = AbuseGateway.from_config(config)

    app = FastAPI(
        title="Abuse Gateway",
        description="Per-client abuse detection and access control",
        version=gateway_version,
    )
    app.state.gateway = gateway

    def _render_guard_error(request: Request, exc: GuardError) -> JSONResponse:
        request.state.outcome = exc.outcome
        OPS_STATS.record_rejection(exc.outcome)
        metrics.record_rejection(exc.outcome)
        return JSONResponse(status_code=int(exc.http_status), content=exc.as_dict())

    def _render_store_error(request: Request, exc: StateStoreError) -> JSONResponse:
        logger.error("State store failure on %s %s: %s", request.method, request.url.path, exc)
        request.state.outcome = OUTCOME_SERVER_ERROR
        OPS_STATS.record_store_error()
        metrics.record_store_error()
        err = guard_error(
            ABUSE_E_STORE_UNAVAILABLE,
            "Server Error",
            outcome=OUTCOME_SERVER_ERROR,
            http_status=500,
        )
        return JSONResponse(status_code=500, content=err.as_dict())

    @app.exception_handler(GuardError)
    async def _guard_error_handler(request: Request, exc: GuardError):
        return _render_guard_error(request, exc)

    @app.exception_handler(StateStoreError)
    async def _store_error_handler(request: Request, exc: StateStoreError):
        return _render_store_error(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": [str(p) for p in e.get("loc", ())], "msg": str(e.get("msg", ""))}
            for e in exc.errors()
        ]
        request.state.outcome = OUTCOME_BAD_REQUEST
        err = guard_error(
            ABUSE_E_BAD_REQUEST,
            "Malformed request",
            outcome=OUTCOME_BAD_REQUEST,
            http_status=400,
            errors=errors,
        )
        return JSONResponse(status_code=400, content=err.as_dict())

    # ---------------------------
    # Request body size limit (checks Content-Length)
    # ---------------------------
    max_request_bytes = config.max_request_bytes

    @app.middleware("http")
    async def _limit_request_size(req: Request, call_next):
        cl = req.headers.get("content-length")
        if cl is not None:
            try:
                too_large = int(cl) > max_request_bytes
            except ValueError:
                # If malformed, fail-closed.
                return JSONResponse(status_code=400, content={"detail": "BAD_CONTENT_LENGTH"})
            if too_large:
                return JSONResponse(status_code=413, content={"detail": "REQUEST_TOO_LARGE"})
        return await call_next(req)

    # ---------------------------
    # Gate chain + access log hook
    # ---------------------------

    @app.middleware("http")
    async def _guard_chain(request: Request, call_next):
        identity = client_identity(request)
        request.state.identity = identity
        path = request.url.path
        try:
            await run_in_threadpool(gateway.screen, identity, path)
        except GuardError as exc:
            response = _render_guard_error(request, exc)
        except StateStoreError as exc:
            response = _render_store_error(request, exc)
        else:
            try:
                response = await call_next(request)
            except Exception:
                await run_in_threadpool(
                    gateway.record_access, identity, path, request.method, 500, OUTCOME_SERVER_ERROR
                )
                raise

        outcome = getattr(request.state, "outcome", None) or _outcome_for_status(response.status_code)
        await run_in_threadpool(
            gateway.record_access, identity, path, request.method, response.status_code, outcome
        )
        return response

    # ---------------------------
    # Admin authorization
    # ---------------------------

    def _authorize_admin(req: Request) -> bool:
        if not config.admin_require_auth:
            return True
        token = config.admin_token
        # Auth required but no token configured: deny (fail closed).
        if not token:
            return False
        authz = (req.headers.get("Authorization") or "").strip()
        if authz.lower().startswith("bearer "):
            if _token_matches(authz.split(" ", 1)[1].strip(), token):
                return True
        return _token_matches((req.headers.get("X-Admin-Token") or "").strip(), token)

    def _require_admin(request: Request) -> None:
        if not _authorize_admin(request):
            raise guard_error(
                ABUSE_E_ADMIN_UNAUTHORIZED,
                "ADMIN_UNAUTHORIZED",
                outcome=OUTCOME_UNAUTHORIZED,
                http_status=401,
            )

    metrics.instrument_fastapi(app, authorize=_authorize_admin)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ---------------------------
    # Business routes
    # ---------------------------

    @app.post("/api/login", response_model=LoginResponse)
    def login(http_request: Request, request: LoginRequest):
        identity = client_identity(http_request)
        token = gateway.login(identity, request.username, request.password)
        return LoginResponse(
            message="Login Successful",
            token=token,
            expires_in=gateway.tokens.ttl_seconds,
        )

    @app.get("/api/balance", response_model=BalanceResponse)
    def balance(http_request: Request):
        """Checkpoint step: verifying the balance unlocks transactions."""
        gateway.flow.record_checkpoint(client_identity(http_request))
        return BalanceResponse(balance=5000, currency="USD", message="Balance verified")

    @app.post("/api/transaction", response_model=TransactionResponse)
    def transaction(http_request: Request, request: Optional[TransactionRequest] = None):
        """Commit step: only valid after a recent balance check."""
        gateway.flow.require_checkpoint(client_identity(http_request))
        amount = request.amount if request is not None else 100
        return TransactionResponse(
            status="success",
            message="Transaction completed successfully",
            amount=amount,
        )

    # ---------------------------
    # Administration (rate-limit exempt, not ban exempt)
    # ---------------------------

    @app.get("/dashboard/stats", dependencies=[Depends(_require_admin)])
    def dashboard_stats() -> Dict[str, Any]:
        logs = [e.to_dict() for e in gateway.access_log.recent(50)]
        alerts = [a.to_dict() for a in gateway.alert_sink.recent(10)]
        counters = OPS_STATS.snapshot(extra={"store_backend": gateway.store_backend})
        return {"logs": logs, "alerts": alerts, "counters": counters}

    @app.get("/dashboard/banned-ips", dependencies=[Depends(_require_admin)])
    def banned_ips() -> Dict[str, List[str]]:
        return {"banned_ips": gateway.admin.list_restricted()}

    @app.get("/dashboard/identities/{identity}", dependencies=[Depends(_require_admin)])
    def inspect_identity(identity: str) -> Dict[str, Any]:
        return gateway.admin.inspect(normalize_identity(identity)).to_dict()

    @app.post("/dashboard/unban-ip", dependencies=[Depends(_require_admin)])
    def unban_ip(request: UnbanRequest) -> Dict[str, Any]:
        ip = normalize_identity(request.ip)
        counts = gateway.admin.unban(ip)
        return {"success": True, "message": f"IP {ip} unbanned", **counts}

    @app.post("/dashboard/reset-state", dependencies=[Depends(_require_admin)])
    def reset_state() -> Dict[str, Any]:
        deleted = gateway.admin.reset_all()
        return {"success": True, "message": "State cleared", "keys_deleted": deleted}

    @app.get("/health")
    def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "store_backend": gateway.store_backend}

    return app


def build_parser():
    import argparse

    parser = argparse.ArgumentParser(
        prog="abuse-gateway",
        description="Serve the abuse gateway. Deployment settings come from ABUSE_* environment variables.",
    )
    parser.add_argument("--host", default="0.0.0.0", help="Bind address (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=5000, help="Bind port (default: 5000)")
    parser.add_argument("--proxy-headers", action="store_true", help="Take the client address from X-Forwarded-For")
    parser.add_argument("--forwarded-allow-ips", default=None, help="Proxies trusted to set X-Forwarded-For")
    parser.add_argument("--log-level", default="info", choices=["debug", "info", "warning", "error"])
    return parser


def main(argv=None):
    """Entry point for the abuse-gateway command."""
    import os

    import uvicorn

    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    config = GatewayConfig.from_env()
    app = create_app(config=config)
    logger.info("Serving on %s:%d (state store: %s)", args.host, args.port, config.store_backend)

    # The identity gates key on must be the real client, so proxies are opt-in.
    proxy_headers = args.proxy_headers or os.environ.get("ABUSE_PROXY_HEADERS", "").strip().lower() in ("1", "true", "yes")
    forwarded_allow_ips = args.forwarded_allow_ips or os.environ.get("ABUSE_FORWARDED_ALLOW_IPS")

    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        proxy_headers=proxy_headers,
        forwarded_allow_ips=forwarded_allow_ips,
        log_level=args.log_level,
    )
    return 0


if __name__ == "__main__":
    import sys
    sys.exit(main())
