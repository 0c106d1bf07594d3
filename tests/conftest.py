import pytest

from abuse_gateway.audit_log import AlertRecorder, InMemoryRecordSink
from abuse_gateway.ops_stats import OPS_STATS
from abuse_gateway.store import InMemoryStateStore

_GATEWAY_ENV = (
    "ABUSE_ENV",
    "ENV",
    "ABUSE_STATE_STORE",
    "ABUSE_REDIS_URL",
    "ABUSE_ALERT_LOG_PATH",
    "ABUSE_ACCESS_LOG_PATH",
    "ABUSE_ADMIN_TOKEN",
    "ABUSE_ADMIN_REQUIRE_AUTH",
    "ABUSE_CREDENTIALS_JSON",
    "ABUSE_CREDENTIALS_FILE",
    "ABUSE_SESSION_SIGNING_KEY",
    "ABUSE_FLOW_CONSUME_CHECKPOINT",
    "ABUSE_MAX_REQUEST_BYTES",
    "ABUSE_METRICS_ENABLED",
)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def _clean_gateway_env(monkeypatch):
    # Tests shouldn't depend on the developer's shell.
    for name in _GATEWAY_ENV:
        monkeypatch.delenv(name, raising=False)
    OPS_STATS.reset()
    yield


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryStateStore(clock=clock)


@pytest.fixture
def alert_sink():
    return InMemoryRecordSink()


@pytest.fixture
def alerts(alert_sink):
    return AlertRecorder(alert_sink)
