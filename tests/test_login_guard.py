import pytest

from abuse_gateway import keyspace as ks
from abuse_gateway.audit_log import ALERT_BRUTE_FORCE_ATTEMPT
from abuse_gateway.credentials import StaticCredentialVerifier
from abuse_gateway.errors import (
    ABUSE_E_INVALID_CREDENTIALS,
    ABUSE_E_LOGIN_LOCKED,
    OUTCOME_INVALID_CREDENTIALS,
    OUTCOME_TOO_MANY_FAILED_ATTEMPTS,
    GuardError,
)
from abuse_gateway.login_guard import LoginGuard

IP = "192.0.2.44"


@pytest.fixture
def guard(store, alerts):
    return LoginGuard(store, alerts, StaticCredentialVerifier(users={"admin": "password123"}))


def _fail(guard, identity=IP):
    with pytest.raises(GuardError) as ei:
        guard.attempt(identity, "admin", "wrong")
    return ei.value


def test_success_returns_and_leaves_no_state(guard, store):
    assert guard.attempt(IP, "admin", "password123") is None
    assert store.get(ks.k_login_failures(IP)) is None


def test_failures_count_up_to_five(guard, alert_sink):
    for n in range(1, 6):
        err = _fail(guard)
        assert err.code == ABUSE_E_INVALID_CREDENTIALS
        assert err.outcome == OUTCOME_INVALID_CREDENTIALS
        assert err.http_status == 401
        assert err.message == f"Invalid credentials. Attempt {n}/5"
        assert err.details["remaining_attempts"] == 5 - n
    assert guard.failures(IP) == 5
    assert len(alert_sink) == 0


def test_sixth_attempt_blocks_even_with_correct_password(guard, store, alert_sink):
    for _ in range(5):
        _fail(guard)

    with pytest.raises(GuardError) as ei:
        guard.attempt(IP, "admin", "password123")
    err = ei.value
    assert err.code == ABUSE_E_LOGIN_LOCKED
    assert err.outcome == OUTCOME_TOO_MANY_FAILED_ATTEMPTS
    assert err.http_status == 429
    assert err.message == "Too many failed attempts. IP blocked for 10 minutes."

    assert store.get(ks.k_blocked(IP)) == "true"
    recent = alert_sink.recent()
    assert [a.category for a in recent] == [ALERT_BRUTE_FORCE_ATTEMPT]
    assert recent[0].severity == "High"


def test_success_clears_counter_and_block(guard, store):
    for _ in range(3):
        _fail(guard)
    store.set(ks.k_blocked(IP), "true", 600)

    guard.attempt(IP, "admin", "password123")
    assert store.get(ks.k_login_failures(IP)) is None
    assert store.get(ks.k_blocked(IP)) is None

    # Counting starts over.
    assert _fail(guard).details["attempt"] == 1


def test_failure_window_anchored_at_first_failure(guard, clock):
    _fail(guard)
    clock.advance(300)
    for _ in range(3):
        _fail(guard)
    assert guard.failures(IP) == 4

    clock.advance(300)
    assert guard.failures(IP) == 0
    assert _fail(guard).details["attempt"] == 1


def test_unknown_user_counts_as_failure(guard):
    with pytest.raises(GuardError) as ei:
        guard.attempt(IP, "mallory", "password123")
    assert ei.value.code == ABUSE_E_INVALID_CREDENTIALS
    assert guard.failures(IP) == 1


def test_failures_are_per_identity(guard):
    for _ in range(5):
        _fail(guard, "192.0.2.1")
    assert guard.attempt("192.0.2.2", "admin", "password123") is None
