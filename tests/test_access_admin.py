import pytest

from abuse_gateway import keyspace as ks
from abuse_gateway.access import AccessAdmin, AccessBanGate, IdentityState
from abuse_gateway.audit_log import ALERT_RATE_LIMIT_EXCEEDED, Severity
from abuse_gateway.errors import ABUSE_E_FORBIDDEN, OUTCOME_FORBIDDEN, GuardError
from abuse_gateway.ops_stats import OPS_STATS


def test_ban_gate_rejects_banned_or_blocked(store):
    gate = AccessBanGate(store)
    gate.check("10.0.0.1")

    store.set(ks.k_banned("10.0.0.2"), "true", 3600)
    store.set(ks.k_blocked("10.0.0.3"), "true", 60)

    for ip in ("10.0.0.2", "10.0.0.3"):
        with pytest.raises(GuardError) as ei:
            gate.check(ip)
        assert ei.value.code == ABUSE_E_FORBIDDEN
        assert ei.value.outcome == OUTCOME_FORBIDDEN
        assert ei.value.message == "YOUR IP IS BANNED. Security violation detected."


def test_ban_gate_never_writes(store):
    AccessBanGate(store).check("10.0.0.1")
    assert store.keys() == set()


def test_ban_gate_lifts_on_expiry(store, clock):
    gate = AccessBanGate(store)
    store.set(ks.k_blocked("10.0.0.3"), "true", 60)
    clock.advance(60)
    gate.check("10.0.0.3")


def test_inspect_derives_state(store):
    admin = AccessAdmin(store)
    assert admin.inspect("10.0.0.1").state is IdentityState.CLEAN

    store.incr(ks.k_rate("10.0.0.1"))
    snap = admin.inspect("10.0.0.1")
    assert snap.state is IdentityState.COUNTING
    assert snap.request_count == 1

    store.set(ks.k_blocked("10.0.0.1"), "true", 60)
    assert admin.inspect("10.0.0.1").state is IdentityState.BLOCKED

    store.set(ks.k_banned("10.0.0.1"), "true", 3600)
    snap = admin.inspect("10.0.0.1")
    assert snap.state is IdentityState.BANNED
    assert snap.to_dict()["state"] == "banned"


def test_list_restricted_includes_ipv6_and_dedupes(store):
    admin = AccessAdmin(store)
    store.set(ks.k_banned("2001:db8::1"), "true", 3600)
    store.set(ks.k_blocked("2001:db8::1"), "true", 60)
    store.set(ks.k_blocked("10.0.0.9"), "true", 60)
    store.incr(ks.k_rate("10.0.0.8"))

    assert admin.list_restricted() == ["10.0.0.9", "2001:db8::1"]


def test_unban_clears_every_key_and_alerts(store, alert_sink, alerts):
    admin = AccessAdmin(store, alert_sink)
    ip = "10.0.0.5"
    store.set(ks.k_banned(ip), "true", 3600)
    store.set(ks.k_blocked(ip), "true", 60)
    store.incr(ks.k_rate(ip))
    store.incr(ks.k_login_failures(ip))
    store.set(ks.k_checkpoint(ip), "true", 300)
    store.set(ks.k_banned("10.0.0.6"), "true", 3600)

    alerts.record(ip, ALERT_RATE_LIMIT_EXCEEDED, Severity.HIGH)
    alerts.record("10.0.0.6", ALERT_RATE_LIMIT_EXCEEDED, Severity.HIGH)

    result = admin.unban(ip)
    assert result == {"keys_deleted": 5, "alerts_deleted": 1}
    assert admin.inspect(ip).state is IdentityState.CLEAN
    assert [a.identity for a in alert_sink.recent()] == ["10.0.0.6"]
    assert store.get(ks.k_banned("10.0.0.6")) == "true"
    assert OPS_STATS.snapshot()["unbans_total"] == 1

    # Idempotent
    assert admin.unban(ip) == {"keys_deleted": 0, "alerts_deleted": 0}


def test_reset_all_only_touches_gateway_namespaces(store):
    admin = AccessAdmin(store)
    store.set(ks.k_banned("a"), "true", 3600)
    store.incr(ks.k_rate("b"))
    store.set("unrelated", "x")

    assert admin.reset_all() == 2
    assert store.keys() == {"unrelated"}
