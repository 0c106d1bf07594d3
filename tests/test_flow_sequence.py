import pytest

from abuse_gateway import keyspace as ks
from abuse_gateway.audit_log import ALERT_UNUSUAL_ACCESS_ORDER
from abuse_gateway.errors import ABUSE_E_FLOW_VIOLATION, OUTCOME_FLAGGED_AND_BLOCKED, GuardError
from abuse_gateway.flow import FlowSequenceEnforcer

IP = "198.51.100.77"


def test_commit_after_checkpoint_is_allowed(store, alerts, alert_sink):
    flow = FlowSequenceEnforcer(store, alerts)
    flow.record_checkpoint(IP)
    flow.require_checkpoint(IP)
    # Checkpoint is reusable within its lifetime by default.
    flow.require_checkpoint(IP)
    assert len(alert_sink) == 0


def test_commit_without_checkpoint_bans(store, alerts, alert_sink):
    flow = FlowSequenceEnforcer(store, alerts)
    with pytest.raises(GuardError) as ei:
        flow.require_checkpoint(IP)

    err = ei.value
    assert err.code == ABUSE_E_FLOW_VIOLATION
    assert err.outcome == OUTCOME_FLAGGED_AND_BLOCKED
    assert err.http_status == 403
    assert err.details["ban_seconds"] == 3600

    assert store.get(ks.k_banned(IP)) == "true"
    recent = alert_sink.recent()
    assert len(recent) == 1
    assert recent[0].category == ALERT_UNUSUAL_ACCESS_ORDER
    assert recent[0].severity == "Critical"


def test_checkpoint_expires_after_five_minutes(store, alerts, clock):
    flow = FlowSequenceEnforcer(store, alerts)
    flow.record_checkpoint(IP)
    clock.advance(299)
    flow.require_checkpoint(IP)

    clock.advance(1)
    with pytest.raises(GuardError):
        flow.require_checkpoint(IP)


def test_ban_lasts_an_hour(store, alerts, clock):
    flow = FlowSequenceEnforcer(store, alerts)
    with pytest.raises(GuardError):
        flow.require_checkpoint(IP)
    clock.advance(3599)
    assert store.get(ks.k_banned(IP)) is not None
    clock.advance(1)
    assert store.get(ks.k_banned(IP)) is None


def test_consuming_policy_requires_fresh_checkpoint(store, alerts):
    flow = FlowSequenceEnforcer(store, alerts, consume_checkpoint=True)
    flow.record_checkpoint(IP)
    flow.require_checkpoint(IP)
    assert store.get(ks.k_checkpoint(IP)) is None

    with pytest.raises(GuardError):
        flow.require_checkpoint(IP)


def test_checkpoint_of_other_identity_does_not_count(store, alerts):
    flow = FlowSequenceEnforcer(store, alerts)
    flow.record_checkpoint("198.51.100.1")
    with pytest.raises(GuardError):
        flow.require_checkpoint("198.51.100.2")
