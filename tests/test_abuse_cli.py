import json

import pytest

import abuse_cli
from abuse_gateway import keyspace as ks
from abuse_gateway.audit_log import ALERT_UNUSUAL_ACCESS_ORDER, SecurityAlert
from abuse_gateway.store import InMemoryStateStore


@pytest.fixture
def shared_store(monkeypatch):
    # Stand-in for a Redis server shared between CLI invocations.
    s = InMemoryStateStore()
    monkeypatch.setattr(abuse_cli, "build_state_store", lambda config: s)
    return s


def test_no_command_prints_help(capsys):
    assert abuse_cli.main([]) == 1
    assert "usage" in capsys.readouterr().out.lower()


def test_list_empty(shared_store, capsys):
    assert abuse_cli.main(["list"]) == 0
    assert "No banned or blocked identities" in capsys.readouterr().out


def test_list_json(shared_store, capsys):
    shared_store.set(ks.k_banned("203.0.113.3"), "true", 3600)
    assert abuse_cli.main(["list", "--json"]) == 0
    assert json.loads(capsys.readouterr().out) == {"banned_ips": ["203.0.113.3"]}


def test_inspect_normalizes_identity(shared_store, capsys):
    shared_store.set(ks.k_blocked("203.0.113.4"), "true", 60)
    assert abuse_cli.main(["inspect", "::ffff:203.0.113.4"]) == 0
    snap = json.loads(capsys.readouterr().out)
    assert snap["identity"] == "203.0.113.4"
    assert snap["state"] == "blocked"


def test_unban_clears_keys_and_alert_file(shared_store, monkeypatch, tmp_path, capsys):
    alert_path = tmp_path / "alerts.jsonl"
    alert = SecurityAlert("203.0.113.5", ALERT_UNUSUAL_ACCESS_ORDER, "Critical", "2026-01-01T00:00:00+00:00")
    alert_path.write_text(json.dumps(alert.to_dict()) + "\n", encoding="utf-8")
    monkeypatch.setenv("ABUSE_ALERT_LOG_PATH", str(alert_path))
    shared_store.set(ks.k_banned("203.0.113.5"), "true", 3600)

    assert abuse_cli.main(["unban", "203.0.113.5"]) == 0
    out = capsys.readouterr().out
    assert "1 keys, 1 alerts removed" in out
    assert shared_store.keys() == set()
    assert alert_path.read_text(encoding="utf-8") == ""


def test_reset_requires_confirmation(shared_store, capsys):
    shared_store.set(ks.k_banned("a"), "true", 3600)
    assert abuse_cli.main(["reset"]) == 2
    assert shared_store.get(ks.k_banned("a")) == "true"

    assert abuse_cli.main(["reset", "--yes"]) == 0
    assert shared_store.keys() == set()


def test_alerts_listing(shared_store, monkeypatch, tmp_path, capsys):
    alert_path = tmp_path / "alerts.jsonl"
    alert = SecurityAlert("203.0.113.6", ALERT_UNUSUAL_ACCESS_ORDER, "Critical", "2026-01-01T00:00:00+00:00")
    alert_path.write_text(json.dumps(alert.to_dict()) + "\n", encoding="utf-8")
    monkeypatch.setenv("ABUSE_ALERT_LOG_PATH", str(alert_path))

    assert abuse_cli.main(["alerts", "--json"]) == 0
    assert json.loads(capsys.readouterr().out) == [alert.to_dict()]
