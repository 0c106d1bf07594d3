#!/usr/bin/env python3
"""
Abuse Gateway - Operator Command Line Interface

Works directly against the configured state store and alert sink
(ABUSE_REDIS_URL, ABUSE_ALERT_LOG_PATH), so it is only useful with a shared
backend such as Redis.

Usage:
    abuse-guard list                   List banned/blocked identities
    abuse-guard inspect <identity>     Show derived state for one identity
    abuse-guard unban <identity>       Clear all keys and alerts for an identity
    abuse-guard reset --yes            Delete every gateway key in the store
    abuse-guard alerts [--limit N]     Show recent security alerts
"""

import argparse
import json
import logging
import sys

from abuse_gateway.access import AccessAdmin
from abuse_gateway.audit_log import build_alert_sink
from abuse_gateway.config import GatewayConfig
from abuse_gateway.errors import StateStoreError
from abuse_gateway.identity import normalize_identity
from abuse_gateway.store import build_state_store


def setup_logging(verbose: bool = False):
    """Configure logging for CLI usage."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S"
    )


def _admin() -> AccessAdmin:
    config = GatewayConfig.from_env()
    if config.store_backend == "memory":
        logging.getLogger("abuse_gateway").warning(
            "In-memory state store selected; the CLI cannot see a running gateway's state"
        )
    return AccessAdmin(build_state_store(config), build_alert_sink(config.alert_log_path))


def cmd_list(args):
    restricted = _admin().list_restricted()
    if args.json:
        print(json.dumps({"banned_ips": restricted}, indent=2))
        return 0
    if not restricted:
        print("No banned or blocked identities")
        return 0
    for identity in restricted:
        print(identity)
    return 0


def cmd_inspect(args):
    snap = _admin().inspect(normalize_identity(args.identity))
    print(json.dumps(snap.to_dict(), indent=2))
    return 0


def cmd_unban(args):
    identity = normalize_identity(args.identity)
    counts = _admin().unban(identity)
    print(f"Unbanned {identity}: {counts['keys_deleted']} keys, {counts['alerts_deleted']} alerts removed")
    return 0


def cmd_reset(args):
    if not args.yes:
        print("ERROR: reset deletes every gateway key; pass --yes to confirm", file=sys.stderr)
        return 2
    deleted = _admin().reset_all()
    print(f"State cleared: {deleted} keys deleted")
    return 0


def cmd_alerts(args):
    admin = _admin()
    alerts = admin.alert_sink.recent(args.limit) if admin.alert_sink is not None else []
    if args.json:
        print(json.dumps([a.to_dict() for a in alerts], indent=2))
        return 0
    print(f"\n{'='*60}")
    print(f"SECURITY ALERTS (last {len(alerts)})")
    print(f"{'='*60}")
    for a in alerts:
        print(f"{a.timestamp} | {a.severity:<8} | {a.category:<22} | {a.identity}")
    print(f"{'='*60}\n")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Abuse Gateway operator CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    list_parser = subparsers.add_parser("list", help="List banned/blocked identities")
    list_parser.add_argument("--json", action="store_true", help="Emit JSON")
    list_parser.set_defaults(func=cmd_list)

    inspect_parser = subparsers.add_parser("inspect", help="Show derived state for an identity")
    inspect_parser.add_argument("identity", help="Client identity (IP address)")
    inspect_parser.set_defaults(func=cmd_inspect)

    unban_parser = subparsers.add_parser("unban", help="Clear all restrictions for an identity")
    unban_parser.add_argument("identity", help="Client identity (IP address)")
    unban_parser.set_defaults(func=cmd_unban)

    reset_parser = subparsers.add_parser("reset", help="Delete every gateway key")
    reset_parser.add_argument("--yes", action="store_true", help="Confirm the reset")
    reset_parser.set_defaults(func=cmd_reset)

    alerts_parser = subparsers.add_parser("alerts", help="Show recent security alerts")
    alerts_parser.add_argument("--limit", type=int, default=10, help="Number of alerts")
    alerts_parser.add_argument("--json", action="store_true", help="Emit JSON")
    alerts_parser.set_defaults(func=cmd_alerts)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    setup_logging(args.verbose)
    try:
        return args.func(args)
    except StateStoreError as e:
        print(f"ERROR: state store unavailable: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
