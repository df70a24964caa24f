#!/usr/bin/env python3
"""
Replication Tool for the fiscalize -> agefis PostgreSQL mirror

Runs the replication service or one of its operator routines:
- Real-time propagation with scheduled reconciliation
- A single reconciliation pass, optionally dry-run or with drift re-sync
- Reprocessing of the divergence ledger
- Inspection of the divergence ledger
- Export of Prometheus alert rules

Usage:
    ./scripts/sync.py run
    ./scripts/sync.py reconcile --entity demanda --dry-run
    ./scripts/sync.py reconcile --resync
    ./scripts/sync.py reprocess
    ./scripts/sync.py ledger
    ./scripts/sync.py alerts --output alerts.yml
"""

import sys
import os
import argparse
import json
import logging
from pathlib import Path

# Add the project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from pgmirror.errors import ReplicationError
from pgmirror.monitoring.alerts import AlertRuleGenerator
from pgmirror.replication.ledger import DivergenceLedger
from pgmirror.service import ReplicationService
from pgmirror.utils.config import SyncConfig
from pgmirror.utils.logging_config import configure_logging
from pgmirror.utils.vault_client import VaultClient

logger = logging.getLogger("pgmirror.cli")


def load_config() -> SyncConfig:
    """Read configuration, pulling connection strings from Vault when it is configured."""
    if os.getenv("VAULT_ADDR") and os.getenv("VAULT_TOKEN"):
        with VaultClient() as vault:
            return SyncConfig.from_env(vault=vault)
    return SyncConfig.from_env()


def cmd_run(config: SyncConfig, args) -> int:
    ReplicationService(config).run_forever()
    return 0


def cmd_reconcile(config: SyncConfig, args) -> int:
    with ReplicationService(config) as service:
        report = service.engine.run_pass(
            entity_types=args.entity,
            dry_run=args.dry_run,
            force_resync=args.resync
        )
    print(json.dumps(report.to_dict(), indent=2))
    return 1 if report.errors else 0


def cmd_reprocess(config: SyncConfig, args) -> int:
    with ReplicationService(config) as service:
        report = service.reprocessor.run(entity_type=args.entity)
    print(json.dumps(report.to_dict(), indent=2))
    return 0


def cmd_ledger(config: SyncConfig, args) -> int:
    ledger = DivergenceLedger(config.ledger_path)
    entries = [entry.to_dict() for entry in ledger.list(args.entity)]
    print(json.dumps({"count": len(entries), "divergences": entries}, indent=2, default=str, ensure_ascii=False))
    return 0


def cmd_alerts(config: SyncConfig, args) -> int:
    generator = AlertRuleGenerator()
    generator.export_to_yaml(args.output)
    print(json.dumps(generator.get_alert_summary(), indent=2))
    return 0


COMMANDS = {
    "run": cmd_run,
    "reconcile": cmd_reconcile,
    "reprocess": cmd_reprocess,
    "ledger": cmd_ledger,
    "alerts": cmd_alerts,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="PostgreSQL replication engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    subparsers.add_parser("run", help="Listen for changes and reconcile on schedule")

    reconcile_parser = subparsers.add_parser("reconcile", help="Run one reconciliation pass")
    reconcile_parser.add_argument("--entity", action="append", help="Entity type (repeatable)")
    reconcile_parser.add_argument("--dry-run", action="store_true", help="Report the diff without writing")
    reconcile_parser.add_argument("--resync", action="store_true", help="Re-apply the whole window")

    reprocess_parser = subparsers.add_parser("reprocess", help="Retry divergence ledger entries")
    reprocess_parser.add_argument("--entity", help="Entity type")

    ledger_parser = subparsers.add_parser("ledger", help="Print divergence ledger entries")
    ledger_parser.add_argument("--entity", help="Entity type")

    alerts_parser = subparsers.add_parser("alerts", help="Export Prometheus alert rules")
    alerts_parser.add_argument("--output", required=True, help="Output YAML file")

    return parser


def main(argv=None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    configure_logging(verbose=args.verbose)

    if not args.command:
        parser.print_help()
        return 1

    try:
        config = load_config()
        return COMMANDS[args.command](config, args)
    except (ReplicationError, KeyError, ValueError) as e:
        logger.error(f"Error: {e}", exc_info=args.verbose)
        return 1


if __name__ == "__main__":
    sys.exit(main())
