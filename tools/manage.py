#!/usr/bin/env python3
"""
Conversation Ledger Management CLI

Commands for managing the ledger:
- init-schema: Create the ledger tables in PostgreSQL
- verify-chain: Verify one conversation's chain, or every chain
- export-chain: Export one conversation's chain, or the whole ledger, to JSON
- health-check: Check store connectivity and chain integrity

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage init-schema
    python -m tools.manage verify-chain --conversation 42
    python -m tools.manage export-chain --conversation 42 -o conv42.json
"""

import argparse
import json
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))


def _print_verdict(result) -> None:
    if result.valid:
        print(f"  [OK] conversation {result.conversation_id}: {result.entry_count} entries")
    else:
        where = "store unreadable" if result.broken_at_index is None else \
            f"broken at index {result.broken_at_index} (id {result.broken_at_id})"
        print(f"  [FAIL] conversation {result.conversation_id}: {where}")
        print(f"         {result.reason.value}: {result.detail}")


def cmd_init_schema(args):
    """Apply schema.sql to the configured PostgreSQL database."""
    from chatledger.db.config import (
        SCHEMA_PATH, LedgerStoreDriver, get_store_driver, load_database_config,
    )

    config = load_database_config()
    if get_store_driver() == LedgerStoreDriver.MEMORY or config is None:
        print("Error: no PostgreSQL database configured (set DATABASE_URL or DATABASE_HOST)")
        return 1

    import psycopg2

    print(f"Applying schema to {config.describe()}")

    conn = psycopg2.connect(config.to_dsn())
    try:
        with conn:
            with conn.cursor() as cursor:
                cursor.execute(SCHEMA_PATH.read_text())
    finally:
        conn.close()

    print("[OK] Schema applied")
    return 0


def cmd_verify_chain(args):
    """Verify the integrity of one or all conversation chains."""
    from chatledger.shared_ledger import get_ledger

    ledger = get_ledger()

    if args.conversation is not None:
        print(f"Verifying conversation {args.conversation}...")
        results = {args.conversation: ledger.validate(args.conversation)}
    else:
        print("Verifying every conversation...")
        results = ledger.validate_all()

    if not results:
        print("No conversations in the ledger.")
        return 0

    for result in results.values():
        _print_verdict(result)

    failed = [r for r in results.values() if not r.valid]
    if failed:
        print(f"[FAIL] {len(failed)} of {len(results)} chains failed verification!")
        return 1

    print(f"[OK] {len(results)} chains verified")
    return 0


def cmd_export_chain(args):
    """Export entries to a JSON file."""
    from chatledger.shared_ledger import get_ledger

    ledger = get_ledger()
    entries = ledger.get_chain(args.conversation)

    print(f"Found {len(entries)} entries")

    export_data = [entry.model_dump(mode="json") for entry in entries]

    output_file = args.output or "ledger_export.json"
    with open(output_file, "w") as f:
        json.dump(export_data, f, indent=2)

    print(f"[OK] Exported {len(entries)} entries to {output_file}")
    return 0


def cmd_health_check(args):
    """Run comprehensive health checks."""
    from chatledger.observability import check_health
    from chatledger.shared_ledger import get_ledger

    print("=== Conversation Ledger Health Check ===\n")

    ledger = get_ledger()
    status = check_health(ledger=ledger, store=ledger.store, verify_chains=True)

    for name, check in status.checks.items():
        details = ", ".join(f"{k}={v}" for k, v in check.items() if k != "status")
        print(f"  {name}: {check['status']}" + (f" ({details})" if details else ""))

    print("\n=== Health Check Complete ===")
    return 0 if status.healthy else 1


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Conversation Ledger Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # init-schema
    subparsers.add_parser(
        "init-schema",
        help="Create the ledger tables in PostgreSQL"
    )

    # verify-chain
    p_verify = subparsers.add_parser(
        "verify-chain",
        help="Verify ledger chain integrity"
    )
    p_verify.add_argument("--conversation", "-c", type=int, help="Conversation id (default: all)")

    # export-chain
    p_export = subparsers.add_parser(
        "export-chain",
        help="Export entries to JSON"
    )
    p_export.add_argument("--conversation", "-c", type=int, help="Conversation id (default: all)")
    p_export.add_argument("--output", "-o", help="Output file (default: ledger_export.json)")

    # health-check
    subparsers.add_parser(
        "health-check",
        help="Run comprehensive health checks"
    )

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "init-schema": cmd_init_schema,
        "verify-chain": cmd_verify_chain,
        "export-chain": cmd_export_chain,
        "health-check": cmd_health_check,
    }

    return commands[args.command](args) or 0


if __name__ == "__main__":
    sys.exit(main())
