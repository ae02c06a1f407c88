#!/usr/bin/env python3
"""
Conversation Ledger Export Verifier

A standalone tool to verify ledger exports independently.
No server connection and no chatledger install required.

Usage:
    python verify.py ledger_export.json
    python verify.py ledger_export.json --verbose
    python verify.py ledger_export.json --json

The export is a JSON list of entries, as written by
`python -m tools.manage export-chain`. Entries from several conversations
may be mixed; each conversation's chain is verified separately.

Exit codes:
    0 - VERIFIED: All checks passed
    1 - TAMPERED: Hash or link mismatch
    3 - INVALID_FORMAT: Export structure invalid
"""

import argparse
import hashlib
import json
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any


# ============================================================
# Result Types
# ============================================================

class VerificationResult(Enum):
    VERIFIED = "VERIFIED"
    TAMPERED = "TAMPERED"
    INVALID_FORMAT = "INVALID_FORMAT"


@dataclass
class VerificationReport:
    result: VerificationResult
    entry_count: int
    conversations: list[int]
    checks_passed: list[str] = field(default_factory=list)
    checks_failed: list[str] = field(default_factory=list)


# ============================================================
# Canonical Serialization (matching chatledger/core/hasher.py)
# ============================================================

SERIALIZATION_VERSION = 1
GENESIS_PREVIOUS_HASH = "0"
FIELD_TYPES = {
    "id": int,
    "conversation_id": int,
    "timestamp": str,
    "sender": str,
    "message": str,
    "previous_hash": str,
    "hash": str,
}


def canonical_timestamp(value: str) -> str:
    """Re-render an exported timestamp as YYYY-MM-DDTHH:MM:SS.ffffffZ."""
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        raise ValueError(f"Timestamp is timezone-naive: {value}")
    utc_dt = dt.astimezone(timezone.utc)
    return utc_dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc_dt.microsecond:06d}Z"


def compute_entry_hash(entry: dict[str, Any]) -> str:
    """
    Compute an entry's hash.

    MUST match chatledger/core/hasher.py exactly for verification to work.
    """
    canonical = json.dumps(
        {
            "__canon_v": SERIALIZATION_VERSION,
            "entry": [
                entry["id"],
                canonical_timestamp(entry["timestamp"]),
                entry["sender"],
                entry["message"],
                entry["previous_hash"],
                entry["conversation_id"],
            ],
        },
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=True,
        allow_nan=False,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


# ============================================================
# Verifier
# ============================================================

class ExportVerifier:
    """Verifies every conversation chain contained in an export."""

    def __init__(self, entries: Any, verbose: bool = False):
        self.entries = entries
        self.verbose = verbose
        self.passed: list[str] = []
        self.failed: list[str] = []

    def log(self, msg: str):
        if self.verbose:
            print(f"  {msg}")

    def verify(self) -> VerificationReport:
        if not self._check_structure():
            return self._report(VerificationResult.INVALID_FORMAT, [])

        chains: dict[int, list[dict]] = {}
        for entry in self.entries:
            chains.setdefault(entry["conversation_id"], []).append(entry)

        all_valid = True
        for conversation_id in sorted(chains):
            chain = sorted(chains[conversation_id], key=lambda e: e["id"])
            if self._verify_chain(conversation_id, chain):
                self.passed.append(f"conversation {conversation_id}: {len(chain)} entries")
            else:
                all_valid = False

        result = VerificationResult.VERIFIED if all_valid else VerificationResult.TAMPERED
        return self._report(result, sorted(chains))

    def _check_structure(self) -> bool:
        if not isinstance(self.entries, list):
            self.failed.append("Export must be a JSON list of entries")
            return False
        for i, entry in enumerate(self.entries):
            if not isinstance(entry, dict):
                self.failed.append(f"Item {i} is not an object")
                return False
            missing = [name for name in FIELD_TYPES if name not in entry]
            if missing:
                self.failed.append(f"Item {i} missing fields: {', '.join(missing)}")
                return False
            for name, expected in FIELD_TYPES.items():
                value = entry[name]
                if isinstance(value, bool) or not isinstance(value, expected):
                    self.failed.append(
                        f"Item {i} field {name} must be {expected.__name__}, "
                        f"got {type(value).__name__}"
                    )
                    return False
        return True

    def _verify_chain(self, conversation_id: int, chain: list[dict]) -> bool:
        self.log(f"conversation {conversation_id}: {len(chain)} entries")

        for index, entry in enumerate(chain):
            label = f"conversation {conversation_id} index {index}"

            if entry["id"] != index:
                self.failed.append(f"{label}: expected id {index}, got {entry['id']}")
                return False

            if index == 0:
                if entry["previous_hash"] != GENESIS_PREVIOUS_HASH:
                    self.failed.append(f"{label}: genesis previous_hash is not '0'")
                    return False
            elif entry["previous_hash"] != chain[index - 1]["hash"]:
                self.failed.append(f"{label}: previous_hash does not match entry {index - 1}")
                return False

            try:
                computed = compute_entry_hash(entry)
            except (TypeError, ValueError) as e:
                self.failed.append(f"{label}: cannot recompute hash ({e})")
                return False
            if computed != entry["hash"]:
                self.failed.append(f"{label}: hash mismatch")
                return False

            self.log(f"  [{index}] {entry['hash'][:16]}... ok")

        return True

    def _report(self, result: VerificationResult, conversations: list[int]) -> VerificationReport:
        return VerificationReport(
            result=result,
            entry_count=len(self.entries) if isinstance(self.entries, list) else 0,
            conversations=conversations,
            checks_passed=self.passed,
            checks_failed=self.failed,
        )


def print_report(report: VerificationReport, json_output: bool = False):
    if json_output:
        output = {
            "result": report.result.value,
            "entry_count": report.entry_count,
            "conversations": report.conversations,
            "checks_passed": report.checks_passed,
            "checks_failed": report.checks_failed,
        }
        print(json.dumps(output, indent=2))
        return

    print("\n" + "=" * 60)
    if report.result == VerificationResult.VERIFIED:
        print("  [VERIFIED] - All checks passed")
    elif report.result == VerificationResult.TAMPERED:
        print("  [TAMPERED] - Hash or link mismatch detected")
    else:
        print("  [INVALID_FORMAT] - Export structure invalid")
    print("=" * 60)

    print(f"\nEntries:       {report.entry_count}")
    print(f"Conversations: {len(report.conversations)}")

    if report.checks_passed:
        print("\nPassed:")
        for check in report.checks_passed:
            print(f"  + {check}")

    if report.checks_failed:
        print("\nFailed:")
        for check in report.checks_failed:
            print(f"  - {check}")

    print()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Verify a conversation ledger export",
        epilog="Exit codes: 0=VERIFIED, 1=TAMPERED, 3=INVALID_FORMAT"
    )
    parser.add_argument("export", type=str, help="Path to the export JSON file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show per-entry progress")
    parser.add_argument("--json", action="store_true", help="Output result as JSON")

    args = parser.parse_args(argv)

    export_path = Path(args.export)
    if not export_path.exists():
        print(f"ERROR: File not found: {export_path}")
        return 3

    try:
        with open(export_path, "r", encoding="utf-8") as f:
            entries = json.load(f)
    except json.JSONDecodeError as e:
        print(f"ERROR: Invalid JSON: {e}")
        return 3

    report = ExportVerifier(entries, verbose=args.verbose).verify()
    print_report(report, json_output=args.json)

    exit_codes = {
        VerificationResult.VERIFIED: 0,
        VerificationResult.TAMPERED: 1,
        VerificationResult.INVALID_FORMAT: 3,
    }
    return exit_codes[report.result]


if __name__ == "__main__":
    sys.exit(main())
