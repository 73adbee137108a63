#!/usr/bin/env python3
"""Seed a login credential into the persisted memory store.

Usage:
    STATE_DIR=/var/lib/loginguard python scripts/create_credential.py --account-id 42 --username +14155550100

Environment Variables:
    STATE_DIR: Directory holding the persisted store state (required)
    KEY_ENCRYPTION_SECRET: Secret protecting signing keys in the same state file
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def create_credential(account_id: int, username: str, state_dir: str, dry_run: bool = False) -> dict:
    """Create the credential unless it already exists.

    Returns:
        dict with account_id, username and status ('created', 'exists' or 'dry_run')
    """
    from loginguard.config import Settings
    from loginguard.service.credentials import normalize_identifier
    from loginguard.storage.memory import MemoryStore

    settings = Settings.from_env()
    store = MemoryStore(state_dir, key_encryption_secret=settings.key_encryption_secret)
    canonical = normalize_identifier(username)

    existing = store.find_credential_by_username(canonical)
    if existing:
        return {"account_id": existing.account_id, "username": canonical, "status": "exists"}
    if dry_run:
        return {"account_id": account_id, "username": canonical, "status": "dry_run"}

    store.create_credential(account_id, canonical)
    return {"account_id": account_id, "username": canonical, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Seed a LoginGuard credential",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--account-id", type=int, required=True, help="Account id the credential maps to")
    parser.add_argument("--username", required=True, help="Phone number or e-mail address")
    parser.add_argument(
        "--state-dir",
        default=os.environ.get("STATE_DIR"),
        help="State directory (or set STATE_DIR env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.state_dir:
        print("Error: --state-dir or STATE_DIR environment variable required")
        sys.exit(1)

    try:
        result = create_credential(args.account_id, args.username, args.state_dir, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print(f"Created credential {result['username']} for account {result['account_id']}")
    elif result["status"] == "exists":
        print(f"Credential {result['username']} already exists (account {result['account_id']})")
    else:
        print(f"[DRY RUN] Would create credential {result['username']} for account {result['account_id']}")


if __name__ == "__main__":
    main()
