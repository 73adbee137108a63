#!/usr/bin/env python3
"""Delete signing keys that can no longer verify any live token.

A key is purged once its expiry is older than the access-token lifetime.

Usage:
    STATE_DIR=/var/lib/loginguard python scripts/purge_keys.py --limit 100
"""
from __future__ import annotations

import argparse
import os
import sys
from datetime import timedelta
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def purge_keys(state_dir: str, limit: int) -> int:
    from loginguard.config import Settings
    from loginguard.service.keys import RSAKeyProvider
    from loginguard.storage.memory import MemoryStore

    settings = Settings.from_env()
    store = MemoryStore(state_dir, key_encryption_secret=settings.key_encryption_secret)
    provider = RSAKeyProvider(
        store,
        key_bits=settings.signing_key_bits,
        rotation_days=settings.signing_key_rotation_days,
        token_ttl=timedelta(milliseconds=settings.access_token_ttl_ms),
    )
    return provider.purge_expired_keys(limit=limit)


def main():
    parser = argparse.ArgumentParser(description="Purge expired LoginGuard signing keys")
    parser.add_argument(
        "--state-dir",
        default=os.environ.get("STATE_DIR"),
        help="State directory (or set STATE_DIR env var)",
    )
    parser.add_argument("--limit", type=int, default=100, help="Maximum keys to delete in one run")
    args = parser.parse_args()

    if not args.state_dir:
        print("Error: --state-dir or STATE_DIR environment variable required")
        sys.exit(1)
    if args.limit <= 0:
        print("Error: --limit must be positive")
        sys.exit(1)

    try:
        purged = purge_keys(args.state_dir, args.limit)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(f"Purged {purged} signing key(s)")


if __name__ == "__main__":
    main()
