#!/usr/bin/env python3
"""
Staged Order Sweep

Deletes staged order drafts older than the staging TTL (30 minutes). Expired
drafts are already invisible to every reconciliation path; this only
reclaims the rows. Run it periodically (cron, scheduled job).

Usage:
    python sweep_staged_orders.py
    python sweep_staged_orders.py --dry-run
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from api.dependencies import get_staging_store

logger = logging.getLogger("sweep_staged_orders")


def main() -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        description="Delete staged order drafts older than the staging TTL",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only print the cutoff, delete nothing",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        store = get_staging_store()
        cutoff = store.now() - store.ttl
        print(f"Staging TTL: {store.ttl}")
        print(f"Cutoff:      {cutoff.isoformat()}")

        if args.dry_run:
            print("Dry run: nothing deleted")
            return 0

        purged = store.sweep_expired()
        logger.info("Staged draft sweep finished", extra={"purged": purged})
        print(f"✓ Deleted {purged} expired staged draft(s)")
        return 0

    except KeyboardInterrupt:
        print("\n\nSweep interrupted by user")
        return 130

    except Exception as e:
        print(f"\nERROR: {e}", file=sys.stderr)
        import traceback
        traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
