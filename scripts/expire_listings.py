#!/usr/bin/env python3
"""
Listing Expiration Sweep

Batch-repair job that recomputes the status of every listing:
- Listings whose own expiration date has passed become 'expired' and their
  active codes are flipped to 'expired'
- Every other listing gets the status derived from its codes

Statuses are computed here and saved with the status-recompute opt-out.
Listings changed concurrently are reported and left for the next run.

Usage:
    python expire_listings.py
    python expire_listings.py --dry-run
"""

from __future__ import annotations

import argparse
import logging
import sys
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

# Add parent directory to path to import modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from config import configure_logging
from domain.code_record import CodeStatus
from domain.errors import ConcurrentModificationError
from domain.time import utc_now
from repositories import listing_repository

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    """Results from one sweep."""
    checked: int = 0
    changed: int = 0
    codes_expired: int = 0
    conflicts: int = 0
    transitions: Counter = field(default_factory=Counter)


def run_expiration_sweep(now: Optional[datetime] = None, dry_run: bool = False) -> SweepResult:
    """Recompute every listing's status as of `now` and persist the changes."""

    as_of = now or utc_now()
    result = SweepResult()

    for listing_id in listing_repository.list_listing_ids():
        inventory = listing_repository.load_listing_inventory(listing_id)
        if inventory is None:
            continue
        result.checked += 1

        updated = inventory.recompute_status(as_of)
        newly_expired = sum(
            1
            for before, after in zip(inventory.codes, updated.codes)
            if before.sold_status is not after.sold_status and after.sold_status is CodeStatus.EXPIRED
        )
        if updated.status is inventory.status and newly_expired == 0:
            continue

        if not dry_run:
            try:
                listing_repository.save_listing(updated, recompute_status=False, as_of=as_of)
            except ConcurrentModificationError:
                result.conflicts += 1
                logger.warning(
                    f"Listing {listing_id} changed during sweep; skipped",
                    extra={"listing_id": str(listing_id)},
                )
                continue

        result.changed += 1
        result.codes_expired += newly_expired
        result.transitions[f"{inventory.status.value} -> {updated.status.value}"] += 1

    logger.info(
        f"Expiration sweep checked {result.checked} listing(s), changed {result.changed}",
        extra={
            "checked": result.checked,
            "changed": result.changed,
            "codes_expired": result.codes_expired,
            "conflicts": result.conflicts,
            "dry_run": dry_run,
        },
    )
    return result


def print_summary(result: SweepResult, dry_run: bool) -> None:
    """Print sweep summary statistics."""
    print()
    print("=" * 60)
    print("EXPIRATION SWEEP SUMMARY" + (" (DRY RUN)" if dry_run else ""))
    print("=" * 60)
    print(f"Listings checked:  {result.checked}")
    print(f"Listings changed:  {result.changed}")
    print(f"Codes expired:     {result.codes_expired}")
    print(f"Conflicts:         {result.conflicts}")
    if result.transitions:
        print()
        print("Status changes:")
        for transition, count in sorted(result.transitions.items()):
            print(f"  {transition}: {count}")
    print("=" * 60)


def main() -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(description="Recompute listing statuses and expire outdated listings")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Compute changes without writing them"
    )
    args = parser.parse_args()

    configure_logging()
    try:
        result = run_expiration_sweep(dry_run=args.dry_run)
        print_summary(result, args.dry_run)
        return 1 if result.conflicts else 0
    except KeyboardInterrupt:
        print("\n\nSweep interrupted by user")
        return 130


if __name__ == "__main__":
    sys.exit(main())
