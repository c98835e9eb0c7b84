"""
Check inventory status - how many codes are active, sold, expired, suspended or draft.

Usage:
    python check_inventory_status.py
    python check_inventory_status.py --listing <external-id>
"""

import argparse
import sys
from pathlib import Path
from typing import Dict, Optional
from uuid import UUID

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from domain.code_record import CodeStatus
from repositories import code_repository, listing_repository


def check_inventory_status(listing_external_id: Optional[UUID] = None) -> Dict[CodeStatus, int]:
    """Print and return code counts by status (all listings, or one)."""

    listing_id = None
    title = "ALL LISTINGS"
    if listing_external_id is not None:
        listing = listing_repository.get_listing_by_external_id(listing_external_id)
        if listing is None:
            raise ValueError(f"Listing {listing_external_id} not found")
        listing_id = listing.listing_id
        title = f"{listing.title} ({listing.status.value})"

    counts = code_repository.count_codes_by_status(listing_id)
    total_count = sum(counts.values())
    sold_count = counts.get(CodeStatus.SOLD, 0)

    print("=" * 50)
    print(f"INVENTORY STATUS - {title}")
    print("=" * 50)
    print(f"Total codes:               {total_count}")
    for status in CodeStatus:
        print(f"{status.value.capitalize() + ':':<27}{counts.get(status, 0)}")
    print(f"Percentage sold:           {(sold_count / total_count * 100):.1f}%" if total_count > 0 else "N/A")
    print("=" * 50)

    return counts


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Count listing codes by status")
    parser.add_argument("--listing", type=UUID, default=None, help="External id of one listing")
    args = parser.parse_args()
    check_inventory_status(args.listing)
