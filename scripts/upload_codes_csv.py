#!/usr/bin/env python3
"""
CSV Code Upload Script

Appends codes from a CSV file to an existing listing:
- `code` column (required), `expirationDate` column (optional, per code)
- Blank rows are skipped
- Codes repeated in the file or already stored anywhere reject the whole file

Usage:
    python upload_codes_csv.py <listing-external-id> path/to/codes.csv --seller <seller-id>
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import List, Optional
from uuid import UUID

# Add parent directory to path to import modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from config import configure_logging
from domain.errors import DuplicateCodeError
from services.code_csv_import import CodeUploadResult, upload_codes_csv


def print_summary(result: CodeUploadResult) -> None:
    """Print upload summary statistics."""
    print()
    print("=" * 60)
    print("CODE UPLOAD SUMMARY")
    print("=" * 60)
    print(f"Total Rows:       {result.total_rows}")
    print(f"Added:            {result.added}")
    print(f"Skipped (blank):  {result.skipped}")
    print(f"Listing status:   {result.inventory.status.value}")
    print(f"Available codes:  {result.inventory.get_available_codes_count()}")
    print("=" * 60)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(description="Upload listing codes from a CSV file")
    parser.add_argument("listing", type=UUID, help="External id of the listing")
    parser.add_argument("csv_path", help="Path to the CSV file")
    parser.add_argument("--seller", required=True, help="Seller id that owns the listing")
    args = parser.parse_args(argv)

    configure_logging()
    try:
        result = upload_codes_csv(args.listing, args.csv_path, seller_id=args.seller)
    except FileNotFoundError as e:
        print(f"Error: {e}")
        return 1
    except (ValueError, PermissionError, DuplicateCodeError) as e:
        print(f"Upload rejected: {e}")
        return 1

    print_summary(result)
    return 0


if __name__ == "__main__":
    sys.exit(main())
