#!/usr/bin/env python3
"""
Code Fingerprint Backfill

Legacy codes were stored without a fingerprint, which hides them from duplicate
detection. This script decrypts them in batches and writes the fingerprint.

Codes that cannot be decrypted are reported (never skipped silently) and make
the script exit non-zero.

Usage:
    python backfill_code_fingerprints.py
    python backfill_code_fingerprints.py --batch-size 200 --dry-run
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Set
from uuid import UUID

# Add parent directory to path to import modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from config import configure_logging
from domain.errors import DecryptionError
from repositories import code_repository
from services.code_cipher import CodeCipher
from services.code_hasher import fingerprint_code

logger = logging.getLogger(__name__)


@dataclass
class BackfillResult:
    """Results from a backfill run."""
    scanned: int = 0
    updated: int = 0
    failures: List[DecryptionError] = field(default_factory=list)


def backfill_fingerprints(
    cipher: CodeCipher,
    batch_size: int = 500,
    dry_run: bool = False,
) -> BackfillResult:
    """Fingerprint every code that has none yet."""

    result = BackfillResult()
    # Codes that failed (or were only inspected in a dry run) keep a null
    # fingerprint and would be listed again by the next batch.
    seen: Set[UUID] = set()

    while True:
        batch = [
            code for code in code_repository.list_codes_missing_fingerprint(limit=batch_size + len(seen))
            if code.code_id not in seen
        ]
        if not batch:
            break

        for code in batch:
            seen.add(code.code_id)
            result.scanned += 1
            try:
                plaintext = cipher.decrypt(code.ciphertext, code.nonce, code.key_id, code_id=code.code_id)
            except DecryptionError as e:
                result.failures.append(e)
                logger.error(
                    f"Cannot fingerprint code {code.code_id}: {e.reason}",
                    extra={"code_id": str(code.code_id), "key_id": code.key_id},
                )
                continue

            if dry_run:
                continue
            if code_repository.set_code_fingerprint(code.code_id, fingerprint_code(plaintext)):
                result.updated += 1

    return result


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(description="Backfill fingerprints for legacy listing codes")
    parser.add_argument(
        "--batch-size",
        type=int,
        default=500,
        help="Number of codes to process per batch (default: 500)"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Decrypt and report without writing fingerprints"
    )
    args = parser.parse_args(argv)

    configure_logging()
    result = backfill_fingerprints(CodeCipher.from_settings(), args.batch_size, args.dry_run)

    print("=" * 50)
    print("FINGERPRINT BACKFILL" + (" (DRY RUN)" if args.dry_run else ""))
    print("=" * 50)
    print(f"Codes scanned:         {result.scanned}")
    print(f"Fingerprints written:  {result.updated}")
    print(f"Decryption failures:   {len(result.failures)}")
    for failure in result.failures[:10]:
        print(f"  - {failure}")
    if len(result.failures) > 10:
        print(f"  ... and {len(result.failures) - 10} more")
    print("=" * 50)

    return 1 if result.failures else 0


if __name__ == "__main__":
    sys.exit(main())
