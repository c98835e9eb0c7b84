"""
Duplicate code detection.

Codes are stored ciphertext-only, so duplicates are found through fingerprints
(one-way hashes indexed at write time) instead of decrypting other sellers'
inventory.

Check order:
1. Within-batch duplicates: reported for every repeated occurrence and returned
   before storage is queried.
2. Cross-listing duplicates: fingerprints are queried in chunks against every
   listing except the one being edited.
3. Self duplicates: the edited listing's own codes, reported with
   in_same_listing=True.

Matches carry the other listing's public identity (external id, seller, title)
so callers can report them without exposing private listing data.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Sequence
from uuid import UUID

import config
from domain.errors import DuplicateCodeError
from repositories import code_repository, listing_repository
from repositories.code_repository import FingerprintMatch
from services.code_hasher import fingerprint_code, mask_code

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class DuplicateMatch:
    """One offending submitted code (by its index in the submitted batch)."""

    index: int
    masked_code: str
    same_batch: bool = False
    first_index: Optional[int] = None
    in_same_listing: bool = False
    listing_external_id: Optional[UUID] = None
    seller_id: Optional[str] = None
    listing_title: Optional[str] = None


@dataclass(frozen=True, slots=True)
class DuplicateCheckResult:
    ok: bool
    duplicates: List[DuplicateMatch]


def _chunks(values: Sequence[str], size: int) -> Iterator[Sequence[str]]:
    for start in range(0, len(values), size):
        yield values[start : start + size]


def _find_same_batch(plaintexts: Sequence[str], fingerprints: Sequence[str]) -> List[DuplicateMatch]:
    first_seen: Dict[str, int] = {}
    duplicates: List[DuplicateMatch] = []
    for idx, fingerprint in enumerate(fingerprints):
        if fingerprint in first_seen:
            duplicates.append(
                DuplicateMatch(
                    index=idx,
                    masked_code=mask_code(plaintexts[idx]),
                    same_batch=True,
                    first_index=first_seen[fingerprint],
                )
            )
        else:
            first_seen[fingerprint] = idx
    return duplicates


def check_duplicates(
    plaintexts: Sequence[str],
    exclude_listing_id: Optional[UUID] = None,
    *,
    chunk_size: Optional[int] = None,
) -> DuplicateCheckResult:
    """
    Check submitted plaintext codes against each other and against stored codes.

    Args:
        plaintexts: Codes as submitted by the seller
        exclude_listing_id: Internal id of the listing being edited (its codes are
            reported as self duplicates instead of cross-listing duplicates)
        chunk_size: Fingerprints per storage query (default DUPLICATE_CHECK_CHUNK_SIZE)

    Returns:
        DuplicateCheckResult with every match, ordered by submitted index

    Raises:
        ValueError: If no codes were provided
    """

    if not plaintexts:
        raise ValueError("No codes provided for duplicate check")

    size = chunk_size or config.DUPLICATE_CHECK_CHUNK_SIZE
    fingerprints = [fingerprint_code(code) for code in plaintexts]

    same_batch = _find_same_batch(plaintexts, fingerprints)
    if same_batch:
        logger.warning(
            f"{len(same_batch)} duplicate code(s) within submitted batch",
            extra={"duplicate_count": len(same_batch), "check": "same_batch"},
        )
        return DuplicateCheckResult(ok=False, duplicates=same_batch)

    cross_listing: List[FingerprintMatch] = []
    self_matches: List[FingerprintMatch] = []
    for chunk in _chunks(fingerprints, size):
        cross_listing.extend(
            code_repository.find_codes_by_fingerprints(chunk, exclude_listing_id=exclude_listing_id)
        )
        if exclude_listing_id is not None:
            self_matches.extend(
                code_repository.find_codes_by_fingerprints(chunk, only_listing_id=exclude_listing_id)
            )

    if not cross_listing and not self_matches:
        return DuplicateCheckResult(ok=True, duplicates=[])

    index_by_fingerprint = {fingerprint: idx for idx, fingerprint in enumerate(fingerprints)}
    summaries = listing_repository.get_listing_summaries(
        sorted({m.listing_id for m in cross_listing + self_matches}, key=str)
    )

    duplicates: List[DuplicateMatch] = []
    for match, in_same_listing in [(m, False) for m in cross_listing] + [(m, True) for m in self_matches]:
        idx = index_by_fingerprint[match.fingerprint]
        summary = summaries.get(match.listing_id)
        duplicates.append(
            DuplicateMatch(
                index=idx,
                masked_code=mask_code(plaintexts[idx]),
                in_same_listing=in_same_listing,
                listing_external_id=summary.external_id if summary else None,
                seller_id=summary.seller_id if summary else None,
                listing_title=summary.title if summary else None,
            )
        )
    duplicates.sort(key=lambda d: (d.index, d.in_same_listing))

    logger.warning(
        f"{len(duplicates)} duplicate code(s) already stored",
        extra={
            "duplicate_count": len(duplicates),
            "self_duplicate_count": len(self_matches),
            "exclude_listing_id": str(exclude_listing_id) if exclude_listing_id else None,
        },
    )
    return DuplicateCheckResult(ok=False, duplicates=duplicates)


def assert_no_duplicates(
    plaintexts: Sequence[str],
    exclude_listing_id: Optional[UUID] = None,
) -> None:
    """Raise DuplicateCodeError naming every offending code."""

    result = check_duplicates(plaintexts, exclude_listing_id)
    if not result.ok:
        raise DuplicateCodeError(result.duplicates)


__all__ = [
    "DuplicateCheckResult",
    "DuplicateMatch",
    "assert_no_duplicates",
    "check_duplicates",
]
