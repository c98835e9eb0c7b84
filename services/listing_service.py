"""
Listing service.

Creates listings and appends codes while keeping the stored inventory consistent:
- Plaintext codes are validated (seller patterns) strictly before encryption
- Duplicates are rejected before anything is written
- Listing saves retry on optimistic-lock conflicts from a fresh read
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional, Sequence, Tuple
from uuid import UUID, uuid4

import config
from domain.code_record import CodeStatus
from domain.errors import ConcurrentModificationError
from domain.expiration_group import ExpirationGroupSummary
from domain.listing import Listing, ListingInventory, ListingStatus
from domain.time import utc_now
from repositories import code_repository, listing_repository
from services.code_cipher import CodeCipher
from services.code_hasher import fingerprint_code, normalize_code
from services.duplicate_code_service import assert_no_duplicates

logger = logging.getLogger(__name__)

# Raises ValueError for codes that do not match the seller's format.
PatternValidator = Callable[[Sequence[str]], None]


def regex_pattern_validator(patterns: Sequence[str], *, platform: str = "platform") -> PatternValidator:
    """
    Build a validator accepting codes that fully match at least one regex.

    Raises ValueError naming the (0-based) indexes of non-matching codes.
    """

    compiled = [re.compile(pattern) for pattern in patterns]

    def validate(codes: Sequence[str]) -> None:
        if not compiled:
            return
        invalid = [
            idx for idx, code in enumerate(codes)
            if not any(p.fullmatch(code) for p in compiled)
        ]
        if invalid:
            raise ValueError(
                f"{len(invalid)} code(s) do not match the {platform} key format "
                f"(indexes: {', '.join(str(i) for i in invalid[:20])})"
            )

    return validate


def _prepare_codes(codes: Sequence[str], pattern_validator: Optional[PatternValidator]) -> List[str]:
    prepared = [normalize_code(code) for code in codes]
    if not prepared:
        raise ValueError("At least one code is required")
    if any(not code for code in prepared):
        raise ValueError("Codes cannot be empty")
    if pattern_validator is not None:
        pattern_validator(prepared)
    return prepared


def create_listing(
    *,
    seller_id: str,
    title: str,
    price: Decimal,
    platform: str,
    region: str,
    codes: Sequence[str],
    category_id: Optional[str] = None,
    expiration_date: Optional[datetime] = None,
    code_expiration_date: Optional[datetime] = None,
    seller_notes: Optional[str] = None,
    discounted_price: Optional[Decimal] = None,
    draft: bool = False,
    pattern_validator: Optional[PatternValidator] = None,
    cipher: Optional[CodeCipher] = None,
    now: Optional[datetime] = None,
) -> ListingInventory:
    """
    Create a listing with its initial codes.

    Process:
    1. Validate plaintext codes against seller patterns
    2. Reject duplicates (within the batch and against stored codes)
    3. Encrypt, fingerprint and persist

    A draft listing stays draft until activate_listing() is called.

    Raises:
        ValueError: Invalid codes or listing fields
        DuplicateCodeError: Any code already exists
    """

    created_at = now or utc_now()
    prepared = _prepare_codes(codes, pattern_validator)
    assert_no_duplicates(prepared)

    cipher = cipher or CodeCipher.from_settings()
    listing = Listing(
        listing_id=uuid4(),
        external_id=uuid4(),
        seller_id=seller_id,
        title=title,
        price=price,
        platform=platform,
        region=region,
        created_at=created_at,
        category_id=category_id,
        expiration_date=expiration_date,
        status=ListingStatus.DRAFT if draft else ListingStatus.ACTIVE,
        updated_at=created_at,
        seller_notes=seller_notes,
        discounted_price=discounted_price,
    )
    inventory = ListingInventory(listing=listing).add_codes(
        prepared,
        encryptor=cipher,
        fingerprint=fingerprint_code,
        expiration_date=code_expiration_date,
    )
    inventory = inventory.recompute_status(created_at)

    listing_repository.insert_listing(inventory)
    logger.info(
        f"Created listing {listing.external_id} with {len(prepared)} code(s)",
        extra={
            "listing_id": str(listing.listing_id),
            "external_id": str(listing.external_id),
            "seller_id": seller_id,
            "status": inventory.status.value,
        },
    )
    return inventory


def get_listing_inventory(external_id: UUID) -> ListingInventory:
    """Load a listing aggregate by external id. Raises ValueError if it does not exist."""

    listing = listing_repository.get_listing_by_external_id(external_id)
    if listing is None:
        raise ValueError(f"Listing {external_id} not found")
    inventory = listing_repository.load_listing_inventory(listing.listing_id)
    if inventory is None:
        raise ValueError(f"Listing {external_id} not found")
    return inventory


def _require_owner(inventory: ListingInventory, seller_id: str) -> None:
    if inventory.listing.seller_id != seller_id:
        raise PermissionError(f"Listing {inventory.listing.external_id} does not belong to seller {seller_id}")


def save_with_retry(
    listing_id: UUID,
    mutate: Callable[[ListingInventory], ListingInventory],
    *,
    as_of: Optional[datetime] = None,
    max_attempts: Optional[int] = None,
) -> ListingInventory:
    """
    Load, mutate and save a listing, retrying from a fresh read on version conflicts.

    Raises:
        ConcurrentModificationError: Still conflicting after LISTING_SAVE_MAX_ATTEMPTS
        ValueError: Listing not found
    """

    attempts_allowed = max_attempts or config.LISTING_SAVE_MAX_ATTEMPTS
    attempt = 1
    while True:
        inventory = listing_repository.load_listing_inventory(listing_id)
        if inventory is None:
            raise ValueError(f"Listing {listing_id} not found")
        try:
            return listing_repository.save_listing(mutate(inventory), as_of=as_of)
        except ConcurrentModificationError:
            if attempt >= attempts_allowed:
                raise
            logger.warning(
                f"Listing {listing_id} changed while saving; retrying",
                extra={"listing_id": str(listing_id), "attempt": attempt},
            )
            attempt += 1


def refresh_listing_status(listing_id: UUID, *, as_of: Optional[datetime] = None) -> ListingInventory:
    """Recompute and persist a listing's status from its stored codes."""

    return save_with_retry(listing_id, lambda inventory: inventory, as_of=as_of)


def add_codes_to_listing(
    external_id: UUID,
    codes: Sequence[str],
    *,
    seller_id: str,
    code_expiration_date: Optional[datetime] = None,
    pattern_validator: Optional[PatternValidator] = None,
    cipher: Optional[CodeCipher] = None,
    now: Optional[datetime] = None,
) -> ListingInventory:
    """
    Append codes to an existing listing.

    Duplicates are checked against other listings and against this listing's own
    codes (reported as self duplicates).

    Raises:
        PermissionError: Listing belongs to another seller
        DuplicateCodeError: Any code already exists
    """

    return add_dated_codes_to_listing(
        external_id,
        [(code, code_expiration_date) for code in codes],
        seller_id=seller_id,
        pattern_validator=pattern_validator,
        cipher=cipher,
        now=now,
    )


def add_dated_codes_to_listing(
    external_id: UUID,
    entries: Sequence[Tuple[str, Optional[datetime]]],
    *,
    seller_id: str,
    pattern_validator: Optional[PatternValidator] = None,
    cipher: Optional[CodeCipher] = None,
    now: Optional[datetime] = None,
) -> ListingInventory:
    """
    Append (code, expiration date) pairs to an existing listing, in order.

    The whole batch is validated and duplicate-checked before anything is
    encrypted or written.
    """

    added_at = now or utc_now()
    inventory = get_listing_inventory(external_id)
    _require_owner(inventory, seller_id)

    prepared = _prepare_codes([code for code, _ in entries], pattern_validator)
    assert_no_duplicates(prepared, exclude_listing_id=inventory.listing_id)

    cipher = cipher or CodeCipher.from_settings()
    updated = inventory
    for code, (_, expiration_date) in zip(prepared, entries):
        updated = updated.add_codes(
            [code],
            encryptor=cipher,
            fingerprint=fingerprint_code,
            expiration_date=expiration_date,
        )
    new_codes = updated.codes[len(inventory.codes):]
    code_repository.insert_codes(
        inventory.listing_id,
        inventory.listing.seller_id,
        new_codes,
        start_position=len(inventory.codes),
        created_at=added_at,
    )

    saved = refresh_listing_status(inventory.listing_id, as_of=added_at)
    logger.info(
        f"Added {len(new_codes)} code(s) to listing {external_id}",
        extra={"external_id": str(external_id), "status": saved.status.value},
    )
    return saved


def activate_listing(
    external_id: UUID,
    *,
    seller_id: str,
    now: Optional[datetime] = None,
) -> ListingInventory:
    """
    Lift the draft status of a listing: draft codes become active and the
    status is derived from the codes.
    """

    as_of = now or utc_now()
    inventory = get_listing_inventory(external_id)
    _require_owner(inventory, seller_id)
    # Validation only: raises for listings without codes or already expired.
    inventory.activate(as_of)

    draft_ids = [code.code_id for code in inventory.codes if code.sold_status is CodeStatus.DRAFT]
    code_repository.transition_codes(draft_ids, from_status=CodeStatus.DRAFT, to_status=CodeStatus.ACTIVE)

    saved = save_with_retry(inventory.listing_id, lambda fresh: fresh.activate(as_of), as_of=as_of)
    logger.info(
        f"Activated listing {external_id}",
        extra={"external_id": str(external_id), "status": saved.status.value},
    )
    return saved


def get_expiration_groups(external_id: UUID) -> List[ExpirationGroupSummary]:
    """Available quantities per expiration group for a listing."""

    return get_listing_inventory(external_id).get_expiration_groups()


__all__ = [
    "PatternValidator",
    "activate_listing",
    "add_codes_to_listing",
    "add_dated_codes_to_listing",
    "create_listing",
    "get_expiration_groups",
    "get_listing_inventory",
    "refresh_listing_status",
    "regex_pattern_validator",
    "save_with_retry",
]
