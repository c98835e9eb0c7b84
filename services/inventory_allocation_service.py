"""
Listing code allocation service.

This service hands out specific codes of a listing to an order line and marks
them sold.

Key Features:
- All-or-nothing: a line either gets every requested code or none
- Soonest-to-expire first, or exact expiration-group targeting
- Race-safe: codes are claimed with one conditional update
  ("sold_status = 'sold' WHERE code_id IN (...) AND sold_status = 'active'") and
  the number of rows actually claimed is checked against the request. A short
  claim (another buyer won some codes) is released and retried on a fresh read.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Sequence, Tuple
from uuid import UUID

import config
from domain.code_record import CodeRecord, DeliveredCode
from domain.errors import ConcurrentModificationError, InsufficientInventoryError
from domain.expiration_group import ExpirationGroupRequest, total_count
from domain.listing import ListingInventory, ListingStatus
from domain.time import utc_now
from repositories import code_repository, listing_repository
from services.listing_service import refresh_listing_status

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class AllocationRequest:
    """Codes wanted from one listing (internal listing id)."""

    listing_id: UUID
    quantity: int
    expiration_groups: Tuple[ExpirationGroupRequest, ...] = ()

    def __post_init__(self) -> None:
        if self.quantity <= 0:
            raise ValueError("quantity must be > 0")
        if self.expiration_groups and total_count(self.expiration_groups) != self.quantity:
            raise ValueError("expiration group counts must sum to quantity")

    def to_string(self) -> str:
        """Human-readable description of the request."""
        parts = [f"listing={self.listing_id}", f"qty={self.quantity}"]
        if self.expiration_groups:
            parts.append("groups=" + ",".join(f"{g.label()}x{g.count}" for g in self.expiration_groups))
        return " ".join(parts)


@dataclass(frozen=True, slots=True)
class AllocationResult:
    """Codes claimed for one request."""
    listing_id: UUID
    delivered_codes: List[DeliveredCode]
    sold_at: datetime
    requested_quantity: int
    attempts: int

    @property
    def code_ids(self) -> List[UUID]:
        return [code.code_id for code in self.delivered_codes]


def _select_codes(
    inventory: ListingInventory, request: AllocationRequest, as_of: datetime
) -> List[CodeRecord]:
    # stored status lags until the sweep runs; a passed listing date wins
    inventory = inventory.recompute_status(as_of)
    if inventory.status is not ListingStatus.ACTIVE:
        raise InsufficientInventoryError(
            requested=request.quantity,
            available=0,
            criteria=f"listing {inventory.listing.external_id} ({inventory.status.value})",
            listing_id=inventory.listing_id,
        )
    if request.expiration_groups:
        return inventory.get_codes_from_expiration_groups(request.expiration_groups)
    return inventory.get_codes_for_purchase(request.quantity)


def allocate_codes(
    request: AllocationRequest,
    *,
    sold_at: Optional[datetime] = None,
    max_attempts: Optional[int] = None,
) -> AllocationResult:
    """
    Claim codes for one request and mark them sold.

    Process:
    1. Load the listing inventory and select codes (domain selection rules)
    2. Claim them with one conditional update
    3. If fewer rows were claimed than selected, release the claimed ones and
       retry from a fresh read (up to ALLOCATION_MAX_ATTEMPTS)
    4. Refresh the listing status

    Returns:
        AllocationResult with the DeliveredCode payloads (still encrypted)

    Raises:
        InsufficientInventoryError: Not enough active codes (nothing is left claimed)
        ValueError: Listing not found
    """

    attempts_allowed = max_attempts or config.ALLOCATION_MAX_ATTEMPTS
    stamp = sold_at or utc_now()

    claimed: List[UUID] = []
    for attempt in range(1, attempts_allowed + 1):
        inventory = listing_repository.load_listing_inventory(request.listing_id)
        if inventory is None:
            raise ValueError(f"Listing {request.listing_id} not found")

        selected = _select_codes(inventory, request, stamp)
        wanted = [code.code_id for code in selected]
        claimed = code_repository.mark_codes_sold(wanted, stamp)

        if len(claimed) == len(wanted):
            _, delivered = inventory.commit_allocation(selected, stamp)
            _refresh_status(request.listing_id, stamp)
            return AllocationResult(
                listing_id=request.listing_id,
                delivered_codes=delivered,
                sold_at=stamp,
                requested_quantity=request.quantity,
                attempts=attempt,
            )

        code_repository.release_codes(claimed, stamp)
        logger.warning(
            f"Allocation lost a race for listing {request.listing_id}; retrying",
            extra={
                "listing_id": str(request.listing_id),
                "requested": len(wanted),
                "claimed": len(claimed),
                "attempt": attempt,
            },
        )

    raise InsufficientInventoryError(
        requested=request.quantity,
        available=len(claimed),
        criteria=f"{request.to_string()} after {attempts_allowed} attempts",
        listing_id=request.listing_id,
    )


def release_allocation(result: AllocationResult) -> List[UUID]:
    """Return the codes of an allocation to 'active' (only those still sold by it)."""

    released = code_repository.release_codes(result.code_ids, result.sold_at)
    _refresh_status(result.listing_id, utc_now())
    logger.info(
        f"Released {len(released)} code(s) of listing {result.listing_id}",
        extra={"listing_id": str(result.listing_id), "released": len(released)},
    )
    return released


def allocate_many(
    requests: Sequence[AllocationRequest],
    *,
    sold_at: Optional[datetime] = None,
) -> List[AllocationResult]:
    """
    Allocate several requests all-or-nothing.

    If a later request fails, codes claimed for earlier requests are released
    before the error propagates.
    """

    if not requests:
        raise ValueError("requests cannot be empty")

    stamp = sold_at or utc_now()
    results: List[AllocationResult] = []
    try:
        for idx, request in enumerate(requests):
            try:
                results.append(allocate_codes(request, sold_at=stamp))
            except InsufficientInventoryError as e:
                if e.item_index is None and len(requests) > 1:
                    e.item_index = idx
                raise
    except Exception:
        for result in results:
            release_allocation(result)
        raise
    return results


def _refresh_status(listing_id: UUID, as_of: datetime) -> None:
    # Codes are already claimed; a status refresh that keeps conflicting is left
    # to the next save or the expiration sweep.
    try:
        refresh_listing_status(listing_id, as_of=as_of)
    except ConcurrentModificationError:
        logger.warning(
            f"Listing {listing_id} status refresh gave up after repeated conflicts",
            extra={"listing_id": str(listing_id)},
        )


__all__ = [
    "AllocationRequest",
    "AllocationResult",
    "allocate_codes",
    "allocate_many",
    "release_allocation",
]
