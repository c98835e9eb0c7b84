"""
Domain: error taxonomy for inventory and fulfillment.

Validation-class errors (CartInvalidError, SellerNotPayableError, DuplicateCodeError)
are raised before any payment is authorized and leave no partial state behind.

Errors raised while delivering an already-paid order are wrapped in DeliveryFailure
and recorded on the Order instead of being returned to the buyer synchronously.
"""

from __future__ import annotations

from typing import List, Optional, Sequence
from uuid import UUID


class CartInvalidError(Exception):
    """Raised when a cart (or a cart mutation) references unavailable listings."""

    def __init__(self, message: str, listing_ids: Optional[Sequence[UUID]] = None):
        self.listing_ids: List[UUID] = list(listing_ids or [])
        super().__init__(message)


class SellerNotPayableError(Exception):
    """Raised when a seller in the cart has no valid payout account."""

    def __init__(self, seller_id: str):
        self.seller_id = seller_id
        super().__init__(f"Seller {seller_id} has no valid payout account")


class InsufficientInventoryError(Exception):
    """Raised when requested codes cannot be allocated."""

    def __init__(
        self,
        requested: int,
        available: int,
        criteria: str,
        listing_id: Optional[UUID] = None,
        item_index: Optional[int] = None,
    ):
        self.requested = requested
        self.available = available
        self.criteria = criteria
        self.listing_id = listing_id
        self.item_index = item_index
        super().__init__(
            f"Insufficient inventory for {criteria}. "
            f"Requested: {requested}, Available: {available} "
            f"(short by {requested - available})"
        )

    @property
    def shortage(self) -> int:
        return self.requested - self.available


class DuplicateCodeError(Exception):
    """Raised when submitted codes already exist (in the batch, this listing, or another listing)."""

    def __init__(self, duplicates: Sequence[object]):
        self.duplicates = list(duplicates)
        super().__init__(f"{len(self.duplicates)} duplicate code(s) found")


class DecryptionError(Exception):
    """Raised when a stored code cannot be decrypted. Reported, never retried."""

    def __init__(self, code_id: Optional[UUID], reason: str):
        self.code_id = code_id
        self.reason = reason
        super().__init__(f"Failed to decrypt code {code_id}: {reason}")


class DeliveryFailure(Exception):
    """Wraps any error encountered while delivering codes for a paid order."""

    def __init__(self, order_id: UUID, cause: Exception):
        self.order_id = order_id
        self.cause = cause
        super().__init__(f"Delivery failed for order {order_id}: {cause}")


class ConcurrentModificationError(Exception):
    """Raised when a listing was modified by someone else since it was read."""

    def __init__(self, listing_id: UUID, expected_version: int):
        self.listing_id = listing_id
        self.expected_version = expected_version
        super().__init__(
            f"Listing {listing_id} was modified concurrently (expected version {expected_version})"
        )


class InvalidOrderTransitionError(ValueError):
    """Raised when an order status change is not allowed by the order state machine."""

    def __init__(self, order_id: UUID, current: str, target: str):
        self.order_id = order_id
        self.current = current
        self.target = target
        super().__init__(f"Order {order_id} cannot move from {current} to {target}")


__all__ = [
    "CartInvalidError",
    "ConcurrentModificationError",
    "DecryptionError",
    "DeliveryFailure",
    "DuplicateCodeError",
    "InsufficientInventoryError",
    "InvalidOrderTransitionError",
    "SellerNotPayableError",
]
