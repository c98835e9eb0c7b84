"""
Cart service.

Buyer-facing cart mutations, validated against live listing data:
- Only active listings can be added (not past their own expiration date), and
  never the buyer's own listing
- Items snapshot the effective price (discounted price when set)
- Stock is checked against the merged quantity (or per expiration group)
- Reading a cart prunes items whose listing is no longer active
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional, Sequence
from uuid import UUID

from domain.cart import Cart, CartItem, ListingSnapshot
from domain.errors import CartInvalidError, InsufficientInventoryError
from domain.expiration_group import ExpirationGroupRequest, total_count
from domain.listing import Listing
from domain.time import utc_now
from repositories import cart_repository, listing_repository

logger = logging.getLogger(__name__)


def _require_active_listing(listing_id: UUID, buyer_id: str, as_of: datetime) -> Listing:
    listing = listing_repository.get_listing_by_external_id(listing_id)
    if listing is None or not listing.is_available(as_of):
        raise CartInvalidError(f"Listing {listing_id} is not available", [listing_id])
    if listing.seller_id == buyer_id:
        raise CartInvalidError("You cannot buy your own listing", [listing_id])
    return listing


def _check_stock(listing: Listing, item: CartItem) -> None:
    inventory = listing_repository.load_listing_inventory(listing.listing_id)
    if inventory is None:
        raise CartInvalidError(f"Listing {listing.external_id} is not available", [listing.external_id])
    try:
        if item.expiration_groups:
            inventory.get_codes_from_expiration_groups(item.expiration_groups)
        else:
            inventory.get_codes_for_purchase(item.quantity)
    except InsufficientInventoryError as e:
        raise CartInvalidError(
            f"Only {e.available} code(s) available for {e.criteria}", [listing.external_id]
        ) from e


def get_cart(user_id: str, *, now: Optional[datetime] = None) -> Cart:
    """Return the buyer's cart, dropping (and persisting the removal of) inactive listings."""

    cart = cart_repository.get_cart(user_id)
    if cart.is_empty:
        return cart

    stamp = now or utc_now()
    live = listing_repository.get_listings_by_external_ids([item.listing_id for item in cart.items])
    active_ids = [external_id for external_id, listing in live.items() if listing.is_available(stamp)]
    pruned, removed = cart.prune_inactive(active_ids)
    if removed:
        cart_repository.save_cart(pruned, stamp)
        logger.warning(
            f"Removed {len(removed)} unavailable item(s) from cart",
            extra={"user_id": user_id, "removed_listing_ids": [str(i) for i in removed]},
        )
    return pruned


def add_to_cart(
    user_id: str,
    listing_id: UUID,
    quantity: Optional[int] = None,
    expiration_groups: Optional[Sequence[ExpirationGroupRequest]] = None,
    *,
    now: Optional[datetime] = None,
) -> Cart:
    """
    Add a listing (by external id) to the buyer's cart.

    With expiration groups the quantity is their total; a conflicting explicit
    quantity is rejected.

    Raises:
        CartInvalidError: Listing unavailable, own listing or not enough stock
        ValueError: Invalid quantity
    """

    stamp = now or utc_now()
    groups = tuple(expiration_groups or ())
    if groups:
        group_total = total_count(groups)
        if quantity is not None and quantity != group_total:
            raise ValueError("quantity must equal the sum of expiration group counts")
        quantity = group_total
    elif quantity is None:
        quantity = 1

    listing = _require_active_listing(listing_id, user_id, stamp)
    item = CartItem(
        listing_id=listing.external_id,
        title=listing.title,
        unit_price=listing.effective_price,
        seller_id=listing.seller_id,
        quantity=quantity,
        expiration_groups=groups,
        snapshot=ListingSnapshot(
            category_id=listing.category_id,
            platform=listing.platform,
            region=listing.region,
        ),
    )

    cart = cart_repository.get_cart(user_id).add_item(item)
    merged = cart.get_item(listing.external_id)
    if merged is not None:
        _check_stock(listing, merged)

    cart_repository.save_cart(cart, stamp)
    return cart


def update_cart_item(
    user_id: str,
    listing_id: UUID,
    quantity: int,
    *,
    now: Optional[datetime] = None,
) -> Cart:
    """Overwrite an item's quantity (<= 0 removes it); stock-checked."""

    stamp = now or utc_now()
    cart = cart_repository.get_cart(user_id).update_item_quantity(listing_id, quantity)
    item = cart.get_item(listing_id)
    if item is not None:
        listing = _require_active_listing(listing_id, user_id, stamp)
        _check_stock(listing, item)

    cart_repository.save_cart(cart, stamp)
    return cart


def remove_from_cart(user_id: str, listing_id: UUID, *, now: Optional[datetime] = None) -> Cart:
    cart = cart_repository.get_cart(user_id).remove_item(listing_id)
    cart_repository.save_cart(cart, now or utc_now())
    return cart


def clear_cart(user_id: str, *, now: Optional[datetime] = None) -> Cart:
    cart_repository.clear_cart(user_id, now or utc_now())
    return Cart(user_id=user_id)


__all__ = [
    "add_to_cart",
    "clear_cart",
    "get_cart",
    "remove_from_cart",
    "update_cart_item",
]
