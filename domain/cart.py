"""
Domain: buyer cart.

One cart per buyer. Items are keyed by the listing's external id and carry a
snapshot of price, seller and category taken when the item was first added, so
later listing edits never change an in-cart price.

Invariants:
- At most one CartItem per listing.
- quantity > 0 for every item.
- When expiration groups are present their counts sum to quantity.
- Totals are computed in integer cents; floats are never summed.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
from uuid import UUID

from .expiration_group import ExpirationGroupRequest, merge_expiration_groups, total_count

_CENT = Decimal("0.01")


def to_minor_units(amount: Decimal) -> int:
    """Convert a currency amount to integer cents (half-up)."""

    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(_CENT)


@dataclass(frozen=True, slots=True)
class ListingSnapshot:
    """Listing attributes captured at add time."""

    category_id: Optional[str] = None
    platform: Optional[str] = None
    region: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"category_id": self.category_id, "platform": self.platform, "region": self.region}

    @staticmethod
    def from_dict(data: Optional[Mapping[str, Any]]) -> "ListingSnapshot":
        data = data or {}
        return ListingSnapshot(
            category_id=data.get("category_id"),
            platform=data.get("platform"),
            region=data.get("region"),
        )


@dataclass(frozen=True, slots=True)
class CartItem:
    listing_id: UUID
    title: str
    unit_price: Decimal
    seller_id: str
    quantity: int
    expiration_groups: Tuple[ExpirationGroupRequest, ...] = ()
    snapshot: ListingSnapshot = field(default_factory=ListingSnapshot)

    def __post_init__(self) -> None:
        if isinstance(self.quantity, bool) or not isinstance(self.quantity, int):
            raise ValueError("quantity must be an integer")
        if self.quantity <= 0:
            raise ValueError("quantity must be > 0")
        if self.unit_price < 0:
            raise ValueError("unit_price cannot be negative")
        if self.expiration_groups and total_count(self.expiration_groups) != self.quantity:
            raise ValueError("expiration group counts must sum to quantity")

    @property
    def has_expiration_groups(self) -> bool:
        return bool(self.expiration_groups)

    @property
    def line_total_minor_units(self) -> int:
        return to_minor_units(self.unit_price) * self.quantity

    def merged_with(self, other: "CartItem") -> "CartItem":
        """
        Merge a repeated add of the same listing.

        Grouped + grouped merges the groups key-wise and recomputes quantity.
        Any other combination falls back to plain quantity mode. The original
        price snapshot is kept.
        """

        if other.listing_id != self.listing_id:
            raise ValueError("cannot merge cart items for different listings")

        if self.expiration_groups and other.expiration_groups:
            groups = merge_expiration_groups(self.expiration_groups, other.expiration_groups)
            return replace(self, expiration_groups=groups, quantity=total_count(groups))
        return replace(self, expiration_groups=(), quantity=self.quantity + other.quantity)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "listing_id": str(self.listing_id),
            "title": self.title,
            "unit_price": str(self.unit_price),
            "seller_id": self.seller_id,
            "quantity": self.quantity,
            "expiration_groups": [group.to_dict() for group in self.expiration_groups],
            "listing_snapshot": self.snapshot.to_dict(),
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "CartItem":
        return CartItem(
            listing_id=UUID(str(data["listing_id"])),
            title=str(data.get("title") or ""),
            unit_price=Decimal(str(data["unit_price"])),
            seller_id=str(data["seller_id"]),
            quantity=int(data["quantity"]),
            expiration_groups=tuple(
                ExpirationGroupRequest.from_dict(group) for group in data.get("expiration_groups") or []
            ),
            snapshot=ListingSnapshot.from_dict(data.get("listing_snapshot")),
        )


@dataclass(frozen=True, slots=True)
class Cart:
    """
    Immutable buyer cart. Mutators return a new Cart.
    """

    user_id: str
    items: Tuple[CartItem, ...] = ()

    def __post_init__(self) -> None:
        ids = [item.listing_id for item in self.items]
        if len(set(ids)) != len(ids):
            raise ValueError("cart contains the same listing more than once")

    @property
    def is_empty(self) -> bool:
        return not self.items

    def get_item(self, listing_id: UUID) -> Optional[CartItem]:
        for item in self.items:
            if item.listing_id == listing_id:
                return item
        return None

    def add_item(self, item: CartItem) -> "Cart":
        """Add an item, merging with an existing line for the same listing."""

        existing = self.get_item(item.listing_id)
        if existing is None:
            return replace(self, items=self.items + (item,))
        merged = existing.merged_with(item)
        return replace(
            self,
            items=tuple(merged if i.listing_id == item.listing_id else i for i in self.items),
        )

    def update_item_quantity(self, listing_id: UUID, quantity: int) -> "Cart":
        """
        Overwrite an item's quantity. quantity <= 0 removes the item.

        Expiration groups are not redistributed: if the new quantity no longer
        matches the group counts the groups are dropped.
        """

        if isinstance(quantity, bool) or not isinstance(quantity, int):
            raise ValueError("quantity must be an integer")

        existing = self.get_item(listing_id)
        if existing is None:
            raise ValueError(f"Listing {listing_id} is not in the cart")
        if quantity <= 0:
            return self.remove_item(listing_id)

        groups = existing.expiration_groups
        if groups and total_count(groups) != quantity:
            groups = ()
        updated = replace(existing, quantity=quantity, expiration_groups=groups)
        return replace(
            self,
            items=tuple(updated if i.listing_id == listing_id else i for i in self.items),
        )

    def remove_item(self, listing_id: UUID) -> "Cart":
        return replace(self, items=tuple(i for i in self.items if i.listing_id != listing_id))

    def clear(self) -> "Cart":
        return replace(self, items=())

    def prune_inactive(self, active_listing_ids: Iterable[UUID]) -> Tuple["Cart", List[UUID]]:
        """Drop items whose listing is no longer active. Returns (cart, removed listing ids)."""

        active = set(active_listing_ids)
        kept = tuple(i for i in self.items if i.listing_id in active)
        removed = [i.listing_id for i in self.items if i.listing_id not in active]
        if not removed:
            return self, []
        return replace(self, items=kept), removed

    def get_total_minor_units(self) -> int:
        return sum(item.line_total_minor_units for item in self.items)

    def get_total_amount(self) -> Decimal:
        return from_minor_units(self.get_total_minor_units())

    def get_total_items(self) -> int:
        return sum(item.quantity for item in self.items)

    def items_by_seller(self) -> Dict[str, List[CartItem]]:
        """Partition items by seller, preserving first-seen seller order."""

        grouped: Dict[str, List[CartItem]] = {}
        for item in self.items:
            grouped.setdefault(item.seller_id, []).append(item)
        return grouped

    def items_to_dicts(self) -> List[Dict[str, Any]]:
        return [item.to_dict() for item in self.items]

    @staticmethod
    def from_items(user_id: str, items: Sequence[Mapping[str, Any]]) -> "Cart":
        return Cart(user_id=user_id, items=tuple(CartItem.from_dict(item) for item in items))


__all__ = [
    "Cart",
    "CartItem",
    "ListingSnapshot",
    "from_minor_units",
    "to_minor_units",
]
