"""
Tests for `domain/cart.py`.

Covers contract rules:
- Repeated adds of the same listing merge into one item.
- Expiration groups merge key-wise and quantity always equals their sum.
- update_item_quantity overwrites (<= 0 removes) and drops groups that no longer add up.
- Totals use integer cents, never float sums.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID

import pytest

from domain.cart import Cart, CartItem, to_minor_units
from domain.expiration_group import ExpirationGroupRequest, ExpirationGroupType

LISTING_A = UUID("00000000-0000-0000-0000-00000000000a")
LISTING_B = UUID("00000000-0000-0000-0000-00000000000b")
JUNE_10 = datetime(2025, 6, 10, tzinfo=timezone.utc)
JULY_1 = datetime(2025, 7, 1, tzinfo=timezone.utc)


def _item(listing_id: UUID = LISTING_A, quantity: int = 1, price: str = "10.00", groups=()) -> CartItem:
    return CartItem(
        listing_id=listing_id,
        title="Game Key",
        unit_price=Decimal(price),
        seller_id="seller-a",
        quantity=quantity,
        expiration_groups=tuple(groups),
    )


def _group(count: int, date=None) -> ExpirationGroupRequest:
    if date is None:
        return ExpirationGroupRequest(ExpirationGroupType.NEVER_EXPIRES, count)
    return ExpirationGroupRequest(ExpirationGroupType.EXPIRES, count, date)


def test_add_same_listing_twice_merges_quantity() -> None:
    cart = Cart(user_id="buyer").add_item(_item(quantity=1)).add_item(_item(quantity=2))
    assert len(cart.items) == 1
    assert cart.items[0].quantity == 3


def test_disjoint_expiration_groups_merge_and_quantity_is_their_sum() -> None:
    """Two adds with disjoint group keys give one item whose quantity sums all groups."""

    first = _item(quantity=2, groups=[_group(2, JUNE_10)])
    second = _item(quantity=3, groups=[_group(1, JULY_1), _group(2)])

    cart = Cart(user_id="buyer").add_item(first).add_item(second)

    item = cart.items[0]
    assert item.quantity == 5
    assert [(g.type, g.date, g.count) for g in item.expiration_groups] == [
        (ExpirationGroupType.EXPIRES, JUNE_10, 2),
        (ExpirationGroupType.EXPIRES, JULY_1, 1),
        (ExpirationGroupType.NEVER_EXPIRES, None, 2),
    ]


def test_same_group_key_counts_are_summed() -> None:
    cart = (
        Cart(user_id="buyer")
        .add_item(_item(quantity=1, groups=[_group(1, JUNE_10)]))
        .add_item(_item(quantity=2, groups=[_group(2, JUNE_10)]))
    )
    assert cart.items[0].quantity == 3
    assert len(cart.items[0].expiration_groups) == 1
    assert cart.items[0].expiration_groups[0].count == 3


def test_mixing_group_and_plain_adds_falls_back_to_quantity_mode() -> None:
    cart = (
        Cart(user_id="buyer")
        .add_item(_item(quantity=2, groups=[_group(2)]))
        .add_item(_item(quantity=1))
    )
    assert cart.items[0].quantity == 3
    assert cart.items[0].expiration_groups == ()


def test_merge_keeps_original_price_snapshot() -> None:
    cart = Cart(user_id="buyer").add_item(_item(price="10.00")).add_item(_item(price="12.00"))
    assert cart.items[0].unit_price == Decimal("10.00")


def test_item_groups_must_sum_to_quantity() -> None:
    with pytest.raises(ValueError):
        _item(quantity=3, groups=[_group(2)])


def test_update_quantity_overwrites_and_zero_removes() -> None:
    cart = Cart(user_id="buyer").add_item(_item(quantity=2)).add_item(_item(LISTING_B))

    updated = cart.update_item_quantity(LISTING_A, 5)
    assert updated.get_item(LISTING_A).quantity == 5

    removed = updated.update_item_quantity(LISTING_A, 0)
    assert removed.get_item(LISTING_A) is None
    assert removed.get_item(LISTING_B) is not None
    assert cart.get_item(LISTING_A).quantity == 2


def test_update_quantity_drops_groups_that_no_longer_add_up() -> None:
    cart = Cart(user_id="buyer").add_item(_item(quantity=2, groups=[_group(2, JUNE_10)]))

    same = cart.update_item_quantity(LISTING_A, 2)
    assert same.items[0].expiration_groups == cart.items[0].expiration_groups

    changed = cart.update_item_quantity(LISTING_A, 4)
    assert changed.items[0].quantity == 4
    assert changed.items[0].expiration_groups == ()


def test_update_quantity_rejects_non_integers_and_unknown_listings() -> None:
    cart = Cart(user_id="buyer").add_item(_item())
    with pytest.raises(ValueError):
        cart.update_item_quantity(LISTING_A, 1.5)  # type: ignore[arg-type]
    with pytest.raises(ValueError):
        cart.update_item_quantity(LISTING_B, 1)


def test_totals_use_integer_cents() -> None:
    """0.10 x 3 + 0.20 must be exactly 0.50 (float sums drift)."""

    cart = (
        Cart(user_id="buyer")
        .add_item(_item(LISTING_A, quantity=3, price="0.10"))
        .add_item(_item(LISTING_B, quantity=1, price="0.20"))
    )
    assert cart.get_total_minor_units() == 50
    assert cart.get_total_amount() == Decimal("0.50")
    assert cart.get_total_items() == 4
    assert to_minor_units(Decimal("19.995")) == 2000


def test_prune_inactive_returns_removed_ids() -> None:
    cart = Cart(user_id="buyer").add_item(_item(LISTING_A)).add_item(_item(LISTING_B))

    pruned, removed = cart.prune_inactive([LISTING_B])

    assert removed == [LISTING_A]
    assert [i.listing_id for i in pruned.items] == [LISTING_B]


def test_items_round_trip_through_storage_format() -> None:
    cart = Cart(user_id="buyer").add_item(_item(quantity=2, groups=[_group(1, JUNE_10), _group(1)]))
    restored = Cart.from_items("buyer", cart.items_to_dicts())
    assert restored == cart


def test_items_by_seller_preserves_order() -> None:
    item_b = CartItem(
        listing_id=LISTING_B, title="Gift Card", unit_price=Decimal("5.00"), seller_id="seller-b", quantity=1
    )
    cart = Cart(user_id="buyer").add_item(_item()).add_item(item_b)
    assert list(cart.items_by_seller()) == ["seller-a", "seller-b"]
