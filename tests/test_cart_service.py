"""
Tests for `services/cart_service.py`.

Covers:
- Adding active listings (default quantity 1, merge on repeat, stock check on merged quantity).
- Rejecting unavailable listings, own listings and over-stock requests.
- Expiration group adds and quantity conflicts.
- Reading a cart prunes listings that are no longer active.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from domain.errors import CartInvalidError
from domain.expiration_group import ExpirationGroupRequest, ExpirationGroupType
from repositories import cart_repository
from services import cart_service

from conftest import NOW

JUNE_30 = datetime(2025, 6, 30, tzinfo=timezone.utc)


def test_add_defaults_to_one_and_merges(fake_db, make_listing) -> None:
    inventory = make_listing(["CODE-0001", "CODE-0002", "CODE-0003"])
    external_id = inventory.listing.external_id

    cart_service.add_to_cart("buyer-1", external_id, now=NOW)
    cart = cart_service.add_to_cart("buyer-1", external_id, 2, now=NOW)

    assert cart.get_item(external_id).quantity == 3
    stored = cart_repository.get_cart("buyer-1")
    assert stored.get_item(external_id).quantity == 3
    assert stored.get_item(external_id).snapshot.platform == "steam"


def test_merged_quantity_is_stock_checked(fake_db, make_listing) -> None:
    inventory = make_listing(["CODE-0001", "CODE-0002"])
    external_id = inventory.listing.external_id
    cart_service.add_to_cart("buyer-1", external_id, 2, now=NOW)

    with pytest.raises(CartInvalidError):
        cart_service.add_to_cart("buyer-1", external_id, 1, now=NOW)

    assert cart_repository.get_cart("buyer-1").get_item(external_id).quantity == 2


def test_cannot_add_own_or_missing_listing(fake_db, make_listing) -> None:
    inventory = make_listing(["CODE-0001"], seller_id="seller-a")

    with pytest.raises(CartInvalidError):
        cart_service.add_to_cart("seller-a", inventory.listing.external_id, now=NOW)
    with pytest.raises(CartInvalidError) as exc_info:
        cart_service.add_to_cart("buyer-1", uuid4(), now=NOW)
    assert len(exc_info.value.listing_ids) == 1


def test_cannot_add_draft_listing(fake_db, make_listing) -> None:
    inventory = make_listing(["CODE-0001"], draft=True)

    with pytest.raises(CartInvalidError):
        cart_service.add_to_cart("buyer-1", inventory.listing.external_id, now=NOW)


def test_expiration_group_add(fake_db, make_listing) -> None:
    inventory = make_listing(["CODE-0001", "CODE-0002"], code_expiration_date=JUNE_30)
    external_id = inventory.listing.external_id
    groups = [ExpirationGroupRequest(ExpirationGroupType.EXPIRES, 2, JUNE_30)]

    cart = cart_service.add_to_cart("buyer-1", external_id, expiration_groups=groups, now=NOW)

    item = cart.get_item(external_id)
    assert item.quantity == 2
    assert item.expiration_groups == tuple(groups)

    with pytest.raises(CartInvalidError):
        cart_service.add_to_cart(
            "buyer-1",
            external_id,
            expiration_groups=[ExpirationGroupRequest(ExpirationGroupType.NEVER_EXPIRES, 1)],
            now=NOW,
        )


def test_group_quantity_conflict_is_rejected(fake_db, make_listing) -> None:
    inventory = make_listing(["CODE-0001", "CODE-0002"])
    groups = [ExpirationGroupRequest(ExpirationGroupType.NEVER_EXPIRES, 2)]

    with pytest.raises(ValueError):
        cart_service.add_to_cart("buyer-1", inventory.listing.external_id, 1, groups, now=NOW)


def test_update_and_remove(fake_db, make_listing) -> None:
    inventory = make_listing(["CODE-0001", "CODE-0002"])
    external_id = inventory.listing.external_id
    cart_service.add_to_cart("buyer-1", external_id, now=NOW)

    assert cart_service.update_cart_item("buyer-1", external_id, 2, now=NOW).get_item(external_id).quantity == 2
    with pytest.raises(CartInvalidError):
        cart_service.update_cart_item("buyer-1", external_id, 3, now=NOW)

    assert cart_service.update_cart_item("buyer-1", external_id, 0, now=NOW).is_empty
    assert cart_repository.get_cart("buyer-1").is_empty


def test_get_cart_prunes_inactive_listings(fake_db, make_listing) -> None:
    keep = make_listing(["CODE-0001"])
    gone = make_listing(["CODE-0002"], seller_id="seller-b")
    cart_service.add_to_cart("buyer-1", keep.listing.external_id, now=NOW)
    cart_service.add_to_cart("buyer-1", gone.listing.external_id, now=NOW)

    fake_db.set_where(
        "listings",
        lambda row: row["listing_id"] == str(gone.listing_id),
        {"status": "suspended"},
    )

    cart = cart_service.get_cart("buyer-1", now=NOW)

    assert [item.listing_id for item in cart.items] == [keep.listing.external_id]
    assert [item.listing_id for item in cart_repository.get_cart("buyer-1").items] == [keep.listing.external_id]


def test_clear_cart(fake_db, make_listing) -> None:
    inventory = make_listing(["CODE-0001"])
    cart_service.add_to_cart("buyer-1", inventory.listing.external_id, now=NOW)

    assert cart_service.clear_cart("buyer-1", now=NOW).is_empty
    assert cart_repository.get_cart("buyer-1").is_empty


def test_listing_past_its_own_date_cannot_be_added(fake_db, make_listing) -> None:
    inventory = make_listing(["CODE-0001"], expiration_date=NOW + timedelta(hours=1))

    with pytest.raises(CartInvalidError):
        cart_service.add_to_cart("buyer-1", inventory.listing.external_id, now=NOW + timedelta(hours=2))


def test_get_cart_prunes_listing_past_its_own_date(fake_db, make_listing) -> None:
    inventory = make_listing(["CODE-0001"], expiration_date=NOW + timedelta(hours=1))
    cart_service.add_to_cart("buyer-1", inventory.listing.external_id, now=NOW)

    cart = cart_service.get_cart("buyer-1", now=NOW + timedelta(hours=2))

    assert cart.is_empty
    assert cart_repository.get_cart("buyer-1").is_empty


def test_discounted_price_is_snapshotted(fake_db, make_listing) -> None:
    inventory = make_listing(["CODE-0001", "CODE-0002"], price="10.00", discounted_price="7.50")

    cart = cart_service.add_to_cart("buyer-1", inventory.listing.external_id, 2, now=NOW)

    item = cart.get_item(inventory.listing.external_id)
    assert item.unit_price == Decimal("7.50")
    assert cart.get_total_minor_units() == 1500
