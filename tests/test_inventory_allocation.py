"""
Tests for `services/inventory_allocation_service.py`.

Covers contract rules:
- A successful allocation claims exactly the requested number of codes.
- Insufficient inventory raises and leaves every code untouched.
- A claim that loses a race is released and retried on a fresh read.
- Two buyers racing for the last code: exactly one gets it.
- allocate_many releases earlier allocations when a later one fails.
"""

import threading
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from domain.code_record import CodeStatus
from domain.errors import InsufficientInventoryError
from domain.expiration_group import ExpirationGroupRequest, ExpirationGroupType
from domain.listing import ListingStatus
from repositories import listing_repository
from services.inventory_allocation_service import (
    AllocationRequest,
    allocate_codes,
    allocate_many,
    release_allocation,
)
from services.listing_service import add_codes_to_listing

SOLD_AT = datetime(2025, 6, 2, 9, 0, 0, tzinfo=timezone.utc)


def _statuses(fake_db, listing_id):
    return sorted(
        row["sold_status"] for row in fake_db.rows("listing_codes") if row["listing_id"] == str(listing_id)
    )


def test_allocates_exactly_requested_codes(fake_db, make_listing) -> None:
    inventory = make_listing(["CODE-0001", "CODE-0002", "CODE-0003"])

    result = allocate_codes(AllocationRequest(inventory.listing_id, 2), sold_at=SOLD_AT)

    assert len(result.delivered_codes) == 2
    assert len(set(result.code_ids)) == 2
    assert result.attempts == 1
    assert all(code.delivered_at == SOLD_AT for code in result.delivered_codes)
    assert _statuses(fake_db, inventory.listing_id) == ["active", "sold", "sold"]


def test_selling_last_code_marks_listing_sold(fake_db, make_listing) -> None:
    inventory = make_listing(["CODE-0001"])

    allocate_codes(AllocationRequest(inventory.listing_id, 1), sold_at=SOLD_AT)

    stored = listing_repository.get_listing(inventory.listing_id)
    assert stored.status is ListingStatus.SOLD


def test_soonest_expiring_codes_are_sold_first(fake_db, make_listing, cipher) -> None:
    later = datetime(2025, 9, 1, tzinfo=timezone.utc)
    sooner = datetime(2025, 7, 1, tzinfo=timezone.utc)
    inventory = make_listing(["CODE-0001"], code_expiration_date=later)
    add_codes_to_listing(
        inventory.listing.external_id,
        ["CODE-0002"],
        seller_id="seller-a",
        code_expiration_date=sooner,
        cipher=cipher,
        now=SOLD_AT - timedelta(hours=1),
    )

    result = allocate_codes(AllocationRequest(inventory.listing_id, 1), sold_at=SOLD_AT)

    assert result.delivered_codes[0].expiration_date == sooner


def test_insufficient_inventory_changes_nothing(fake_db, make_listing) -> None:
    inventory = make_listing(["CODE-0001", "CODE-0002"])

    with pytest.raises(InsufficientInventoryError) as exc_info:
        allocate_codes(AllocationRequest(inventory.listing_id, 3), sold_at=SOLD_AT)

    assert exc_info.value.requested == 3
    assert exc_info.value.available == 2
    assert _statuses(fake_db, inventory.listing_id) == ["active", "active"]


def test_missing_expiration_group_raises(fake_db, make_listing) -> None:
    inventory = make_listing(["CODE-0001", "CODE-0002"])
    request = AllocationRequest(
        inventory.listing_id,
        1,
        (ExpirationGroupRequest(ExpirationGroupType.EXPIRES, 1, datetime(2025, 7, 1, tzinfo=timezone.utc)),),
    )

    with pytest.raises(InsufficientInventoryError):
        allocate_codes(request, sold_at=SOLD_AT)
    assert _statuses(fake_db, inventory.listing_id) == ["active", "active"]


def test_lost_race_is_released_and_retried(fake_db, make_listing) -> None:
    """Another buyer claims one selected code between our read and our claim."""

    inventory = make_listing(["CODE-0001", "CODE-0002", "CODE-0003"])
    other_sale = SOLD_AT - timedelta(minutes=1)
    state = {"interfered": False}

    def steal_one(query) -> None:
        if state["interfered"] or query.table != "listing_codes" or query.op != "update":
            return
        if (query.payload or {}).get("sold_status") != CodeStatus.SOLD.value:
            return
        state["interfered"] = True
        target_ids = next(value for op, column, value in query.filters if op == "in")
        victim = target_ids[0]
        fake_db.set_where(
            "listing_codes",
            lambda row: row["code_id"] == victim,
            {"sold_status": "sold", "sold_at_utc": other_sale.isoformat()},
        )

    fake_db.before_execute = steal_one

    result = allocate_codes(AllocationRequest(inventory.listing_id, 2), sold_at=SOLD_AT)

    assert result.attempts == 2
    rows = fake_db.rows("listing_codes")
    ours = [r for r in rows if r["sold_at_utc"] == SOLD_AT.isoformat()]
    theirs = [r for r in rows if r["sold_at_utc"] == other_sale.isoformat()]
    assert len(ours) == 2
    assert len(theirs) == 1
    assert {r["code_id"] for r in ours} == {str(i) for i in result.code_ids}


def test_two_buyers_race_for_last_code(fake_db, make_listing) -> None:
    inventory = make_listing(["LAST-CODE-01"])
    barrier = threading.Barrier(2)
    outcomes = []
    lock = threading.Lock()

    def buyer() -> None:
        barrier.wait()
        try:
            result = allocate_codes(AllocationRequest(inventory.listing_id, 1))
            with lock:
                outcomes.append(("ok", result))
        except InsufficientInventoryError as e:
            with lock:
                outcomes.append(("insufficient", e))

    threads = [threading.Thread(target=buyer) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    kinds = sorted(kind for kind, _ in outcomes)
    assert kinds == ["insufficient", "ok"]
    assert _statuses(fake_db, inventory.listing_id) == ["sold"]


def test_release_allocation_returns_codes(fake_db, make_listing) -> None:
    inventory = make_listing(["CODE-0001"])
    result = allocate_codes(AllocationRequest(inventory.listing_id, 1), sold_at=SOLD_AT)

    released = release_allocation(result)

    assert released == result.code_ids
    assert _statuses(fake_db, inventory.listing_id) == ["active"]
    assert listing_repository.get_listing(inventory.listing_id).status is ListingStatus.ACTIVE


def test_allocate_many_is_all_or_nothing(fake_db, make_listing) -> None:
    first = make_listing(["A-CODE-0001", "A-CODE-0002"])
    second = make_listing(["B-CODE-0001"], seller_id="seller-b")

    with pytest.raises(InsufficientInventoryError) as exc_info:
        allocate_many(
            [AllocationRequest(first.listing_id, 1), AllocationRequest(second.listing_id, 2)],
            sold_at=SOLD_AT,
        )

    assert exc_info.value.item_index == 1
    assert _statuses(fake_db, first.listing_id) == ["active", "active"]
    assert _statuses(fake_db, second.listing_id) == ["active"]


def test_request_groups_must_match_quantity() -> None:
    with pytest.raises(ValueError):
        AllocationRequest(uuid4(), 2, (ExpirationGroupRequest(ExpirationGroupType.NEVER_EXPIRES, 1),))


def test_listing_past_its_own_date_is_not_allocated(fake_db, make_listing) -> None:
    inventory = make_listing(["CODE-0001"], expiration_date=SOLD_AT - timedelta(hours=1))
    # stored status still reads active until the expiration sweep runs
    assert listing_repository.get_listing(inventory.listing_id).status is ListingStatus.ACTIVE

    with pytest.raises(InsufficientInventoryError) as exc:
        allocate_codes(AllocationRequest(inventory.listing_id, 1), sold_at=SOLD_AT)

    assert "expired" in exc.value.criteria
    assert _statuses(fake_db, inventory.listing_id) == ["active"]
