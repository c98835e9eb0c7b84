"""
Tests for `domain/listing.py`.

Covers contract rules:
- Listing status is a pure function of its codes and previous status (full priority table).
- Draft is sticky until activation; an expired listing date forces 'expired'.
- Active codes are handed out soonest-expiry first, never-expiring last.
- Allocation is all-or-nothing, per request and per expiration group.
- No side effects: operations return new instances; prior inventories are unchanged.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from itertools import count
from typing import Optional
from uuid import UUID

import pytest

from domain.code_record import CodeRecord, CodeStatus
from domain.errors import InsufficientInventoryError
from domain.expiration_group import ExpirationGroupRequest, ExpirationGroupType
from domain.listing import Listing, ListingInventory, ListingStatus, derive_status
from services.code_hasher import fingerprint_code

NOW = datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)
JUNE_10 = datetime(2025, 6, 10, tzinfo=timezone.utc)
JULY_1 = datetime(2025, 7, 1, tzinfo=timezone.utc)

_ids = count(1)


def _uuid() -> UUID:
    return UUID(int=next(_ids))


def _code(
    status: CodeStatus = CodeStatus.ACTIVE,
    expiration_date: Optional[datetime] = None,
) -> CodeRecord:
    return CodeRecord(
        code_id=_uuid(),
        ciphertext="c2VjcmV0",
        nonce="bm9uY2U=",
        key_id="k1",
        fingerprint=None,
        sold_status=status,
        sold_at=NOW if status is CodeStatus.SOLD else None,
        expiration_date=expiration_date,
    )


def _listing(status: ListingStatus = ListingStatus.ACTIVE, expiration_date: Optional[datetime] = None) -> Listing:
    return Listing(
        listing_id=_uuid(),
        external_id=_uuid(),
        seller_id="seller-a",
        title="Game Key",
        price=Decimal("10.00"),
        platform="steam",
        region="global",
        created_at=NOW - timedelta(days=30),
        expiration_date=expiration_date,
        status=status,
    )


def _inventory(*codes: CodeRecord, status: ListingStatus = ListingStatus.ACTIVE, **kwargs) -> ListingInventory:
    return ListingInventory(listing=_listing(status, **kwargs), codes=tuple(codes))


@pytest.mark.parametrize(
    "statuses, previous, expected",
    [
        ([CodeStatus.ACTIVE, CodeStatus.SOLD], ListingStatus.SOLD, ListingStatus.ACTIVE),
        ([CodeStatus.SUSPENDED, CodeStatus.EXPIRED], ListingStatus.ACTIVE, ListingStatus.SUSPENDED),
        ([CodeStatus.EXPIRED, CodeStatus.SOLD], ListingStatus.ACTIVE, ListingStatus.EXPIRED),
        ([CodeStatus.SOLD, CodeStatus.SOLD], ListingStatus.ACTIVE, ListingStatus.SOLD),
        ([CodeStatus.DRAFT, CodeStatus.DRAFT], ListingStatus.ACTIVE, ListingStatus.DRAFT),
        ([CodeStatus.SOLD, CodeStatus.DRAFT], ListingStatus.ACTIVE, ListingStatus.EXPIRED),
        ([], ListingStatus.ACTIVE, ListingStatus.SUSPENDED),
        ([], ListingStatus.DRAFT, ListingStatus.DRAFT),
        ([], None, ListingStatus.SUSPENDED),
        ([CodeStatus.ACTIVE], ListingStatus.DRAFT, ListingStatus.DRAFT),
    ],
)
def test_derive_status_priority_table(statuses, previous, expected) -> None:
    """Verify every rule of the status priority order, including draft stickiness."""

    codes = [_code(status) for status in statuses]
    assert derive_status(codes, previous) is expected


def test_derive_status_listing_expired_overrides_everything() -> None:
    """An expired listing date forces 'expired', even for drafts."""

    assert derive_status([_code()], ListingStatus.DRAFT, listing_expired=True) is ListingStatus.EXPIRED
    assert derive_status([], ListingStatus.ACTIVE, listing_expired=True) is ListingStatus.EXPIRED


def test_recompute_status_expires_active_codes_when_listing_date_passed() -> None:
    """Active codes flip to expired; sold codes keep their status."""

    sold = _code(CodeStatus.SOLD)
    active = _code()
    inventory = _inventory(sold, active, expiration_date=NOW - timedelta(seconds=1))

    updated = inventory.recompute_status(NOW)

    assert updated.status is ListingStatus.EXPIRED
    assert [c.sold_status for c in updated.codes] == [CodeStatus.SOLD, CodeStatus.EXPIRED]
    assert inventory.codes[1].sold_status is CodeStatus.ACTIVE
    assert inventory.status is ListingStatus.ACTIVE


def test_recompute_status_matches_derive_status_after_mutation() -> None:
    """Recomputed status equals derive_status(codes, previous) for a non-expired listing."""

    inventory = _inventory(_code(CodeStatus.SOLD), _code(CodeStatus.SOLD), status=ListingStatus.ACTIVE)
    updated = inventory.recompute_status(NOW)
    assert updated.status is derive_status(inventory.codes, ListingStatus.ACTIVE)
    assert updated.status is ListingStatus.SOLD


def test_draft_listing_stays_draft_until_activated() -> None:
    """Draft stickiness holds through recompute and is lifted by activate()."""

    draft_code = _code(CodeStatus.DRAFT)
    inventory = _inventory(draft_code, _code(), status=ListingStatus.DRAFT)

    assert inventory.recompute_status(NOW).status is ListingStatus.DRAFT

    activated = inventory.activate(NOW)
    assert activated.status is ListingStatus.ACTIVE
    assert all(c.sold_status is CodeStatus.ACTIVE for c in activated.codes)


def test_activate_rejects_empty_or_expired_listing() -> None:
    with pytest.raises(ValueError):
        _inventory(status=ListingStatus.DRAFT).activate(NOW)
    with pytest.raises(ValueError):
        _inventory(_code(), status=ListingStatus.DRAFT, expiration_date=NOW - timedelta(days=1)).activate(NOW)


def test_active_codes_sorted_soonest_expiry_first_never_expiring_last() -> None:
    """Expiring codes ascend by date; never-expiring codes follow in stored order."""

    never_1 = _code()
    july = _code(expiration_date=JULY_1)
    never_2 = _code()
    june = _code(expiration_date=JUNE_10)
    sold = _code(CodeStatus.SOLD, expiration_date=JUNE_10 - timedelta(days=5))
    inventory = _inventory(never_1, july, never_2, june, sold)

    ordered = inventory.get_active_codes_sorted_by_expiration()

    assert [c.code_id for c in ordered] == [june.code_id, july.code_id, never_1.code_id, never_2.code_id]
    first_never = next(i for i, c in enumerate(ordered) if c.expiration_date is None)
    assert all(c.expiration_date is None for c in ordered[first_never:])


def test_get_codes_for_purchase_takes_first_n_in_priority_order() -> None:
    never = _code()
    june = _code(expiration_date=JUNE_10)
    inventory = _inventory(never, june)

    assert [c.code_id for c in inventory.get_codes_for_purchase(1)] == [june.code_id]
    assert [c.code_id for c in inventory.get_codes_for_purchase(2)] == [june.code_id, never.code_id]


def test_get_codes_for_purchase_insufficient_changes_nothing() -> None:
    """Asking for more than available raises and leaves the inventory untouched."""

    inventory = _inventory(_code(), _code(CodeStatus.SOLD))

    with pytest.raises(InsufficientInventoryError) as exc:
        inventory.get_codes_for_purchase(2)

    assert exc.value.requested == 2
    assert exc.value.available == 1
    assert exc.value.shortage == 1
    assert inventory.get_available_codes_count() == 1


def test_get_codes_from_expiration_groups_targets_exact_batches() -> None:
    june_a = _code(expiration_date=JUNE_10)
    june_b = _code(expiration_date=JUNE_10)
    july = _code(expiration_date=JULY_1)
    never = _code()
    inventory = _inventory(never, july, june_a, june_b)

    selected = inventory.get_codes_from_expiration_groups(
        [
            ExpirationGroupRequest(ExpirationGroupType.EXPIRES, 1, JULY_1),
            ExpirationGroupRequest(ExpirationGroupType.NEVER_EXPIRES, 1),
        ]
    )

    assert [c.code_id for c in selected] == [july.code_id, never.code_id]


def test_get_codes_from_expiration_groups_names_short_group() -> None:
    """A short subgroup fails with the group named, even when the listing has enough codes overall."""

    inventory = _inventory(_code(expiration_date=JUNE_10), _code(), _code())

    with pytest.raises(InsufficientInventoryError) as exc:
        inventory.get_codes_from_expiration_groups(
            [ExpirationGroupRequest(ExpirationGroupType.EXPIRES, 2, JUNE_10)]
        )

    assert "2025-06-10" in exc.value.criteria
    assert exc.value.available == 1


def test_expiration_group_requests_never_reuse_a_code() -> None:
    """An undated 'expires' request and a dated one do not share codes."""

    june = _code(expiration_date=JUNE_10)
    july = _code(expiration_date=JULY_1)
    inventory = _inventory(june, july)

    selected = inventory.get_codes_from_expiration_groups(
        [
            ExpirationGroupRequest(ExpirationGroupType.EXPIRES, 1),
            ExpirationGroupRequest(ExpirationGroupType.EXPIRES, 1, JUNE_10),
        ]
    )

    # the dated batch keeps its code; the undated request takes what is left
    assert [c.code_id for c in selected] == [july.code_id, june.code_id]


def test_undated_expires_request_reports_its_own_position() -> None:
    inventory = _inventory(_code(expiration_date=JUNE_10), _code())

    with pytest.raises(InsufficientInventoryError) as exc:
        inventory.get_codes_from_expiration_groups(
            [
                ExpirationGroupRequest(ExpirationGroupType.EXPIRES, 1),
                ExpirationGroupRequest(ExpirationGroupType.EXPIRES, 1, JUNE_10),
                ExpirationGroupRequest(ExpirationGroupType.NEVER_EXPIRES, 1),
            ]
        )

    assert exc.value.item_index == 0
    assert exc.value.available == 0


def test_commit_allocation_marks_exactly_n_sold_and_keeps_ciphertext() -> None:
    """Exactly n codes become sold; delivered payloads carry ciphertext, nonce and key id."""

    codes = [_code() for _ in range(3)]
    inventory = _inventory(*codes)
    selected = inventory.get_codes_for_purchase(2)

    updated, delivered = inventory.commit_allocation(selected, NOW)

    assert updated.get_available_codes_count() == inventory.get_available_codes_count() - 2
    assert [d.code_id for d in delivered] == [c.code_id for c in selected]
    assert all(d.ciphertext == c.ciphertext and d.nonce == c.nonce for d, c in zip(delivered, selected))
    sold = [c for c in updated.codes if c.sold_status is CodeStatus.SOLD]
    assert len(sold) == 2
    assert all(c.sold_at == NOW for c in sold)


def test_commit_allocation_rejects_non_active_codes() -> None:
    sold = _code(CodeStatus.SOLD)
    inventory = _inventory(sold, _code())
    with pytest.raises(ValueError):
        inventory.commit_allocation([sold], NOW)


def test_commit_allocation_recomputes_status_to_sold() -> None:
    inventory = _inventory(_code())
    updated, _ = inventory.commit_allocation(inventory.get_codes_for_purchase(1), NOW)
    assert updated.status is ListingStatus.SOLD
    assert not updated.has_available_codes()


def test_add_codes_encrypts_fingerprints_and_leaves_status(cipher) -> None:
    inventory = _inventory(status=ListingStatus.DRAFT)

    updated = inventory.add_codes([" AAAA-BBBB ", "CCCC-DDDD"], encryptor=cipher, fingerprint=fingerprint_code)

    assert len(updated.codes) == 2
    assert updated.status is ListingStatus.DRAFT
    assert updated.codes[0].fingerprint == fingerprint_code("AAAA-BBBB")
    assert updated.codes[0].nonce != updated.codes[1].nonce
    assert cipher.decrypt(updated.codes[0].ciphertext, updated.codes[0].nonce, "k1") == "AAAA-BBBB"
    assert all(c.expiration_group is ExpirationGroupType.NEVER_EXPIRES for c in updated.codes)
    assert inventory.codes == ()


def test_add_codes_rejects_blank_codes(cipher) -> None:
    with pytest.raises(ValueError):
        _inventory().add_codes(["   "], encryptor=cipher, fingerprint=fingerprint_code)


def test_get_expiration_groups_summarizes_active_codes() -> None:
    inventory = _inventory(
        _code(),
        _code(expiration_date=JULY_1),
        _code(expiration_date=JUNE_10),
        _code(expiration_date=JUNE_10),
        _code(CodeStatus.SOLD, expiration_date=JUNE_10),
    )

    groups = inventory.get_expiration_groups()

    assert [(g.type, g.date, g.quantity) for g in groups] == [
        (ExpirationGroupType.EXPIRES, JUNE_10, 2),
        (ExpirationGroupType.EXPIRES, JULY_1, 1),
        (ExpirationGroupType.NEVER_EXPIRES, None, 1),
    ]


def test_duplicate_code_ids_rejected() -> None:
    code = _code()
    with pytest.raises(ValueError):
        ListingInventory(listing=_listing(), codes=(code, code))
