"""
Domain: listing code inventory.

A Listing owns an ordered collection of CodeRecords. ListingInventory is the
aggregate that pairs the listing with its codes and enforces:

- Listing status is always a pure function of the codes and the previous status
  (see derive_status). Draft is sticky until the listing is explicitly activated.
- A listing whose own expiration_date has passed is EXPIRED unconditionally, and
  every active code on it is flipped to expired.
- Allocation hands out the soonest-to-expire active codes first; codes without an
  expiration date come last, in stored order.
- Allocation is all-or-nothing: asking for more codes than are active (overall or
  within a requested expiration group) raises InsufficientInventoryError and
  changes nothing.

This module contains only pure domain entities: no I/O, no database, no frameworks.
Timestamps are always passed explicitly.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Set, Tuple
from uuid import UUID, uuid4

from .code_record import CodeRecord, CodeStatus, DeliveredCode
from .errors import InsufficientInventoryError
from .expiration_group import (
    ExpirationGroupRequest,
    ExpirationGroupSummary,
    ExpirationGroupType,
    GroupKey,
)
from .time import require_utc_timestamp


class ListingStatus(str, Enum):
    ACTIVE = "active"
    SOLD = "sold"
    EXPIRED = "expired"
    SUSPENDED = "suspended"
    DRAFT = "draft"


class EncryptedPayload(Protocol):
    ciphertext: str
    nonce: str
    key_id: str


class CodeEncryptor(Protocol):
    def encrypt(self, plaintext: str) -> EncryptedPayload: ...


def derive_status(
    codes: Sequence[CodeRecord],
    previous_status: Optional[ListingStatus],
    *,
    listing_expired: bool = False,
) -> ListingStatus:
    """
    Derive a listing status from its code statuses.

    Priority:
    0. listing_expired -> EXPIRED; previous status DRAFT -> DRAFT
    1. any active -> ACTIVE
    2. any suspended -> SUSPENDED
    3. any expired -> EXPIRED
    4. all sold -> SOLD
    5. all draft -> DRAFT
    6. only sold and draft -> EXPIRED (kept for compatibility with existing listings)
    7. no codes -> DRAFT if previously draft, else SUSPENDED
    """

    if listing_expired:
        return ListingStatus.EXPIRED
    if previous_status is ListingStatus.DRAFT:
        return ListingStatus.DRAFT
    if not codes:
        return ListingStatus.SUSPENDED

    statuses = [code.sold_status for code in codes]
    if CodeStatus.ACTIVE in statuses:
        return ListingStatus.ACTIVE
    if CodeStatus.SUSPENDED in statuses:
        return ListingStatus.SUSPENDED
    if CodeStatus.EXPIRED in statuses:
        return ListingStatus.EXPIRED
    if all(status is CodeStatus.SOLD for status in statuses):
        return ListingStatus.SOLD
    if all(status is CodeStatus.DRAFT for status in statuses):
        return ListingStatus.DRAFT
    return ListingStatus.EXPIRED


@dataclass(frozen=True, slots=True)
class Listing:
    """
    Listing metadata.

    listing_id is internal and never exposed to clients; external_id is the stable
    public identifier. version is the optimistic-concurrency counter used when the
    listing row is saved. discounted_price, when set, is what buyers pay.
    """

    listing_id: UUID
    external_id: UUID
    seller_id: str
    title: str
    price: Decimal
    platform: str
    region: str
    created_at: datetime
    category_id: Optional[str] = None
    expiration_date: Optional[datetime] = None
    status: ListingStatus = ListingStatus.DRAFT
    version: int = 0
    updated_at: Optional[datetime] = None
    seller_notes: Optional[str] = None
    discounted_price: Optional[Decimal] = None

    def __post_init__(self) -> None:
        require_utc_timestamp("created_at", self.created_at)
        if self.updated_at is not None:
            require_utc_timestamp("updated_at", self.updated_at)
        if self.expiration_date is not None:
            require_utc_timestamp("expiration_date", self.expiration_date)
        if self.price < 0:
            raise ValueError("price cannot be negative")
        if self.discounted_price is not None and self.discounted_price < 0:
            raise ValueError("discounted_price cannot be negative")

    @property
    def effective_price(self) -> Decimal:
        if self.discounted_price:
            return self.discounted_price
        return self.price

    def is_expired(self, as_of: datetime) -> bool:
        require_utc_timestamp("as_of", as_of)
        return self.expiration_date is not None and self.expiration_date < as_of

    def is_available(self, as_of: datetime) -> bool:
        """Active and not past its own expiration date (the stored status may lag)."""
        return self.status is ListingStatus.ACTIVE and not self.is_expired(as_of)


_NEVER_EXPIRES_SORT_KEY = (1, datetime.min)


def _expiration_sort_key(code: CodeRecord) -> Tuple[int, datetime]:
    if code.expiration_date is None:
        return _NEVER_EXPIRES_SORT_KEY
    return (0, code.expiration_date.replace(tzinfo=None))


@dataclass(frozen=True, slots=True)
class ListingInventory:
    """
    Immutable aggregate of a listing and its codes.

    Every operation returns a new instance; prior instances are unchanged.
    """

    listing: Listing
    codes: Tuple[CodeRecord, ...] = ()

    def __post_init__(self) -> None:
        seen: Set[UUID] = set()
        for code in self.codes:
            if code.code_id in seen:
                raise ValueError(f"Duplicate code_id {code.code_id} in listing {self.listing.listing_id}")
            seen.add(code.code_id)

    @property
    def listing_id(self) -> UUID:
        return self.listing.listing_id

    @property
    def status(self) -> ListingStatus:
        return self.listing.status

    def get_available_codes_count(self) -> int:
        return sum(1 for code in self.codes if code.is_active)

    def has_available_codes(self, quantity: int = 1) -> bool:
        return self.get_available_codes_count() >= quantity

    def add_codes(
        self,
        plaintexts: Iterable[str],
        *,
        encryptor: CodeEncryptor,
        fingerprint: Callable[[str], str],
        expiration_date: Optional[datetime] = None,
        id_factory: Callable[[], UUID] = uuid4,
    ) -> "ListingInventory":
        """
        Encrypt and append codes as ACTIVE.

        Each code gets a fresh nonce (via the encryptor), a fingerprint of its
        plaintext and a new code_id. The listing status is left untouched; it is
        recomputed when the listing is saved.
        """

        if expiration_date is not None:
            require_utc_timestamp("expiration_date", expiration_date)

        existing_ids = {code.code_id for code in self.codes}
        added: List[CodeRecord] = []
        for plaintext in plaintexts:
            value = plaintext.strip()
            if not value:
                raise ValueError("codes cannot be empty")
            code_id = id_factory()
            while code_id in existing_ids:
                code_id = id_factory()
            existing_ids.add(code_id)

            payload = encryptor.encrypt(value)
            added.append(
                CodeRecord(
                    code_id=code_id,
                    ciphertext=payload.ciphertext,
                    nonce=payload.nonce,
                    key_id=payload.key_id,
                    fingerprint=fingerprint(value),
                    sold_status=CodeStatus.ACTIVE,
                    expiration_date=expiration_date,
                )
            )

        return replace(self, codes=self.codes + tuple(added))

    def recompute_status(self, as_of: datetime) -> "ListingInventory":
        """
        Re-derive the listing status.

        If the listing itself has expired, active codes are flipped to EXPIRED and
        the status is EXPIRED regardless of the previous status.
        """

        if self.listing.is_expired(as_of):
            codes = tuple(
                code.with_status(CodeStatus.EXPIRED) if code.is_active else code
                for code in self.codes
            )
            return replace(
                self,
                codes=codes,
                listing=replace(self.listing, status=ListingStatus.EXPIRED),
            )

        status = derive_status(self.codes, self.listing.status)
        if status is self.listing.status:
            return self
        return replace(self, listing=replace(self.listing, status=status))

    def activate(self, as_of: datetime) -> "ListingInventory":
        """
        Lift the sticky draft status: draft codes become active and the status is
        derived as if the listing had never been a draft.
        """

        if not self.codes:
            raise ValueError("Cannot activate a listing without codes")
        if self.listing.is_expired(as_of):
            raise ValueError("Cannot activate an expired listing")

        codes = tuple(
            code.with_status(CodeStatus.ACTIVE) if code.sold_status is CodeStatus.DRAFT else code
            for code in self.codes
        )
        status = derive_status(codes, previous_status=None)
        return replace(self, codes=codes, listing=replace(self.listing, status=status))

    def get_active_codes_sorted_by_expiration(self) -> List[CodeRecord]:
        """
        Active codes, soonest expiry first; never-expiring codes last in stored order.
        """

        active = [code for code in self.codes if code.is_active]
        return sorted(active, key=_expiration_sort_key)

    def get_codes_for_purchase(self, quantity: int) -> List[CodeRecord]:
        """Select the first `quantity` codes in expiration priority order."""

        if quantity <= 0:
            raise ValueError("quantity must be > 0")

        candidates = self.get_active_codes_sorted_by_expiration()
        if len(candidates) < quantity:
            raise InsufficientInventoryError(
                requested=quantity,
                available=len(candidates),
                criteria=f"listing {self.listing.external_id}",
                listing_id=self.listing_id,
            )
        return candidates[:quantity]

    def get_codes_from_expiration_groups(
        self, group_requests: Sequence[ExpirationGroupRequest]
    ) -> List[CodeRecord]:
        """
        Select codes group by group.

        Each request only draws from active codes in its exact group (and batch
        date, when given). A code is never selected twice across requests.
        Requests naming an exact batch are filled before undated "expires"
        requests, which take whatever expiring codes are left. The result is
        returned in request order.
        """

        if not group_requests:
            raise ValueError("group_requests cannot be empty")

        sorted_active = self.get_active_codes_sorted_by_expiration()
        used: Set[UUID] = set()
        chosen_by_index: Dict[int, List[CodeRecord]] = {}
        fill_order = sorted(
            range(len(group_requests)), key=lambda i: _is_undated_expires(group_requests[i])
        )

        for idx in fill_order:
            request = group_requests[idx]
            matching = [
                code
                for code in sorted_active
                if code.code_id not in used and _matches_group(code, request)
            ]
            if len(matching) < request.count:
                raise InsufficientInventoryError(
                    requested=request.count,
                    available=len(matching),
                    criteria=f"expiration group {request.label()} of listing {self.listing.external_id}",
                    listing_id=self.listing_id,
                    item_index=idx if len(group_requests) > 1 else None,
                )
            chosen = matching[: request.count]
            used.update(code.code_id for code in chosen)
            chosen_by_index[idx] = chosen

        return [code for idx in range(len(group_requests)) for code in chosen_by_index[idx]]

    def get_expiration_groups(self) -> List[ExpirationGroupSummary]:
        """Summarize active codes per expiration group, soonest batch first."""

        counts: Dict[GroupKey, int] = {}
        for code in self.get_active_codes_sorted_by_expiration():
            key: GroupKey = (code.expiration_group, code.expiration_date)
            counts[key] = counts.get(key, 0) + 1
        return [
            ExpirationGroupSummary(type=group_type, quantity=quantity, date=date)
            for (group_type, date), quantity in counts.items()
        ]

    def commit_allocation(
        self, selected: Sequence[CodeRecord], sold_at: datetime
    ) -> Tuple["ListingInventory", List[DeliveredCode]]:
        """
        Mark the selected codes sold and return the delivered payloads.

        Nothing is decrypted: ciphertext, nonce and key id are carried into the
        DeliveredCode as-is. The listing status is recomputed as of sold_at.
        """

        require_utc_timestamp("sold_at", sold_at)
        wanted = [code.code_id for code in selected]
        if len(set(wanted)) != len(wanted):
            raise ValueError("selected codes contain duplicates")

        by_id = {code.code_id: code for code in self.codes}
        for code_id in wanted:
            current = by_id.get(code_id)
            if current is None:
                raise ValueError(f"Code {code_id} does not belong to listing {self.listing_id}")
            if not current.is_active:
                raise ValueError(f"Code {code_id} is {current.sold_status.value}, not active")

        wanted_set = set(wanted)
        codes = tuple(
            code.sold(sold_at) if code.code_id in wanted_set else code for code in self.codes
        )
        delivered = [DeliveredCode.from_record(by_id[code_id], sold_at) for code_id in wanted]
        updated = replace(self, codes=codes).recompute_status(sold_at)
        return updated, delivered


def _is_undated_expires(request: ExpirationGroupRequest) -> bool:
    return request.type is ExpirationGroupType.EXPIRES and request.date is None


def _matches_group(code: CodeRecord, request: ExpirationGroupRequest) -> bool:
    if code.expiration_group is not request.type:
        return False
    if request.type is ExpirationGroupType.EXPIRES and request.date is not None:
        return code.expiration_date == request.date
    return True


__all__ = [
    "CodeEncryptor",
    "EncryptedPayload",
    "Listing",
    "ListingInventory",
    "ListingStatus",
    "derive_status",
]
