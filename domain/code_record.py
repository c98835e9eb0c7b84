"""
Domain: redeemable code records.

A CodeRecord is owned by exactly one listing and stores the code only in
encrypted form (ciphertext + per-code nonce + key id). The fingerprint is a
one-way hash of the plaintext used for duplicate detection; legacy records may
not have one.

Invariants:
- Exactly one sold_status at a time.
- sold_at is set iff sold_status is SOLD.
- code_id is stable and independent of the record's position in the listing.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional
from uuid import UUID

from .expiration_group import ExpirationGroupType
from .time import parse_utc_datetime, require_utc_timestamp, to_iso_utc


class CodeStatus(str, Enum):
    ACTIVE = "active"
    SOLD = "sold"
    EXPIRED = "expired"
    SUSPENDED = "suspended"
    DRAFT = "draft"


@dataclass(frozen=True, slots=True)
class CodeRecord:
    code_id: UUID
    ciphertext: str
    nonce: str
    key_id: str
    fingerprint: Optional[str]
    sold_status: CodeStatus = CodeStatus.ACTIVE
    sold_at: Optional[datetime] = None
    expiration_date: Optional[datetime] = None

    def __post_init__(self) -> None:
        if (self.sold_status is CodeStatus.SOLD) != (self.sold_at is not None):
            raise ValueError("sold_at must be set iff sold_status is 'sold'")
        if self.sold_at is not None:
            require_utc_timestamp("sold_at", self.sold_at)
        if self.expiration_date is not None:
            require_utc_timestamp("expiration_date", self.expiration_date)

    @property
    def expiration_group(self) -> ExpirationGroupType:
        return ExpirationGroupType.for_expiration_date(self.expiration_date)

    @property
    def is_active(self) -> bool:
        return self.sold_status is CodeStatus.ACTIVE

    def sold(self, sold_at: datetime) -> "CodeRecord":
        """Return a copy marked as sold. Only active codes can be sold."""

        require_utc_timestamp("sold_at", sold_at)
        if self.sold_status is not CodeStatus.ACTIVE:
            raise ValueError(f"Code {self.code_id} is {self.sold_status.value}, not active")
        return replace(self, sold_status=CodeStatus.SOLD, sold_at=sold_at)

    def with_status(self, status: CodeStatus) -> "CodeRecord":
        """Return a copy in a non-sold status (expire, suspend, draft, re-activate)."""

        if status is CodeStatus.SOLD:
            raise ValueError("use sold() to mark a code as sold")
        return replace(self, sold_status=status, sold_at=None)


@dataclass(frozen=True, slots=True)
class DeliveredCode:
    """
    A code as carried on an order line after delivery.

    The encrypted payload is copied from the listing so the buyer can retrieve the
    code independently of later listing mutations.
    """

    code_id: UUID
    ciphertext: str
    nonce: str
    key_id: str
    expiration_date: Optional[datetime]
    delivered_at: datetime

    def __post_init__(self) -> None:
        require_utc_timestamp("delivered_at", self.delivered_at)

    @staticmethod
    def from_record(record: CodeRecord, delivered_at: datetime) -> "DeliveredCode":
        return DeliveredCode(
            code_id=record.code_id,
            ciphertext=record.ciphertext,
            nonce=record.nonce,
            key_id=record.key_id,
            expiration_date=record.expiration_date,
            delivered_at=delivered_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code_id": str(self.code_id),
            "ciphertext": self.ciphertext,
            "nonce": self.nonce,
            "key_id": self.key_id,
            "expiration_date": to_iso_utc(self.expiration_date, name="expiration_date"),
            "delivered_at": to_iso_utc(self.delivered_at, name="delivered_at"),
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "DeliveredCode":
        delivered_at = parse_utc_datetime(data.get("delivered_at"))
        if delivered_at is None:
            raise ValueError("delivered code is missing delivered_at")
        return DeliveredCode(
            code_id=UUID(str(data["code_id"])),
            ciphertext=str(data["ciphertext"]),
            nonce=str(data["nonce"]),
            key_id=str(data["key_id"]),
            expiration_date=parse_utc_datetime(data.get("expiration_date")),
            delivered_at=delivered_at,
        )


__all__ = ["CodeRecord", "CodeStatus", "DeliveredCode"]
