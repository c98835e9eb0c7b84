"""
Domain: expiration groups.

Active codes of a listing are partitioned into:
- NEVER_EXPIRES: codes stored without an expiration date.
- EXPIRES: codes with an expiration date; each distinct date is its own batch.

Buyers may target batches explicitly ("2 from the batch expiring June 1, 1 from
the never-expiring batch") instead of accepting the default soonest-expiry order.
Group keys are (type, date) where date is only meaningful for EXPIRES.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .time import parse_utc_datetime, require_utc_timestamp, to_iso_utc


class ExpirationGroupType(str, Enum):
    NEVER_EXPIRES = "never_expires"
    EXPIRES = "expires"

    @staticmethod
    def for_expiration_date(expiration_date: Optional[datetime]) -> "ExpirationGroupType":
        """A code belongs to EXPIRES iff it carries an expiration date."""

        if expiration_date is None:
            return ExpirationGroupType.NEVER_EXPIRES
        return ExpirationGroupType.EXPIRES


GroupKey = Tuple[ExpirationGroupType, Optional[datetime]]


@dataclass(frozen=True, slots=True)
class ExpirationGroupRequest:
    """
    A buyer's request for `count` codes from one expiration group.

    For EXPIRES, `date` pins the request to a single batch; without a date any
    expiring code qualifies (soonest first).
    """

    type: ExpirationGroupType
    count: int
    date: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.count <= 0:
            raise ValueError("expiration group count must be > 0")
        if self.date is not None:
            if self.type is ExpirationGroupType.NEVER_EXPIRES:
                raise ValueError("never_expires groups cannot carry a date")
            require_utc_timestamp("date", self.date)

    @property
    def key(self) -> GroupKey:
        return (self.type, self.date if self.type is ExpirationGroupType.EXPIRES else None)

    def label(self) -> str:
        """Human-readable description used in error messages."""

        if self.date is not None:
            return f"{self.type.value} ({self.date.date().isoformat()})"
        return self.type.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "count": self.count,
            "date": to_iso_utc(self.date, name="date"),
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "ExpirationGroupRequest":
        return ExpirationGroupRequest(
            type=ExpirationGroupType(str(data["type"])),
            count=int(data["count"]),
            date=parse_utc_datetime(data.get("date")),
        )


@dataclass(frozen=True, slots=True)
class ExpirationGroupSummary:
    """Available quantity of active codes in one expiration group."""

    type: ExpirationGroupType
    quantity: int
    date: Optional[datetime] = None

    @property
    def key(self) -> GroupKey:
        return (self.type, self.date)


def total_count(groups: Iterable[ExpirationGroupRequest]) -> int:
    return sum(group.count for group in groups)


def merge_expiration_groups(
    existing: Iterable[ExpirationGroupRequest],
    incoming: Iterable[ExpirationGroupRequest],
) -> Tuple[ExpirationGroupRequest, ...]:
    """
    Merge two group lists key-wise, summing counts.

    Order follows first appearance: existing groups first, then new keys from incoming.
    """

    merged: Dict[GroupKey, ExpirationGroupRequest] = {}
    order: List[GroupKey] = []
    for group in list(existing) + list(incoming):
        current = merged.get(group.key)
        if current is None:
            merged[group.key] = group
            order.append(group.key)
        else:
            merged[group.key] = replace(current, count=current.count + group.count)
    return tuple(merged[key] for key in order)


__all__ = [
    "ExpirationGroupRequest",
    "ExpirationGroupSummary",
    "ExpirationGroupType",
    "GroupKey",
    "merge_expiration_groups",
    "total_count",
]
