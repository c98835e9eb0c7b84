"""
Listing code repository (persistence).

Persistence operations for CodeRecords in the `listing_codes` table. Codes are
stored one row per code so that every status change can be a conditional update
on that row ("... WHERE sold_status = 'active'"); the number of rows returned by
the update tells the caller how many codes actually changed.

No business rules live here: selection order, status derivation and duplicate
policy belong to the domain and service layers.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence
from uuid import UUID

from domain.code_record import CodeRecord, CodeStatus
from domain.time import parse_utc_datetime, to_iso_utc
from repositories.client import get_supabase

# Supabase table name for listing codes.
# Keep this aligned with sql/schema.sql.
_CODES_TABLE: str = "listing_codes"


@dataclass(frozen=True, slots=True)
class FingerprintMatch:
    """A stored code whose fingerprint matched a lookup."""

    code_id: UUID
    listing_id: UUID
    fingerprint: str


def _row_to_code(row: Mapping[str, Any]) -> CodeRecord:
    """Convert a Supabase row into a CodeRecord."""

    return CodeRecord(
        code_id=UUID(str(row["code_id"])),
        ciphertext=str(row["ciphertext"]),
        nonce=str(row["nonce"]),
        key_id=str(row["key_id"]),
        fingerprint=row.get("fingerprint"),
        sold_status=CodeStatus(str(row["sold_status"])),
        sold_at=parse_utc_datetime(row.get("sold_at_utc")),
        expiration_date=parse_utc_datetime(row.get("expiration_date_utc")),
    )


def _code_to_row(
    code: CodeRecord,
    *,
    listing_id: UUID,
    seller_id: str,
    position: int,
    created_at: datetime,
) -> Dict[str, Any]:
    return {
        "code_id": str(code.code_id),
        "listing_id": str(listing_id),
        "seller_id": seller_id,
        "position": position,
        "ciphertext": code.ciphertext,
        "nonce": code.nonce,
        "key_id": code.key_id,
        "fingerprint": code.fingerprint,
        "sold_status": code.sold_status.value,
        "sold_at_utc": to_iso_utc(code.sold_at, name="sold_at"),
        "expiration_date_utc": to_iso_utc(code.expiration_date, name="expiration_date"),
        "expiration_group": code.expiration_group.value,
        "created_at_utc": to_iso_utc(created_at, name="created_at"),
    }


def _ids(code_ids: Iterable[UUID]) -> List[str]:
    return [str(code_id) for code_id in code_ids]


def insert_codes(
    listing_id: UUID,
    seller_id: str,
    codes: Sequence[CodeRecord],
    *,
    start_position: int,
    created_at: datetime,
) -> None:
    """
    Insert new codes for a listing in one statement.

    Positions continue from `start_position` so stored order matches the order
    in which codes were added.
    """

    if not codes:
        return

    payload = [
        _code_to_row(
            code,
            listing_id=listing_id,
            seller_id=seller_id,
            position=start_position + offset,
            created_at=created_at,
        )
        for offset, code in enumerate(codes)
    ]

    response = get_supabase().table(_CODES_TABLE).insert(payload).execute()
    error = getattr(response, "error", None)
    if error:
        code = getattr(error, "code", None)
        if str(code) == "23505":
            raise ValueError("Code already exists (code_id collision)") from None
        raise RuntimeError(f"Failed to insert listing codes: {error}")


def list_codes(listing_id: UUID) -> List[CodeRecord]:
    """All codes of a listing in stored order."""

    response = (
        get_supabase()
        .table(_CODES_TABLE)
        .select("*")
        .eq("listing_id", str(listing_id))
        .order("position")
        .execute()
    )
    error = getattr(response, "error", None)
    if error:
        raise RuntimeError(f"Failed to list listing codes: {error}")

    rows = getattr(response, "data", None) or []
    return [_row_to_code(row) for row in rows]


def get_codes_by_ids(code_ids: Sequence[UUID]) -> List[CodeRecord]:
    if not code_ids:
        return []

    response = get_supabase().table(_CODES_TABLE).select("*").in_("code_id", _ids(code_ids)).execute()
    error = getattr(response, "error", None)
    if error:
        raise RuntimeError(f"Failed to fetch listing codes: {error}")

    rows = getattr(response, "data", None) or []
    return [_row_to_code(row) for row in rows]


def mark_codes_sold(code_ids: Sequence[UUID], sold_at: datetime) -> List[UUID]:
    """
    Conditionally mark codes as sold.

    Only rows that are still 'active' are updated. Returns the ids that were
    actually transitioned; callers compare this with what they asked for.
    """

    if not code_ids:
        return []

    response = (
        get_supabase()
        .table(_CODES_TABLE)
        .update({"sold_status": CodeStatus.SOLD.value, "sold_at_utc": to_iso_utc(sold_at, name="sold_at")})
        .in_("code_id", _ids(code_ids))
        .eq("sold_status", CodeStatus.ACTIVE.value)
        .execute()
    )
    error = getattr(response, "error", None)
    if error:
        raise RuntimeError(f"Failed to mark codes sold: {error}")

    rows = getattr(response, "data", None) or []
    return [UUID(str(row["code_id"])) for row in rows]


def release_codes(code_ids: Sequence[UUID], sold_at: datetime) -> List[UUID]:
    """
    Undo a sale made at `sold_at`: revert those codes to 'active'.

    The sold_at guard ensures only codes sold by the same allocation are released.
    """

    if not code_ids:
        return []

    response = (
        get_supabase()
        .table(_CODES_TABLE)
        .update({"sold_status": CodeStatus.ACTIVE.value, "sold_at_utc": None})
        .in_("code_id", _ids(code_ids))
        .eq("sold_status", CodeStatus.SOLD.value)
        .eq("sold_at_utc", to_iso_utc(sold_at, name="sold_at"))
        .execute()
    )
    error = getattr(response, "error", None)
    if error:
        raise RuntimeError(f"Failed to release codes: {error}")

    rows = getattr(response, "data", None) or []
    return [UUID(str(row["code_id"])) for row in rows]


def transition_codes(
    code_ids: Sequence[UUID],
    *,
    from_status: CodeStatus,
    to_status: CodeStatus,
) -> List[UUID]:
    """
    Move codes between non-sold statuses (expire, activate drafts, suspend).

    Only rows currently in `from_status` are changed.
    """

    if to_status is CodeStatus.SOLD or from_status is CodeStatus.SOLD:
        raise ValueError("use mark_codes_sold/release_codes for sold transitions")
    if not code_ids:
        return []

    response = (
        get_supabase()
        .table(_CODES_TABLE)
        .update({"sold_status": to_status.value})
        .in_("code_id", _ids(code_ids))
        .eq("sold_status", from_status.value)
        .execute()
    )
    error = getattr(response, "error", None)
    if error:
        raise RuntimeError(f"Failed to update code status: {error}")

    rows = getattr(response, "data", None) or []
    return [UUID(str(row["code_id"])) for row in rows]


def find_codes_by_fingerprints(
    fingerprints: Sequence[str],
    *,
    exclude_listing_id: Optional[UUID] = None,
    only_listing_id: Optional[UUID] = None,
) -> List[FingerprintMatch]:
    """
    Look up stored codes by fingerprint.

    `exclude_listing_id` skips one listing (cross-listing check);
    `only_listing_id` restricts the lookup to one listing (self-duplicate check).
    """

    if not fingerprints:
        return []

    query = (
        get_supabase()
        .table(_CODES_TABLE)
        .select("code_id, listing_id, fingerprint")
        .in_("fingerprint", list(fingerprints))
    )
    if exclude_listing_id is not None:
        query = query.neq("listing_id", str(exclude_listing_id))
    if only_listing_id is not None:
        query = query.eq("listing_id", str(only_listing_id))

    response = query.execute()
    error = getattr(response, "error", None)
    if error:
        raise RuntimeError(f"Failed to query code fingerprints: {error}")

    rows = getattr(response, "data", None) or []
    return [
        FingerprintMatch(
            code_id=UUID(str(row["code_id"])),
            listing_id=UUID(str(row["listing_id"])),
            fingerprint=str(row["fingerprint"]),
        )
        for row in rows
    ]


def list_codes_missing_fingerprint(limit: int = 500) -> List[CodeRecord]:
    """Legacy codes stored before fingerprints were introduced."""

    response = (
        get_supabase()
        .table(_CODES_TABLE)
        .select("*")
        .is_("fingerprint", "null")
        .order("created_at_utc")
        .limit(limit)
        .execute()
    )
    error = getattr(response, "error", None)
    if error:
        raise RuntimeError(f"Failed to list codes without fingerprint: {error}")

    rows = getattr(response, "data", None) or []
    return [_row_to_code(row) for row in rows]


def set_code_fingerprint(code_id: UUID, fingerprint: str) -> bool:
    """Write a fingerprint only if the code does not have one yet."""

    response = (
        get_supabase()
        .table(_CODES_TABLE)
        .update({"fingerprint": fingerprint})
        .eq("code_id", str(code_id))
        .is_("fingerprint", "null")
        .execute()
    )
    error = getattr(response, "error", None)
    if error:
        raise RuntimeError(f"Failed to set code fingerprint: {error}")

    return bool(getattr(response, "data", None))


def count_codes_by_status(listing_id: Optional[UUID] = None) -> Dict[CodeStatus, int]:
    """Count codes per sold_status, optionally for one listing."""

    counts: Dict[CodeStatus, int] = {}
    for status in CodeStatus:
        query = (
            get_supabase()
            .table(_CODES_TABLE)
            .select("code_id", count="exact")
            .eq("sold_status", status.value)
        )
        if listing_id is not None:
            query = query.eq("listing_id", str(listing_id))
        response = query.limit(1).execute()
        error = getattr(response, "error", None)
        if error:
            raise RuntimeError(f"Failed to count codes: {error}")
        counts[status] = getattr(response, "count", 0) or 0
    return counts


__all__ = [
    "FingerprintMatch",
    "count_codes_by_status",
    "find_codes_by_fingerprints",
    "get_codes_by_ids",
    "insert_codes",
    "list_codes",
    "list_codes_missing_fingerprint",
    "mark_codes_sold",
    "release_codes",
    "set_code_fingerprint",
    "transition_codes",
]
