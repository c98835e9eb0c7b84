"""
Listing repository (persistence).

Persistence operations for Listing rows (`listings` table) and for loading the
ListingInventory aggregate (listing + its codes).

Listing rows carry a `version` counter. Every save is a conditional update on
(listing_id, version) that bumps the version; zero updated rows means someone
else saved the listing in between and ConcurrentModificationError is raised.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Sequence
from uuid import UUID

from domain.code_record import CodeStatus
from domain.errors import ConcurrentModificationError
from domain.listing import Listing, ListingInventory, ListingStatus
from domain.time import parse_utc_datetime, to_iso_utc, utc_now
from repositories import code_repository
from repositories.client import get_supabase

# Supabase table name for listings.
# Keep this aligned with sql/schema.sql.
_LISTINGS_TABLE: str = "listings"

# Columns safe to show another seller (never seller_notes).
_SUMMARY_COLUMNS = "listing_id, external_id, seller_id, title"


@dataclass(frozen=True, slots=True)
class ListingSummary:
    listing_id: UUID
    external_id: UUID
    seller_id: str
    title: str


def _row_to_listing(row: Mapping[str, Any]) -> Listing:
    """Convert a Supabase row into a Listing."""

    return Listing(
        listing_id=UUID(str(row["listing_id"])),
        external_id=UUID(str(row["external_id"])),
        seller_id=str(row["seller_id"]),
        title=str(row["title"]),
        price=Decimal(str(row["price"])),
        platform=str(row["platform"]),
        region=str(row["region"]),
        created_at=parse_utc_datetime(row["created_at_utc"]),
        category_id=row.get("category_id"),
        expiration_date=parse_utc_datetime(row.get("expiration_date_utc")),
        status=ListingStatus(str(row["status"])),
        version=int(row.get("version") or 0),
        updated_at=parse_utc_datetime(row.get("updated_at_utc")),
        seller_notes=row.get("seller_notes"),
        discounted_price=Decimal(str(row["discounted_price"])) if row.get("discounted_price") is not None else None,
    )


def _listing_to_row(listing: Listing) -> Dict[str, Any]:
    return {
        "listing_id": str(listing.listing_id),
        "external_id": str(listing.external_id),
        "seller_id": listing.seller_id,
        "title": listing.title,
        "price": str(listing.price),
        "discounted_price": str(listing.discounted_price) if listing.discounted_price is not None else None,
        "category_id": listing.category_id,
        "platform": listing.platform,
        "region": listing.region,
        "expiration_date_utc": to_iso_utc(listing.expiration_date, name="expiration_date"),
        "status": listing.status.value,
        "seller_notes": listing.seller_notes,
        "version": listing.version,
        "created_at_utc": to_iso_utc(listing.created_at, name="created_at"),
        "updated_at_utc": to_iso_utc(listing.updated_at, name="updated_at"),
    }


def insert_listing(inventory: ListingInventory) -> None:
    """
    Insert a new listing row and all of its codes.

    The listing row is written first so the codes' foreign key resolves.
    """

    listing = inventory.listing
    response = get_supabase().table(_LISTINGS_TABLE).insert(_listing_to_row(listing)).execute()
    error = getattr(response, "error", None)
    if error:
        code = getattr(error, "code", None)
        if str(code) == "23505":
            raise ValueError(f"Listing {listing.external_id} already exists") from None
        raise RuntimeError(f"Failed to insert listing: {error}")

    code_repository.insert_codes(
        listing.listing_id,
        listing.seller_id,
        inventory.codes,
        start_position=0,
        created_at=listing.created_at,
    )


def _fetch_one(column: str, value: str) -> Optional[Listing]:
    response = (
        get_supabase()
        .table(_LISTINGS_TABLE)
        .select("*")
        .eq(column, value)
        .limit(1)
        .execute()
    )
    error = getattr(response, "error", None)
    if error:
        raise RuntimeError(f"Failed to get listing: {error}")

    rows = getattr(response, "data", None) or []
    if not rows:
        return None
    return _row_to_listing(rows[0])


def get_listing(listing_id: UUID) -> Optional[Listing]:
    return _fetch_one("listing_id", str(listing_id))


def get_listing_by_external_id(external_id: UUID) -> Optional[Listing]:
    return _fetch_one("external_id", str(external_id))


def get_listings_by_external_ids(external_ids: Sequence[UUID]) -> Dict[UUID, Listing]:
    """Live listing data for a set of external ids, keyed by external id."""

    if not external_ids:
        return {}

    response = (
        get_supabase()
        .table(_LISTINGS_TABLE)
        .select("*")
        .in_("external_id", [str(i) for i in external_ids])
        .execute()
    )
    error = getattr(response, "error", None)
    if error:
        raise RuntimeError(f"Failed to get listings: {error}")

    rows = getattr(response, "data", None) or []
    listings = [_row_to_listing(row) for row in rows]
    return {listing.external_id: listing for listing in listings}


def get_listing_summaries(listing_ids: Sequence[UUID]) -> Dict[UUID, ListingSummary]:
    """Public identity of listings (no notes), keyed by internal listing id."""

    if not listing_ids:
        return {}

    response = (
        get_supabase()
        .table(_LISTINGS_TABLE)
        .select(_SUMMARY_COLUMNS)
        .in_("listing_id", [str(i) for i in listing_ids])
        .execute()
    )
    error = getattr(response, "error", None)
    if error:
        raise RuntimeError(f"Failed to get listing summaries: {error}")

    rows = getattr(response, "data", None) or []
    summaries = [
        ListingSummary(
            listing_id=UUID(str(row["listing_id"])),
            external_id=UUID(str(row["external_id"])),
            seller_id=str(row["seller_id"]),
            title=str(row["title"]),
        )
        for row in rows
    ]
    return {summary.listing_id: summary for summary in summaries}


def list_listing_ids(statuses: Optional[Sequence[ListingStatus]] = None) -> List[UUID]:
    """Internal ids of all listings, optionally filtered by status."""

    query = get_supabase().table(_LISTINGS_TABLE).select("listing_id")
    if statuses:
        query = query.in_("status", [status.value for status in statuses])
    response = query.order("created_at_utc").execute()
    error = getattr(response, "error", None)
    if error:
        raise RuntimeError(f"Failed to list listings: {error}")

    rows = getattr(response, "data", None) or []
    return [UUID(str(row["listing_id"])) for row in rows]


def load_listing_inventory(listing_id: UUID) -> Optional[ListingInventory]:
    """Load a listing and its codes (in stored order)."""

    listing = get_listing(listing_id)
    if listing is None:
        return None
    return ListingInventory(listing=listing, codes=tuple(code_repository.list_codes(listing_id)))


def save_listing(
    inventory: ListingInventory,
    *,
    recompute_status: bool = True,
    as_of: Optional[datetime] = None,
) -> ListingInventory:
    """
    Persist the listing's status and the codes it has expired.

    By default the status is recomputed from the codes before writing. Batch
    repair jobs that already computed the status pass recompute_status=False.

    Codes that are EXPIRED in memory are flipped from 'active' in storage with
    a conditional update. The listing row is then written conditioned on the
    version that was read.

    Returns the saved aggregate (with the bumped version).

    Raises:
        ConcurrentModificationError: the listing was saved by someone else since it was read
    """

    now = as_of or utc_now()
    if recompute_status:
        inventory = inventory.recompute_status(now)

    expired_ids = [code.code_id for code in inventory.codes if code.sold_status is CodeStatus.EXPIRED]
    if expired_ids:
        code_repository.transition_codes(
            expired_ids,
            from_status=CodeStatus.ACTIVE,
            to_status=CodeStatus.EXPIRED,
        )

    listing = inventory.listing
    response = (
        get_supabase()
        .table(_LISTINGS_TABLE)
        .update(
            {
                "status": listing.status.value,
                "version": listing.version + 1,
                "updated_at_utc": to_iso_utc(now, name="updated_at"),
            }
        )
        .eq("listing_id", str(listing.listing_id))
        .eq("version", listing.version)
        .execute()
    )
    error = getattr(response, "error", None)
    if error:
        raise RuntimeError(f"Failed to save listing: {error}")

    rows = getattr(response, "data", None) or []
    if not rows:
        raise ConcurrentModificationError(listing.listing_id, listing.version)

    saved = replace(listing, version=listing.version + 1, updated_at=now)
    return replace(inventory, listing=saved)


__all__ = [
    "ListingSummary",
    "get_listing",
    "get_listing_by_external_id",
    "get_listing_summaries",
    "get_listings_by_external_ids",
    "insert_listing",
    "list_listing_ids",
    "load_listing_inventory",
    "save_listing",
]
