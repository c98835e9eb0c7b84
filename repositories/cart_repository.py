"""
Cart repository (persistence).

One row per buyer in the `carts` table (user_id is unique). Items are stored as
an ordered JSON array. A cart is single-owner, so a plain upsert on user_id is
the only atomicity needed.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict

from domain.cart import Cart
from domain.time import to_iso_utc
from repositories.client import get_supabase

# Supabase table name for carts.
# Keep this aligned with sql/schema.sql.
_CARTS_TABLE: str = "carts"


def get_cart(user_id: str) -> Cart:
    """Return the buyer's cart; a buyer without a stored cart gets an empty one."""

    response = (
        get_supabase()
        .table(_CARTS_TABLE)
        .select("user_id, items")
        .eq("user_id", user_id)
        .limit(1)
        .execute()
    )
    error = getattr(response, "error", None)
    if error:
        raise RuntimeError(f"Failed to get cart: {error}")

    rows = getattr(response, "data", None) or []
    if not rows:
        return Cart(user_id=user_id)
    return Cart.from_items(user_id, rows[0].get("items") or [])


def save_cart(cart: Cart, updated_at: datetime) -> None:
    """Create or replace the buyer's cart."""

    payload: Dict[str, Any] = {
        "user_id": cart.user_id,
        "items": cart.items_to_dicts(),
        "updated_at_utc": to_iso_utc(updated_at, name="updated_at"),
    }

    response = get_supabase().table(_CARTS_TABLE).upsert(payload, on_conflict="user_id").execute()
    error = getattr(response, "error", None)
    if error:
        raise RuntimeError(f"Failed to save cart: {error}")


def clear_cart(user_id: str, updated_at: datetime) -> None:
    """Empty the buyer's cart (no-op for buyers without a stored cart)."""

    response = (
        get_supabase()
        .table(_CARTS_TABLE)
        .update({"items": [], "updated_at_utc": to_iso_utc(updated_at, name="updated_at")})
        .eq("user_id", user_id)
        .execute()
    )
    error = getattr(response, "error", None)
    if error:
        raise RuntimeError(f"Failed to clear cart: {error}")


__all__ = ["clear_cart", "get_cart", "save_cart"]
