"""
Order repository (persistence).

Persistence operations for Orders (`orders` table). Order lines, including the
delivered codes, are stored as a JSON array on the order row.

Status changes are conditional on the status that was read, so a replayed
payment webhook can claim a pending order at most once.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Sequence
from uuid import UUID

from domain.order import (
    GROUP_CANCELLABLE_STATUSES,
    DeliveryStatus,
    EscrowStatus,
    Order,
    OrderItem,
    OrderStatus,
)
from domain.time import parse_utc_datetime, to_iso_utc
from repositories.client import get_supabase

# Supabase table name for orders.
# Keep this aligned with sql/schema.sql.
_ORDERS_TABLE: str = "orders"

_TIMESTAMP_COLUMNS = {
    "processed_at": "processed_at_utc",
    "escrow_held_at": "escrow_held_at_utc",
    "escrow_released_at": "escrow_released_at_utc",
    "delivered_at": "delivered_at_utc",
    "failed_at": "failed_at_utc",
    "updated_at": "updated_at_utc",
}


def _row_to_order(row: Mapping[str, Any]) -> Order:
    """Convert a Supabase row into an Order."""

    timestamps = {
        field_name: parse_utc_datetime(row.get(column))
        for field_name, column in _TIMESTAMP_COLUMNS.items()
    }
    return Order(
        order_id=UUID(str(row["order_id"])),
        external_id=UUID(str(row["external_id"])),
        buyer_id=str(row["buyer_id"]),
        seller_id=str(row["seller_id"]),
        checkout_group_id=UUID(str(row["checkout_group_id"])),
        payment_intent_id=str(row["payment_intent_id"]),
        order_items=tuple(OrderItem.from_dict(item) for item in row.get("order_items") or []),
        total_amount=Decimal(str(row["total_amount"])),
        currency=str(row.get("currency", "USD")),
        created_at=parse_utc_datetime(row["created_at_utc"]),
        status=OrderStatus(str(row["status"])),
        delivery_status=DeliveryStatus(str(row["delivery_status"])),
        escrow_status=EscrowStatus(str(row["escrow_status"])),
        error_message=row.get("error_message"),
        **timestamps,
    )


def _mutable_fields(order: Order) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "order_items": [item.to_dict() for item in order.order_items],
        "status": order.status.value,
        "delivery_status": order.delivery_status.value,
        "escrow_status": order.escrow_status.value,
        "error_message": order.error_message,
    }
    for field_name, column in _TIMESTAMP_COLUMNS.items():
        payload[column] = to_iso_utc(getattr(order, field_name), name=field_name)
    return payload


def _order_to_row(order: Order) -> Dict[str, Any]:
    row = {
        "order_id": str(order.order_id),
        "external_id": str(order.external_id),
        "buyer_id": order.buyer_id,
        "seller_id": order.seller_id,
        "checkout_group_id": str(order.checkout_group_id),
        "payment_intent_id": order.payment_intent_id,
        "total_amount": str(order.total_amount),
        "currency": order.currency,
        "created_at_utc": to_iso_utc(order.created_at, name="created_at"),
    }
    row.update(_mutable_fields(order))
    return row


def insert_orders(orders: Sequence[Order]) -> None:
    """Insert all orders of a checkout in one statement."""

    if not orders:
        return

    response = get_supabase().table(_ORDERS_TABLE).insert([_order_to_row(o) for o in orders]).execute()
    error = getattr(response, "error", None)
    if error:
        raise RuntimeError(f"Failed to insert orders: {error}")


def _select_orders(column: str, value: str) -> List[Order]:
    response = (
        get_supabase()
        .table(_ORDERS_TABLE)
        .select("*")
        .eq(column, value)
        .order("created_at_utc")
        .execute()
    )
    error = getattr(response, "error", None)
    if error:
        raise RuntimeError(f"Failed to list orders: {error}")

    rows = getattr(response, "data", None) or []
    return [_row_to_order(row) for row in rows]


def get_order(order_id: UUID) -> Optional[Order]:
    orders = _select_orders("order_id", str(order_id))
    return orders[0] if orders else None


def list_orders_by_payment_intent(payment_intent_id: str) -> List[Order]:
    return _select_orders("payment_intent_id", payment_intent_id)


def list_orders_by_group(checkout_group_id: UUID) -> List[Order]:
    return _select_orders("checkout_group_id", str(checkout_group_id))


def list_orders_by_buyer(buyer_id: str) -> List[Order]:
    return _select_orders("buyer_id", buyer_id)


def update_order(order: Order, *, expected_status: OrderStatus) -> bool:
    """
    Write an order's mutable fields if its stored status is still `expected_status`.

    Returns:
        True if the row was updated, False if another writer changed the status first
    """

    response = (
        get_supabase()
        .table(_ORDERS_TABLE)
        .update(_mutable_fields(order))
        .eq("order_id", str(order.order_id))
        .eq("status", expected_status.value)
        .execute()
    )
    error = getattr(response, "error", None)
    if error:
        raise RuntimeError(f"Failed to update order: {error}")

    return bool(getattr(response, "data", None))


def cancel_group(checkout_group_id: UUID, at: datetime) -> List[UUID]:
    """
    Cancel every non-cancelled order of a checkout group in one statement.

    This bypasses ORDER_TRANSITIONS: completed orders are cancelled too (see
    GROUP_CANCELLABLE_STATUSES) and their delivered codes stay sold.
    Returns the ids of the orders that changed.
    """

    at_iso = to_iso_utc(at, name="at")
    response = (
        get_supabase()
        .table(_ORDERS_TABLE)
        .update(
            {
                "status": OrderStatus.CANCELLED.value,
                "delivery_status": DeliveryStatus.FAILED.value,
                "updated_at_utc": at_iso,
            }
        )
        .eq("checkout_group_id", str(checkout_group_id))
        .in_("status", sorted(status.value for status in GROUP_CANCELLABLE_STATUSES))
        .execute()
    )
    error = getattr(response, "error", None)
    if error:
        raise RuntimeError(f"Failed to cancel checkout group: {error}")

    rows = getattr(response, "data", None) or []
    return [UUID(str(row["order_id"])) for row in rows]


__all__ = [
    "cancel_group",
    "get_order",
    "insert_orders",
    "list_orders_by_buyer",
    "list_orders_by_group",
    "list_orders_by_payment_intent",
    "update_order",
]
