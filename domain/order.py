"""
Domain: per-seller orders.

A checkout over a multi-seller cart creates one Order per seller. All orders of a
checkout share one checkout_group_id and one payment_intent_id.

State machine (ORDER_TRANSITIONS, enforced on every single-order update):
    pending -> processing (escrow held) -> completed (delivered)
    pending | processing -> failed
    pending | processing | failed -> cancelled

Group reconciliation is the one exception. When any order of a checkout group
fails, every order of the group that is not already cancelled is cancelled in
one bulk update, completed orders included (GROUP_CANCELLABLE_STATUSES). Codes
already delivered on a completed order stay sold; nothing claws them back.

Invariants:
- purchased_codes on an order line is either empty or holds exactly `quantity` codes.
- A completed order has every line fully delivered.
- total_amount equals the sum of line totals.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional, Sequence, Tuple
from uuid import UUID

from .cart import CartItem, from_minor_units, to_minor_units
from .code_record import DeliveredCode
from .errors import InvalidOrderTransitionError
from .expiration_group import ExpirationGroupRequest, total_count
from .time import require_utc_timestamp


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class EscrowStatus(str, Enum):
    NONE = "none"
    HELD = "held"
    RELEASED = "released"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


ORDER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.FAILED, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.COMPLETED, OrderStatus.FAILED, OrderStatus.CANCELLED}),
    OrderStatus.FAILED: frozenset({OrderStatus.CANCELLED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


# Statuses a group cancellation overrides; wider than ORDER_TRANSITIONS allows.
GROUP_CANCELLABLE_STATUSES: FrozenSet[OrderStatus] = frozenset(
    status for status in OrderStatus if status is not OrderStatus.CANCELLED
)


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ORDER_TRANSITIONS[current]


@dataclass(frozen=True, slots=True)
class OrderItem:
    """
    One line of an order.

    listing_id is the internal listing id used for allocation; listing_external_id
    is what buyers see.
    """

    listing_id: UUID
    listing_external_id: UUID
    title: str
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    platform: Optional[str] = None
    region: Optional[str] = None
    expiration_groups: Tuple[ExpirationGroupRequest, ...] = ()
    purchased_codes: Tuple[DeliveredCode, ...] = ()

    def __post_init__(self) -> None:
        if self.quantity <= 0:
            raise ValueError("quantity must be > 0")
        if self.expiration_groups and total_count(self.expiration_groups) != self.quantity:
            raise ValueError("expiration group counts must sum to quantity")
        if len(self.purchased_codes) not in (0, self.quantity):
            raise ValueError(
                f"order line for listing {self.listing_external_id} must hold 0 or "
                f"{self.quantity} codes, got {len(self.purchased_codes)}"
            )

    @property
    def is_delivered(self) -> bool:
        return len(self.purchased_codes) == self.quantity

    def with_codes(self, codes: Sequence[DeliveredCode]) -> "OrderItem":
        return replace(self, purchased_codes=tuple(codes))

    @staticmethod
    def for_cart_item(item: CartItem, listing_id: UUID) -> "OrderItem":
        return OrderItem(
            listing_id=listing_id,
            listing_external_id=item.listing_id,
            title=item.title,
            quantity=item.quantity,
            unit_price=item.unit_price,
            total_price=from_minor_units(item.line_total_minor_units),
            platform=item.snapshot.platform,
            region=item.snapshot.region,
            expiration_groups=item.expiration_groups,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "listing_id": str(self.listing_id),
            "listing_external_id": str(self.listing_external_id),
            "title": self.title,
            "platform": self.platform,
            "region": self.region,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price),
            "total_price": str(self.total_price),
            "expiration_groups": [group.to_dict() for group in self.expiration_groups],
            "purchased_codes": [code.to_dict() for code in self.purchased_codes],
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "OrderItem":
        return OrderItem(
            listing_id=UUID(str(data["listing_id"])),
            listing_external_id=UUID(str(data["listing_external_id"])),
            title=str(data.get("title") or ""),
            quantity=int(data["quantity"]),
            unit_price=Decimal(str(data["unit_price"])),
            total_price=Decimal(str(data["total_price"])),
            platform=data.get("platform"),
            region=data.get("region"),
            expiration_groups=tuple(
                ExpirationGroupRequest.from_dict(group) for group in data.get("expiration_groups") or []
            ),
            purchased_codes=tuple(
                DeliveredCode.from_dict(code) for code in data.get("purchased_codes") or []
            ),
        )


@dataclass(frozen=True, slots=True)
class Order:
    """
    Immutable record of one seller's slice of a checkout.

    Transition methods return a new Order and raise InvalidOrderTransitionError
    when the state machine does not allow the move.
    """

    order_id: UUID
    external_id: UUID
    buyer_id: str
    seller_id: str
    checkout_group_id: UUID
    payment_intent_id: str
    order_items: Tuple[OrderItem, ...]
    total_amount: Decimal
    currency: str
    created_at: datetime
    status: OrderStatus = OrderStatus.PENDING
    delivery_status: DeliveryStatus = DeliveryStatus.PENDING
    escrow_status: EscrowStatus = EscrowStatus.NONE
    error_message: Optional[str] = None
    processed_at: Optional[datetime] = None
    escrow_held_at: Optional[datetime] = None
    escrow_released_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        require_utc_timestamp("created_at", self.created_at)
        for name in (
            "processed_at",
            "escrow_held_at",
            "escrow_released_at",
            "delivered_at",
            "failed_at",
            "updated_at",
        ):
            value = getattr(self, name)
            if value is not None:
                require_utc_timestamp(name, value)

        if not self.order_items:
            raise ValueError("an order needs at least one item")
        line_total = sum(to_minor_units(item.total_price) for item in self.order_items)
        if line_total != to_minor_units(self.total_amount):
            raise ValueError("total_amount must equal the sum of line totals")
        if self.status is OrderStatus.COMPLETED and not all(i.is_delivered for i in self.order_items):
            raise ValueError("a completed order must have every line delivered")

    @property
    def total_minor_units(self) -> int:
        return to_minor_units(self.total_amount)

    @property
    def purchased_code_count(self) -> int:
        return sum(len(item.purchased_codes) for item in self.order_items)

    def _require_transition(self, target: OrderStatus) -> None:
        if not can_transition(self.status, target):
            raise InvalidOrderTransitionError(self.order_id, self.status.value, target.value)

    def mark_processing(self, at: datetime) -> "Order":
        """Payment confirmed: hold escrow and start delivery."""

        require_utc_timestamp("at", at)
        self._require_transition(OrderStatus.PROCESSING)
        return replace(
            self,
            status=OrderStatus.PROCESSING,
            escrow_status=EscrowStatus.HELD,
            processed_at=at,
            escrow_held_at=at,
            updated_at=at,
        )

    def mark_completed(self, items: Sequence[OrderItem], at: datetime) -> "Order":
        require_utc_timestamp("at", at)
        self._require_transition(OrderStatus.COMPLETED)
        if len(items) != len(self.order_items):
            raise ValueError("delivered items do not match the order lines")
        return replace(
            self,
            order_items=tuple(items),
            status=OrderStatus.COMPLETED,
            delivery_status=DeliveryStatus.DELIVERED,
            delivered_at=at,
            error_message=None,
            updated_at=at,
        )

    def mark_failed(self, message: str, at: datetime) -> "Order":
        require_utc_timestamp("at", at)
        self._require_transition(OrderStatus.FAILED)
        return replace(
            self,
            status=OrderStatus.FAILED,
            delivery_status=DeliveryStatus.FAILED,
            error_message=message,
            failed_at=at,
            updated_at=at,
        )

    def release_escrow(self, at: datetime) -> "Order":
        require_utc_timestamp("at", at)
        if self.status is not OrderStatus.COMPLETED or self.escrow_status is not EscrowStatus.HELD:
            raise InvalidOrderTransitionError(
                self.order_id,
                f"{self.status.value}/escrow {self.escrow_status.value}",
                f"escrow {EscrowStatus.RELEASED.value}",
            )
        return replace(
            self,
            escrow_status=EscrowStatus.RELEASED,
            escrow_released_at=at,
            updated_at=at,
        )


__all__ = [
    "DeliveryStatus",
    "EscrowStatus",
    "GROUP_CANCELLABLE_STATUSES",
    "ORDER_TRANSITIONS",
    "Order",
    "OrderItem",
    "OrderStatus",
    "can_transition",
]
