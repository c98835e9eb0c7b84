"""
Checkout orchestration for multi-seller carts.

Handles:
- Validating the cart against live listings (no partial checkout of a stale cart)
- One payment authorization for the whole cart, one Order per seller
- Payment confirmation: claim pending orders, hold escrow, deliver codes
- Group reconciliation: a failed order cancels the rest of its checkout group

Failure contract:
- Before payment is authorized, errors (CartInvalidError, SellerNotPayableError)
  are raised to the caller and nothing is persisted.
- After payment, delivery errors are recorded on the Order (status failed,
  error_message set) and surface through the order status instead.

Known gap: cancelling a checkout group does not reclaim codes already delivered
to a sibling order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional
from uuid import UUID, uuid4

import config
from domain.cart import CartItem, from_minor_units
from domain.errors import CartInvalidError, DeliveryFailure, SellerNotPayableError
from domain.listing import Listing
from domain.order import Order, OrderItem, OrderStatus
from domain.time import utc_now
from repositories import cart_repository, listing_repository, order_repository
from services.inventory_allocation_service import (
    AllocationRequest,
    AllocationResult,
    allocate_codes,
    release_allocation,
)
from services.payment_adapter import PaymentAdapter, PaymentConfirmation, SellerPayoutDirectory

logger = logging.getLogger(__name__)

ORDER_TYPE = "marketplace_checkout"


@dataclass(frozen=True, slots=True)
class CheckoutSession:
    """Result of creating a checkout."""
    checkout_group_id: UUID
    payment_intent_id: str
    client_secret: Optional[str]
    orders: List[Order]
    total_amount: Decimal
    currency: str

    @property
    def order_ids(self) -> List[UUID]:
        return [order.order_id for order in self.orders]


@dataclass(frozen=True, slots=True)
class PaymentSuccessResult:
    """
    Outcome of handling a payment confirmation.

    delivered: orders completed by this call
    failed: orders whose delivery failed
    skipped: orders that were not pending (webhook replay or concurrent handler)
    cancelled: orders cancelled by group reconciliation
    """
    payment_intent_id: str
    delivered: List[UUID] = field(default_factory=list)
    failed: List[UUID] = field(default_factory=list)
    skipped: List[UUID] = field(default_factory=list)
    cancelled: List[UUID] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class ConfirmPaymentResult:
    confirmation: PaymentConfirmation
    result: Optional[PaymentSuccessResult] = None


class CheckoutService:
    def __init__(
        self,
        payment_adapter: PaymentAdapter,
        payout_directory: SellerPayoutDirectory,
        *,
        currency: Optional[str] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._payments = payment_adapter
        self._payouts = payout_directory
        self._currency = currency or config.DEFAULT_CURRENCY
        self._clock = clock

    def _validate_cart_listings(
        self, buyer_id: str, items: List[CartItem], as_of: datetime
    ) -> Dict[UUID, Listing]:
        live = listing_repository.get_listings_by_external_ids([item.listing_id for item in items])

        unavailable = [
            item.listing_id
            for item in items
            if item.listing_id not in live or not live[item.listing_id].is_available(as_of)
        ]
        if unavailable:
            raise CartInvalidError(
                f"{len(unavailable)} item(s) in the cart are no longer available", unavailable
            )

        own = [item.listing_id for item in items if live[item.listing_id].seller_id == buyer_id]
        if own:
            raise CartInvalidError("You cannot buy your own listing", own)
        return live

    def _require_payable(self, seller_ids: List[str]) -> None:
        for seller_id in seller_ids:
            account = self._payouts.get_payout_account(seller_id)
            if account is None or not account.is_payable:
                raise SellerNotPayableError(seller_id)

    def create_checkout_session(self, buyer_id: str) -> CheckoutSession:
        """
        Validate the buyer's cart, authorize one payment and create one pending
        Order per seller.

        Raises:
            CartInvalidError: Empty cart, unavailable or own listings, zero total
            SellerNotPayableError: A seller has no valid payout account
        """

        cart = cart_repository.get_cart(buyer_id)
        if cart.is_empty:
            raise CartInvalidError("Cart is empty")

        live = self._validate_cart_listings(buyer_id, list(cart.items), self._clock())
        by_seller = cart.items_by_seller()
        self._require_payable(list(by_seller))

        total_minor_units = cart.get_total_minor_units()
        if total_minor_units <= 0:
            raise CartInvalidError("Cart total must be greater than zero")

        checkout_group_id = uuid4()
        authorization = self._payments.authorize(
            total_minor_units,
            self._currency,
            {
                "checkout_group_id": str(checkout_group_id),
                "order_type": ORDER_TYPE,
                "buyer_id": buyer_id,
                "seller_count": str(len(by_seller)),
            },
        )

        now = self._clock()
        orders: List[Order] = []
        for seller_id, items in by_seller.items():
            order_items = tuple(
                OrderItem.for_cart_item(item, live[item.listing_id].listing_id) for item in items
            )
            orders.append(
                Order(
                    order_id=uuid4(),
                    external_id=uuid4(),
                    buyer_id=buyer_id,
                    seller_id=seller_id,
                    checkout_group_id=checkout_group_id,
                    payment_intent_id=authorization.payment_intent_id,
                    order_items=order_items,
                    total_amount=from_minor_units(sum(i.line_total_minor_units for i in items)),
                    currency=self._currency,
                    created_at=now,
                    updated_at=now,
                )
            )
        order_repository.insert_orders(orders)

        logger.info(
            f"Checkout created with {len(orders)} order(s)",
            extra={
                "checkout_group_id": str(checkout_group_id),
                "payment_intent_id": authorization.payment_intent_id,
                "buyer_id": buyer_id,
                "amount_minor_units": total_minor_units,
            },
        )
        return CheckoutSession(
            checkout_group_id=checkout_group_id,
            payment_intent_id=authorization.payment_intent_id,
            client_secret=authorization.client_secret,
            orders=orders,
            total_amount=from_minor_units(total_minor_units),
            currency=self._currency,
        )

    def handle_payment_success(self, payment_intent_id: str) -> PaymentSuccessResult:
        """
        Drive every order of a confirmed payment to delivery.

        Each pending order is claimed with a conditional update (pending ->
        processing, escrow held), so replayed confirmations skip orders that are
        already processing or completed. Groups are reconciled afterwards.
        """

        result = PaymentSuccessResult(payment_intent_id=payment_intent_id)
        orders = order_repository.list_orders_by_payment_intent(payment_intent_id)
        if not orders:
            logger.warning(
                f"No orders for payment intent {payment_intent_id}",
                extra={"payment_intent_id": payment_intent_id},
            )
            return result

        group_ids: List[UUID] = []
        for order in orders:
            if order.checkout_group_id not in group_ids:
                group_ids.append(order.checkout_group_id)

            if order.status is not OrderStatus.PENDING:
                result.skipped.append(order.order_id)
                logger.warning(
                    f"Order {order.order_id} is {order.status.value}; skipping delivery",
                    extra={"order_id": str(order.order_id), "payment_intent_id": payment_intent_id},
                )
                continue

            processing = order.mark_processing(self._clock())
            if not order_repository.update_order(processing, expected_status=OrderStatus.PENDING):
                result.skipped.append(order.order_id)
                continue

            delivered = self.deliver_order(processing)
            if delivered.status is OrderStatus.COMPLETED:
                result.delivered.append(order.order_id)
            else:
                result.failed.append(order.order_id)

        for group_id in group_ids:
            result.cancelled.extend(self.check_and_deliver_group(group_id))

        logger.info(
            f"Payment {payment_intent_id} handled",
            extra={
                "payment_intent_id": payment_intent_id,
                "delivered": len(result.delivered),
                "failed": len(result.failed),
                "skipped": len(result.skipped),
                "cancelled": len(result.cancelled),
            },
        )
        return result

    def deliver_order(self, order: Order) -> Order:
        """
        Allocate and deliver every line of a processing order.

        All lines or none: if a line cannot be allocated, codes already claimed
        for earlier lines of this order are released and the order is recorded
        as failed. Returns the order as persisted.
        """

        sold_at = self._clock()
        allocations: List[AllocationResult] = []
        delivered_items: List[OrderItem] = []
        try:
            for item in order.order_items:
                allocation = allocate_codes(
                    AllocationRequest(
                        listing_id=item.listing_id,
                        quantity=item.quantity,
                        expiration_groups=item.expiration_groups,
                    ),
                    sold_at=sold_at,
                )
                allocations.append(allocation)
                delivered_items.append(item.with_codes(allocation.delivered_codes))
        except Exception as e:
            return self._record_failure(order, DeliveryFailure(order.order_id, e), allocations)

        completed = order.mark_completed(delivered_items, self._clock())
        if not order_repository.update_order(completed, expected_status=OrderStatus.PROCESSING):
            logger.warning(
                f"Order {order.order_id} changed during delivery; codes stay with the order",
                extra={"order_id": str(order.order_id)},
            )
            return order_repository.get_order(order.order_id) or completed

        try:
            cart_repository.clear_cart(order.buyer_id, self._clock())
        except Exception:
            # The order is already delivered; the rest of the group must still run.
            logger.exception(
                f"Could not clear cart of buyer {order.buyer_id} after delivery",
                extra={"order_id": str(order.order_id), "buyer_id": order.buyer_id},
            )
        logger.info(
            f"Order {order.order_id} delivered",
            extra={
                "order_id": str(order.order_id),
                "seller_id": order.seller_id,
                "code_count": completed.purchased_code_count,
            },
        )
        return completed

    def _record_failure(
        self,
        order: Order,
        failure: DeliveryFailure,
        allocations: List[AllocationResult],
    ) -> Order:
        for allocation in allocations:
            try:
                release_allocation(allocation)
            except Exception:
                # The failure must still be recorded on the order.
                logger.exception(
                    f"Could not release codes of listing {allocation.listing_id}",
                    extra={"order_id": str(order.order_id), "code_ids": [str(i) for i in allocation.code_ids]},
                )

        failed = order.mark_failed(str(failure), self._clock())
        order_repository.update_order(failed, expected_status=OrderStatus.PROCESSING)
        logger.error(
            f"Delivery failed for order {order.order_id}: {failure.cause}",
            extra={
                "order_id": str(order.order_id),
                "checkout_group_id": str(order.checkout_group_id),
                "listing_ids": [str(item.listing_id) for item in order.order_items],
                "released_allocations": len(allocations),
            },
        )
        return failed

    def check_and_deliver_group(self, checkout_group_id: UUID) -> List[UUID]:
        """
        Reconcile a checkout group.

        If any order failed or was cancelled, every other non-cancelled order of
        the group is cancelled (delivery status failed). Codes already delivered
        are not reclaimed. Returns the ids of the orders cancelled by this call.
        """

        orders = order_repository.list_orders_by_group(checkout_group_id)
        broken = [o for o in orders if o.status in (OrderStatus.FAILED, OrderStatus.CANCELLED)]
        if not broken:
            return []

        cancelled = order_repository.cancel_group(checkout_group_id, self._clock())
        if cancelled:
            logger.warning(
                f"Cancelled {len(cancelled)} order(s) of checkout group {checkout_group_id}",
                extra={
                    "checkout_group_id": str(checkout_group_id),
                    "cancelled_order_ids": [str(i) for i in cancelled],
                    "failed_order_ids": [str(o.order_id) for o in broken],
                },
            )
        return cancelled

    def confirm_payment(self, payment_intent_id: str) -> ConfirmPaymentResult:
        """Confirm a payment with the provider; on success, deliver its orders."""

        confirmation = self._payments.confirm(payment_intent_id)
        if not confirmation.succeeded:
            logger.info(
                f"Payment {payment_intent_id} not succeeded ({confirmation.status})",
                extra={"payment_intent_id": payment_intent_id, "status": confirmation.status},
            )
            return ConfirmPaymentResult(confirmation=confirmation)

        return ConfirmPaymentResult(
            confirmation=confirmation,
            result=self.handle_payment_success(payment_intent_id),
        )


__all__ = [
    "CheckoutService",
    "CheckoutSession",
    "ConfirmPaymentResult",
    "ORDER_TYPE",
    "PaymentSuccessResult",
]
