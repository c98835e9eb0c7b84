"""
Order service.

Buyer-side access to delivered codes and seller-side escrow release.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from domain.errors import DecryptionError
from domain.order import Order, OrderStatus
from domain.time import utc_now
from repositories import order_repository
from services.code_cipher import CodeCipher

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RevealedCode:
    listing_external_id: UUID
    title: str
    code_id: UUID
    code: str
    expiration_date: Optional[datetime]


def _get_order(order_id: UUID) -> Order:
    order = order_repository.get_order(order_id)
    if order is None:
        raise ValueError(f"Order {order_id} not found")
    return order


def list_buyer_orders(buyer_id: str) -> List[Order]:
    return order_repository.list_orders_by_buyer(buyer_id)


def reveal_purchased_codes(
    order_id: UUID,
    buyer_id: str,
    *,
    cipher: Optional[CodeCipher] = None,
) -> List[RevealedCode]:
    """
    Decrypt the codes delivered on a completed order for its buyer.

    Raises:
        PermissionError: Order belongs to another buyer
        ValueError: Order not found or not completed
        DecryptionError: A stored code cannot be decrypted
    """

    order = _get_order(order_id)
    if order.buyer_id != buyer_id:
        raise PermissionError(f"Order {order_id} does not belong to buyer {buyer_id}")
    if order.status is not OrderStatus.COMPLETED:
        raise ValueError(f"Order {order_id} is {order.status.value}; codes are only available once completed")

    cipher = cipher or CodeCipher.from_settings()
    revealed: List[RevealedCode] = []
    for item in order.order_items:
        for delivered in item.purchased_codes:
            try:
                plaintext = cipher.decrypt(
                    delivered.ciphertext,
                    delivered.nonce,
                    delivered.key_id,
                    code_id=delivered.code_id,
                )
            except DecryptionError as e:
                logger.error(
                    f"Could not decrypt delivered code {delivered.code_id}: {e.reason}",
                    extra={"order_id": str(order_id), "code_id": str(delivered.code_id), "key_id": delivered.key_id},
                )
                raise
            revealed.append(
                RevealedCode(
                    listing_external_id=item.listing_external_id,
                    title=item.title,
                    code_id=delivered.code_id,
                    code=plaintext,
                    expiration_date=delivered.expiration_date,
                )
            )
    return revealed


def release_escrow(order_id: UUID, *, now: Optional[datetime] = None) -> Order:
    """
    Release held funds of a completed order to the seller.

    Raises:
        InvalidOrderTransitionError: Order is not completed with escrow held
        ValueError: Order not found or changed concurrently
    """

    order = _get_order(order_id)
    released = order.release_escrow(now or utc_now())
    if not order_repository.update_order(released, expected_status=OrderStatus.COMPLETED):
        raise ValueError(f"Order {order_id} changed while releasing escrow")

    logger.info(
        f"Escrow released for order {order_id}",
        extra={"order_id": str(order_id), "seller_id": order.seller_id, "amount": str(order.total_amount)},
    )
    return released


__all__ = ["RevealedCode", "list_buyer_orders", "release_escrow", "reveal_purchased_codes"]
