"""
External collaborators of the checkout orchestrator.

The payment provider and the payout-account directory are consumed through
these protocols; concrete gateway integrations live outside this codebase.
Payment adapters are assumed idempotent on payment_intent_id.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional, Protocol

from repositories.payout_account_repository import PayoutAccount

PAYMENT_SUCCEEDED = "succeeded"


@dataclass(frozen=True, slots=True)
class PaymentAuthorization:
    payment_intent_id: str
    client_secret: Optional[str] = None


@dataclass(frozen=True, slots=True)
class PaymentConfirmation:
    payment_intent_id: str
    status: str

    @property
    def succeeded(self) -> bool:
        return self.status == PAYMENT_SUCCEEDED


class PaymentAdapter(Protocol):
    def authorize(
        self,
        amount_minor_units: int,
        currency: str,
        metadata: Mapping[str, str],
    ) -> PaymentAuthorization: ...

    def confirm(self, payment_intent_id: str) -> PaymentConfirmation: ...


class SellerPayoutDirectory(Protocol):
    def get_payout_account(self, seller_id: str) -> Optional[PayoutAccount]: ...


__all__ = [
    "PAYMENT_SUCCEEDED",
    "PaymentAdapter",
    "PaymentAuthorization",
    "PaymentConfirmation",
    "SellerPayoutDirectory",
]
