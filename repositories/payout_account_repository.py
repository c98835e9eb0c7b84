"""
Seller payout account repository (persistence).

Read-only lookup of the payout accounts sellers connected to the payment
provider (`seller_payout_accounts` table). Checkout consults it before any
order is created.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional

from repositories.client import get_supabase

# Supabase table name for payout accounts.
# Keep this aligned with sql/schema.sql.
_PAYOUT_ACCOUNTS_TABLE: str = "seller_payout_accounts"


@dataclass(frozen=True, slots=True)
class PayoutAccount:
    seller_id: str
    account_id: str
    payouts_enabled: bool = True

    @property
    def is_payable(self) -> bool:
        return bool(self.account_id) and self.payouts_enabled


def _row_to_account(row: Mapping[str, Any]) -> PayoutAccount:
    return PayoutAccount(
        seller_id=str(row["seller_id"]),
        account_id=str(row.get("account_id") or ""),
        payouts_enabled=bool(row.get("payouts_enabled", False)),
    )


def get_payout_account(seller_id: str) -> Optional[PayoutAccount]:
    response = (
        get_supabase()
        .table(_PAYOUT_ACCOUNTS_TABLE)
        .select("seller_id, account_id, payouts_enabled")
        .eq("seller_id", seller_id)
        .limit(1)
        .execute()
    )
    error = getattr(response, "error", None)
    if error:
        raise RuntimeError(f"Failed to get payout account: {error}")

    rows = getattr(response, "data", None) or []
    if not rows:
        return None
    return _row_to_account(rows[0])


class SupabasePayoutDirectory:
    """SellerPayoutDirectory backed by the seller_payout_accounts table."""

    def get_payout_account(self, seller_id: str) -> Optional[PayoutAccount]:
        return get_payout_account(seller_id)


__all__ = ["PayoutAccount", "SupabasePayoutDirectory", "get_payout_account"]
