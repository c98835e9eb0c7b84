"""
Pytest configuration and shared fixtures.

This file adds the parent directory to the Python path so that tests
can import from the domain, repositories, and services modules, and wires
repositories to an in-memory Supabase fake.
"""

import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Mapping, Optional

import pytest

# Add the project root to the Python path
# so tests can import domain, repositories, etc.
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from fake_supabase import FakeSupabase  # noqa: E402

from repositories.client import set_supabase  # noqa: E402
from repositories.payout_account_repository import PayoutAccount  # noqa: E402
from services.code_cipher import CodeCipher  # noqa: E402
from services.payment_adapter import PaymentAuthorization, PaymentConfirmation  # noqa: E402

NOW = datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)

TEST_KEY = bytes(range(32))


@dataclass
class RecordingPaymentAdapter:
    """Payment adapter double that records authorizations."""

    confirm_status: str = "succeeded"
    authorizations: List[Dict[str, object]] = field(default_factory=list)
    confirmations: List[str] = field(default_factory=list)

    def authorize(self, amount_minor_units: int, currency: str, metadata: Mapping[str, str]) -> PaymentAuthorization:
        payment_intent_id = f"pi_{len(self.authorizations) + 1}"
        self.authorizations.append(
            {
                "amount_minor_units": amount_minor_units,
                "currency": currency,
                "metadata": dict(metadata),
                "payment_intent_id": payment_intent_id,
            }
        )
        return PaymentAuthorization(payment_intent_id=payment_intent_id, client_secret=f"{payment_intent_id}_secret")

    def confirm(self, payment_intent_id: str) -> PaymentConfirmation:
        self.confirmations.append(payment_intent_id)
        return PaymentConfirmation(payment_intent_id=payment_intent_id, status=self.confirm_status)


@dataclass
class FakePayoutDirectory:
    accounts: Dict[str, PayoutAccount] = field(default_factory=dict)

    def add(self, seller_id: str, payouts_enabled: bool = True) -> None:
        self.accounts[seller_id] = PayoutAccount(
            seller_id=seller_id,
            account_id=f"acct_{seller_id}",
            payouts_enabled=payouts_enabled,
        )

    def get_payout_account(self, seller_id: str) -> Optional[PayoutAccount]:
        return self.accounts.get(seller_id)


@pytest.fixture
def fake_db():
    db = FakeSupabase()
    set_supabase(db)
    yield db
    set_supabase(None)


@pytest.fixture
def cipher() -> CodeCipher:
    return CodeCipher({"k1": TEST_KEY})


@pytest.fixture
def payment_adapter() -> RecordingPaymentAdapter:
    return RecordingPaymentAdapter()


@pytest.fixture
def payout_directory() -> FakePayoutDirectory:
    return FakePayoutDirectory()


@pytest.fixture
def make_listing(fake_db, cipher):
    """Create a stored listing through the listing service."""

    from services.listing_service import create_listing

    def _make(
        codes: List[str],
        *,
        seller_id: str = "seller-a",
        price: str = "10.00",
        discounted_price: Optional[str] = None,
        title: str = "Game Key",
        code_expiration_date: Optional[datetime] = None,
        expiration_date: Optional[datetime] = None,
        draft: bool = False,
        now: datetime = NOW,
    ):
        return create_listing(
            seller_id=seller_id,
            title=title,
            price=Decimal(price),
            platform="steam",
            region="global",
            codes=codes,
            category_id="games",
            expiration_date=expiration_date,
            code_expiration_date=code_expiration_date,
            discounted_price=Decimal(discounted_price) if discounted_price is not None else None,
            draft=draft,
            cipher=cipher,
            now=now,
        )

    return _make
