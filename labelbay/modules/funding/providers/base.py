"""
Base Funding Provider Interface

A funding provider proves that money reached us for a given user before
the ledger credits it. Nothing here touches balances.

Each provider provides its own:
  - Order creation (the user completes payment out-of-band)
  - Verification of a captured order for one user
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional
import logging

logger = logging.getLogger(__name__)


@dataclass
class FundingOrder:
    """Order created with the provider, awaiting payment by the user."""
    provider: str
    order_id: str
    amount: Decimal
    currency: str
    status: str
    approval_url: Optional[str] = None
    client_secret: Optional[str] = None


@dataclass
class VerifiedPayment:
    """Captured payment that can be credited."""
    provider: str
    order_id: str
    user_id: str
    amount: Decimal
    currency: str
    status: str


class FundingProvider(ABC):
    """Abstract base class for funding providers."""

    name: str = "base"
    settings_prefix: str = ""

    @abstractmethod
    async def create_order(self, user_id: str, amount: Decimal, currency: str) -> FundingOrder:
        """Create a payment order bound to user_id."""
        pass

    @abstractmethod
    async def verify_payment(self, user_id: str, order_id: str) -> VerifiedPayment:
        """
        Confirm the order is captured and belongs to user_id.

        Raises PaymentVerificationError otherwise.
        """
        pass

    @classmethod
    def is_configured(cls) -> bool:
        return False

    @classmethod
    def from_settings(cls, config, transport=None) -> "FundingProvider":
        raise NotImplementedError

    async def close(self):
        pass

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(name={self.name!r})>"
