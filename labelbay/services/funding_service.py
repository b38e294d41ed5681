"""
Funding Service

Credits the ledger from verified external payments.

- fund_account is idempotent on the provider order id: the order id is
  the ledger reference, so a replayed order returns the original credit
- Verification (captured, amount, owner) happens before any write
- create_funding_order enforces the configured deposit bounds
"""
import logging
from typing import Any, Dict, Optional

import httpx

from labelbay.core.config import settings
from labelbay.core.exceptions import InvalidAmount, ProviderError, ValidationError
from labelbay.models.account import TransactionType
from labelbay.modules.funding.providers import FundingProviderFactory
from labelbay.modules.funding.providers.base import FundingOrder, FundingProvider
from labelbay.services.ledger import Ledger, LedgerEntry, to_money

logger = logging.getLogger(__name__)


class FundingService:
    def __init__(
        self,
        ledger: Optional[Ledger] = None,
        providers: Optional[Dict[str, FundingProvider]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.ledger = ledger or Ledger()
        self._providers = providers
        self._transport = transport

    def _get_provider(self, name: str):
        if self._providers is not None and name in self._providers:
            return self._providers[name], False
        provider = FundingProviderFactory.get_provider(name, transport=self._transport)
        if provider is None:
            if name not in FundingProviderFactory.get_registered_providers():
                raise ValidationError(f"Unknown funding provider: {name}", field="provider")
            raise ProviderError(f"Funding provider {name} is not configured", provider=name)
        return provider, True

    async def create_funding_order(
        self,
        user_id: str,
        amount: Any,
        provider: str = "paypal",
    ) -> FundingOrder:
        """Create a provider order for a deposit within the configured bounds."""
        amount = to_money(amount)
        if amount < settings.MIN_DEPOSIT_AMOUNT or amount > settings.MAX_DEPOSIT_AMOUNT:
            raise InvalidAmount(
                f"Deposit must be between {settings.MIN_DEPOSIT_AMOUNT} and {settings.MAX_DEPOSIT_AMOUNT}",
                details={"amount": str(amount)},
            )

        funding_provider, owned = self._get_provider(provider)
        try:
            return await funding_provider.create_order(user_id, amount, settings.FUNDING_CURRENCY)
        finally:
            if owned:
                await funding_provider.close()

    async def fund_account(
        self,
        user_id: str,
        order_id: str,
        provider: str = "paypal",
    ) -> LedgerEntry:
        """
        Verify an external payment and credit its amount.

        Raises:
            PaymentVerificationError: order not captured or owned by another user
            ProviderError: provider unreachable or not configured
        """
        if not order_id:
            raise ValidationError("Order id is required", field="order_id")

        existing = await self.ledger.find_transaction(user_id, order_id)
        if existing is not None:
            if existing.transaction_type != TransactionType.DEPOSIT:
                raise ValidationError(f"Order id {order_id} is not a deposit reference", field="order_id")
            logger.info(f"[FUNDING] order {order_id} already credited to user {user_id}")
            existing.replayed = True
            return existing

        funding_provider, owned = self._get_provider(provider)
        try:
            payment = await funding_provider.verify_payment(user_id, order_id)
        finally:
            if owned:
                await funding_provider.close()

        if payment.currency.upper() != settings.FUNDING_CURRENCY:
            raise ValidationError(
                f"Payment currency {payment.currency} does not match account currency {settings.FUNDING_CURRENCY}",
                field="currency",
            )

        entry = await self.ledger.credit(
            user_id,
            payment.amount,
            reference=order_id,
            transaction_type=TransactionType.DEPOSIT,
            provider=provider,
            description=f"Deposit via {provider} ({order_id})",
        )
        logger.info(f"[FUNDING] user {user_id} funded {payment.amount} via {provider} ({order_id})")
        return entry
