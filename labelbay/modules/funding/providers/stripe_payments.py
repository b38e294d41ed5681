"""
Stripe funding provider

Deposits are PaymentIntents confirmed client-side. Verification retrieves
the intent and requires status=succeeded and metadata.user_id to match
the caller.

The stripe SDK is synchronous; calls run in a worker thread.
"""
import asyncio
import logging
from decimal import Decimal
from typing import Optional

import stripe

from labelbay.core.config import settings
from labelbay.core.exceptions import PaymentVerificationError, ProviderError
from labelbay.modules.funding.providers import register_funding_provider
from labelbay.modules.funding.providers.base import FundingOrder, FundingProvider, VerifiedPayment

logger = logging.getLogger(__name__)

CENTS_PER_UNIT = Decimal("100")


@register_funding_provider("stripe")
class StripeProvider(FundingProvider):
    name = "stripe"
    settings_prefix = "STRIPE"

    def __init__(self, api_key: str):
        self.api_key = api_key

    @classmethod
    def is_configured(cls) -> bool:
        return bool(settings.STRIPE_ENABLED and settings.STRIPE_SECRET_KEY)

    @classmethod
    def from_settings(cls, config, transport=None) -> "StripeProvider":
        return cls(api_key=config.STRIPE_SECRET_KEY)

    async def create_order(self, user_id: str, amount: Decimal, currency: str) -> FundingOrder:
        amount_cents = int(amount * CENTS_PER_UNIT)
        try:
            intent = await asyncio.to_thread(
                stripe.PaymentIntent.create,
                amount=amount_cents,
                currency=currency.lower(),
                metadata={"user_id": str(user_id), "purpose": "balance_deposit"},
                automatic_payment_methods={"enabled": True},
                api_key=self.api_key,
            )
        except stripe.StripeError as e:
            logger.error(f"[FUNDING] Stripe PaymentIntent creation failed for user {user_id}: {e}")
            raise ProviderError(f"Stripe error: {e}", provider=self.name) from e

        logger.info(f"[FUNDING] Stripe intent {intent.id} created for user {user_id}: {amount} {currency}")
        return FundingOrder(
            provider=self.name,
            order_id=intent.id,
            amount=amount,
            currency=currency,
            status=intent.status,
            client_secret=intent.client_secret,
        )

    async def verify_payment(self, user_id: str, order_id: str) -> VerifiedPayment:
        try:
            intent = await asyncio.to_thread(stripe.PaymentIntent.retrieve, order_id, api_key=self.api_key)
        except stripe.InvalidRequestError as e:
            raise PaymentVerificationError("Payment not found", provider=self.name,
                                           details={"order_id": order_id}) from e
        except stripe.StripeError as e:
            logger.error(f"[FUNDING] Stripe retrieve failed for {order_id}: {e}")
            raise ProviderError(f"Stripe error: {e}", provider=self.name) from e

        if intent.status != "succeeded":
            raise PaymentVerificationError(
                f"Payment not completed. Status: {intent.status}",
                provider=self.name,
                details={"order_id": order_id, "status": intent.status},
            )

        metadata = intent.metadata or {}
        if metadata.get("user_id") != str(user_id):
            logger.warning(f"[FUNDING] Stripe intent {order_id} belongs to another user, rejected for {user_id}")
            raise PaymentVerificationError("Payment does not belong to this account", provider=self.name,
                                           details={"order_id": order_id})

        received: Optional[int] = getattr(intent, "amount_received", None) or intent.amount
        return VerifiedPayment(
            provider=self.name,
            order_id=order_id,
            user_id=user_id,
            amount=(Decimal(received) / CENTS_PER_UNIT).quantize(Decimal("0.01")),
            currency=(intent.currency or "usd").upper(),
            status=intent.status,
        )
