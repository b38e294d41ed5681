"""
Payment Method Service

Tokenized payment instruments per user. Same single-default rule as
addresses, scoped to the user alone. The first method a user adds
becomes the default.
"""
import asyncio
import logging
from typing import List, Optional, Union

import stripe
from sqlalchemy import select, func, and_
from sqlalchemy.ext.asyncio import async_sessionmaker

from labelbay.core.config import settings
from labelbay.core.database import AsyncSessionLocal
from labelbay.core.exceptions import NotFoundError, ProviderError
from labelbay.core.exclusive_flag import ExclusiveFlag
from labelbay.core.locks import KeyedLockManager
from labelbay.core.validation import parse_model
from labelbay.models.payment_method import PaymentMethod
from labelbay.schemas.payment_method import PaymentMethodCreate

logger = logging.getLogger(__name__)


class PaymentMethodService:
    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        locks: Optional[KeyedLockManager] = None,
    ):
        self._session_factory = session_factory or AsyncSessionLocal
        self._flag = ExclusiveFlag(PaymentMethod, self._session_factory, locks=locks)

    async def _count_live(self, user_id: str) -> int:
        async with self._session_factory() as db:
            result = await db.execute(
                select(func.count()).select_from(PaymentMethod).where(
                    and_(
                        PaymentMethod.user_id == user_id,
                        PaymentMethod.is_deleted == False,  # noqa: E712
                    )
                )
            )
            return result.scalar_one()

    async def list_payment_methods(self, user_id: str) -> List[PaymentMethod]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(PaymentMethod)
                .where(
                    and_(
                        PaymentMethod.user_id == user_id,
                        PaymentMethod.is_deleted == False,  # noqa: E712
                    )
                )
                .order_by(PaymentMethod.is_default.desc(), PaymentMethod.created_at.desc())
            )
            return list(result.scalars().all())

    async def get_payment_method(self, user_id: str, payment_method_id: str) -> PaymentMethod:
        async with self._session_factory() as db:
            result = await db.execute(
                select(PaymentMethod).where(
                    and_(
                        PaymentMethod.id == payment_method_id,
                        PaymentMethod.user_id == user_id,
                        PaymentMethod.is_deleted == False,  # noqa: E712
                    )
                )
            )
            method = result.scalar_one_or_none()
        if method is None:
            raise NotFoundError("Payment method not found", resource="payment_method", resource_id=payment_method_id)
        return method

    async def add_payment_method(
        self,
        user_id: str,
        data: Union[PaymentMethodCreate, dict],
    ) -> PaymentMethod:
        """
        Store a tokenization result.

        When is_default is requested, or this is the user's first live
        method, the new row becomes the only default.
        """
        fields = parse_model(PaymentMethodCreate, data)
        make_default = fields.is_default or await self._count_live(user_id) == 0

        method = PaymentMethod(user_id=user_id, **fields.model_dump(exclude={"is_default"}))
        method = await self._flag.insert(method, make_default=make_default)
        logger.info(
            f"[PAYMENT_METHOD] user {user_id} added {method.brand or method.provider} "
            f"ending {method.last_four} (default={method.is_default})"
        )
        return method

    async def set_default(self, user_id: str, payment_method_id: str) -> PaymentMethod:
        return await self._flag.set_default(user_id, payment_method_id)

    async def delete_payment_method(self, user_id: str, payment_method_id: str) -> PaymentMethod:
        """Soft delete. Deleting the default leaves the user without one."""
        method = await self._flag.soft_delete(user_id, payment_method_id)
        logger.info(f"[PAYMENT_METHOD] user {user_id} deleted payment method {payment_method_id}")
        return method


async def describe_stripe_payment_method(payment_method_id: str, api_key: Optional[str] = None) -> dict:
    """
    Resolve display metadata for a Stripe PaymentMethod.

    Returns a dict accepted by PaymentMethodCreate (without is_default).
    """
    key = api_key or settings.STRIPE_SECRET_KEY
    if not key:
        raise ProviderError("Stripe is not configured", provider="stripe")
    try:
        pm = await asyncio.to_thread(stripe.PaymentMethod.retrieve, payment_method_id, api_key=key)
    except stripe.InvalidRequestError as e:
        raise NotFoundError("Stripe payment method not found", resource="stripe_payment_method",
                            resource_id=payment_method_id) from e
    except stripe.StripeError as e:
        logger.error(f"[PAYMENT_METHOD] Stripe lookup failed for {payment_method_id}: {e}")
        raise ProviderError(f"Stripe error: {e}", provider="stripe") from e

    card = pm.card
    if card is None:
        raise ProviderError("Only card payment methods are supported", provider="stripe")
    billing = getattr(pm, "billing_details", None)
    address = getattr(billing, "address", None) if billing else None

    return {
        "provider": "stripe",
        "provider_token": pm.id,
        "brand": card.brand,
        "last_four": card.last4,
        "exp_month": card.exp_month,
        "exp_year": card.exp_year,
        "billing_zip": getattr(address, "postal_code", None) if address else None,
    }
