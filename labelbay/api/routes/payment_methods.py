"""
Payment Method API Routes

Cards are tokenized client-side; these endpoints only see tokens.
"""
import logging
from typing import List

from fastapi import APIRouter, Depends, status

from labelbay.api.deps import get_current_user_id, get_payment_method_service
from labelbay.schemas.payment_method import (
    PaymentMethodCreate,
    PaymentMethodResponse,
    StripePaymentMethodCreate,
)
from labelbay.services.payment_method_service import (
    PaymentMethodService,
    describe_stripe_payment_method,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payment-methods", tags=["payment-methods"])


@router.get("", response_model=List[PaymentMethodResponse])
async def list_payment_methods(
    user_id: str = Depends(get_current_user_id),
    service: PaymentMethodService = Depends(get_payment_method_service),
):
    return await service.list_payment_methods(user_id)


@router.post("", response_model=PaymentMethodResponse, status_code=status.HTTP_201_CREATED)
async def add_payment_method(
    payload: PaymentMethodCreate,
    user_id: str = Depends(get_current_user_id),
    service: PaymentMethodService = Depends(get_payment_method_service),
):
    return await service.add_payment_method(user_id, payload)


@router.post("/stripe", response_model=PaymentMethodResponse, status_code=status.HTTP_201_CREATED)
async def add_stripe_payment_method(
    payload: StripePaymentMethodCreate,
    user_id: str = Depends(get_current_user_id),
    service: PaymentMethodService = Depends(get_payment_method_service),
):
    """Save a Stripe PaymentMethod; card details are looked up from Stripe."""
    fields = await describe_stripe_payment_method(payload.payment_method_id)
    fields["is_default"] = payload.is_default
    return await service.add_payment_method(user_id, fields)


@router.post("/{payment_method_id}/default", response_model=PaymentMethodResponse)
async def set_default_payment_method(
    payment_method_id: str,
    user_id: str = Depends(get_current_user_id),
    service: PaymentMethodService = Depends(get_payment_method_service),
):
    return await service.set_default(user_id, payment_method_id)


@router.delete("/{payment_method_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_payment_method(
    payment_method_id: str,
    user_id: str = Depends(get_current_user_id),
    service: PaymentMethodService = Depends(get_payment_method_service),
):
    await service.delete_payment_method(user_id, payment_method_id)
