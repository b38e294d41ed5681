"""
Shipment API Routes

- POST /shipments: buy a quoted rate from the account balance
- GET /shipments, GET /shipments/{id}
- POST /shipments/{id}/label: buy the carrier label
- POST /shipments/{id}/cancel: cancel and refund an unlabelled shipment
- POST /shipments/reconcile: repair the caller's flagged shipments
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status

from labelbay.api.deps import get_current_user_id, get_purchase_service
from labelbay.core.config import settings
from labelbay.core.rate_limit import limiter
from labelbay.models.shipment import ShipmentStatus
from labelbay.schemas.shipping import (
    PurchaseRequest,
    PurchaseResponse,
    ReconcileResponse,
    ShipmentListResponse,
    ShipmentResponse,
)
from labelbay.services.purchase_service import PurchaseService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/shipments", tags=["shipments"])


@router.post("", response_model=PurchaseResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(settings.RATE_LIMIT_PURCHASE)
async def purchase_shipment(
    request: Request,
    payload: PurchaseRequest,
    user_id: str = Depends(get_current_user_id),
    service: PurchaseService = Depends(get_purchase_service),
):
    """
    Purchase a quoted rate.

    The quote amount is debited from the balance before the shipment is
    recorded. If recording fails the debit is refunded and 500 is returned.
    """
    result = await service.purchase_shipment(user_id, payload.quote_id)
    return result.to_dict()


@router.get("", response_model=ShipmentListResponse)
async def list_shipments(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    status_filter: Optional[ShipmentStatus] = Query(None, alias="status"),
    user_id: str = Depends(get_current_user_id),
    service: PurchaseService = Depends(get_purchase_service),
):
    shipments, total = await service.list_shipments(user_id, page, page_size, status_filter)
    return ShipmentListResponse(
        shipments=[ShipmentResponse.model_validate(s) for s in shipments],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.post("/reconcile", response_model=ReconcileResponse)
async def reconcile_shipments(
    user_id: str = Depends(get_current_user_id),
    service: PurchaseService = Depends(get_purchase_service),
):
    return await service.reconcile(user_id=user_id)


@router.get("/{shipment_id}", response_model=ShipmentResponse)
async def get_shipment(
    shipment_id: str,
    user_id: str = Depends(get_current_user_id),
    service: PurchaseService = Depends(get_purchase_service),
):
    return await service.get_shipment(user_id, shipment_id)


@router.post("/{shipment_id}/label", response_model=ShipmentResponse)
@limiter.limit(settings.RATE_LIMIT_PURCHASE)
async def purchase_label(
    request: Request,
    shipment_id: str,
    user_id: str = Depends(get_current_user_id),
    service: PurchaseService = Depends(get_purchase_service),
):
    return await service.purchase_label(user_id, shipment_id)


@router.post("/{shipment_id}/cancel", response_model=ShipmentResponse)
async def cancel_shipment(
    shipment_id: str,
    user_id: str = Depends(get_current_user_id),
    service: PurchaseService = Depends(get_purchase_service),
):
    """Cancel a shipment whose label has not been bought. The cost is refunded."""
    return await service.cancel_shipment(user_id, shipment_id)
