"""
Rate API Routes

- POST /rates: quote a shipment across all enabled providers
"""
import logging

from fastapi import APIRouter, Depends, Request

from labelbay.api.deps import get_current_user_id, get_rate_aggregator
from labelbay.core.config import settings
from labelbay.core.rate_limit import limiter
from labelbay.schemas.shipping import RateListResponse, RateRequest
from labelbay.services.rate_aggregator import RateAggregator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/rates", tags=["rates"])


@router.post("", response_model=RateListResponse)
@limiter.limit(settings.RATE_LIMIT_RATES)
async def get_rates(
    request: Request,
    payload: RateRequest,
    user_id: str = Depends(get_current_user_id),
    aggregator: RateAggregator = Depends(get_rate_aggregator),
):
    """
    Get shipping rates from every enabled provider.

    Rates are sorted cheapest first. Providers that failed are listed in
    `warnings`; the call only fails when no provider returned a rate.
    """
    result = await aggregator.get_rates(user_id, payload)
    return result.to_dict()
