"""
Account API Routes

Balance, transaction history/export and external funding.
"""
import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import async_sessionmaker

from labelbay.api.deps import get_current_user_id, get_funding_service, get_ledger
from labelbay.core.config import settings
from labelbay.core.database import get_session_factory
from labelbay.core.rate_limit import limiter
from labelbay.schemas.account import (
    BalanceResponse,
    FundAccountRequest,
    FundingOrderRequest,
    FundingOrderResponse,
    LedgerEntryResponse,
    TransactionListResponse,
    TransactionResponse,
)
from labelbay.services.funding_service import FundingService
from labelbay.services.ledger import Ledger
from labelbay.services.transaction_export import export_transactions

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/account", tags=["account"])


@router.get("/balance", response_model=BalanceResponse)
async def get_balance(
    user_id: str = Depends(get_current_user_id),
    ledger: Ledger = Depends(get_ledger),
):
    balance = await ledger.get_balance(user_id)
    return BalanceResponse(balance=balance, currency=settings.FUNDING_CURRENCY)


@router.get("/transactions", response_model=TransactionListResponse)
async def list_transactions(
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    ledger: Ledger = Depends(get_ledger),
):
    rows, total = await ledger.list_transactions(user_id, page, page_size)
    return TransactionListResponse(
        transactions=[TransactionResponse.model_validate(tx) for tx in rows],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/transactions/export")
async def export_transaction_history(
    export_format: str = Query("csv", alias="format", pattern="^(csv|json)$"),
    start_date: Optional[date] = Query(None, alias="startDate"),
    end_date: Optional[date] = Query(None, alias="endDate"),
    user_id: str = Depends(get_current_user_id),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """Download transactions as CSV (default) or JSON."""
    result = await export_transactions(
        user_id,
        export_format=export_format,
        start_date=start_date,
        end_date=end_date,
        session_factory=session_factory,
    )
    return Response(
        content=result.content,
        media_type=result.media_type,
        headers={"Content-Disposition": f'attachment; filename="{result.filename}"'},
    )


# ==================== Funding ====================


@router.post("/funding-orders", response_model=FundingOrderResponse)
@limiter.limit(settings.RATE_LIMIT_PURCHASE)
async def create_funding_order(
    request: Request,
    payload: FundingOrderRequest,
    user_id: str = Depends(get_current_user_id),
    service: FundingService = Depends(get_funding_service),
):
    """Create a PayPal order (or Stripe PaymentIntent) for a deposit."""
    order = await service.create_funding_order(user_id, payload.amount, provider=payload.provider)
    return FundingOrderResponse(
        provider=order.provider,
        order_id=order.order_id,
        amount=order.amount,
        currency=order.currency,
        status=order.status,
        approval_url=order.approval_url,
        client_secret=order.client_secret,
    )


@router.post("/fund", response_model=LedgerEntryResponse)
@limiter.limit(settings.RATE_LIMIT_PURCHASE)
async def fund_account(
    request: Request,
    payload: FundAccountRequest,
    user_id: str = Depends(get_current_user_id),
    service: FundingService = Depends(get_funding_service),
):
    """
    Credit a captured external payment to the balance.

    Submitting the same order twice returns the original credit.
    """
    entry = await service.fund_account(user_id, payload.order_id, provider=payload.provider)
    return entry.to_dict()
