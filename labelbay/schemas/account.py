"""
Account Schemas
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from labelbay.models.account import TransactionStatus, TransactionType


class BalanceResponse(BaseModel):
    balance: Decimal
    currency: str


class FundingOrderRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    provider: str = "paypal"


class FundingOrderResponse(BaseModel):
    provider: str
    order_id: str
    amount: Decimal
    currency: str
    status: str
    approval_url: Optional[str] = None
    client_secret: Optional[str] = None


class FundAccountRequest(BaseModel):
    order_id: str = Field(..., min_length=1, max_length=255)
    provider: str = "paypal"


class LedgerEntryResponse(BaseModel):
    transaction_id: str
    reference: str
    transaction_type: str
    status: str
    amount: Decimal
    balance_after: Decimal
    shipment_id: Optional[str] = None
    replayed: bool = False


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    transaction_type: TransactionType
    status: TransactionStatus
    amount: Decimal
    currency: str
    provider: Optional[str] = None
    transaction_reference: str
    balance_after: Decimal
    description: Optional[str] = None
    shipment_id: Optional[str] = None
    created_at: Optional[datetime] = None

    @field_validator("amount", "balance_after", mode="before")
    @classmethod
    def quantize(cls, v):
        return Decimal(str(v)).quantize(Decimal("0.01"))


class TransactionListResponse(BaseModel):
    transactions: List[TransactionResponse]
    total: int
    page: int
    page_size: int
