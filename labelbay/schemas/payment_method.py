"""
Payment Method Schemas

Only tokenization results are accepted. Anything that looks like a raw
card number is rejected.
"""
import re
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class PaymentMethodCreate(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    provider: str = Field("stripe", min_length=1, max_length=20)
    provider_token: str = Field(..., min_length=1, max_length=255)
    brand: Optional[str] = Field(None, max_length=30)
    last_four: str = Field(..., min_length=4, max_length=4)
    exp_month: int = Field(..., ge=1, le=12)
    exp_year: int = Field(..., ge=2000, le=2100)
    billing_zip: Optional[str] = Field(None, max_length=20)
    is_default: bool = False

    @field_validator("last_four")
    @classmethod
    def validate_last_four(cls, v):
        if not v.isdigit():
            raise ValueError("last_four must be 4 digits")
        return v

    @field_validator("provider_token")
    @classmethod
    def reject_card_numbers(cls, v):
        if re.fullmatch(r"[\d\s-]{12,23}", v):
            raise ValueError("Raw card numbers are not accepted, tokenize with the payment provider")
        return v

    @model_validator(mode="after")
    def validate_not_expired(self):
        now = datetime.now(timezone.utc)
        if (self.exp_year, self.exp_month) < (now.year, now.month):
            raise ValueError("Card has expired")
        return self


class StripePaymentMethodCreate(BaseModel):
    """Stripe PaymentMethod id (pm_...) created client-side."""
    payment_method_id: str = Field(..., min_length=3, max_length=255)
    is_default: bool = False


class PaymentMethodResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    provider: str
    brand: Optional[str] = None
    last_four: str
    exp_month: int
    exp_year: int
    billing_zip: Optional[str] = None
    is_default: bool
    created_at: Optional[datetime] = None
