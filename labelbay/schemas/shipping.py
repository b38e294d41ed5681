"""
Shipping Schemas

Pydantic models for rate requests, quotes and shipments. RateRequest is
strict: unknown fields are rejected and the first structural error is
reported back to the caller.
"""
import re
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from labelbay.modules.shipping.parcels import (
    DISTANCE_UNITS,
    MASS_TO_LB,
    MAX_WEIGHT_LB,
    PACKAGE_PRESETS,
    preset_dimensions,
    weight_in_lb,
)

US_ZIP_PATTERN = re.compile(r"^\d{5}(-\d{4})?$")


# ==================== Rate Request ====================


class RateAddress(BaseModel):
    """Inline address for a rate request."""
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    name: Optional[str] = Field(None, max_length=100)
    company: Optional[str] = Field(None, max_length=100)
    street1: str = Field(..., min_length=1, max_length=100)
    street2: Optional[str] = Field(None, max_length=100)
    city: str = Field(..., min_length=1, max_length=100)
    state: str = Field(..., min_length=2, max_length=50)
    zip: str = Field(..., min_length=3, max_length=20)
    country: str = Field("US", min_length=2, max_length=2)
    phone: Optional[str] = Field(None, max_length=20)
    email: Optional[str] = Field(None, max_length=255)
    is_residential: bool = True

    @field_validator("country")
    @classmethod
    def upper_country(cls, v):
        return v.upper()

    @model_validator(mode="after")
    def validate_us_zip(self):
        if self.country == "US" and not US_ZIP_PATTERN.match(self.zip):
            raise ValueError(f"Invalid US ZIP code: {self.zip}")
        return self


class RateParcel(BaseModel):
    """Parcel for a rate request. Presets fill in dimensions."""
    model_config = ConfigDict(extra="forbid")

    package_type: str = "parcel"
    length: Optional[Decimal] = Field(None, gt=0)
    width: Optional[Decimal] = Field(None, gt=0)
    height: Optional[Decimal] = Field(None, gt=0)
    distance_unit: str = "in"
    weight: Decimal = Field(..., gt=0)
    mass_unit: str = "lb"

    @field_validator("package_type")
    @classmethod
    def known_package_type(cls, v):
        if v not in PACKAGE_PRESETS:
            raise ValueError(f"Unknown package_type '{v}'. Must be one of: {', '.join(PACKAGE_PRESETS)}")
        return v

    @field_validator("distance_unit")
    @classmethod
    def known_distance_unit(cls, v):
        if v not in DISTANCE_UNITS:
            raise ValueError(f"distance_unit must be one of: {', '.join(DISTANCE_UNITS)}")
        return v

    @field_validator("mass_unit")
    @classmethod
    def known_mass_unit(cls, v):
        if v not in MASS_TO_LB:
            raise ValueError(f"mass_unit must be one of: {', '.join(MASS_TO_LB)}")
        return v

    @model_validator(mode="after")
    def apply_preset(self):
        if weight_in_lb(self.weight, self.mass_unit) > MAX_WEIGHT_LB:
            raise ValueError(f"Weight must not exceed {MAX_WEIGHT_LB} lb")

        given = (self.length, self.width, self.height)
        if self.package_type == "custom":
            if any(d is None for d in given):
                raise ValueError("custom package_type requires length, width and height")
            return self

        if self.package_type == "parcel" and all(d is not None for d in given):
            return self

        dims = preset_dimensions(self.package_type, self.distance_unit)
        self.length, self.width, self.height = dims
        return self


class RateRequest(BaseModel):
    """
    Rate request. Each side is either an inline address or the id of a
    saved address owned by the caller.
    """
    model_config = ConfigDict(extra="forbid")

    address_from: Optional[RateAddress] = None
    address_from_id: Optional[str] = None
    address_to: Optional[RateAddress] = None
    address_to_id: Optional[str] = None
    parcel: RateParcel

    @model_validator(mode="after")
    def one_source_per_side(self):
        for side in ("from", "to"):
            inline = getattr(self, f"address_{side}")
            saved = getattr(self, f"address_{side}_id")
            if (inline is None) == (saved is None):
                raise ValueError(f"Provide exactly one of address_{side} or address_{side}_id")
        return self


# ==================== Rate Responses ====================


class RateQuoteResponse(BaseModel):
    quote_id: str
    provider: str
    carrier: str
    service_code: str
    service_name: str
    amount: Decimal
    currency: str
    estimated_days: Optional[int] = None
    duration_terms: Optional[str] = None
    expires_at: datetime


class ProviderWarningResponse(BaseModel):
    provider: str
    message: str


class RateListResponse(BaseModel):
    rates: List[RateQuoteResponse]
    warnings: List[ProviderWarningResponse] = []


# ==================== Shipments ====================


class PurchaseRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    quote_id: str = Field(..., min_length=1)


class ShipmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    status: str
    provider: str
    carrier: str
    service_code: str
    service_name: Optional[str] = None
    cost: Decimal
    currency: str
    tracking_number: Optional[str] = None
    label_url: Optional[str] = None
    needs_reconciliation: bool = False
    from_address: Dict[str, Any]
    to_address: Dict[str, Any]
    parcel: Dict[str, Any]
    created_at: Optional[datetime] = None

    @field_validator("status", mode="before")
    @classmethod
    def enum_value(cls, v):
        return getattr(v, "value", v)


class PurchaseResponse(BaseModel):
    shipment_id: str
    status: str
    amount: Decimal
    balance_after: Decimal
    transaction_id: str


class ShipmentListResponse(BaseModel):
    shipments: List[ShipmentResponse]
    total: int
    page: int
    page_size: int


class ReconcileResponse(BaseModel):
    checked: int
    repaired: int
    unresolved: int
