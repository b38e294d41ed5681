"""
Address Schemas
"""
import re
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from labelbay.models.address import AddressType

US_ZIP_PATTERN = re.compile(r"^\d{5}(-\d{4})?$")


class AddressFields(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=100)
    company_name: Optional[str] = Field(None, max_length=100)
    address_line1: str = Field(..., min_length=1, max_length=100)
    address_line2: Optional[str] = Field(None, max_length=100)
    city: str = Field(..., min_length=1, max_length=100)
    state: str = Field(..., min_length=2, max_length=50)
    postal_code: str = Field(..., min_length=3, max_length=20)
    country: str = Field("US", min_length=2, max_length=2)
    phone: Optional[str] = Field(None, max_length=20)
    email: Optional[str] = Field(None, max_length=255)
    is_residential: bool = True

    @field_validator("country")
    @classmethod
    def upper_country(cls, v):
        return v.upper()

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v):
        if v:
            digits = re.sub(r"\D", "", v)
            if len(digits) < 10 or len(digits) > 15:
                raise ValueError("Phone number must be 10-15 digits")
        return v

    @model_validator(mode="after")
    def validate_us_zip(self):
        if self.country == "US" and not US_ZIP_PATTERN.match(self.postal_code):
            raise ValueError(f"Invalid US ZIP code: {self.postal_code}")
        return self


class AddressCreate(AddressFields):
    """Create a new address (never default on insert)."""
    address_type: AddressType = AddressType.SHIPPING


class AddressUpdate(BaseModel):
    """Partial update of postal fields. Ownership and flags are not editable here."""
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    name: Optional[str] = Field(None, min_length=1, max_length=100)
    company_name: Optional[str] = Field(None, max_length=100)
    address_line1: Optional[str] = Field(None, min_length=1, max_length=100)
    address_line2: Optional[str] = Field(None, max_length=100)
    city: Optional[str] = Field(None, min_length=1, max_length=100)
    state: Optional[str] = Field(None, min_length=2, max_length=50)
    postal_code: Optional[str] = Field(None, min_length=3, max_length=20)
    country: Optional[str] = Field(None, min_length=2, max_length=2)
    phone: Optional[str] = Field(None, max_length=20)
    email: Optional[str] = Field(None, max_length=255)
    is_residential: Optional[bool] = None


class SetDefaultAddressRequest(BaseModel):
    address_type: AddressType


class AddressValidateRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    street1: str = Field(..., min_length=1)
    street2: Optional[str] = None
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=2)
    zip: str = Field(..., min_length=3)
    country: str = "US"


class AddressValidateResponse(BaseModel):
    is_valid: bool
    normalized_address: Optional[dict] = None
    messages: list = []


class AddressResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    address_type: AddressType
    name: str
    company_name: Optional[str] = None
    address_line1: str
    address_line2: Optional[str] = None
    city: str
    state: str
    postal_code: str
    country: str
    phone: Optional[str] = None
    email: Optional[str] = None
    is_residential: bool
    is_default: bool
    created_at: Optional[datetime] = None
