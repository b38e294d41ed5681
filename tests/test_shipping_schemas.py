"""
Tests for rate request validation and parcel presets.
"""
from decimal import Decimal

import pytest
from pydantic import ValidationError

from labelbay.schemas.shipping import RateRequest


class TestRateRequest:

    def test_parcel_preset_fills_dimensions(self, rate_request_payload):
        request = RateRequest.model_validate(rate_request_payload)

        assert (request.parcel.length, request.parcel.width, request.parcel.height) == (
            Decimal("12"), Decimal("8"), Decimal("6"),
        )

    def test_flat_rate_box_in_centimeters(self, rate_request_payload):
        rate_request_payload["parcel"] = {
            "package_type": "medium_flat_rate_box",
            "distance_unit": "cm",
            "weight": "1",
        }

        parcel = RateRequest.model_validate(rate_request_payload).parcel

        assert parcel.length == Decimal("27.94")
        assert parcel.height == Decimal("13.97")

    def test_custom_requires_all_dimensions(self, rate_request_payload):
        rate_request_payload["parcel"] = {"package_type": "custom", "length": "5", "weight": "1"}

        with pytest.raises(ValidationError, match="requires length, width and height"):
            RateRequest.model_validate(rate_request_payload)

    def test_weight_limit_uses_mass_unit(self, rate_request_payload):
        rate_request_payload["parcel"] = {"weight": "70", "mass_unit": "kg"}

        with pytest.raises(ValidationError, match="must not exceed"):
            RateRequest.model_validate(rate_request_payload)

    def test_unknown_field_rejected(self, rate_request_payload):
        rate_request_payload["insurance"] = True

        with pytest.raises(ValidationError):
            RateRequest.model_validate(rate_request_payload)

    def test_saved_and_inline_address_are_exclusive(self, rate_request_payload):
        rate_request_payload["address_to_id"] = "addr_1"

        with pytest.raises(ValidationError, match="exactly one of address_to"):
            RateRequest.model_validate(rate_request_payload)

    def test_saved_address_ids_accepted(self, rate_request_payload):
        rate_request_payload.pop("address_from")
        rate_request_payload["address_from_id"] = "addr_1"

        request = RateRequest.model_validate(rate_request_payload)

        assert request.address_from is None
        assert request.address_from_id == "addr_1"

    @pytest.mark.parametrize("zip_code", ["9411", "ABCDE", "94117-12"])
    def test_bad_us_zip_rejected(self, rate_request_payload, zip_code):
        rate_request_payload["address_to"]["zip"] = zip_code

        with pytest.raises(ValidationError, match="Invalid US ZIP"):
            RateRequest.model_validate(rate_request_payload)

    def test_foreign_postal_code_not_zip_checked(self, rate_request_payload):
        rate_request_payload["address_to"].update({"zip": "SW1A 1AA", "country": "gb"})

        address = RateRequest.model_validate(rate_request_payload).address_to

        assert address.country == "GB"
