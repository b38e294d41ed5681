"""
Shippo Rate Provider

- Rates: POST /shipments/ with async=false returns rates inline
- Labels: POST /transactions/ for a rate object_id
- Address validation: POST /addresses/validate/
"""
import logging
from typing import Any, Dict, List

from labelbay.core.exceptions import ProviderError
from labelbay.modules.shipping.providers import register_provider
from labelbay.modules.shipping.providers.base import (
    AddressValidationResult,
    BaseRateProvider,
    LabelResult,
    ProviderRate,
    ShipmentAddress,
    ShipmentRequestData,
    parse_amount,
    parse_days,
)

logger = logging.getLogger(__name__)


@register_provider("shippo")
class ShippoProvider(BaseRateProvider):
    name = "shippo"
    settings_prefix = "SHIPPO"
    default_base_url = "https://api.goshippo.com"

    def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"ShippoToken {self.api_key}"}

    def _map_rate(self, rate: Dict[str, Any]) -> ProviderRate:
        servicelevel = rate.get("servicelevel") or {}
        return ProviderRate(
            provider=self.name,
            carrier=str(rate.get("provider") or "").upper(),
            service_code=servicelevel.get("token") or "",
            service_name=servicelevel.get("name") or servicelevel.get("token") or "",
            amount=parse_amount(rate.get("amount")),
            currency=rate.get("currency") or "USD",
            estimated_days=parse_days(rate.get("estimated_days")),
            duration_terms=rate.get("duration_terms"),
            provider_rate_id=rate.get("object_id") or "",
            messages=[m.get("text", "") for m in rate.get("messages") or [] if isinstance(m, dict)],
        )

    async def get_rates(self, request: ShipmentRequestData) -> List[ProviderRate]:
        payload = {
            "address_from": request.address_from.to_payload(),
            "address_to": request.address_to.to_payload(),
            "parcels": [request.parcel.to_payload()],
            "async": False,
        }
        data = await self._post("/shipments/", payload)

        raw_rates = data.get("rates")
        if not isinstance(raw_rates, list):
            raise ProviderError("shippo returned a malformed payload: missing rates", provider=self.name)

        rates = []
        for raw in raw_rates:
            if not isinstance(raw, dict):
                continue
            rate = self._map_rate(raw)
            if rate.provider_rate_id and self.accept_rate(rate):
                rates.append(rate)

        logger.info(f"[RATES] shippo returned {len(rates)} usable rates of {len(raw_rates)}")
        return rates

    async def purchase_label(self, provider_rate_id: str) -> LabelResult:
        data = await self._post(
            "/transactions/",
            {"rate": provider_rate_id, "label_file_type": "PDF", "async": False},
        )
        if data.get("status") != "SUCCESS":
            messages = "; ".join(m.get("text", "") for m in data.get("messages") or [] if isinstance(m, dict))
            raise ProviderError(
                f"shippo label purchase failed: {data.get('status')} {messages}".strip(),
                provider=self.name,
            )
        return LabelResult(
            tracking_number=data.get("tracking_number"),
            label_url=data.get("label_url"),
            provider_transaction_id=data.get("object_id"),
            raw_status=data.get("status"),
        )

    async def validate_address(self, address: ShipmentAddress) -> AddressValidationResult:
        payload = {
            "street1": address.street1,
            "street2": address.street2,
            "city": address.city,
            "state": address.state,
            "zip": address.zip,
            "country": address.country,
        }
        data = await self._post("/addresses/validate/", {k: v for k, v in payload.items() if v})
        results = data.get("validation_results") or {}
        if results.get("is_valid"):
            return AddressValidationResult(
                is_valid=True,
                normalized_address=results.get("normalized_address"),
            )
        messages = [
            m.get("text", "") if isinstance(m, dict) else str(m)
            for m in results.get("messages") or []
        ]
        return AddressValidationResult(
            is_valid=False,
            messages=messages or ["Address could not be validated."],
        )
