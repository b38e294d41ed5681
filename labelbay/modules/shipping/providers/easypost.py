"""
EasyPost Rate Provider

Rates come back on a created shipment; buying a label needs both the
shipment id and the rate id, so the linkage id is "shp_...:rate_...".
"""
import logging
from typing import Any, Dict, List

from labelbay.core.exceptions import ProviderError
from labelbay.modules.shipping.providers import register_provider
from labelbay.modules.shipping.providers.base import (
    BaseRateProvider,
    LabelResult,
    ProviderRate,
    ShipmentAddress,
    ShipmentRequestData,
    parse_amount,
    parse_days,
)

logger = logging.getLogger(__name__)

DEFAULT_DURATION_TERMS = "business days"


def _address(address: ShipmentAddress) -> Dict[str, Any]:
    payload = address.to_payload()
    payload["residential"] = payload.pop("is_residential", True)
    return payload


@register_provider("easypost")
class EasyPostProvider(BaseRateProvider):
    name = "easypost"
    settings_prefix = "EASYPOST"
    default_base_url = "https://api.easypost.com/v2"

    def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    def _map_rate(self, shipment_id: str, rate: Dict[str, Any]) -> ProviderRate:
        service = rate.get("service") or ""
        return ProviderRate(
            provider=self.name,
            carrier=str(rate.get("carrier") or "").upper(),
            service_code=service,
            service_name=service,
            amount=parse_amount(rate.get("rate")),
            currency=rate.get("currency") or "USD",
            estimated_days=parse_days(rate.get("est_delivery_days") or rate.get("delivery_days")),
            duration_terms=DEFAULT_DURATION_TERMS,
            provider_rate_id=f"{shipment_id}:{rate.get('id')}" if rate.get("id") else "",
        )

    async def get_rates(self, request: ShipmentRequestData) -> List[ProviderRate]:
        payload = {
            "shipment": {
                "to_address": _address(request.address_to),
                "from_address": _address(request.address_from),
                "parcel": request.parcel.to_payload(),
            }
        }
        data = await self._post("/shipments", payload)

        raw_rates = data.get("rates")
        shipment_id = data.get("id")
        if not isinstance(raw_rates, list) or not shipment_id:
            raise ProviderError("easypost returned a malformed payload: missing rates", provider=self.name)

        rates = []
        for raw in raw_rates:
            if not isinstance(raw, dict):
                continue
            rate = self._map_rate(shipment_id, raw)
            if rate.provider_rate_id and self.accept_rate(rate):
                rates.append(rate)

        messages = data.get("messages") or []
        for msg in messages:
            if isinstance(msg, dict):
                logger.warning(f"[RATES] easypost {msg.get('carrier')}: {msg.get('message')}")

        logger.info(f"[RATES] easypost returned {len(rates)} usable rates of {len(raw_rates)}")
        return rates

    async def purchase_label(self, provider_rate_id: str) -> LabelResult:
        shipment_id, _, rate_id = provider_rate_id.partition(":")
        if not shipment_id or not rate_id:
            raise ProviderError(f"Malformed easypost rate id: {provider_rate_id}", provider=self.name)

        data = await self._post(f"/shipments/{shipment_id}/buy", {"rate": {"id": rate_id}})
        label = data.get("postage_label") or {}
        if not data.get("tracking_code") and not label.get("label_url"):
            raise ProviderError("easypost label purchase returned no label", provider=self.name)
        return LabelResult(
            tracking_number=data.get("tracking_code"),
            label_url=label.get("label_url"),
            provider_transaction_id=data.get("id"),
            raw_status=data.get("status"),
        )
