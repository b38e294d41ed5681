"""
Base Rate Provider Interface

All rate providers implement this interface. Provider payloads are
mapped into ProviderRate at this seam; nothing past it sees a
provider-specific shape.

Each provider provides its own:
  - Rate lookup
  - Label purchase for a previously quoted rate
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional
import logging

import httpx

from labelbay.core.config import settings
from labelbay.core.exceptions import ProviderError

logger = logging.getLogger(__name__)

# Provider messages that mean the rate is unusable
CRITICAL_RATE_MESSAGES = ("must not be empty", "Invalid token")

CENTS = Decimal("0.01")


# =============================================================================
# Provider-Agnostic Data Classes
# =============================================================================

@dataclass
class ShipmentAddress:
    """Address in the shape rate providers accept."""
    street1: str
    city: str
    state: str
    zip: str
    country: str = "US"
    name: Optional[str] = None
    company: Optional[str] = None
    street2: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    is_residential: bool = True

    def to_payload(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None and v != ""}


@dataclass
class Parcel:
    """Parcel dimensions and weight in declared units."""
    length: Decimal
    width: Decimal
    height: Decimal
    weight: Decimal
    distance_unit: str = "in"
    mass_unit: str = "lb"
    package_type: str = "parcel"

    def to_payload(self) -> Dict[str, Any]:
        return {
            "length": str(self.length),
            "width": str(self.width),
            "height": str(self.height),
            "distance_unit": self.distance_unit,
            "weight": str(self.weight),
            "mass_unit": self.mass_unit,
        }


@dataclass
class ShipmentRequestData:
    """Normalized request sent to every provider."""
    address_from: ShipmentAddress
    address_to: ShipmentAddress
    parcel: Parcel
    from_address_id: Optional[str] = None
    to_address_id: Optional[str] = None

    def snapshot(self) -> Dict[str, Any]:
        return {
            "address_from": self.address_from.to_payload(),
            "address_to": self.address_to.to_payload(),
            "parcel": dict(self.parcel.to_payload(), package_type=self.parcel.package_type),
        }


@dataclass
class ProviderRate:
    """One normalized rate from one provider."""
    provider: str
    carrier: str
    service_code: str
    service_name: str
    amount: Decimal
    provider_rate_id: str
    currency: str = "USD"
    estimated_days: Optional[int] = None
    duration_terms: Optional[str] = None
    messages: List[str] = field(default_factory=list)


@dataclass
class LabelResult:
    """Result of buying a label for a quoted rate."""
    tracking_number: Optional[str]
    label_url: Optional[str]
    provider_transaction_id: Optional[str] = None
    raw_status: Optional[str] = None


@dataclass
class AddressValidationResult:
    """Result of provider address validation."""
    is_valid: bool
    normalized_address: Optional[Dict[str, Any]] = None
    messages: List[str] = field(default_factory=list)


def parse_amount(value: Any) -> Optional[Decimal]:
    """Provider amounts arrive as strings; None when unusable."""
    if value is None or value == "":
        return None
    try:
        amount = Decimal(str(value)).quantize(CENTS)
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return amount


def parse_days(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


# =============================================================================
# Base Provider
# =============================================================================

class BaseRateProvider(ABC):
    """
    Abstract base class for rate providers.

    Subclasses set `name` and `settings_prefix` and implement the
    payload mapping. HTTP goes through one httpx.AsyncClient per instance.
    """

    name: str = "base"
    settings_prefix: str = ""
    default_base_url: str = ""

    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        allowed_carriers: Optional[Iterable[str]] = None,
    ):
        self.api_key = api_key
        self.base_url = (base_url or self.default_base_url).rstrip("/")
        self.allowed_carriers = {c.upper() for c in (allowed_carriers or settings.ALLOWED_CARRIERS)}
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    # ==================== HTTP ====================

    def _auth_headers(self) -> Dict[str, str]:
        return {}

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={"Content-Type": "application/json", **self._auth_headers()},
                transport=self._transport,
                timeout=settings.RATE_PROVIDER_TIMEOUT_SECONDS,
            )
        return self._client

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST JSON and return the decoded body. Transport errors, non-2xx and non-JSON become ProviderError."""
        try:
            response = await self._get_client().post(path, json=payload)
        except httpx.HTTPError as e:
            logger.error(f"[RATES] {self.name} request to {path} failed: {e}")
            raise ProviderError(
                f"{self.name} unreachable: {type(e).__name__}",
                provider=self.name,
                details={"path": path},
            ) from e
        if response.status_code >= 400:
            raise ProviderError(
                f"{self.name} API error: {response.status_code} - {response.text[:300]}",
                provider=self.name,
                details={"status_code": response.status_code},
            )
        try:
            body = response.json()
        except ValueError:
            raise ProviderError(f"{self.name} returned a malformed payload", provider=self.name)
        if not isinstance(body, dict):
            raise ProviderError(f"{self.name} returned a malformed payload", provider=self.name)
        return body

    # ==================== Normalization ====================

    def accept_rate(self, rate: ProviderRate) -> bool:
        """Drop rates that cannot be sold."""
        if any(critical in msg for msg in rate.messages for critical in CRITICAL_RATE_MESSAGES):
            logger.debug(f"[RATES] {self.name}: skipping {rate.carrier} {rate.service_code}, critical message")
            return False
        if rate.carrier.upper() not in self.allowed_carriers:
            logger.debug(f"[RATES] {self.name}: skipping carrier not in allowed list: {rate.carrier}")
            return False
        if rate.amount is None or rate.amount <= 0:
            logger.debug(f"[RATES] {self.name}: skipping rate with invalid amount: {rate.amount}")
            return False
        rate.currency = (rate.currency or "").upper()
        if rate.currency != settings.FUNDING_CURRENCY.upper():
            logger.debug(f"[RATES] {self.name}: skipping rate in {rate.currency}, balance is {settings.FUNDING_CURRENCY}")
            return False
        for msg in rate.messages:
            logger.warning(f"Rate warning for {rate.carrier} {rate.service_name}: {msg}")
        return True

    # ==================== Abstract Methods ====================

    @abstractmethod
    async def get_rates(self, request: ShipmentRequestData) -> List[ProviderRate]:
        """
        Quote the shipment.

        Raises ProviderError for transport, status or payload failures.
        """
        pass

    @abstractmethod
    async def purchase_label(self, provider_rate_id: str) -> LabelResult:
        """Buy the label for a rate returned by get_rates."""
        pass

    async def validate_address(self, address: ShipmentAddress) -> AddressValidationResult:
        raise ProviderError(f"{self.name} does not support address validation", provider=self.name)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(name={self.name!r})>"
