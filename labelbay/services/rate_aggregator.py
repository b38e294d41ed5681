"""
Rate Aggregation Service

Fans one normalized shipment request out to every enabled rate provider
and merges the answers:
- One task per provider, each bounded by its own timeout
- A provider failure becomes a warning and never cancels its siblings
- Providers still running at the overall deadline are abandoned
- Merged quotes are sorted by amount (lowest first)
- No retry inside one aggregation call

Usage:
    aggregator = RateAggregator(address_service=AddressService())
    result = await aggregator.get_rates(user_id, payload)
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from labelbay.core.config import settings
from labelbay.core.exceptions import RateAggregationError
from labelbay.core.validation import parse_model
from labelbay.modules.shipping.providers import ProviderFactory
from labelbay.modules.shipping.providers.base import (
    BaseRateProvider,
    Parcel,
    ProviderRate,
    ShipmentAddress,
    ShipmentRequestData,
)
from labelbay.schemas.shipping import RateAddress, RateRequest
from labelbay.services.address_service import AddressService, to_shipment_address
from labelbay.services.quote_book import QuoteBook, RateQuote, quote_book as default_quote_book

logger = logging.getLogger(__name__)

NO_RATES_MESSAGE = "No shipping rates could be retrieved. Please check your addresses and parcel details."


@dataclass
class ProviderWarning:
    """Non-fatal failure of one provider."""
    provider: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"provider": self.provider, "message": self.message}


@dataclass
class RateAggregationResult:
    quotes: List[RateQuote]
    warnings: List[ProviderWarning] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rates": [q.to_dict() for q in self.quotes],
            "warnings": [w.to_dict() for w in self.warnings],
        }


def _inline_address(address: RateAddress) -> ShipmentAddress:
    return ShipmentAddress(**address.model_dump())


class RateAggregator:
    """
    Aggregates rates from all configured providers.

    Providers passed in explicitly are used as-is and left open; providers
    created through ProviderFactory are closed after each call.
    """

    def __init__(
        self,
        providers: Optional[List[BaseRateProvider]] = None,
        address_service: Optional[AddressService] = None,
        quote_book: Optional[QuoteBook] = None,
        provider_timeout: Optional[float] = None,
        overall_timeout: Optional[float] = None,
    ):
        self._providers = providers
        self.address_service = address_service
        self.quote_book = quote_book if quote_book is not None else default_quote_book
        self.provider_timeout = provider_timeout or settings.RATE_PROVIDER_TIMEOUT_SECONDS
        self.overall_timeout = overall_timeout or settings.RATE_AGGREGATION_TIMEOUT_SECONDS

    # ==================== Request normalization ====================

    async def normalize(self, user_id: str, payload: Union[RateRequest, dict]) -> ShipmentRequestData:
        """Validate the request and resolve saved address ids for this user."""
        request = parse_model(RateRequest, payload)

        async def resolve(inline: Optional[RateAddress], address_id: Optional[str]) -> ShipmentAddress:
            if inline is not None:
                return _inline_address(inline)
            service = self.address_service or AddressService()
            return to_shipment_address(await service.get_address(user_id, address_id))

        parcel = request.parcel
        return ShipmentRequestData(
            address_from=await resolve(request.address_from, request.address_from_id),
            address_to=await resolve(request.address_to, request.address_to_id),
            parcel=Parcel(
                length=parcel.length,
                width=parcel.width,
                height=parcel.height,
                weight=parcel.weight,
                distance_unit=parcel.distance_unit,
                mass_unit=parcel.mass_unit,
                package_type=parcel.package_type,
            ),
            from_address_id=request.address_from_id,
            to_address_id=request.address_to_id,
        )

    # ==================== Fan-out ====================

    async def _fetch(self, provider: BaseRateProvider, request: ShipmentRequestData) -> List[ProviderRate]:
        return await asyncio.wait_for(provider.get_rates(request), timeout=self.provider_timeout)

    def _describe_failure(self, exc: BaseException) -> str:
        if isinstance(exc, asyncio.TimeoutError):
            return f"timed out after {self.provider_timeout:g}s"
        return getattr(exc, "message", None) or str(exc) or type(exc).__name__

    async def collect(
        self,
        request: ShipmentRequestData,
        providers: List[BaseRateProvider],
    ) -> tuple:
        """
        Query every provider concurrently.

        Returns (rates, warnings). Rates keep provider order before sorting.
        """
        tasks = {
            asyncio.create_task(self._fetch(provider, request), name=f"rates-{provider.name}"): provider
            for provider in providers
        }
        done, pending = await asyncio.wait(tasks.keys(), timeout=self.overall_timeout)

        for task in pending:
            task.cancel()

        rates: List[ProviderRate] = []
        warnings: List[ProviderWarning] = []

        for task, provider in tasks.items():
            if task in pending:
                logger.warning(f"[RATES] {provider.name} abandoned at overall deadline {self.overall_timeout:g}s")
                warnings.append(ProviderWarning(provider.name, "timed out"))
                continue

            exc = task.exception()
            if exc is not None:
                message = self._describe_failure(exc)
                logger.error(f"[RATES] Error getting rates from {provider.name}: {message}")
                warnings.append(ProviderWarning(provider.name, message))
                continue

            rates.extend(task.result())

        return rates, warnings

    def _get_providers(self) -> tuple:
        if self._providers is not None:
            return self._providers, False
        return ProviderFactory.get_enabled_providers(), True

    async def get_rates(self, user_id: str, payload: Union[RateRequest, dict]) -> RateAggregationResult:
        """
        Get shipping rates from all enabled providers.

        Raises:
            ValidationError: request is structurally invalid (nothing sent)
            NotFoundError: a saved address id does not belong to the user
            RateAggregationError: no provider produced a usable quote
        """
        request = await self.normalize(user_id, payload)
        providers, owned = self._get_providers()

        if not providers:
            logger.warning("[RATES] No rate providers enabled for rate lookup")
            raise RateAggregationError("No rate providers are configured")

        try:
            rates, warnings = await self.collect(request, providers)
        finally:
            if owned:
                for provider in providers:
                    await provider.close()

        if not rates:
            if warnings:
                errors = "; ".join(f"{w.provider}: {w.message}" for w in warnings)
                raise RateAggregationError(
                    "No rates found. " + errors,
                    provider_errors=[w.to_dict() for w in warnings],
                )
            raise RateAggregationError(NO_RATES_MESSAGE)

        rates.sort(key=lambda r: r.amount)
        self.quote_book.purge_expired()
        quotes = [self.quote_book.issue(user_id, rate, request) for rate in rates]

        logger.info(
            f"[RATES] user {user_id}: {len(quotes)} quotes from "
            f"{len(providers) - len(warnings)}/{len(providers)} providers"
        )
        return RateAggregationResult(quotes=quotes, warnings=warnings)
