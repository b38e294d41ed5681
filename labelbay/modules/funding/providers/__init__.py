"""
Funding Provider Registry

Same shape as the rate provider registry: implementations register by
name, FundingProviderFactory only hands out configured ones.
"""
from typing import Dict, List, Optional, Type
import logging

import httpx

from labelbay.core.config import settings
from labelbay.modules.funding.providers.base import FundingProvider

logger = logging.getLogger(__name__)

_FUNDING_REGISTRY: Dict[str, Type[FundingProvider]] = {}


def register_funding_provider(name: str):
    def decorator(cls: Type[FundingProvider]):
        _FUNDING_REGISTRY[name] = cls
        logger.debug(f"Registered funding provider: {name} -> {cls.__name__}")
        return cls
    return decorator


class FundingProviderFactory:

    @classmethod
    def is_enabled(cls, name: str) -> bool:
        provider_cls = _FUNDING_REGISTRY.get(name)
        if not provider_cls:
            return False
        return provider_cls.is_configured()

    @classmethod
    def get_provider(
        cls,
        name: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> Optional[FundingProvider]:
        provider_cls = _FUNDING_REGISTRY.get(name)
        if not provider_cls:
            logger.warning(f"No implementation registered for funding provider: {name}")
            return None
        if not cls.is_enabled(name):
            logger.debug(f"Funding provider {name} is disabled or not configured")
            return None
        return provider_cls.from_settings(settings, transport=transport)

    @classmethod
    def get_registered_providers(cls) -> List[str]:
        return list(_FUNDING_REGISTRY.keys())


# Import providers to trigger registration
from labelbay.modules.funding.providers.paypal import PayPalProvider  # noqa: E402, F401
from labelbay.modules.funding.providers.stripe_payments import StripeProvider  # noqa: E402, F401
