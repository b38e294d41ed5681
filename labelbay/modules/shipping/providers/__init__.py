"""
Rate Provider Registry and Factory

- ProviderFactory creates provider instances by name
- Only returns enabled providers (checks settings flags and API keys)
"""
from typing import Dict, List, Optional, Type
import logging

import httpx

from labelbay.core.config import settings
from labelbay.modules.shipping.providers.base import BaseRateProvider

logger = logging.getLogger(__name__)

# Registry of provider implementations
_PROVIDER_REGISTRY: Dict[str, Type[BaseRateProvider]] = {}


def register_provider(name: str):
    """
    Decorator to register a rate provider implementation.

    Usage:
        @register_provider("shippo")
        class ShippoProvider(BaseRateProvider):
            ...
    """
    def decorator(cls: Type[BaseRateProvider]):
        _PROVIDER_REGISTRY[name] = cls
        logger.debug(f"Registered rate provider: {name} -> {cls.__name__}")
        return cls
    return decorator


class ProviderFactory:
    """
    Factory for creating provider instances.

    Returns None for disabled or unconfigured providers.
    """

    @classmethod
    def is_enabled(cls, name: str) -> bool:
        provider_cls = _PROVIDER_REGISTRY.get(name)
        if not provider_cls:
            return False
        prefix = provider_cls.settings_prefix
        return bool(getattr(settings, f"{prefix}_ENABLED", False) and getattr(settings, f"{prefix}_API_KEY", ""))

    @classmethod
    def get_provider(
        cls,
        name: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> Optional[BaseRateProvider]:
        """
        Get a provider instance if enabled.

        Args:
            name: Registered provider name
            transport: Optional httpx transport (tests)

        Returns:
            BaseRateProvider instance or None if disabled/not found
        """
        provider_cls = _PROVIDER_REGISTRY.get(name)
        if not provider_cls:
            logger.warning(f"No implementation registered for provider: {name}")
            return None

        if not cls.is_enabled(name):
            logger.debug(f"Provider {name} is disabled or has no API key")
            return None

        prefix = provider_cls.settings_prefix
        return provider_cls(
            api_key=getattr(settings, f"{prefix}_API_KEY"),
            base_url=getattr(settings, f"{prefix}_API_BASE", None),
            transport=transport,
        )

    @classmethod
    def get_enabled_providers(cls, transport: Optional[httpx.AsyncBaseTransport] = None) -> List[BaseRateProvider]:
        """Get all enabled provider instances, in registration order."""
        providers = []
        for name in _PROVIDER_REGISTRY:
            provider = cls.get_provider(name, transport=transport)
            if provider:
                providers.append(provider)
        return providers

    @classmethod
    def get_registered_providers(cls) -> List[str]:
        """Get list of all registered provider names."""
        return list(_PROVIDER_REGISTRY.keys())


# Import providers to trigger registration
# These imports must be at the bottom to avoid circular imports
from labelbay.modules.shipping.providers.shippo import ShippoProvider  # noqa: E402, F401
from labelbay.modules.shipping.providers.easypost import EasyPostProvider  # noqa: E402, F401
