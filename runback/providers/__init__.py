"""Provider clients.

OpenRouter runs synchronously with full history; fal.ai runs queued and
only sees the current prompt.
"""

import httpx

from runback.config import Settings
from runback.providers.base import ProviderClient, ProviderRegistry
from runback.providers.fal import FalQueueClient
from runback.providers.openrouter import OpenRouterClient


def build_providers(settings: Settings, http: httpx.AsyncClient) -> ProviderRegistry:
    """Register every provider that has credentials configured."""
    registry = ProviderRegistry()
    if settings.openrouter_api_key:
        registry.register(OpenRouterClient(settings, http))
    if settings.fal_api_key:
        registry.register(FalQueueClient(settings, http))
    return registry


__all__ = [
    "FalQueueClient",
    "OpenRouterClient",
    "ProviderClient",
    "ProviderRegistry",
    "build_providers",
]
