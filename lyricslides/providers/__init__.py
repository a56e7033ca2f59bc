"""
Image provider adapters.

Each adapter wraps one generative image API behind ImageProvider.generate(),
which returns a normalised ProviderResult and never raises for provider
or network failures.

Usage:
    from lyricslides.providers import create_provider, ProviderRequest

    provider = create_provider("openai", config)
    result = await provider.generate(ProviderRequest(prompt=p, model="dall-e-3"), token)
"""

from lyricslides.providers.base import (
    ImageProvider,
    ProviderRequest,
    ProviderResult,
    calculate_backoff,
)
from lyricslides.providers.openai import OpenAIProvider
from lyricslides.providers.registry import (
    canonical_name,
    create_provider,
    get_provider_class,
    list_providers,
    provider_for_model,
    register_provider,
)
from lyricslides.providers.stability import StabilityProvider
from lyricslides.providers.usage import UsageStats, UsageTracker, usage_tracker

__all__ = [
    "ImageProvider",
    "ProviderRequest",
    "ProviderResult",
    "calculate_backoff",
    "OpenAIProvider",
    "StabilityProvider",
    "canonical_name",
    "create_provider",
    "get_provider_class",
    "list_providers",
    "provider_for_model",
    "register_provider",
    "UsageStats",
    "UsageTracker",
    "usage_tracker",
]
