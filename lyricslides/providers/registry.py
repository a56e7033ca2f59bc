"""
Provider registry.

Maps provider names (and aliases) to adapter classes. New providers are
added with register_provider(); the coordinator only ever asks the
registry, so it needs no changes when a provider is added.

Usage:
    from lyricslides.providers.registry import create_provider, list_providers

    provider = create_provider("stability", config)   # alias of "stabilityai"
    print(list_providers())                           # ['openai', 'stabilityai']
"""

from typing import TYPE_CHECKING

from lyricslides.core.exceptions import UnsupportedProviderError
from lyricslides.providers.base import ImageProvider
from lyricslides.providers.openai import OpenAIProvider
from lyricslides.providers.stability import StabilityProvider
from lyricslides.providers.usage import UsageTracker

if TYPE_CHECKING:
    from lyricslides.core.config import Config


_PROVIDERS: dict[str, type[ImageProvider]] = {}
_ALIASES: dict[str, str] = {}


def register_provider(provider_cls: type[ImageProvider]) -> type[ImageProvider]:
    """
    Register an adapter class under its name and aliases.

    Usable as a class decorator. Re-registering a name replaces it.
    """
    if not provider_cls.name:
        raise ValueError(f"{provider_cls.__name__} has no provider name")
    _PROVIDERS[provider_cls.name] = provider_cls
    _ALIASES[provider_cls.name] = provider_cls.name
    for alias in provider_cls.aliases:
        _ALIASES[alias.lower()] = provider_cls.name
    return provider_cls


def canonical_name(name: str) -> str:
    """
    Resolve a provider name or alias to its canonical name.

    Raises:
        UnsupportedProviderError: If nothing is registered under that name.
    """
    key = (name or "").strip().lower()
    if key not in _ALIASES:
        raise UnsupportedProviderError(
            f"Unsupported image provider: {name}",
            details={"provider": name, "available": list_providers()}
        )
    return _ALIASES[key]


def get_provider_class(name: str) -> type[ImageProvider]:
    return _PROVIDERS[canonical_name(name)]


def create_provider(name: str, config: "Config", usage: UsageTracker | None = None) -> ImageProvider:
    """Instantiate the adapter for a provider name from the configuration."""
    return get_provider_class(name).from_config(config, usage=usage)


def list_providers() -> list[str]:
    """Canonical names of all registered providers."""
    return sorted(_PROVIDERS)


def provider_for_model(model: str) -> str | None:
    """Return the provider that lists a model id, or None."""
    for name, provider_cls in _PROVIDERS.items():
        if model in provider_cls.models:
            return name
    if model.startswith("stable-diffusion"):
        return StabilityProvider.name
    if model.startswith("dall-e"):
        return OpenAIProvider.name
    return None


register_provider(OpenAIProvider)
register_provider(StabilityProvider)
