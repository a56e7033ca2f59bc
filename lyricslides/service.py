"""
Public entry point for background image generation.

ImageGenerationService wires the building blocks together for one
configuration: a CacheIndex over the cache directory, a PromptBuilder,
a RequestCoordinator and a BatchScheduler. Provider adapters are created
lazily the first time a request names them.

Expected failures (missing key, auth, rate limiting, network, cancellation)
come back as GenerationResult objects with success=False. Only
UnsupportedProviderError and GenerationParamsError are raised.

Usage:
    config = load_config()
    async with ImageGenerationService(config) as service:
        result = await service.generate_image(
            GenerationParams(song_title="Amazing Grace", artist="Traditional", lyrics=text),
            on_progress=lambda e: print(e.status.value, e.progress),
        )
        if result.success:
            print(result.file_path)
"""

import asyncio
import time
from pathlib import Path
from typing import Iterable

from lyricslides.cache.index import CacheEntry, CacheFilter, CacheIndex
from lyricslides.core.config import Config
from lyricslides.core.events import ProgressCallback
from lyricslides.core.logger import get_logger
from lyricslides.generation.batch import BatchProgressCallback, BatchScheduler
from lyricslides.generation.coordinator import (
    GenerationParams,
    GenerationResult,
    RequestCoordinator,
)
from lyricslides.prompt.builder import PromptBuilder
from lyricslides.providers.registry import canonical_name, provider_for_model
from lyricslides.providers.usage import usage_tracker

logger = get_logger(__name__)


SECONDS_PER_DAY = 86400


class ImageGenerationService:
    """
    Facade over cache, prompt building, providers and scheduling.

    Attributes:
        config: Application configuration.
        cache: The image cache index (may be disabled).
        builder: Prompt builder (built-in templates merged with config).
        coordinator: Per-request state machine.
        scheduler: Batch scheduler.
        usage: Per-provider usage counters.
    """

    def __init__(self, config: Config) -> None:
        """
        Build the cache index and the generation pipeline.

        The cache directory is scanned immediately; if it cannot be read,
        caching is disabled and generation still works uncached.
        """
        self.config = config
        self.usage = usage_tracker

        retention_days = config.cache.retention_days
        self.cache = CacheIndex(
            config.cache.directory,
            retention=retention_days * SECONDS_PER_DAY if retention_days else None,
            enabled=config.cache.enabled,
            model_owner=provider_for_model,
        )
        self.cache.build()

        self.builder = PromptBuilder.from_config(config.prompts)
        self.coordinator = RequestCoordinator(config, cache=self.cache, builder=self.builder)
        self.scheduler = BatchScheduler(self.coordinator, config.generation.concurrency)

    async def __aenter__(self) -> "ImageGenerationService":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Cancel outstanding work and close provider HTTP sessions."""
        self.cancel_generation()
        for provider in self.coordinator.providers():
            await provider.aclose()

    # -------------------------------------------------------------------------
    # Generation
    # -------------------------------------------------------------------------

    async def generate_image(
        self,
        params: GenerationParams,
        on_progress: ProgressCallback | None = None
    ) -> GenerationResult:
        """Generate (or fetch from cache) one background image."""
        return await self.coordinator.generate(params, on_progress=on_progress)

    async def generate_batch(
        self,
        params_list: Iterable[GenerationParams],
        on_progress: BatchProgressCallback | None = None,
        concurrency_limit: int | None = None
    ) -> list[GenerationResult]:
        """Generate many images; results are returned in input order."""
        return await self.scheduler.generate_batch(
            params_list,
            concurrency_limit=concurrency_limit,
            on_progress=on_progress,
        )

    def cancel_generation(self, request_id: str | None = None) -> bool:
        """
        Cancel one request, or everything when request_id is None.

        Safe to call from any thread.

        Returns:
            True if anything was cancelled.
        """
        if request_id is not None:
            return self.coordinator.cancel(request_id)

        cancelled = self.scheduler.cancel_all()
        cancelled += self.coordinator.cancel_all()
        if cancelled:
            logger.info(f"Cancelled {cancelled} generation request(s)")
        return cancelled > 0

    # -------------------------------------------------------------------------
    # Cache
    # -------------------------------------------------------------------------

    def clear_cache(self, cache_filter: CacheFilter | None = None) -> int:
        """Delete cached images matching a filter. Returns how many were deleted."""
        if cache_filter is not None and cache_filter.provider:
            cache_filter = CacheFilter(
                provider=canonical_name(cache_filter.provider),
                model=cache_filter.model,
                before=cache_filter.before,
            )
        return self.cache.clear(cache_filter)

    def clear_cache_older_than(self, days: float) -> int:
        """Delete cached images created more than `days` days ago."""
        return self.clear_cache(CacheFilter(before=time.time() - days * SECONDS_PER_DAY))

    def get_cache_size(self) -> dict:
        """Return {'total_size_bytes', 'total_size_mb', 'file_count'}."""
        return self.cache.size_info()

    async def import_image(self, path: Path, song_title: str, artist: str | None = None) -> CacheEntry:
        """
        Use a local image as the background for a song.

        Raises:
            CacheIOError: If the file is unreadable, not an image, or the
                          cache is disabled.
        """
        return await asyncio.to_thread(self.cache.import_image, Path(path), song_title, artist)

    # -------------------------------------------------------------------------
    # Providers and prompts
    # -------------------------------------------------------------------------

    async def check_api_key(self, provider: str, api_key: str) -> bool:
        """
        Check an API key against the provider.

        Raises:
            UnsupportedProviderError: If the provider is unknown.
        """
        adapter = self.coordinator.get_provider(provider)
        return await adapter.check_api_key(api_key)

    def has_api_key(self, provider: str) -> bool:
        """True if a key is configured for the provider."""
        return bool(self.config.api_keys.get(canonical_name(provider)))

    def get_usage_stats(self) -> dict[str, dict]:
        """Per-provider request counts and last-use times."""
        return self.usage.snapshot()

    def get_prompt_templates(self) -> dict[str, str]:
        """All prompt templates by name."""
        return self.builder.templates()

    def build_prompt(
        self,
        lyrics: str | None = None,
        template: str | None = None,
        song_title: str | None = None,
        artist: str | None = None,
        style: str | None = None
    ) -> str:
        """Preview the prompt a generation request would use."""
        return self.builder.build(
            lyrics=lyrics,
            template=template or self.config.defaults.template,
            song_title=song_title,
            artist=artist,
            style=style,
        )
