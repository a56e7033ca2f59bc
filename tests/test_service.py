# tests/test_service.py
"""Test the ImageGenerationService facade"""

import base64

import pytest

from lyricslides import GenerationParams, ImageGenerationService
from lyricslides.cache import CacheFilter
from lyricslides.core.exceptions import UnsupportedProviderError
from lyricslides.providers import OpenAIProvider

from conftest import make_png


@pytest.fixture
def openai_calls(monkeypatch):
    """Replace the OpenAI HTTP call for every adapter the service creates"""
    calls = []

    async def fake_post_json(self, url, payload):
        calls.append(payload)
        return {"created": 1700000000, "data": [{"b64_json": base64.b64encode(make_png()).decode("ascii")}]}

    monkeypatch.setattr(OpenAIProvider, "_post_json", fake_post_json)
    return calls


class TestGeneration:
    """Test generating through the service"""

    @pytest.mark.asyncio
    async def test_generate_and_report(self, config, openai_calls, sample_lyrics):
        async with ImageGenerationService(config) as service:
            events = []
            result = await service.generate_image(
                GenerationParams(song_title="Amazing Grace", artist="Traditional", lyrics=sample_lyrics),
                on_progress=events.append,
            )

            assert result.success
            assert result.file_path.parent == config.cache.directory
            assert events[-1].result is result

            size = service.get_cache_size()
            assert size["file_count"] == 1
            assert size["total_size_bytes"] == result.file_path.stat().st_size

            assert service.get_usage_stats()["openai"]["requests"] == 1
            assert len(openai_calls) == 1

    @pytest.mark.asyncio
    async def test_generate_batch(self, config, openai_calls):
        async with ImageGenerationService(config) as service:
            snapshots = []
            results = await service.generate_batch(
                [GenerationParams(prompt=f"Scene {i}") for i in range(3)],
                on_progress=snapshots.append,
                concurrency_limit=2,
            )

            assert [r.success for r in results] == [True, True, True]
            assert snapshots[-1].completed_count == 3

    @pytest.mark.asyncio
    async def test_cache_survives_restart(self, config, openai_calls, sample_lyrics):
        params = GenerationParams(song_title="Amazing Grace", lyrics=sample_lyrics)
        async with ImageGenerationService(config) as service:
            first = await service.generate_image(params)

        async with ImageGenerationService(config) as service:
            second = await service.generate_image(params)

        assert second.from_cache
        assert second.file_path == first.file_path
        assert len(openai_calls) == 1

    @pytest.mark.asyncio
    async def test_cancel_when_idle(self, config):
        async with ImageGenerationService(config) as service:
            assert service.cancel_generation() is False
            assert service.cancel_generation("req_unknown") is False


class TestCacheManagement:
    """Test cache maintenance through the service"""

    @pytest.mark.asyncio
    async def test_clear_cache_by_provider_alias(self, config, openai_calls):
        async with ImageGenerationService(config) as service:
            await service.generate_image(GenerationParams(prompt="A calm sunrise"))

            assert service.clear_cache(CacheFilter(provider="stability")) == 0
            assert service.clear_cache(CacheFilter(provider="OpenAI")) == 1
            assert service.get_cache_size()["file_count"] == 0

    @pytest.mark.asyncio
    async def test_clear_song_images_by_provider_after_restart(self, config, openai_calls, sample_lyrics):
        async with ImageGenerationService(config) as service:
            await service.generate_image(
                GenerationParams(song_title="Amazing Grace", artist="Traditional", lyrics=sample_lyrics)
            )

        async with ImageGenerationService(config) as service:
            assert service.clear_cache(CacheFilter(provider="openai")) == 1
            assert service.get_cache_size()["file_count"] == 0

    @pytest.mark.asyncio
    async def test_clear_cache_older_than(self, config, openai_calls):
        async with ImageGenerationService(config) as service:
            await service.generate_image(GenerationParams(prompt="A calm sunrise"))

            assert service.clear_cache_older_than(1) == 0
            assert service.clear_cache_older_than(-1) == 1

    @pytest.mark.asyncio
    async def test_import_image(self, config, temp_dir, png_bytes):
        source = temp_dir / "photo.png"
        source.write_bytes(png_bytes)

        async with ImageGenerationService(config) as service:
            entry = await service.import_image(source, "Amazing Grace", "Traditional")
            result = await service.generate_image(GenerationParams(song_title="Amazing Grace", artist="Traditional"))

            assert result.from_cache
            assert result.file_path == entry.file_path


class TestProvidersAndPrompts:
    """Test key handling and prompt helpers"""

    @pytest.mark.asyncio
    async def test_has_api_key(self, config):
        async with ImageGenerationService(config) as service:
            assert service.has_api_key("openai")
            assert not service.has_api_key("stability")
            with pytest.raises(UnsupportedProviderError):
                service.has_api_key("midjourney")

    @pytest.mark.asyncio
    async def test_empty_key_check_is_false(self, config):
        async with ImageGenerationService(config) as service:
            assert await service.check_api_key("openai", "") is False

    @pytest.mark.asyncio
    async def test_templates_and_prompt_preview(self, config, sample_lyrics):
        async with ImageGenerationService(config) as service:
            templates = service.get_prompt_templates()
            assert "default" in templates

            prompt = service.build_prompt(lyrics=sample_lyrics, song_title="Amazing Grace", style="watercolor")
            assert "Amazing grace! How sweet the sound" in prompt
            assert prompt.endswith("Additional style: watercolor")
