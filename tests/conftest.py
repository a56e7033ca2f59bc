"""Test configuration and fixtures"""

import asyncio
import base64
import tempfile
from io import BytesIO
from pathlib import Path

import pytest
from PIL import Image

from lyricslides.cache import CacheIndex
from lyricslides.core.config import (
    ApiKeysConfig,
    CacheConfig,
    Config,
    GenerationConfig,
)
from lyricslides.core.exceptions import ErrorKind, ProviderError
from lyricslides.generation import BatchScheduler, RequestCoordinator
from lyricslides.providers import OpenAIProvider, StabilityProvider, usage_tracker


AMAZING_GRACE = """Amazing grace! How sweet the sound
That saved a wretch like me!
I once was lost, but now am found;
Was blind, but now I see.

'Twas grace that taught my heart to fear,
And grace my fears relieved;
How precious did that grace appear
The hour I first believed."""


def make_png(color: str = "blue", size: tuple[int, int] = (8, 8)) -> bytes:
    buffer = BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


def make_jpeg(color: str = "red") -> bytes:
    buffer = BytesIO()
    Image.new("RGB", (8, 8), color).save(buffer, format="JPEG")
    return buffer.getvalue()


class RecordingProviderMixin:
    """
    Replaces an adapter's HTTP call with a canned response.

    Records how many calls were made and the highest number of calls
    that were in flight at the same time.
    """

    def __init__(self, delay: float = 0.0, fail_marker: str = "FAIL", **kwargs) -> None:
        kwargs.setdefault("api_key", "test-key")
        kwargs.setdefault("retry_count", 0)
        kwargs.setdefault("retry_delay", 0.0)
        super().__init__(**kwargs)
        self.delay = delay
        self.fail_marker = fail_marker
        self.calls = 0
        self.prompts: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def _post_json(self, url, payload):
        prompt = payload["prompt"] if "prompt" in payload else payload["text_prompts"][0]["text"]
        self.calls += 1
        self.prompts.append(prompt)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.fail_marker and self.fail_marker in prompt:
                raise ProviderError(f"{self.name} rejected the API key (HTTP 401)", ErrorKind.AUTH_ERROR, status=401)
            return self.response_body()
        finally:
            self.in_flight -= 1

    def response_body(self) -> dict:
        raise NotImplementedError


class FakeOpenAIProvider(RecordingProviderMixin, OpenAIProvider):
    """OpenAI adapter answering with a PNG"""

    def response_body(self) -> dict:
        return {
            "created": 1700000000,
            "data": [{"b64_json": base64.b64encode(make_png()).decode("ascii")}],
        }


class FakeStabilityProvider(RecordingProviderMixin, StabilityProvider):
    """Stability AI adapter answering with a JPEG"""

    def response_body(self) -> dict:
        return {
            "artifacts": [{"base64": base64.b64encode(make_jpeg()).decode("ascii"), "seed": 7, "finishReason": "SUCCESS"}],
        }


@pytest.fixture(autouse=True)
def reset_usage():
    """Usage counters are process-wide"""
    usage_tracker.reset()
    yield
    usage_tracker.reset()


@pytest.fixture
def temp_dir():
    """Create temporary directory for tests"""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def config(temp_dir):
    """Configuration with an isolated cache and no request pacing"""
    return Config(
        api_keys=ApiKeysConfig(openai="test-key"),
        cache=CacheConfig(directory=temp_dir / "cache"),
        generation=GenerationConfig(concurrency=3, retry_count=0, retry_delay=0.0, min_request_interval=0.0),
    )


@pytest.fixture
def cache(config):
    index = CacheIndex(config.cache.directory)
    index.build()
    return index


@pytest.fixture
def fake_provider():
    return FakeOpenAIProvider()


@pytest.fixture
def fake_stability():
    return FakeStabilityProvider()


@pytest.fixture
def coordinator(config, cache, fake_provider):
    return RequestCoordinator(config, cache=cache, providers={"openai": fake_provider})


@pytest.fixture
def scheduler(coordinator):
    return BatchScheduler(coordinator, default_concurrency=3)


@pytest.fixture
def sample_lyrics():
    return AMAZING_GRACE


@pytest.fixture
def png_bytes():
    return make_png()


@pytest.fixture
def jpeg_bytes():
    return make_jpeg()
