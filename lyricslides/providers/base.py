"""
Base class and shared types for image provider adapters.

An adapter turns a provider-neutral ProviderRequest into one HTTP call
against a generative image API and normalises the outcome into a
ProviderResult. Adapters never raise for provider problems: every
failure comes back as a failed result with an ErrorKind.

Request Flow (ImageProvider.generate):
    1. Cancelled token      -> CANCELLED, no network I/O
    2. No API key           -> MISSING_API_KEY
    3. Resolve native size, build payload
    4. POST (paced by asyncio-throttle, wrapped in token.run())
    5. Map HTTP status / transport errors to an ErrorKind
    6. Retry RATE_LIMITED and NETWORK_ERROR with exponential backoff
    7. Decode image bytes and validate them with Pillow

Subclasses implement:
    resolve_size()     orientation/width/height -> provider-native size
    cache_options()    the quality/style values that affect the output
    build_payload()    -> (url, json body)
    parse_response()   json body -> (image bytes, metadata)
    key_check_url()    cheap authenticated GET for check_api_key()
"""

import asyncio
import random
import time
from abc import ABC, abstractmethod
from contextlib import nullcontext
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import aiohttp
from asyncio_throttle import Throttler

from lyricslides.core.cancellation import CancelToken
from lyricslides.core.exceptions import ErrorKind, GenerationCancelled, ProviderError
from lyricslides.core.logger import get_logger
from lyricslides.providers.usage import UsageTracker, usage_tracker
from lyricslides.utils import detect_image_format

if TYPE_CHECKING:
    from lyricslides.core.config import Config

logger = get_logger(__name__)


# =============================================================================
# Retry Configuration
# =============================================================================

MAX_DELAY = 30.0  # seconds
JITTER_FACTOR = 0.3  # randomness factor for backoff


def calculate_backoff(attempt: int, base_delay: float, retry_after: float | None = None) -> float:
    """
    Calculate exponential backoff delay with jitter.

    Args:
        attempt: Current attempt number (0-indexed).
        base_delay: Base delay in seconds.
        retry_after: Server-provided Retry-After, used as a floor.

    Returns:
        Delay in seconds, never above MAX_DELAY.
    """
    # Exponential backoff: 2^attempt * base_delay
    delay = min(base_delay * (2 ** attempt), MAX_DELAY)

    jitter = delay * JITTER_FACTOR * (2 * random.random() - 1)
    delay = min(max(0.0, delay + jitter), MAX_DELAY)

    if retry_after is not None:
        delay = max(delay, min(retry_after, MAX_DELAY))

    return delay


# =============================================================================
# Request / Result
# =============================================================================

@dataclass(frozen=True)
class ProviderRequest:
    """
    Provider-neutral description of one image to generate.

    Attributes:
        prompt: Final prompt text.
        model: Provider model / engine id.
        orientation: landscape, portrait or square.
        width: Requested width; providers snap to a legal size.
        height: Requested height.
        quality: Quality hint (OpenAI dall-e-3).
        style: Style hint (OpenAI style or Stability style preset).
        negative_prompt: What to avoid (Stability).
    """
    prompt: str
    model: str
    orientation: str | None = "landscape"
    width: int | None = None
    height: int | None = None
    quality: str | None = None
    style: str | None = None
    negative_prompt: str | None = None


@dataclass
class ProviderResult:
    """
    Normalised outcome of an adapter call.

    Exactly one of image_bytes / file_path is set on success.
    """
    success: bool
    image_bytes: bytes | None = None
    file_path: Path | None = None
    image_format: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    error_kind: ErrorKind | None = None
    error_message: str | None = None

    @property
    def cancelled(self) -> bool:
        return self.error_kind == ErrorKind.CANCELLED

    @classmethod
    def failure(cls, kind: ErrorKind, message: str, **metadata: Any) -> "ProviderResult":
        return cls(success=False, error_kind=kind, error_message=message, metadata=metadata)


def orientation_of(request: ProviderRequest) -> str:
    """Orientation of a request, derived from width/height when not given."""
    if request.orientation:
        return request.orientation
    if request.width and request.height:
        if request.width > request.height:
            return "landscape"
        if request.height > request.width:
            return "portrait"
    return "square"


# =============================================================================
# Adapter base
# =============================================================================

class ImageProvider(ABC):
    """
    Abstract base for generative image API adapters.

    Class Attributes:
        name: Canonical provider name used in config, cache and results.
        aliases: Other names accepted by the registry.
        models: Known model ids (informational; unknown ids are passed through).
        default_model: Model used when the caller does not choose one.
        api_base: Base URL of the provider API.

    Thread Safety:
        An adapter owns one aiohttp session bound to the event loop that
        first used it. Use one adapter per event loop.
    """

    name: str = ""
    aliases: tuple[str, ...] = ()
    models: tuple[str, ...] = ()
    default_model: str = ""
    api_base: str = ""

    def __init__(
        self,
        api_key: str = "",
        timeout: float = 60.0,
        retry_count: int = 3,
        retry_delay: float = 2.0,
        min_request_interval: float = 0.0,
        usage: UsageTracker | None = None,
        session: aiohttp.ClientSession | None = None
    ) -> None:
        """
        Initialize the adapter.

        Args:
            api_key: Provider API key; empty means MISSING_API_KEY on generate.
            timeout: Total timeout per HTTP request in seconds.
            retry_count: Extra attempts for RATE_LIMITED / NETWORK_ERROR.
            retry_delay: Base backoff delay in seconds.
            min_request_interval: Minimum seconds between requests; 0 disables pacing.
            usage: Usage tracker (defaults to the process-wide one).
            session: Externally owned aiohttp session (not closed by aclose()).
        """
        self.api_key = api_key
        self.timeout = timeout
        self.retry_count = retry_count
        self.retry_delay = retry_delay
        self.usage = usage or usage_tracker
        self._throttler = Throttler(rate_limit=1, period=min_request_interval) if min_request_interval > 0 else None
        self._session = session
        self._owns_session = session is None
        self._session_loop: asyncio.AbstractEventLoop | None = None

    @classmethod
    def from_config(cls, config: "Config", usage: UsageTracker | None = None) -> "ImageProvider":
        """Create an adapter from the application configuration."""
        return cls(
            api_key=config.api_keys.get(cls.name),
            timeout=config.generation.timeout,
            retry_count=config.generation.retry_count,
            retry_delay=config.generation.retry_delay,
            min_request_interval=config.generation.min_request_interval,
            usage=usage,
        )

    # -------------------------------------------------------------------------
    # Provider-specific hooks
    # -------------------------------------------------------------------------

    @abstractmethod
    def resolve_size(self, request: ProviderRequest) -> tuple[int, int]:
        """Return the provider-native (width, height) for a request."""

    def size_label(self, request: ProviderRequest) -> str:
        width, height = self.resolve_size(request)
        return f"{width}x{height}"

    def cache_options(self, request: ProviderRequest) -> tuple[str | None, str | None]:
        """Return the (quality, style) values that influence this provider's output."""
        return None, None

    @abstractmethod
    def build_payload(self, request: ProviderRequest, width: int, height: int) -> tuple[str, dict[str, Any]]:
        """Return (url, json body) for the generation request."""

    @abstractmethod
    def parse_response(self, data: dict[str, Any]) -> tuple[bytes, dict[str, Any]]:
        """
        Extract image bytes and metadata from a successful response body.

        Raises:
            ProviderError: INVALID_RESPONSE if the body is not as expected.
        """

    @abstractmethod
    def key_check_url(self) -> str:
        """URL of a cheap authenticated GET used by check_api_key()."""

    def headers(self, api_key: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def error_message(self, body: Any) -> str | None:
        """Pull a human-readable message out of an error response body."""
        if isinstance(body, dict):
            error = body.get("error")
            if isinstance(error, dict) and error.get("message"):
                return str(error["message"])
            if body.get("message"):
                return str(body["message"])
        return None

    # -------------------------------------------------------------------------
    # Generation
    # -------------------------------------------------------------------------

    async def generate(self, request: ProviderRequest, token: CancelToken) -> ProviderResult:
        """
        Generate one image. Never raises for provider or network problems.

        Args:
            request: What to generate.
            token: Cancel token; cancelling aborts the in-flight HTTP request.

        Returns:
            ProviderResult with image_bytes on success, or an error kind.
        """
        if token.is_cancelled:
            return ProviderResult.failure(ErrorKind.CANCELLED, token.reason or "Generation cancelled")

        if not self.api_key:
            return ProviderResult.failure(
                ErrorKind.MISSING_API_KEY,
                f"No API key configured for {self.name}",
            )

        width, height = self.resolve_size(request)
        url, payload = self.build_payload(request, width, height)
        started = time.monotonic()

        attempt = 0
        while True:
            try:
                token.raise_if_cancelled()
                self.usage.record(self.name, request.model)
                data = await token.run(self._post_json(url, payload))
                image_bytes, metadata = self.parse_response(data)
                image_format = detect_image_format(image_bytes)
                if image_format is None:
                    raise ProviderError(
                        f"{self.name} returned data that is not a valid image",
                        ErrorKind.INVALID_RESPONSE,
                    )
            except GenerationCancelled as e:
                logger.debug(f"{self.name} request cancelled")
                return ProviderResult.failure(ErrorKind.CANCELLED, e.message)
            except ProviderError as e:
                if e.is_retryable and attempt < self.retry_count:
                    delay = calculate_backoff(attempt, self.retry_delay, e.details.get("retry_after"))
                    attempt += 1
                    logger.warning(
                        f"{e.message}. Retrying in {delay:.1f}s (attempt {attempt}/{self.retry_count})"
                    )
                    try:
                        await token.sleep(delay)
                    except GenerationCancelled as cancelled:
                        return ProviderResult.failure(ErrorKind.CANCELLED, cancelled.message)
                    continue
                return ProviderResult.failure(e.kind, e.message, status=e.status, attempts=attempt + 1)

            metadata.update({
                "provider": self.name,
                "model": request.model,
                "width": width,
                "height": height,
                "attempts": attempt + 1,
                "elapsed": round(time.monotonic() - started, 3),
            })
            return ProviderResult(
                success=True,
                image_bytes=image_bytes,
                image_format=image_format,
                metadata=metadata,
            )

    async def _post_json(self, url: str, payload: dict[str, Any]) -> dict[str, Any]:
        """
        POST a JSON body and return the decoded JSON response.

        Raises:
            ProviderError: With the ErrorKind matching the failure.
        """
        async with self._throttler or nullcontext():
            session = await self._get_session()
            try:
                async with session.post(
                    url,
                    json=payload,
                    headers=self.headers(self.api_key),
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                ) as response:
                    return await self._read_json(response)
            except asyncio.TimeoutError as e:
                raise ProviderError(
                    f"{self.name} request timed out after {self.timeout:g}s",
                    ErrorKind.NETWORK_ERROR,
                    details={"url": url},
                ) from e
            except aiohttp.ClientError as e:
                raise ProviderError(
                    f"Network error talking to {self.name}: {e}",
                    ErrorKind.NETWORK_ERROR,
                    details={"url": url, "original_error": str(e)},
                ) from e

    async def _read_json(self, response: aiohttp.ClientResponse) -> dict[str, Any]:
        try:
            body = await response.json(content_type=None)
        except ValueError:
            body = None

        status = response.status
        if status >= 400:
            raise self._status_error(status, body, response.headers.get("Retry-After"))

        if not isinstance(body, dict):
            raise ProviderError(
                f"{self.name} returned a response that is not a JSON object",
                ErrorKind.INVALID_RESPONSE,
                status=status,
            )
        return body

    def _status_error(self, status: int, body: Any, retry_after: str | None) -> ProviderError:
        """Map an HTTP error status to a ProviderError."""
        detail = self.error_message(body)
        suffix = f": {detail}" if detail else ""

        if status in (401, 403):
            return ProviderError(
                f"{self.name} rejected the API key (HTTP {status}){suffix}",
                ErrorKind.AUTH_ERROR,
                status=status,
            )
        if status == 429:
            details: dict[str, Any] = {}
            if retry_after:
                try:
                    details["retry_after"] = float(retry_after)
                except ValueError:
                    pass
            return ProviderError(
                f"Rate limited by {self.name} (HTTP 429){suffix}",
                ErrorKind.RATE_LIMITED,
                details=details,
                status=status,
            )
        if status >= 500:
            return ProviderError(
                f"{self.name} server error (HTTP {status}){suffix}",
                ErrorKind.NETWORK_ERROR,
                status=status,
            )
        return ProviderError(
            f"{self.name} refused the request (HTTP {status}){suffix}",
            ErrorKind.INVALID_RESPONSE,
            status=status,
        )

    # -------------------------------------------------------------------------
    # Key check / session lifecycle
    # -------------------------------------------------------------------------

    async def check_api_key(self, api_key: str | None = None) -> bool:
        """
        Verify an API key with a lightweight authenticated request.

        Args:
            api_key: Key to check; defaults to the configured key.

        Returns:
            True if the provider accepted the key. Never raises.
        """
        key = api_key if api_key is not None else self.api_key
        if not key:
            return False

        try:
            session = await self._get_session()
            async with session.get(
                self.key_check_url(),
                headers=self.headers(key),
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                valid = response.status == 200
                if not valid:
                    logger.info(f"{self.name} API key check failed (HTTP {response.status})")
                return valid
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"{self.name} API key check could not complete: {e}")
            return False

    async def _get_session(self) -> aiohttp.ClientSession:
        loop = asyncio.get_running_loop()
        if self._session is not None and not self._session.closed:
            if not self._owns_session or self._session_loop is loop:
                return self._session
            self._release_foreign_session()
        self._session = aiohttp.ClientSession()
        self._session_loop = loop
        self._owns_session = True
        return self._session

    def _release_foreign_session(self) -> None:
        """Close an owned session that was opened on another event loop."""
        session, loop = self._session, self._session_loop
        if loop is not None and loop.is_running():
            logger.debug(f"{self.name} session belongs to another event loop; closing it there")
            asyncio.run_coroutine_threadsafe(session.close(), loop)
        else:
            logger.warning(
                f"{self.name} session was opened on an event loop that has finished "
                f"and cannot be closed; call aclose() before leaving a loop"
            )
        self._session = None
        self._session_loop = None

    async def aclose(self) -> None:
        """Close the adapter's own HTTP session."""
        if self._owns_session and self._session is not None and not self._session.closed:
            if self._session_loop is asyncio.get_running_loop():
                await self._session.close()
            else:
                self._release_foreign_session()
        self._session = None
        self._session_loop = None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, has_key={bool(self.api_key)})"
