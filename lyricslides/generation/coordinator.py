"""
Request coordination for background image generation.

RequestCoordinator drives a single generation request through its state
machine, publishing a ProgressEvent at every step:

    Started -> PromptReady -> CacheChecked -> Completed              (cache hit)
                                           -> Dispatched -> Completed | Failed
    Cancelled from any non-terminal state.

Steps:
    1. Started       request registered, cancel token created
    2. PromptReady   prompt built from lyrics/title/template (unless given)
    3. CacheChecked  song identity lookup, then request-key lookup
    4. Dispatched    provider adapter called (hit: skipped)
    5. Completed     image written to the cache; result returned

Cancellation is checked before the prompt is built, before the cache is
consulted, before dispatch, and inside the provider's HTTP call.

Single-Flight:
    Requests that resolve to the same cache file share one provider call,
    even when they name different providers (a song has one background).
    The first becomes the leader; the others wait on its future and then
    finish as cache hits, with the leader's failure, or (if the leader was
    cancelled) retry and one of them becomes the new leader. The registry
    uses concurrent.futures.Future under a threading.Lock, so coordinators
    driven from several threads or loops still share flights.

Error Handling:
    Provider failures never raise: they become a Failed result carrying an
    ErrorKind. Cache read errors count as a miss, cache write errors as an
    uncached success. Only UnsupportedProviderError and
    GenerationParamsError are raised, both before the request starts.

Usage:
    coordinator = RequestCoordinator(config, cache)
    result = await coordinator.generate(
        GenerationParams(song_title="Amazing Grace", artist="Traditional", lyrics=text),
        on_progress=lambda e: print(e.status.value, e.progress),
    )
"""

import asyncio
import concurrent.futures
import random
import string
import threading
import time
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Mapping

from lyricslides.cache.index import CacheEntry, CacheIndex, CacheKey
from lyricslides.core.cancellation import CancelToken
from lyricslides.core.config import VALID_ORIENTATIONS, Config
from lyricslides.core.events import (
    STATUS_PROGRESS,
    GenerationStatus,
    ProgressCallback,
    ProgressEvent,
    ProgressStream,
)
from lyricslides.core.exceptions import (
    CacheIOError,
    ErrorKind,
    GenerationCancelled,
    GenerationParamsError,
    StateTransitionError,
)
from lyricslides.core.logger import get_logger, log_generation_failure
from lyricslides.prompt.builder import PromptBuilder, prompt_hash
from lyricslides.providers.base import ImageProvider, ProviderRequest, ProviderResult
from lyricslides.providers.registry import canonical_name, create_provider
from lyricslides.utils import image_extension

logger = get_logger(__name__)


_ID_ALPHABET = string.digits + string.ascii_lowercase


def _base36(value: int) -> str:
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_ID_ALPHABET[remainder])
    return "".join(reversed(digits)) or "0"


def new_request_id() -> str:
    """Return a unique request id, e.g. 'req_lq2k3f9a_x81kd2'."""
    suffix = "".join(random.choices(_ID_ALPHABET, k=6))
    return f"req_{_base36(int(time.time() * 1000))}_{suffix}"


# =============================================================================
# Parameters and results
# =============================================================================

@dataclass
class GenerationParams:
    """
    What the caller wants generated. Unset fields fall back to config defaults.

    Attributes:
        prompt: Explicit prompt; skips prompt building when set.
        lyrics: Song lyrics used to build the prompt.
        provider: Provider name or alias.
        model: Provider model id.
        orientation: landscape, portrait or square.
        width: Requested width (providers snap to legal sizes).
        height: Requested height.
        quality: Provider quality hint (OpenAI "standard"/"hd").
        style: Provider style (OpenAI "natural"/"vivid", Stability style preset).
        template: Prompt template name.
        additional_style: Extra style line appended to the built prompt.
        negative_prompt: Things to avoid (Stability).
        song_title: Song title, also the cache identity.
        artist: Artist, part of the cache identity.
        use_cache: False skips cache lookup and forces a new image.
    """
    prompt: str | None = None
    lyrics: str | None = None
    provider: str | None = None
    model: str | None = None
    orientation: str | None = None
    width: int | None = None
    height: int | None = None
    quality: str | None = None
    style: str | None = None
    template: str | None = None
    additional_style: str | None = None
    negative_prompt: str | None = None
    song_title: str | None = None
    artist: str | None = None
    use_cache: bool = True

    def validate(self) -> None:
        """
        Check the parameters are well-formed.

        Raises:
            GenerationParamsError: Describing the first problem found.
        """
        if not any(value and value.strip() for value in (self.prompt, self.lyrics, self.song_title)):
            raise GenerationParamsError("A prompt, lyrics or a song title is required")

        if self.orientation is not None and self.orientation not in VALID_ORIENTATIONS:
            raise GenerationParamsError(
                f"Invalid orientation '{self.orientation}'",
                details={"orientation": self.orientation, "valid": list(VALID_ORIENTATIONS)}
            )

        for name in ("width", "height"):
            value = getattr(self, name)
            if value is not None and (isinstance(value, bool) or not isinstance(value, int) or value <= 0):
                raise GenerationParamsError(
                    f"'{name}' must be a positive integer",
                    details={name: value}
                )

        if self.provider is not None and not isinstance(self.provider, str):
            raise GenerationParamsError("'provider' must be a string", details={"provider": self.provider})

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "GenerationParams":
        """
        Build params from a plain mapping (e.g. one item of a batch YAML file).

        Raises:
            GenerationParamsError: On unknown keys.
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise GenerationParamsError(
                f"Unknown generation parameter(s): {', '.join(unknown)}",
                details={"unknown": unknown}
            )
        return cls(**dict(data))


@dataclass
class GenerationResult:
    """
    Outcome of one generation request.

    On success file_path points at the cached image, or image_bytes holds
    the image when it could not be cached.
    """
    success: bool
    request_id: str
    provider: str
    model: str
    prompt: str | None = None
    file_path: Path | None = None
    image_bytes: bytes | None = None
    from_cache: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)
    error_kind: ErrorKind | None = None
    error: str | None = None

    @property
    def cancelled(self) -> bool:
        return self.error_kind == ErrorKind.CANCELLED


@dataclass
class GenerationRequest:
    """
    Live state of one request. Owned by the coordinator call handling it.
    """
    request_id: str
    params: GenerationParams
    provider: ImageProvider
    token: CancelToken = field(default_factory=CancelToken)
    stream: ProgressStream = field(default_factory=ProgressStream)
    status: GenerationStatus | None = None

    def transition(
        self,
        status: GenerationStatus,
        message: str = "",
        result: GenerationResult | None = None,
        **extra: Any
    ) -> None:
        """
        Move to a new status and publish the event.

        Raises:
            StateTransitionError: If the edge is not in the state machine.
        """
        if self.status is None:
            allowed = status == GenerationStatus.STARTED
        else:
            allowed = self.status.can_transition(status)
        if not allowed:
            current = self.status.value if self.status else "none"
            raise StateTransitionError(
                f"Illegal transition {current} -> {status.value} for {self.request_id}",
                details={"request_id": self.request_id}
            )

        self.status = status
        self.stream.publish(ProgressEvent(
            request_id=self.request_id,
            status=status,
            progress=STATUS_PROGRESS[status],
            message=message,
            extra=extra,
            result=result,
        ))


@dataclass
class _Flight:
    """Shared outcome of a leader's provider call; None result means it was cancelled."""
    future: concurrent.futures.Future = field(default_factory=concurrent.futures.Future)


# =============================================================================
# Coordinator
# =============================================================================

class RequestCoordinator:
    """
    Runs generation requests through prompt, cache and provider.

    Attributes:
        config: Application configuration.
        cache: Image cache (None disables caching).
        builder: Prompt builder.

    Thread Safety:
        cancel() and cancel_all() may be called from any thread. Requests
        themselves run on the caller's event loop.
    """

    def __init__(
        self,
        config: Config,
        cache: CacheIndex | None = None,
        providers: Mapping[str, ImageProvider] | None = None,
        builder: PromptBuilder | None = None
    ) -> None:
        """
        Initialize the coordinator.

        Args:
            config: Application configuration.
            cache: Built CacheIndex, or None to run without a cache.
            providers: Pre-built adapters by provider name. Missing providers
                       are created from the registry on first use.
            builder: Prompt builder; defaults to one built from config.prompts.
        """
        self.config = config
        self.cache = cache
        self.builder = builder or PromptBuilder.from_config(config.prompts)
        self._providers: dict[str, ImageProvider] = {name.lower(): p for name, p in (providers or {}).items()}
        self._lock = threading.Lock()
        self._active: dict[str, GenerationRequest] = {}
        self._flights: dict[str, _Flight] = {}
        self._listeners: list[ProgressCallback] = []

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def get_provider(self, name: str | None = None) -> ImageProvider:
        """
        Return the adapter for a provider name, creating it if needed.

        Raises:
            UnsupportedProviderError: If the name is unknown.
        """
        key = (name or self.config.defaults.provider).strip().lower()
        with self._lock:
            if key in self._providers:
                return self._providers[key]
        canonical = canonical_name(key)
        with self._lock:
            if canonical not in self._providers:
                self._providers[canonical] = create_provider(canonical, self.config)
            return self._providers[canonical]

    def providers(self) -> list[ImageProvider]:
        """Adapters created so far."""
        with self._lock:
            return list({id(p): p for p in self._providers.values()}.values())

    def add_listener(self, callback: ProgressCallback) -> Callable[[], None]:
        """
        Receive the events of every request started after this call.

        Returns:
            A function that removes the listener.
        """
        with self._lock:
            self._listeners.append(callback)

        def _remove() -> None:
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return _remove

    async def generate(
        self,
        params: GenerationParams,
        on_progress: ProgressCallback | None = None,
        request_id: str | None = None
    ) -> GenerationResult:
        """
        Generate (or fetch from cache) one background image.

        Args:
            params: What to generate.
            on_progress: Called with every ProgressEvent of this request.
            request_id: Explicit id (must be unique among active requests).

        Returns:
            GenerationResult; failures and cancellation are reported in it.

        Raises:
            GenerationParamsError: Malformed params.
            UnsupportedProviderError: Unknown provider.
        """
        request = self.open_request(params, request_id)
        if on_progress is not None:
            request.stream.subscribe(on_progress)
        return await self.run_request(request)

    async def stream(self, params: GenerationParams, request_id: str | None = None) -> AsyncIterator[ProgressEvent]:
        """
        Generate one image, yielding its ProgressEvents as they happen.

        The last event is terminal and carries the GenerationResult. If the
        consumer stops iterating early the request is cancelled.
        """
        request = self.open_request(params, request_id)
        task = asyncio.ensure_future(self.run_request(request))
        try:
            async for event in request.stream:
                yield event
            await task
        finally:
            if not task.done():
                request.token.cancel("Progress stream closed by consumer")
                await asyncio.wait([task])

    def cancel(self, request_id: str) -> bool:
        """
        Cancel an active request.

        Returns:
            True if a running request was cancelled; False for unknown or
            finished requests.
        """
        with self._lock:
            request = self._active.get(request_id)
        if request is None or (request.status is not None and request.status.is_terminal):
            return False
        cancelled = request.token.cancel("Cancelled by caller")
        if cancelled:
            logger.info(f"Cancellation requested for {request_id}")
        return cancelled

    def cancel_all(self) -> int:
        """Cancel every active request. Returns how many were cancelled."""
        with self._lock:
            request_ids = list(self._active)
        return sum(1 for request_id in request_ids if self.cancel(request_id))

    def active_requests(self) -> list[str]:
        with self._lock:
            return list(self._active)

    # -------------------------------------------------------------------------
    # Request lifecycle
    # -------------------------------------------------------------------------

    def open_request(self, params: GenerationParams, request_id: str | None = None) -> GenerationRequest:
        """
        Validate params and register a new request (not yet started).

        Raises:
            GenerationParamsError: Malformed params or duplicate request id.
            UnsupportedProviderError: Unknown provider.
        """
        params.validate()
        provider = self.get_provider(params.provider)
        request = GenerationRequest(
            request_id=request_id or new_request_id(),
            params=params,
            provider=provider,
        )

        with self._lock:
            if request.request_id in self._active:
                raise GenerationParamsError(
                    f"Request id already active: {request.request_id}",
                    details={"request_id": request.request_id}
                )
            self._active[request.request_id] = request
            listeners = self._listeners[:]

        for listener in listeners:
            request.stream.subscribe(listener)
        return request

    async def run_request(self, request: GenerationRequest) -> GenerationResult:
        """Drive an opened request to a terminal status."""
        params = request.params
        provider = request.provider
        model = self._resolve_model(params, provider)
        prompt: str | None = None

        try:
            request.transition(
                GenerationStatus.STARTED,
                f"Generating with {provider.name}",
                provider=provider.name,
                model=model,
            )

            request.token.raise_if_cancelled()
            prompt = params.prompt.strip() if params.prompt and params.prompt.strip() else self._build_prompt(params)
            request.transition(GenerationStatus.PROMPT_READY, "Prompt ready", prompt=prompt)

            request.token.raise_if_cancelled()
            provider_request = self._provider_request(params, model, prompt)
            cache_key = self._cache_key(provider, provider_request, params, prompt)

            entry = await self._lookup(params, cache_key) if params.use_cache else None
            if entry is not None:
                request.transition(GenerationStatus.CACHE_CHECKED, "Found in cache", hit=True)
                return self._complete(request, model, prompt, file_path=entry.file_path, from_cache=True)

            request.transition(GenerationStatus.CACHE_CHECKED, "Not in cache", hit=False)
            return await self._dispatch(request, model, prompt, provider_request, cache_key)

        except GenerationCancelled as e:
            return self._finish_cancelled(request, model, prompt, e.message)
        finally:
            request.stream.close()
            with self._lock:
                self._active.pop(request.request_id, None)

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    def _resolve_model(self, params: GenerationParams, provider: ImageProvider) -> str:
        if params.model:
            return params.model
        defaults = self.config.defaults
        if provider.name == defaults.provider and defaults.model:
            return defaults.model
        return provider.default_model

    def _build_prompt(self, params: GenerationParams) -> str:
        # Only explicit dimensions become an aspect ratio hint
        return self.builder.build(
            lyrics=params.lyrics,
            template=params.template or self.config.defaults.template,
            song_title=params.song_title,
            artist=params.artist,
            style=params.additional_style,
            width=params.width,
            height=params.height,
        )

    def _provider_request(self, params: GenerationParams, model: str, prompt: str) -> ProviderRequest:
        defaults = self.config.defaults
        return ProviderRequest(
            prompt=prompt,
            model=model,
            orientation=params.orientation or defaults.orientation,
            width=params.width or defaults.width,
            height=params.height or defaults.height,
            quality=params.quality or defaults.quality,
            style=params.style or defaults.style,
            negative_prompt=params.negative_prompt or defaults.negative_prompt or None,
        )

    def _cache_key(
        self,
        provider: ImageProvider,
        provider_request: ProviderRequest,
        params: GenerationParams,
        prompt: str
    ) -> CacheKey:
        quality, style = provider.cache_options(provider_request)
        return CacheKey(
            prompt_hash=prompt_hash(prompt),
            model=provider_request.model,
            size=provider.size_label(provider_request),
            provider=provider.name,
            quality=quality,
            style=style,
            song_title=params.song_title,
            artist=params.artist,
        )

    def _cache_usable(self) -> bool:
        return self.cache is not None and self.cache.enabled

    async def _lookup(self, params: GenerationParams, key: CacheKey) -> CacheEntry | None:
        if not self._cache_usable():
            return None
        cache = self.cache

        def _find() -> CacheEntry | None:
            if params.song_title:
                entry = cache.lookup_by_identity(params.song_title, params.artist)
                if entry is not None:
                    return entry
            return cache.lookup_by_key(key.prompt_hash, key.model, key.size, key.quality, key.style)

        try:
            return await asyncio.to_thread(_find)
        except (OSError, CacheIOError) as e:
            logger.warning(f"Cache lookup failed, treating as miss: {e}")
            return None

    async def _store(self, key: CacheKey, result: ProviderResult) -> tuple[Path | None, str | None]:
        """Write a generated image to the cache. Returns (path, error message)."""
        if not self._cache_usable():
            return None, None

        extension = image_extension(result.image_format) if result.image_format else None

        try:
            entry = await asyncio.to_thread(self.cache.insert, key, result.image_bytes, extension)
        except CacheIOError as e:
            logger.warning(f"Generated image could not be cached: {e.message}")
            return None, e.message
        return entry.file_path, None

    async def _dispatch(
        self,
        request: GenerationRequest,
        model: str,
        prompt: str,
        provider_request: ProviderRequest,
        cache_key: CacheKey
    ) -> GenerationResult:
        # One file per id, whichever provider produces it
        flight_key = cache_key.file_id

        while True:
            with self._lock:
                flight = self._flights.get(flight_key)
                leader = flight is None
                if leader:
                    flight = _Flight()
                    self._flights[flight_key] = flight

            if leader:
                return await self._lead(request, model, prompt, provider_request, cache_key, flight_key, flight)

            logger.debug(f"{request.request_id} waiting on identical in-flight request")
            shared = asyncio.wrap_future(flight.future)
            leader_result: GenerationResult | None = await request.token.run(asyncio.shield(shared))

            if leader_result is None:
                # Leader was cancelled; try again, possibly as the new leader
                request.token.raise_if_cancelled()
                continue

            if leader_result.success:
                return self._complete(
                    request,
                    model,
                    prompt,
                    file_path=leader_result.file_path,
                    image_bytes=leader_result.image_bytes if leader_result.file_path is None else None,
                    from_cache=leader_result.file_path is not None,
                    metadata={"shared_with": leader_result.request_id, "source_provider": leader_result.provider},
                )

            return self._fail(
                request,
                model,
                prompt,
                leader_result.error_kind or ErrorKind.NETWORK_ERROR,
                leader_result.error or "Generation failed",
                metadata={"shared_with": leader_result.request_id},
            )

    async def _lead(
        self,
        request: GenerationRequest,
        model: str,
        prompt: str,
        provider_request: ProviderRequest,
        cache_key: CacheKey,
        flight_key: str,
        flight: _Flight
    ) -> GenerationResult:
        outcome: GenerationResult | None = None
        try:
            request.token.raise_if_cancelled()
            request.transition(GenerationStatus.DISPATCHED, f"Requesting image from {request.provider.name}")
            logger.debug(f"{request.request_id} dispatched to {request.provider.name}/{model}")

            provider_result = await request.provider.generate(provider_request, request.token)

            if provider_result.cancelled:
                raise GenerationCancelled(provider_result.error_message or "Generation cancelled")

            if not provider_result.success:
                outcome = self._fail(
                    request,
                    model,
                    prompt,
                    provider_result.error_kind or ErrorKind.INVALID_RESPONSE,
                    provider_result.error_message or "Generation failed",
                    metadata=provider_result.metadata,
                )
                return outcome

            file_path, cache_error = await self._store(cache_key, provider_result)
            metadata = dict(provider_result.metadata)
            if cache_error:
                metadata["cache_error"] = cache_error

            outcome = self._complete(
                request,
                model,
                prompt,
                file_path=file_path,
                image_bytes=provider_result.image_bytes if file_path is None else None,
                from_cache=False,
                metadata=metadata,
            )
            return outcome
        finally:
            with self._lock:
                if self._flights.get(flight_key) is flight:
                    del self._flights[flight_key]
            if not flight.future.done():
                flight.future.set_result(outcome)

    # -------------------------------------------------------------------------
    # Terminal states
    # -------------------------------------------------------------------------

    def _complete(
        self,
        request: GenerationRequest,
        model: str,
        prompt: str,
        file_path: Path | None,
        from_cache: bool,
        image_bytes: bytes | None = None,
        metadata: dict[str, Any] | None = None
    ) -> GenerationResult:
        result = GenerationResult(
            success=True,
            request_id=request.request_id,
            provider=request.provider.name,
            model=model,
            prompt=prompt,
            file_path=file_path,
            image_bytes=image_bytes,
            from_cache=from_cache,
            metadata=metadata or {},
        )
        source = "cache" if from_cache else request.provider.name
        request.transition(
            GenerationStatus.COMPLETED,
            f"Image ready ({source})",
            result=result,
            from_cache=from_cache,
            file_path=str(file_path) if file_path else None,
        )
        logger.info(f"Image ready for {request.params.song_title or request.request_id} from {source}")
        return result

    def _fail(
        self,
        request: GenerationRequest,
        model: str,
        prompt: str | None,
        kind: ErrorKind,
        message: str,
        metadata: dict[str, Any] | None = None
    ) -> GenerationResult:
        result = GenerationResult(
            success=False,
            request_id=request.request_id,
            provider=request.provider.name,
            model=model,
            prompt=prompt,
            metadata=metadata or {},
            error_kind=kind,
            error=message,
        )
        request.transition(GenerationStatus.FAILED, message, result=result, error_kind=kind.value)
        log_generation_failure(
            logger,
            song_title=request.params.song_title,
            artist=request.params.artist,
            provider=request.provider.name,
            model=model,
            error_kind=kind.value,
            error_message=message,
        )
        return result

    def _finish_cancelled(
        self,
        request: GenerationRequest,
        model: str,
        prompt: str | None,
        message: str
    ) -> GenerationResult:
        result = GenerationResult(
            success=False,
            request_id=request.request_id,
            provider=request.provider.name,
            model=model,
            prompt=prompt,
            error_kind=ErrorKind.CANCELLED,
            error=message,
        )
        if request.status is not None and not request.status.is_terminal:
            request.transition(GenerationStatus.CANCELLED, message, result=result, error_kind=ErrorKind.CANCELLED.value)
        logger.info(f"Generation cancelled: {request.request_id}")
        return result
