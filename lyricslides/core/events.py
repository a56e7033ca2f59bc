"""
Progress events for generation requests.

Every state transition of a request is published as a ProgressEvent on
the request's ProgressStream. A stream has any number of subscribers:
plain callbacks (the on_progress argument, coordinator-level listeners)
and async iterators (RequestCoordinator.stream). The stream closes itself
after the terminal event, so iterators always finish.

Status flow:
    Started -> PromptReady -> CacheChecked -> Completed            (cache hit)
                                           -> Dispatched -> Completed | Failed
    Cancelled is reachable from any non-terminal status.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable

from lyricslides.core.logger import get_logger

if TYPE_CHECKING:
    from lyricslides.generation.coordinator import GenerationResult

logger = get_logger(__name__)


class GenerationStatus(str, Enum):
    """Lifecycle states of a single generation request."""
    STARTED = "started"
    PROMPT_READY = "prompt_ready"
    CACHE_CHECKED = "cache_checked"
    DISPATCHED = "dispatched"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    def can_transition(self, target: "GenerationStatus") -> bool:
        return target in ALLOWED_TRANSITIONS.get(self, frozenset())


TERMINAL_STATUSES = frozenset({
    GenerationStatus.COMPLETED,
    GenerationStatus.FAILED,
    GenerationStatus.CANCELLED,
})

ALLOWED_TRANSITIONS: dict[GenerationStatus, frozenset[GenerationStatus]] = {
    GenerationStatus.STARTED: frozenset({
        GenerationStatus.PROMPT_READY,
        GenerationStatus.CANCELLED,
    }),
    GenerationStatus.PROMPT_READY: frozenset({
        GenerationStatus.CACHE_CHECKED,
        GenerationStatus.CANCELLED,
    }),
    # FAILED directly from CACHE_CHECKED: a request that waited on an
    # identical in-flight request inherits that request's failure
    GenerationStatus.CACHE_CHECKED: frozenset({
        GenerationStatus.DISPATCHED,
        GenerationStatus.COMPLETED,
        GenerationStatus.FAILED,
        GenerationStatus.CANCELLED,
    }),
    GenerationStatus.DISPATCHED: frozenset({
        GenerationStatus.COMPLETED,
        GenerationStatus.FAILED,
        GenerationStatus.CANCELLED,
    }),
}

# Fraction reported with each status
STATUS_PROGRESS = {
    GenerationStatus.STARTED: 0.0,
    GenerationStatus.PROMPT_READY: 0.1,
    GenerationStatus.CACHE_CHECKED: 0.2,
    GenerationStatus.DISPATCHED: 0.3,
    GenerationStatus.COMPLETED: 1.0,
    GenerationStatus.FAILED: 1.0,
    GenerationStatus.CANCELLED: 1.0,
}


@dataclass(frozen=True)
class ProgressEvent:
    """
    One state transition of a generation request.

    Attributes:
        request_id: Identifier of the request.
        status: New status.
        progress: Completion fraction in [0, 1].
        message: Human-readable description of the step.
        extra: Status-specific data (e.g. 'provider', 'from_cache', 'error_kind').
        result: Final GenerationResult, set on terminal events only.
        timestamp: Unix time the event was created.
    """
    request_id: str
    status: GenerationStatus
    progress: float
    message: str = ""
    extra: dict[str, Any] = field(default_factory=dict)
    result: "GenerationResult | None" = None
    timestamp: float = field(default_factory=time.time)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


ProgressCallback = Callable[[ProgressEvent], Any]

_END = object()


class ProgressStream:
    """
    Multi-subscriber event stream for one request.

    Callback subscribers are invoked synchronously in publish order; an
    exception in one is logged and does not affect the others or the
    request. Async iterators replay events published before they started,
    so a late consumer still sees the full sequence.
    """

    def __init__(self) -> None:
        self._callbacks: list[ProgressCallback] = []
        self._queues: list[asyncio.Queue] = []
        self._history: list[ProgressEvent] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def events(self) -> list[ProgressEvent]:
        """Events published so far."""
        return list(self._history)

    def subscribe(self, callback: ProgressCallback) -> Callable[[], None]:
        """Register a callback. Returns a function that unsubscribes it."""
        self._callbacks.append(callback)

        def _unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _unsubscribe

    def publish(self, event: ProgressEvent) -> None:
        """
        Deliver an event to every subscriber.

        Publishing a terminal event closes the stream.

        Raises:
            RuntimeError: If the stream is already closed.
        """
        if self._closed:
            raise RuntimeError(f"Progress stream for {event.request_id} is closed")

        self._history.append(event)
        for callback in self._callbacks[:]:
            try:
                callback(event)
            except Exception:
                logger.exception(f"Progress listener failed on {event.status.value} for {event.request_id}")
        for queue in self._queues:
            queue.put_nowait(event)

        if event.is_terminal:
            self.close()

    def close(self) -> None:
        """End all async iterators. Idempotent."""
        if self._closed:
            return
        self._closed = True
        for queue in self._queues:
            queue.put_nowait(_END)

    def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        queue: asyncio.Queue = asyncio.Queue()
        for event in self._history:
            queue.put_nowait(event)
        if self._closed:
            queue.put_nowait(_END)
        else:
            self._queues.append(queue)
        return self._drain(queue)

    async def _drain(self, queue: asyncio.Queue) -> AsyncIterator[ProgressEvent]:
        try:
            while True:
                item = await queue.get()
                if item is _END:
                    return
                yield item
        finally:
            if queue in self._queues:
                self._queues.remove(queue)
