"""
Cooperative cancellation for generation requests.

A CancelToken is created per request and threaded through every layer:
the coordinator checks it between states, and provider adapters wrap
their HTTP calls with token.run() so that cancelling aborts the request
that is already on the wire.

cancel() may be called from any thread. Callbacks registered on the
token run on the cancelling thread, so anything touching an event loop
must go through loop.call_soon_threadsafe (token.run() does this).

Usage:
    token = CancelToken()

    try:
        data = await token.run(session.post(url, json=payload))
    except GenerationCancelled:
        ...

    # elsewhere, any thread
    token.cancel()
"""

import asyncio
import threading
from typing import Any, Awaitable, Callable, TypeVar

from lyricslides.core.exceptions import GenerationCancelled
from lyricslides.core.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class CancelToken:
    """
    Thread-safe, one-shot cancellation flag with callbacks.

    Attributes:
        reason: Message recorded by the first cancel() call.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []
        self.reason: str | None = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Generation cancelled") -> bool:
        """
        Cancel the token and fire its callbacks.

        Returns:
            True if this call cancelled the token, False if it already was.
        """
        with self._lock:
            if self._event.is_set():
                return False
            self.reason = reason
            self._event.set()
            callbacks = self._callbacks[:]
            self._callbacks.clear()

        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Cancel callback raised")
        return True

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """
        Register a callback fired on cancel().

        If the token is already cancelled the callback runs immediately.

        Returns:
            A function that unregisters the callback.
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return lambda: self._remove_callback(callback)
        callback()
        return lambda: None

    def _remove_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def raise_if_cancelled(self) -> None:
        """Raise GenerationCancelled if the token has been cancelled."""
        if self._event.is_set():
            raise GenerationCancelled(self.reason or "Generation cancelled")

    async def run(self, awaitable: Awaitable[T]) -> T:
        """
        Await something, aborting it if the token is cancelled meanwhile.

        The awaitable is wrapped in a task; cancel() schedules task.cancel()
        on the running loop. Cancellation of the enclosing task (not via
        the token) propagates as a plain asyncio.CancelledError.

        Raises:
            GenerationCancelled: If the token was cancelled before or during the wait.
        """
        if self._event.is_set():
            # Never started, so close it instead of leaving it un-awaited
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            self.raise_if_cancelled()

        loop = asyncio.get_running_loop()
        task: asyncio.Future[Any] = asyncio.ensure_future(awaitable)

        def _cancel_task() -> None:
            try:
                loop.call_soon_threadsafe(task.cancel)
            except RuntimeError:
                # Loop already closed; nothing left to cancel
                logger.debug("Cancel requested after event loop closed")

        remove = self.add_callback(_cancel_task)
        try:
            return await task
        except asyncio.CancelledError:
            if self._event.is_set():
                raise GenerationCancelled(self.reason or "Generation cancelled") from None
            raise
        finally:
            remove()

    async def sleep(self, delay: float) -> None:
        """asyncio.sleep() that wakes up early with GenerationCancelled."""
        await self.run(asyncio.sleep(delay))
