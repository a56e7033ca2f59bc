"""
Bounded-concurrency batch generation.

BatchScheduler fans a list of GenerationParams out over the
RequestCoordinator with at most `concurrency_limit` requests in flight.
Remaining items wait their turn on a semaphore.

Guarantees:
    - All params are validated before anything starts; a malformed item
      raises GenerationParamsError and nothing is generated.
    - Results come back in input order, one per item.
    - A failed or cancelled item never aborts its siblings.
    - A BatchProgress snapshot is published whenever an item starts or
      finishes.
    - cancel_all() cancels running items and drains the queue: queued
      items finish as Cancelled without touching a provider.

Usage:
    scheduler = BatchScheduler(coordinator)
    results = await scheduler.generate_batch(
        params_list,
        concurrency_limit=3,
        on_progress=lambda p: print(f"{p.completed_count}/{p.total}")
    )
"""

import asyncio
import threading
from dataclasses import dataclass, field
from typing import Callable, Iterable

from lyricslides.core.events import ProgressCallback
from lyricslides.core.exceptions import ErrorKind, GenerationParamsError, UnsupportedProviderError
from lyricslides.core.logger import get_logger
from lyricslides.generation.coordinator import (
    GenerationParams,
    GenerationResult,
    RequestCoordinator,
    new_request_id,
)

logger = get_logger(__name__)


@dataclass
class BatchProgress:
    """
    Snapshot of a running batch.

    Attributes:
        total: Number of items in the batch.
        completed_count: Items that reached a terminal status.
        in_progress_indices: Indices currently being generated.
        results_so_far: Per-index results, None while pending.
    """
    total: int
    completed_count: int
    in_progress_indices: list[int]
    results_so_far: list[GenerationResult | None]

    @property
    def fraction(self) -> float:
        return self.completed_count / self.total if self.total else 1.0


BatchProgressCallback = Callable[[BatchProgress], object]


@dataclass
class _BatchRun:
    """Mutable state of one generate_batch() call."""
    total: int
    results: list[GenerationResult | None] = field(default_factory=list)
    in_progress: set[int] = field(default_factory=set)
    request_ids: set[str] = field(default_factory=set)
    completed: int = 0
    cancelled: bool = False

    def snapshot(self) -> BatchProgress:
        return BatchProgress(
            total=self.total,
            completed_count=self.completed,
            in_progress_indices=sorted(self.in_progress),
            results_so_far=list(self.results),
        )


class BatchScheduler:
    """
    Runs many generation requests under a concurrency limit.

    Attributes:
        coordinator: The RequestCoordinator that handles each item.
        default_concurrency: Limit used when generate_batch() gets none.
    """

    def __init__(self, coordinator: RequestCoordinator, default_concurrency: int | None = None) -> None:
        self.coordinator = coordinator
        self.default_concurrency = default_concurrency or coordinator.config.generation.concurrency
        self._runs: list[_BatchRun] = []
        self._lock = threading.Lock()

    async def generate_batch(
        self,
        params_list: Iterable[GenerationParams],
        concurrency_limit: int | None = None,
        on_progress: BatchProgressCallback | None = None,
        on_event: ProgressCallback | None = None
    ) -> list[GenerationResult]:
        """
        Generate images for every item, at most concurrency_limit at a time.

        Args:
            params_list: Items to generate.
            concurrency_limit: Maximum concurrent requests (default from config).
            on_progress: Receives a BatchProgress after each start/finish.
            on_event: Receives every ProgressEvent of every item.

        Returns:
            One GenerationResult per item, in input order.

        Raises:
            GenerationParamsError: If any item is malformed or the limit is < 1.
            UnsupportedProviderError: If any item names an unknown provider.
        """
        items = list(params_list)
        limit = concurrency_limit if concurrency_limit is not None else self.default_concurrency
        if limit < 1:
            raise GenerationParamsError(
                "concurrency_limit must be at least 1",
                details={"concurrency_limit": limit}
            )

        for index, params in enumerate(items):
            try:
                params.validate()
                self.coordinator.get_provider(params.provider)
            except (GenerationParamsError, UnsupportedProviderError) as e:
                raise type(e)(
                    f"Batch item {index}: {e.message}",
                    details={**e.details, "index": index}
                ) from e

        run = _BatchRun(total=len(items), results=[None] * len(items))
        if not items:
            return []

        with self._lock:
            self._runs.append(run)

        logger.info(f"Starting batch of {len(items)} image(s), {limit} at a time")
        semaphore = asyncio.Semaphore(limit)

        def _publish() -> None:
            if on_progress is None:
                return
            try:
                on_progress(run.snapshot())
            except Exception:
                logger.exception("Batch progress listener failed")

        async def _run_one(index: int, params: GenerationParams) -> None:
            async with semaphore:
                if run.cancelled:
                    run.results[index] = self._cancelled_result(params)
                    run.completed += 1
                    _publish()
                    return

                request = self.coordinator.open_request(params)
                if on_event is not None:
                    request.stream.subscribe(on_event)
                run.request_ids.add(request.request_id)
                run.in_progress.add(index)
                _publish()

                try:
                    run.results[index] = await self.coordinator.run_request(request)
                except Exception as e:
                    logger.error(f"Unexpected error in batch item {index}: {e}")
                    run.results[index] = GenerationResult(
                        success=False,
                        request_id=request.request_id,
                        provider=request.provider.name,
                        model=params.model or "",
                        error=str(e),
                    )
                finally:
                    run.request_ids.discard(request.request_id)
                    run.in_progress.discard(index)
                    run.completed += 1
                    _publish()

        try:
            await asyncio.gather(*(_run_one(index, params) for index, params in enumerate(items)))
        finally:
            with self._lock:
                self._runs.remove(run)

        results = [result for result in run.results if result is not None]
        succeeded = sum(1 for r in results if r.success)
        cached = sum(1 for r in results if r.success and r.from_cache)
        logger.info(
            f"Batch complete: {succeeded}/{len(results)} successful "
            f"({cached} from cache), {len(results) - succeeded} failed or cancelled"
        )
        return results

    def cancel_all(self) -> int:
        """
        Cancel every running batch.

        Running items are cancelled through the coordinator; queued items
        will finish as Cancelled without being started.

        Returns:
            Number of running requests that were cancelled.
        """
        with self._lock:
            runs = self._runs[:]

        cancelled = 0
        for run in runs:
            run.cancelled = True
            for request_id in list(run.request_ids):
                if self.coordinator.cancel(request_id):
                    cancelled += 1
        return cancelled

    def _cancelled_result(self, params: GenerationParams) -> GenerationResult:
        provider = self.coordinator.get_provider(params.provider)
        return GenerationResult(
            success=False,
            request_id=new_request_id(),
            provider=provider.name,
            model=params.model or provider.default_model,
            error_kind=ErrorKind.CANCELLED,
            error="Cancelled before start",
        )
