# tests/test_batch.py
"""Test bounded-concurrency batch generation"""

import asyncio

import pytest

from lyricslides.core.exceptions import ErrorKind, GenerationParamsError, UnsupportedProviderError
from lyricslides.generation import GenerationParams


def scenes(count, fail_at=()):
    return [
        GenerationParams(prompt=f"{'FAIL ' if i in fail_at else ''}Scene number {i}")
        for i in range(count)
    ]


class TestBatchScheduling:
    """Test ordering and the concurrency limit"""

    @pytest.mark.asyncio
    async def test_respects_concurrency_limit(self, scheduler, fake_provider):
        fake_provider.delay = 0.1
        params_list = scenes(5)

        results = await scheduler.generate_batch(params_list, concurrency_limit=2)

        assert fake_provider.max_in_flight <= 2
        assert fake_provider.calls == 5
        assert all(r.success for r in results)
        assert [r.prompt for r in results] == [p.prompt for p in params_list]

    @pytest.mark.asyncio
    async def test_default_limit_from_scheduler(self, scheduler, fake_provider):
        fake_provider.delay = 0.05
        results = await scheduler.generate_batch(scenes(6))

        assert len(results) == 6
        assert fake_provider.max_in_flight <= 3

    @pytest.mark.asyncio
    async def test_failure_does_not_abort_siblings(self, scheduler):
        results = await scheduler.generate_batch(scenes(4, fail_at={1}), concurrency_limit=2)

        assert [r.success for r in results] == [True, False, True, True]
        assert results[1].error_kind == ErrorKind.AUTH_ERROR

    @pytest.mark.asyncio
    async def test_empty_batch(self, scheduler):
        assert await scheduler.generate_batch([]) == []

    @pytest.mark.asyncio
    async def test_cached_items_are_reported(self, scheduler, fake_provider):
        await scheduler.generate_batch(scenes(2))
        results = await scheduler.generate_batch(scenes(3))

        assert [r.from_cache for r in results] == [True, True, False]
        assert fake_provider.calls == 3


class TestBatchProgress:
    """Test batch progress snapshots and per-item events"""

    @pytest.mark.asyncio
    async def test_snapshots(self, scheduler, fake_provider):
        fake_provider.delay = 0.05
        snapshots = []

        await scheduler.generate_batch(scenes(4), concurrency_limit=2, on_progress=snapshots.append)

        assert snapshots
        assert all(len(s.in_progress_indices) <= 2 for s in snapshots)
        completed = [s.completed_count for s in snapshots]
        assert completed == sorted(completed)
        final = snapshots[-1]
        assert final.completed_count == final.total == 4
        assert final.fraction == 1.0
        assert final.in_progress_indices == []
        assert all(r is not None and r.success for r in final.results_so_far)

    @pytest.mark.asyncio
    async def test_item_events_are_forwarded(self, scheduler):
        events = []
        results = await scheduler.generate_batch(scenes(2), on_event=events.append)

        assert {e.request_id for e in events} == {r.request_id for r in results}

    @pytest.mark.asyncio
    async def test_broken_progress_listener_is_ignored(self, scheduler):
        def broken(_):
            raise ValueError("listener bug")

        results = await scheduler.generate_batch(scenes(2), on_progress=broken)
        assert all(r.success for r in results)


class TestBatchCancellation:
    """Test cancel_all on a running batch"""

    @pytest.mark.asyncio
    async def test_cancel_all_drains_queue(self, scheduler, fake_provider):
        fake_provider.delay = 0.5
        task = asyncio.ensure_future(scheduler.generate_batch(scenes(4), concurrency_limit=1))

        for _ in range(200):
            if fake_provider.calls == 1:
                break
            await asyncio.sleep(0.01)

        assert scheduler.cancel_all() == 1
        results = await asyncio.wait_for(task, timeout=2.0)

        assert len(results) == 4
        assert all(r.cancelled for r in results)
        assert [r.error for r in results[1:]] == ["Cancelled before start"] * 3
        assert fake_provider.calls == 1

    def test_cancel_all_when_idle(self, scheduler):
        assert scheduler.cancel_all() == 0


class TestBatchValidation:
    """Test that malformed batches never start"""

    @pytest.mark.asyncio
    async def test_invalid_item_rejects_whole_batch(self, scheduler, fake_provider):
        with pytest.raises(GenerationParamsError) as exc_info:
            await scheduler.generate_batch([GenerationParams(prompt="fine"), GenerationParams()])

        assert exc_info.value.details["index"] == 1
        assert "Batch item 1" in exc_info.value.message
        assert fake_provider.calls == 0

    @pytest.mark.asyncio
    async def test_unknown_provider_rejects_whole_batch(self, scheduler, fake_provider):
        with pytest.raises(UnsupportedProviderError) as exc_info:
            await scheduler.generate_batch(
                [GenerationParams(prompt="fine"), GenerationParams(prompt="fine", provider="midjourney")]
            )

        assert exc_info.value.details["index"] == 1
        assert exc_info.value.message.startswith("Batch item 1: ")
        assert "midjourney" in exc_info.value.message
        assert fake_provider.calls == 0

    @pytest.mark.asyncio
    async def test_limit_must_be_positive(self, scheduler):
        with pytest.raises(GenerationParamsError):
            await scheduler.generate_batch(scenes(1), concurrency_limit=0)
