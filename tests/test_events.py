# tests/test_events.py
"""Test progress events, streams and cancel tokens"""

import asyncio
import threading

import pytest

from lyricslides.core.cancellation import CancelToken
from lyricslides.core.events import GenerationStatus, ProgressEvent, ProgressStream
from lyricslides.core.exceptions import GenerationCancelled


def event(status, request_id="req_test"):
    return ProgressEvent(request_id=request_id, status=status, progress=0.0)


class TestGenerationStatus:
    """Test the request state machine edges"""

    def test_happy_path_edges(self):
        assert GenerationStatus.STARTED.can_transition(GenerationStatus.PROMPT_READY)
        assert GenerationStatus.PROMPT_READY.can_transition(GenerationStatus.CACHE_CHECKED)
        assert GenerationStatus.CACHE_CHECKED.can_transition(GenerationStatus.DISPATCHED)
        assert GenerationStatus.CACHE_CHECKED.can_transition(GenerationStatus.COMPLETED)
        assert GenerationStatus.DISPATCHED.can_transition(GenerationStatus.COMPLETED)

    def test_illegal_edges(self):
        assert not GenerationStatus.STARTED.can_transition(GenerationStatus.DISPATCHED)
        assert not GenerationStatus.PROMPT_READY.can_transition(GenerationStatus.COMPLETED)
        assert not GenerationStatus.COMPLETED.can_transition(GenerationStatus.CANCELLED)

    def test_cancel_allowed_from_every_non_terminal_status(self):
        for status in GenerationStatus:
            if not status.is_terminal:
                assert status.can_transition(GenerationStatus.CANCELLED)

    def test_terminal_statuses(self):
        terminal = {s for s in GenerationStatus if s.is_terminal}
        assert terminal == {GenerationStatus.COMPLETED, GenerationStatus.FAILED, GenerationStatus.CANCELLED}


class TestProgressStream:
    """Test the multi-subscriber progress stream"""

    def test_subscribers_receive_events_in_order(self):
        stream = ProgressStream()
        first, second = [], []
        stream.subscribe(first.append)
        stream.subscribe(second.append)

        stream.publish(event(GenerationStatus.STARTED))
        stream.publish(event(GenerationStatus.PROMPT_READY))

        assert [e.status for e in first] == [GenerationStatus.STARTED, GenerationStatus.PROMPT_READY]
        assert first == second

    def test_failing_listener_does_not_affect_others(self):
        stream = ProgressStream()
        received = []

        def broken(_):
            raise ValueError("listener bug")

        stream.subscribe(broken)
        stream.subscribe(received.append)
        stream.publish(event(GenerationStatus.STARTED))

        assert len(received) == 1

    def test_unsubscribe(self):
        stream = ProgressStream()
        received = []
        unsubscribe = stream.subscribe(received.append)
        unsubscribe()
        stream.publish(event(GenerationStatus.STARTED))
        assert received == []

    def test_terminal_event_closes_stream(self):
        stream = ProgressStream()
        stream.publish(event(GenerationStatus.STARTED))
        stream.publish(event(GenerationStatus.CANCELLED))

        assert stream.closed
        with pytest.raises(RuntimeError):
            stream.publish(event(GenerationStatus.STARTED))

    @pytest.mark.asyncio
    async def test_async_iteration_replays_history(self):
        stream = ProgressStream()
        stream.publish(event(GenerationStatus.STARTED))

        async def consume():
            return [e.status async for e in stream]

        consumer = asyncio.ensure_future(consume())
        await asyncio.sleep(0)
        stream.publish(event(GenerationStatus.PROMPT_READY))
        stream.publish(event(GenerationStatus.CANCELLED))

        assert await consumer == [
            GenerationStatus.STARTED,
            GenerationStatus.PROMPT_READY,
            GenerationStatus.CANCELLED,
        ]


class TestCancelToken:
    """Test cooperative cancellation"""

    def test_cancel_is_one_shot(self):
        token = CancelToken()
        assert token.cancel("first") is True
        assert token.cancel("second") is False
        assert token.reason == "first"
        with pytest.raises(GenerationCancelled):
            token.raise_if_cancelled()

    def test_callbacks(self):
        token = CancelToken()
        fired = []
        token.add_callback(lambda: fired.append("a"))
        remove = token.add_callback(lambda: fired.append("b"))
        remove()
        token.cancel()
        token.add_callback(lambda: fired.append("late"))
        assert fired == ["a", "late"]

    @pytest.mark.asyncio
    async def test_run_returns_result(self):
        async def work():
            await asyncio.sleep(0)
            return 42

        assert await CancelToken().run(work()) == 42

    @pytest.mark.asyncio
    async def test_run_aborts_on_cancel(self):
        token = CancelToken()
        asyncio.get_running_loop().call_later(0.05, token.cancel, "stop")

        with pytest.raises(GenerationCancelled) as exc_info:
            await token.run(asyncio.sleep(10))
        assert exc_info.value.message == "stop"

    @pytest.mark.asyncio
    async def test_cancel_from_another_thread(self):
        token = CancelToken()
        timer = threading.Timer(0.05, token.cancel)
        timer.start()
        try:
            with pytest.raises(GenerationCancelled):
                await token.sleep(10)
        finally:
            timer.join()

    @pytest.mark.asyncio
    async def test_run_on_cancelled_token_never_starts(self):
        token = CancelToken()
        token.cancel()
        started = []

        async def work():
            started.append(True)

        with pytest.raises(GenerationCancelled):
            await token.run(work())
        assert started == []
