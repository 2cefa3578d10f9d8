"""
Tests for CancellationToken and CancellationRegistry.
"""

import asyncio

import pytest

from services.cancellation import (
    DEFAULT_CANCEL_REASON,
    CancellationRegistry,
    CancellationToken,
    RunCancelled,
)


class TestCancellationToken:

    def test_raise_if_cancelled(self):
        token = CancellationToken()
        token.raise_if_cancelled()

        token.cancel("stop please")
        with pytest.raises(RunCancelled) as exc_info:
            token.raise_if_cancelled()
        assert exc_info.value.reason == "stop please"

    def test_first_reason_wins(self):
        token = CancellationToken()
        token.cancel("first")
        token.cancel("second")
        assert token.reason == "first"

    @pytest.mark.asyncio
    async def test_run_returns_result(self):
        async def work():
            return 42

        assert await CancellationToken().run(work()) == 42

    @pytest.mark.asyncio
    async def test_run_propagates_errors(self):
        async def work():
            raise ValueError("bad")

        with pytest.raises(ValueError):
            await CancellationToken().run(work())

    @pytest.mark.asyncio
    async def test_cancel_aborts_in_flight_call(self):
        token = CancellationToken()
        started = asyncio.Event()
        aborted = asyncio.Event()

        async def hang():
            started.set()
            try:
                await asyncio.sleep(3600)
            except asyncio.CancelledError:
                aborted.set()
                raise

        task = asyncio.create_task(token.run(hang()))
        await started.wait()
        token.cancel()

        with pytest.raises(RunCancelled) as exc_info:
            await asyncio.wait_for(task, timeout=1)
        assert exc_info.value.reason == DEFAULT_CANCEL_REASON
        assert aborted.is_set()

    @pytest.mark.asyncio
    async def test_run_on_cancelled_token_never_starts(self):
        token = CancellationToken()
        token.cancel()
        called = False

        async def work():
            nonlocal called
            called = True

        coro = work()
        with pytest.raises(RunCancelled):
            await token.run(coro)
        coro.close()
        assert called is False


class TestCancellationRegistry:

    def test_register_get_pop(self):
        registry = CancellationRegistry()
        token = CancellationToken()
        registry.register("run-1", "job-1", token)

        assert registry.get("run-1").job_id == "job-1"
        assert registry.active_run_ids() == ["run-1"]
        assert registry.pop("run-1").token is token
        assert registry.pop("run-1") is None
        assert len(registry) == 0

    def test_cancel_all(self):
        registry = CancellationRegistry()
        tokens = [CancellationToken() for _ in range(3)]
        for i, token in enumerate(tokens):
            registry.register(f"run-{i}", "job", token)

        assert registry.cancel_all() == 3
        assert all(t.cancelled for t in tokens)
        assert len(registry) == 0
