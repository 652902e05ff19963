from __future__ import annotations

import asyncio
import logging
import threading
from typing import TYPE_CHECKING

import pytest

from pgbridge.dispatch import PgVersion, build_context
from pgbridge.errors import NotInitializedError
from pgbridge.lifecycle import EngineLifecycle, EngineState

from .conftest import FakeEngine

if TYPE_CHECKING:
    from pgbridge.lifecycle import EngineContext


class CountingLoader:
    """Loader that records how often it runs and can be held until released."""

    def __init__(self, error: BaseException | None = None, hold: bool = False) -> None:
        self.calls = 0
        self.error = error
        self.release = threading.Event()
        self.started = threading.Event()
        if not hold:
            self.release.set()

    def __call__(self) -> EngineContext:
        self.calls += 1
        self.started.set()
        assert self.release.wait(10)
        if self.error is not None:
            raise self.error
        return build_context(PgVersion.PG17, FakeEngine())


class TestStartup:
    def test_lazy(self):
        loader = CountingLoader()
        lifecycle = EngineLifecycle(17, loader)
        assert lifecycle.state is EngineState.UNINITIALIZED
        assert loader.calls == 0

    def test_ready(self):
        loader = CountingLoader()
        lifecycle = EngineLifecycle(17, loader)
        ctx = asyncio.run(lifecycle.ensure_ready())
        assert lifecycle.state is EngineState.READY
        assert ctx.version == 17
        assert lifecycle.require_ready() is ctx

    def test_concurrent_callers_share_startup(self):
        loader = CountingLoader()
        lifecycle = EngineLifecycle(17, loader)

        async def main():
            return await asyncio.gather(*(lifecycle.ensure_ready() for _ in range(10)))

        contexts = asyncio.run(main())
        assert loader.calls == 1
        assert all(ctx is contexts[0] for ctx in contexts)

    def test_idempotent_across_event_loops(self):
        loader = CountingLoader()
        lifecycle = EngineLifecycle(17, loader)
        first = asyncio.run(lifecycle.ensure_ready())
        second = asyncio.run(lifecycle.ensure_ready())
        assert first is second
        assert loader.calls == 1

    def test_loops_in_other_threads_share_startup(self):
        loader = CountingLoader(hold=True)
        lifecycle = EngineLifecycle(17, loader)
        results: list[EngineContext] = []

        def worker():
            results.append(asyncio.run(lifecycle.ensure_ready()))

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        assert loader.started.wait(10)
        assert lifecycle.state is EngineState.LOADING
        loader.release.set()
        for t in threads:
            t.join(10)
        assert len(results) == 4
        assert all(ctx is results[0] for ctx in results)
        assert loader.calls == 1

    def test_wait_ready_blocks(self):
        loader = CountingLoader()
        lifecycle = EngineLifecycle(17, loader)
        ctx = lifecycle.wait_ready(10)
        assert lifecycle.require_ready() is ctx

    def test_logs_ready(self, caplog: pytest.LogCaptureFixture):
        caplog.set_level(logging.INFO, logger="pgbridge.lifecycle")
        asyncio.run(EngineLifecycle(17, CountingLoader()).ensure_ready())
        assert "libpg_query 17 engine ready" in caplog.text


class TestFailure:
    def test_every_caller_sees_the_same_error(self):
        error = OSError("libpg_query shared library for PostgreSQL 17 not found")
        loader = CountingLoader(error=error)
        lifecycle = EngineLifecycle(17, loader)

        async def main():
            return await asyncio.gather(*(lifecycle.ensure_ready() for _ in range(3)), return_exceptions=True)

        outcomes = asyncio.run(main())
        assert all(outcome is error for outcome in outcomes)
        assert lifecycle.state is EngineState.FAILED

    def test_failure_is_terminal(self):
        error = OSError("missing")
        loader = CountingLoader(error=error)
        lifecycle = EngineLifecycle(17, loader)
        with pytest.raises(OSError):
            asyncio.run(lifecycle.ensure_ready())
        with pytest.raises(OSError) as exc_info:
            asyncio.run(lifecycle.ensure_ready())
        assert exc_info.value is error
        assert loader.calls == 1

    def test_require_ready_chains_cause(self):
        error = OSError("missing")
        lifecycle = EngineLifecycle(17, CountingLoader(error=error))
        with pytest.raises(OSError):
            lifecycle.wait_ready(10)
        with pytest.raises(NotInitializedError, match="failed to start") as exc_info:
            lifecycle.require_ready()
        assert exc_info.value.__cause__ is error

    def test_logs_failure(self, caplog: pytest.LogCaptureFixture):
        caplog.set_level(logging.ERROR, logger="pgbridge.lifecycle")
        lifecycle = EngineLifecycle(16, CountingLoader(error=OSError("missing")))
        with pytest.raises(OSError):
            lifecycle.wait_ready(10)
        assert "libpg_query 16 engine failed to start" in caplog.text


class TestRequireReady:
    def test_before_load(self):
        loader = CountingLoader()
        lifecycle = EngineLifecycle(17, loader)
        with pytest.raises(NotInitializedError, match="not initialized"):
            lifecycle.require_ready()
        assert lifecycle.state is EngineState.UNINITIALIZED
        assert loader.calls == 0

    def test_while_loading(self):
        loader = CountingLoader(hold=True)
        lifecycle = EngineLifecycle(17, loader)
        lifecycle.start()
        assert loader.started.wait(10)
        with pytest.raises(NotInitializedError):
            lifecycle.require_ready()
        loader.release.set()
        lifecycle.wait_ready(10)


class TestCancellation:
    def test_abandoned_wait_does_not_cancel_startup(self):
        loader = CountingLoader(hold=True)
        lifecycle = EngineLifecycle(17, loader)

        async def main():
            task = asyncio.create_task(lifecycle.ensure_ready())
            await asyncio.to_thread(loader.started.wait, 10)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            loader.release.set()
            return await lifecycle.ensure_ready()

        ctx = asyncio.run(main())
        assert ctx is lifecycle.require_ready()
        assert lifecycle.state is EngineState.READY
        assert loader.calls == 1

    def test_cancel_on_shared_future_is_refused(self):
        loader = CountingLoader(hold=True)
        lifecycle = EngineLifecycle(17, loader)
        future = lifecycle.start()
        assert not future.cancel()
        loader.release.set()
        assert lifecycle.wait_ready(10) is future.result()
