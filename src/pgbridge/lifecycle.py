"""One-time startup of an engine, shared by every caller.

An :class:`EngineLifecycle` moves through ``UNINITIALIZED -> LOADING -> READY`` or ``... -> FAILED``. The first
call to :meth:`~EngineLifecycle.ensure_ready` starts the loader on a background thread; every caller, first or later,
in any event loop, awaits that same startup. A failed startup is terminal and re-raised to every caller.
Non-suspending code paths use :meth:`~EngineLifecycle.require_ready`, which never starts loading.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import enum
import logging
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from pgbridge.errors import NotInitializedError
from pgbridge.memory import MemoryBridge

if TYPE_CHECKING:
    from collections.abc import Callable

    from pgbridge.dispatch import Operation
    from pgbridge.engine import EngineHandle
    from pgbridge.schema import Schema

logger = logging.getLogger(__name__)


class EngineState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


@dataclass
class EngineContext:
    """A ready engine together with everything needed to call it.

    Hold :attr:`lock` for the whole allocate/invoke/read/free sequence of an operation: the engine's allocator is
    not thread-safe.
    """

    version: int
    handle: EngineHandle
    capabilities: frozenset[Operation]
    schema: Schema | None = None
    lock: threading.RLock = field(default_factory=threading.RLock)

    def __post_init__(self) -> None:
        self.bridge = MemoryBridge(self.handle)


class EngineLifecycle:
    """Owns the startup of one engine version.

    Args:
        version: PostgreSQL major version of the engine.
        loader: Blocking callable that runs the engine's startup sequence and returns a ready
            :class:`EngineContext`. Called at most once.
    """

    def __init__(self, version: int, loader: Callable[[], EngineContext]) -> None:
        self.version = version
        self._loader = loader
        self._lock = threading.Lock()
        self._state = EngineState.UNINITIALIZED
        self._future: concurrent.futures.Future[EngineContext] | None = None
        self._context: EngineContext | None = None
        self._error: BaseException | None = None

    def __repr__(self) -> str:
        return f"EngineLifecycle(version={self.version}, state={self._state.value})"

    @property
    def state(self) -> EngineState:
        return self._state

    def start(self) -> concurrent.futures.Future[EngineContext]:
        """Begin startup if it has not begun and return the shared startup future."""
        with self._lock:
            if self._future is None:
                future: concurrent.futures.Future[EngineContext] = concurrent.futures.Future()
                # A running future cannot be cancelled by an abandoned awaiter.
                future.set_running_or_notify_cancel()
                self._future = future
                self._state = EngineState.LOADING
                logger.debug("Starting libpg_query %d engine", self.version)
                threading.Thread(
                    target=self._run_loader,
                    args=(future,),
                    name=f"pgbridge-load-{self.version}",
                    daemon=True,
                ).start()
            return self._future

    def _run_loader(self, future: concurrent.futures.Future[EngineContext]) -> None:
        try:
            context = self._loader()
        except BaseException as e:
            with self._lock:
                self._error = e
                self._state = EngineState.FAILED
            logger.error("libpg_query %d engine failed to start: %s", self.version, e)
            future.set_exception(e)
            return
        with self._lock:
            self._context = context
            self._state = EngineState.READY
        logger.info(
            "libpg_query %d engine ready (%s)",
            self.version,
            ", ".join(sorted(op.value for op in context.capabilities)),
        )
        future.set_result(context)

    async def ensure_ready(self) -> EngineContext:
        """Wait for the engine, starting it on first use.

        Cancelling the awaiting task abandons the wait only; startup keeps running for other callers.

        Raises:
            Exception: Whatever the startup sequence raised, for this and every later call.
        """
        if self._state is EngineState.READY:
            assert self._context is not None
            return self._context
        future = self.start()
        return await asyncio.shield(asyncio.wrap_future(future))

    def wait_ready(self, timeout: float | None = None) -> EngineContext:
        """Blocking counterpart of :meth:`ensure_ready` for threads without an event loop."""
        return self.start().result(timeout)

    def require_ready(self) -> EngineContext:
        """Return the ready context without suspending or starting the engine.

        Raises:
            NotInitializedError: If the engine is not ready. After a failed startup the failure is chained as
                the cause.
        """
        if self._state is EngineState.READY:
            assert self._context is not None
            return self._context
        if self._state is EngineState.FAILED:
            raise NotInitializedError(
                f"libpg_query {self.version} engine failed to start: {self._error}"
            ) from self._error
        raise NotInitializedError(
            f"libpg_query {self.version} engine is not initialized. Call `await load_module()` first."
        )
