"""Blocking bridge between synchronous callers and async connections.

A :class:`Reactor` owns a few daemon threads, each running its own asyncio
event loop forever. A connection is pinned to one loop for its whole life;
synchronous callers submit coroutines to that loop and block until they
finish or their deadline expires.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import itertools
import threading
from typing import Any, Coroutine, TypeVar

import structlog

from .errors import InterfaceError

logger = structlog.get_logger(__name__)

_T = TypeVar("_T")

DEFAULT_WORKERS = 2


class _LoopThread:
    __slots__ = ("loop", "thread", "_ready")

    def __init__(self, name: str) -> None:
        self.loop: asyncio.AbstractEventLoop | None = None
        self._ready = threading.Event()
        self.thread = threading.Thread(target=self._run, name=name, daemon=True)
        self.thread.start()
        self._ready.wait()

    def _run(self) -> None:
        self.loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self.loop)
        self._ready.set()
        try:
            self.loop.run_forever()
        finally:
            self.loop.close()

    def stop(self) -> None:
        if self.loop is not None and self.loop.is_running():
            self.loop.call_soon_threadsafe(self.loop.stop)
        self.thread.join(timeout=5)


class Reactor:
    """A small pool of event-loop threads.

    Loops are handed out round-robin by :meth:`assign_loop`.
    """

    def __init__(self, workers: int = DEFAULT_WORKERS, name: str = "postpyro") -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self._threads = [_LoopThread(f"{name}-reactor-{i}") for i in range(workers)]
        self._next = itertools.cycle(range(workers))
        self._lock = threading.Lock()
        self._closed = False
        logger.debug("Reactor started", workers=workers)

    @property
    def closed(self) -> bool:
        return self._closed

    def assign_loop(self) -> asyncio.AbstractEventLoop:
        if self._closed:
            raise InterfaceError("Reactor has been shut down")
        with self._lock:
            worker = self._threads[next(self._next)]
        assert worker.loop is not None
        return worker.loop

    def in_reactor_thread(self) -> bool:
        current = threading.current_thread()
        return any(worker.thread is current for worker in self._threads)

    def run(
        self,
        coro: Coroutine[Any, Any, _T],
        loop: asyncio.AbstractEventLoop,
        timeout: float | None = None,
    ) -> _T:
        """Run *coro* on *loop* and block until it completes.

        Raises:
            InterfaceError: If called from one of the reactor's own threads.
            asyncio.TimeoutError: If *timeout* elapses first; the coroutine
                is cancelled.
        """
        if self.in_reactor_thread():
            coro.close()
            raise InterfaceError(
                "Synchronous API called from a reactor thread; use the async connection"
            )
        if self._closed:
            coro.close()
            raise InterfaceError("Reactor has been shut down")

        future = asyncio.run_coroutine_threadsafe(coro, loop)
        try:
            return future.result(timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            raise asyncio.TimeoutError() from None

    def shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        for worker in self._threads:
            worker.stop()
        logger.debug("Reactor stopped")


_default_reactor: Reactor | None = None
_default_lock = threading.Lock()


def get_reactor() -> Reactor:
    """The process-wide reactor, created on first use."""
    global _default_reactor
    with _default_lock:
        if _default_reactor is None or _default_reactor.closed:
            _default_reactor = Reactor()
        return _default_reactor
