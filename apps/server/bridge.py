"""Bridging between the engine event loop and blocking connection handlers.

Connection handlers run on the listener thread and write to blocking sockets;
the engine produces output as asyncio tasks on a dedicated loop thread.

- `EngineLoop` owns that loop thread and accepts coroutines from any thread.
- `BridgeQueue` carries one response's byte chunks from the producing task to the
  handler that writes them.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
from collections import deque
from typing import Any, Coroutine, Iterator, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BridgeQueue:
    """Single-producer / single-consumer FIFO of byte chunks.

    The producer calls `push()` any number of times and then `finish()` exactly once
    (extra calls are ignored). The consumer calls `pull()` until it returns None.
    Neither `push()` nor `finish()` ever blocks.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._chunks: deque[bytes] = deque()
        self._finished = False
        self._error: BaseException | None = None

    @property
    def finished(self) -> bool:
        with self._cond:
            return self._finished

    def push(self, chunk: bytes) -> None:
        with self._cond:
            if self._finished:
                return
            self._chunks.append(chunk)
            self._cond.notify()

    def finish(self, error: BaseException | None = None) -> None:
        with self._cond:
            if self._finished:
                return
            self._finished = True
            self._error = error
            self._cond.notify_all()

    def pull(self, timeout: float | None = None) -> bytes | None:
        """Next chunk, or None at end-of-stream.

        A terminal error passed to `finish()` is raised once, after every buffered
        chunk has been returned; later calls return None.

        Raises:
            TimeoutError: `timeout` elapsed with nothing to return.
        """
        with self._cond:
            if not self._cond.wait_for(lambda: self._chunks or self._finished, timeout=timeout):
                raise TimeoutError("timed out waiting for the next chunk")
            if self._chunks:
                return self._chunks.popleft()
            if self._error is not None:
                error, self._error = self._error, None
                raise error
            return None

    def __iter__(self) -> Iterator[bytes]:
        while True:
            chunk = self.pull()
            if chunk is None:
                return
            yield chunk


class EngineLoop:
    """Background thread running the asyncio loop that drives the engine."""

    def __init__(self, *, name: str = "pocketserve-engine-loop") -> None:
        self._name = name
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self.running:
                return
            loop = asyncio.new_event_loop()
            ready = threading.Event()

            def _run() -> None:
                asyncio.set_event_loop(loop)
                loop.call_soon(ready.set)
                try:
                    loop.run_forever()
                finally:
                    _cancel_pending(loop)
                    loop.run_until_complete(loop.shutdown_asyncgens())
                    loop.close()

            thread = threading.Thread(target=_run, name=self._name, daemon=True)
            thread.start()
            ready.wait()
            self._loop = loop
            self._thread = thread
            logger.debug("engine loop started")

    def submit(self, coro: Coroutine[Any, Any, T]) -> concurrent.futures.Future[T]:
        """Schedule `coro` on the engine loop from any other thread."""
        loop = self._loop
        if loop is None or not self.running:
            coro.close()
            raise RuntimeError("engine loop is not running")
        return asyncio.run_coroutine_threadsafe(coro, loop)

    def stop(self, timeout: float = 5.0) -> None:
        with self._lock:
            loop, thread = self._loop, self._thread
            self._loop = None
            self._thread = None
        if loop is None or thread is None:
            return
        loop.call_soon_threadsafe(loop.stop)
        thread.join(timeout)
        logger.debug("engine loop stopped")


def _cancel_pending(loop: asyncio.AbstractEventLoop) -> None:
    pending = [t for t in asyncio.all_tasks(loop) if not t.done()]
    if not pending:
        return
    for task in pending:
        task.cancel()
    loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
