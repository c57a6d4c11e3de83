"""Host-application lifecycle for the embedded server.

A GUI shell drives `ServerHost` from its application callbacks:

    launch()            app finished launching: start engine loop + listener, preload model
    enter_background()  app left the foreground: stop accepting connections
    enter_foreground()  app is active again: listen on the same port
    terminate()         app is exiting: stop everything and unload the model

The server only accepts connections while the app is in the foreground; the loaded
model survives background periods.
"""

from __future__ import annotations

import concurrent.futures
import dataclasses
import logging
import threading
from typing import Any, Iterable

from apps.server.bridge import EngineLoop
from apps.server.listener import Listener, ListenerConfig, StartupError
from apps.server.netinfo import PREFERRED_INTERFACES, display_address
from apps.server.router import GENERATE_PATHS, create_router
from pocketserve.engine.chat_engine import ChatEngine

logger = logging.getLogger(__name__)


class ServerHost:
    def __init__(
        self,
        engine: ChatEngine,
        *,
        listener_config: ListenerConfig | None = None,
        preload: bool = True,
        generate_paths: Iterable[str] = GENERATE_PATHS,
        preferred_interfaces: Iterable[str] = PREFERRED_INTERFACES,
    ) -> None:
        self._engine = engine
        self._config = listener_config or ListenerConfig()
        self._preload = preload
        self._preferred_interfaces = tuple(preferred_interfaces)
        self._loop = EngineLoop()
        self._router = create_router(engine=engine, loop=self._loop, generate_paths=generate_paths)
        self._listener: Listener | None = None
        self._closing: threading.Thread | None = None
        self._port = self._config.port
        self._launched = False
        self._preload_future: concurrent.futures.Future[Any] | None = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._listener is not None

    @property
    def port(self) -> int:
        """Bound port (the configured one, or the ephemeral one picked for port 0)."""
        return self._port

    @property
    def engine(self) -> ChatEngine:
        return self._engine

    def address(self) -> str:
        return display_address(self._port, self._preferred_interfaces)

    def launch(self) -> None:
        """Start serving.

        Raises:
            StartupError: The port cannot be bound. Not retried.
        """
        with self._lock:
            if self._launched:
                return
            self._loop.start()
            try:
                self._start_listener_locked()
            except StartupError:
                self._loop.stop()
                raise
            self._launched = True

            if self._preload:
                self._preload_future = self._loop.submit(self._engine.preload())
                self._preload_future.add_done_callback(_log_preload_result)

    def enter_background(self) -> None:
        """Stop accepting connections without waiting for the one being served.

        The listener thread finishes an in-flight response (a long SSE stream
        included) and then exits; its socket is released in the background.
        """
        with self._lock:
            if self._listener is None:
                return
            logger.info("app entering background; closing listener")
            listener, self._listener = self._listener, None
            self._closing = threading.Thread(
                target=listener.close,
                name=f"pocketserve-listener-close-{listener.port}",
                daemon=True,
            )
            self._closing.start()

    def enter_foreground(self) -> None:
        """Resume listening after a background period.

        Blocks until a response still in flight from before the background
        transition has finished, since it holds the port.

        Raises:
            StartupError: The port was taken while the app was in the background.
        """
        with self._lock:
            if not self._launched or self._listener is not None:
                return
            logger.info("app entering foreground; reopening listener")
            self._await_closing_locked()
            self._start_listener_locked()

    def terminate(self) -> None:
        with self._lock:
            self._stop_listener_locked()
            if self._preload_future is not None:
                self._preload_future.cancel()
                self._preload_future = None
            self._loop.stop()
            if self._launched:
                self._engine.shutdown()
            self._launched = False

    def status(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "address": self.address(),
            "model": self._engine.model_id,
            "model_loaded": self._engine.is_loaded,
        }

    def _start_listener_locked(self) -> None:
        config = dataclasses.replace(self._config, port=self._port)
        try:
            listener = Listener(self._router, config=config)
        except StartupError as exc:
            logger.error("failed to start server: %s", exc)
            raise
        listener.serve_in_background()
        self._listener = listener
        self._port = listener.port

    def _await_closing_locked(self) -> None:
        if self._closing is not None:
            self._closing.join()
            self._closing = None

    def _stop_listener_locked(self) -> None:
        self._await_closing_locked()
        if self._listener is None:
            return
        self._listener.close()
        self._listener = None


def _log_preload_result(future: concurrent.futures.Future[Any]) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.warning("model preload failed (will retry on first request): %s", exc)
    else:
        logger.info("model preloaded: %s", future.result())
