"""Chat engine: the single owner of the on-device runtime.

The engine is shared by every request the server handles. Runtimes are not
thread-safe and must not interleave model loads with generations, so all adapter
access goes through one lock (single-flight). Generation runs on a worker thread;
events are handed to the caller's event loop with `call_soon_threadsafe`.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Callable

from pocketserve.engine.adapters.base import BaseAdapter
from pocketserve.engine.chat_types import (
    DeltaEvent,
    ErrorEvent,
    FinalEvent,
    GenerationRequest,
    GenerationResult,
    StreamEvent,
)
from pocketserve.engine.errors import EngineError, GenerationError, ModelLoadError
from pocketserve.engine.packaged_model import PackagedModel, load_packaged_model

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineConfig:
    bundle_dir: Path | None = None  # None: the runtime manages its own model
    warmup: bool = True


class ChatEngine:
    """Serialized access to one runtime adapter.

    Thread-safety:
        The underlying adapter is not thread-safe. This engine serializes model
        loading and generation with a global lock.
    """

    def __init__(
        self,
        adapter: BaseAdapter,
        *,
        config: EngineConfig | None = None,
        descriptor_loader: Callable[[Path], PackagedModel] = load_packaged_model,
    ) -> None:
        self._adapter = adapter
        self._config = config or EngineConfig()
        self._descriptor_loader = descriptor_loader
        self._lock = threading.Lock()
        self._loaded = False
        self._warmed = False
        self._model: PackagedModel | None = None

    @property
    def adapter(self) -> BaseAdapter:
        return self._adapter

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    @property
    def model_id(self) -> str | None:
        if self._model is not None:
            return self._model.model_id
        model_id = self.model_info.get("model_id")
        return model_id if isinstance(model_id, str) else None

    @property
    def model_info(self) -> dict[str, Any]:
        return getattr(self._adapter, "model_info", {})

    def prepare(self) -> str | None:
        """Load the packaged model and warm it up if that has not happened yet.

        Returns:
            The loaded model id (None when neither bundle nor runtime reports one).
        """
        with self._lock:
            self._prepare_locked()
        return self.model_id

    async def preload(self) -> str | None:
        return await asyncio.to_thread(self.prepare)

    def shutdown(self) -> None:
        with self._lock:
            if self._loaded:
                self._adapter.unload()
            self._loaded = False
            self._warmed = False
            self._model = None

    def _prepare_locked(self) -> None:
        if not self._loaded:
            model = None
            if self._config.bundle_dir is not None:
                model = self._descriptor_loader(self._config.bundle_dir)

            logger.info("loading model: %s", model.model_id if model is not None else "<runtime default>")
            try:
                self._adapter.load(model)
            except EngineError:
                raise
            except Exception as exc:
                raise ModelLoadError(f"Model load failed: {exc}") from exc
            self._model = model
            self._loaded = True
            self._warmed = False
            logger.info("model ready: %s", self.model_id)

        if self._config.warmup and not self._warmed:
            try:
                self._adapter.warm_up()
            except EngineError:
                raise
            except Exception as exc:
                raise ModelLoadError(f"Warm-up failed: {exc}") from exc
            self._warmed = True
            logger.info("warm-up finished")

    async def astream(self, request: GenerationRequest) -> AsyncIterator[StreamEvent]:
        """Async iterator of engine events: deltas, then one final or error event."""
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue()
        cancel = threading.Event()

        def _emit(event: StreamEvent | None) -> None:
            try:
                loop.call_soon_threadsafe(queue.put_nowait, event)
            except RuntimeError:
                # Consumer loop already closed; nobody is listening any more.
                logger.debug("dropping %r: event loop closed", type(event).__name__)

        def worker() -> None:
            final: FinalEvent | None = None
            try:
                with self._lock:
                    self._prepare_locked()
                    events = self._adapter.stream_generate(request)
                    try:
                        for event in events:
                            if cancel.is_set():
                                break
                            if isinstance(event, DeltaEvent):
                                if event.text:
                                    _emit(event)
                            elif isinstance(event, FinalEvent):
                                final = event
                            elif isinstance(event, ErrorEvent):
                                raise GenerationError(event.message)
                    finally:
                        close = getattr(events, "close", None)
                        if callable(close):
                            close()

                if final is None:
                    final = FinalEvent(model=self.model_id)
                elif final.model is None:
                    final = FinalEvent(finish_reason=final.finish_reason, usage=final.usage, model=self.model_id)
                _emit(final)
            except EngineError as exc:
                logger.warning("generation failed: %s", exc)
                _emit(ErrorEvent(str(exc)))
            except Exception as exc:
                logger.exception("generation crashed")
                _emit(ErrorEvent(f"Generation failed: {exc}"))
            finally:
                _emit(None)

        thread = threading.Thread(target=worker, name=f"pocketserve-gen-{uuid.uuid4().hex[:8]}", daemon=True)
        thread.start()

        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event
        finally:
            # If the consumer stops early, stop pulling from the runtime at the next delta.
            cancel.set()

    async def generate_once(self, request: GenerationRequest) -> GenerationResult:
        """Non-streaming generation.

        Raises:
            GenerationError: If the engine reports an error (message preserved).
        """
        parts: list[str] = []
        final: FinalEvent | None = None

        async for event in self.astream(request):
            if isinstance(event, DeltaEvent):
                parts.append(event.text)
            elif isinstance(event, FinalEvent):
                final = event
            elif isinstance(event, ErrorEvent):
                raise GenerationError(event.message)

        return GenerationResult(
            text="".join(parts),
            model=final.model if final is not None else self.model_id,
            finish_reason=final.finish_reason if final is not None else None,
            usage=final.usage if final is not None else None,
        )
