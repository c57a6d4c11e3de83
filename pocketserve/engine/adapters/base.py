"""Base adapter interface for on-device runtimes."""

from abc import ABC, abstractmethod
from typing import Any, Iterator

from pocketserve.engine.chat_types import ChatMessage, GenerationRequest, StreamEvent
from pocketserve.engine.packaged_model import PackagedModel


class BaseAdapter(ABC):
    """
    Abstract base class for runtime adapters.

    Each supported runtime implements this interface so the engine can run
    inference without knowing runtime-specific details. Adapters are not
    required to be thread-safe; `ChatEngine` serializes every call.
    """

    @abstractmethod
    def load(self, model: PackagedModel | None, **kwargs) -> None:
        """
        Load (or reload) the given packaged model.

        Args:
            model: Descriptor read from the app bundle, or None when the runtime
                manages its own model.
            **kwargs: Runtime-specific loading options.

        Raises:
            ModelLoadError: If the model cannot be loaded.
        """
        pass

    @abstractmethod
    def stream_generate(self, request: GenerationRequest) -> Iterator[StreamEvent]:
        """
        Stream output for the given request.

        Args:
            request: Normalized, validated request.

        Yields:
            `DeltaEvent` for each text piece, optionally followed by a single
            `FinalEvent` carrying finish reason and usage.

        Raises:
            EngineError: On runtime failure (other exceptions are wrapped by the engine).
        """
        pass

    @property
    @abstractmethod
    def model_info(self) -> dict[str, Any]:
        """
        Return metadata about the loaded model.

        Returns:
            Dict with keys like 'model_id', 'model_lib', 'runtime'.
        """
        pass

    def warm_up(self) -> None:
        """
        Run a throwaway one-token generation so the first real request does not
        pay for lazy kernel initialization.
        """
        events = self.stream_generate(
            GenerationRequest(messages=[ChatMessage(role="user", content="")], max_tokens=1)
        )
        for _ in events:
            break
        close = getattr(events, "close", None)
        if callable(close):
            close()

    def unload(self) -> None:
        """
        Unload the model and free resources.

        Default implementation does nothing; override if cleanup is needed.
        """
        pass
