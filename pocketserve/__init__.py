"""
pocketserve - expose an on-device inference engine to the local network.

The core package holds everything that runs on the engine side of the server:
request/result types, the packaged-model descriptor, engine back ends and the
serialized `ChatEngine` that owns them. The HTTP/SSE layer lives under `apps/`.

Quick Start:
    import asyncio

    from pocketserve import ChatEngine, GenerationRequest, ChatMessage
    from pocketserve.engine.adapters.echo import EchoAdapter

    engine = ChatEngine(EchoAdapter())
    result = asyncio.run(
        engine.generate_once(GenerationRequest(messages=[ChatMessage("user", "hi")]))
    )

Environment Variables:
    POCKETSERVE_BUNDLE_DIR: Directory holding `mlc-app-config.json` and the model
        weights (read once when the engine loads).
"""

from pocketserve._version import __version__

from pocketserve.engine.chat_engine import ChatEngine, EngineConfig
from pocketserve.engine.chat_types import (
    ChatMessage,
    DeltaEvent,
    ErrorEvent,
    FinalEvent,
    GenerationRequest,
    GenerationResult,
    Usage,
    UsageExtra,
)
from pocketserve.engine.errors import EngineError, GenerationError, ModelLoadError, ModelNotReadyError

__all__ = [
    "__version__",
    # Engine
    "ChatEngine",
    "EngineConfig",
    # Types
    "ChatMessage",
    "GenerationRequest",
    "GenerationResult",
    "Usage",
    "UsageExtra",
    "DeltaEvent",
    "FinalEvent",
    "ErrorEvent",
    # Errors
    "EngineError",
    "ModelNotReadyError",
    "ModelLoadError",
    "GenerationError",
]
