"""Engine error hierarchy.

Everything the engine raises towards the HTTP layer derives from `EngineError`;
the router turns it into a 500 (or an SSE error event) carrying `str(exc)`.
"""

from __future__ import annotations


class EngineError(RuntimeError):
    """Base class for engine-side failures."""


class ModelNotReadyError(EngineError):
    """The adapter has no model loaded and none could be prepared."""


class ModelLoadError(EngineError):
    """The packaged model descriptor or the model itself could not be loaded."""


class GenerationError(EngineError):
    """The runtime failed while producing output."""
