# Runtime adapters
#
# Each adapter implements a common interface for:
#   - Loading the packaged model into its runtime
#   - Streaming generation events
#   - Reporting metadata
#
# The engine uses adapters to stay runtime-agnostic.

from .base import BaseAdapter

__all__ = ["BaseAdapter"]
