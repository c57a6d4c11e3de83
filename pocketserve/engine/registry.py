"""Runtime adapter registry.

Maps back-end names to their corresponding adapter classes.
"""

from typing import Any, Type

from .adapters.base import BaseAdapter
from .adapters.echo import EchoAdapter
from .adapters.openai_compat import OpenAICompatAdapter

# Registry mapping back-end names to adapter classes
_ADAPTER_REGISTRY: dict[str, Type[BaseAdapter]] = {
    "echo": EchoAdapter,
    "openai": OpenAICompatAdapter,
}


def get_adapter(name: str, **kwargs: Any) -> BaseAdapter:
    """
    Get an adapter instance for the given back end.

    Args:
        name: Name of the back end (e.g., "echo").
        **kwargs: Passed to the adapter constructor.

    Returns:
        An adapter instance.

    Raises:
        ValueError: If the back end is not registered.
    """
    if name not in _ADAPTER_REGISTRY:
        available = ", ".join(_ADAPTER_REGISTRY.keys())
        raise ValueError(f"Unknown engine back end: {name!r}. Available: {available}")
    return _ADAPTER_REGISTRY[name](**kwargs)


def register_adapter(name: str, adapter_cls: Type[BaseAdapter]) -> None:
    """
    Register a new adapter for a back end.

    Args:
        name: Name of the back end.
        adapter_cls: Adapter class (must inherit from BaseAdapter).

    Raises:
        TypeError: If `adapter_cls` is not a BaseAdapter subclass.
    """
    if not (isinstance(adapter_cls, type) and issubclass(adapter_cls, BaseAdapter)):
        raise TypeError(f"{adapter_cls!r} is not a BaseAdapter subclass")
    _ADAPTER_REGISTRY[name] = adapter_cls


def list_adapters() -> list[str]:
    """Return list of registered back-end names."""
    return list(_ADAPTER_REGISTRY.keys())
