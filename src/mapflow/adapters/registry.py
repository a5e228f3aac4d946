"""Adapter registry and factory.

Manifesto:
    Consumers should never hard-code adapter class names. The registry
    maps adapter type strings to adapter classes and ``create()`` builds a
    configured instance from a config dict.

Features:
    - ``AdapterRegistry`` instances with the built-in ``memory`` adapter
    - ``register()`` for custom / third-party adapters
    - ``create()`` factory: type + config → adapter (config validated)

Tags:
    mapflow, adapters, registry, factory

Doc-Types:
    api-reference
"""

from __future__ import annotations

from typing import Any

from mapflow.adapters.base import BaseAdapter
from mapflow.adapters.memory import MemoryAdapter
from mapflow.core.errors import ConfigError
from mapflow.core.events import EventEmitter
from mapflow.core.logging import get_logger

logger = get_logger(__name__)


class AdapterRegistry:
    """
    Registry for adapter classes.

    Pre-registered adapters:
    - ``memory``: :class:`MemoryAdapter`
    """

    def __init__(self, *, emitter: EventEmitter | None = None):
        self._factories: dict[str, type[BaseAdapter]] = {}
        self._emitter = emitter
        self._register_defaults()

    def _register_defaults(self) -> None:
        """Register default adapters."""
        self._factories["memory"] = MemoryAdapter

    def register(self, name: str, adapter_class: type[BaseAdapter]) -> None:
        """Register an adapter class."""
        if not (isinstance(adapter_class, type) and issubclass(adapter_class, BaseAdapter)):
            raise ConfigError(f"Adapter {name} must subclass BaseAdapter")
        self._factories[name.lower()] = adapter_class
        logger.debug("adapter.registered", name=name.lower(), cls=adapter_class.__name__)

    def create(self, name: str, config: dict[str, Any] | None = None, **kwargs: Any) -> BaseAdapter:
        """Create an adapter by type name."""
        name = name.lower()
        if name not in self._factories:
            raise ConfigError(f"Unknown adapter type: {name}")
        if self._emitter is not None:
            kwargs.setdefault("emitter", self._emitter)
        return self._factories[name](config, **kwargs)

    def has(self, name: str) -> bool:
        return name.lower() in self._factories

    def list_adapters(self) -> list[str]:
        """List registered adapter names."""
        return sorted(self._factories.keys())


__all__ = ["AdapterRegistry"]
