"""Name-based registry for layers instantiated from model descriptions."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, TypeVar

LOGGER = logging.getLogger("proposax.layers")

T = TypeVar("T")


class LayerRegistry:
    """Maps layer type names to classes exposing ``from_config``."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._entries: dict[str, type[Any]] = {}

    def __contains__(self, type_name: str) -> bool:
        return type_name in self._entries

    def names(self) -> list[str]:
        return sorted(self._entries)

    def register(self, type_name: str) -> Callable[[type[T]], type[T]]:
        """Class decorator registering ``cls`` under ``type_name``."""

        def decorator(cls: type[T]) -> type[T]:
            if type_name in self._entries:
                raise KeyError(f"Layer type {type_name!r} is already registered in {self.name}.")
            self._entries[type_name] = cls
            return cls

        return decorator

    def get(self, type_name: str) -> type[Any]:
        try:
            return self._entries[type_name]
        except KeyError:
            raise KeyError(f"Unknown layer type {type_name!r}; registered types: {self.names()}.") from None

    def build(self, config: Any) -> Any:
        """Instantiate the layer named by ``config.type``."""
        type_name = config["type"]
        LOGGER.debug("Building %s layer from %s.", type_name, self.name)
        return self.get(type_name).from_config(config)


LAYER_REGISTRY = LayerRegistry("LAYER_REGISTRY")


def build_layer(config: Any) -> Any:
    """Build a layer from a ``ConfigDict`` model description."""
    return LAYER_REGISTRY.build(config)


__all__ = ["LAYER_REGISTRY", "LayerRegistry", "build_layer"]
