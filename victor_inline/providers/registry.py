# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Model provider registry.

Maps a provider identifier to a constructor. Registries are plain
objects: build one, register backends on it and hand it to the
pipeline.

Usage:
    registry = create_default_registry()
    registry.register("my-backend", MyBackendProvider)
    provider = registry.create("my-backend", base_url="http://localhost:11434")
"""

import logging
from typing import Any, Callable, Dict, List

from victor_inline.providers.base import ModelProvider

logger = logging.getLogger(__name__)

ProviderFactory = Callable[..., ModelProvider]


class ModelProviderRegistry:
    """Registry of model provider constructors."""

    def __init__(self):
        self._factories: Dict[str, ProviderFactory] = {}

    def register(self, name: str, factory: ProviderFactory) -> None:
        """Register a provider constructor.

        Args:
            name: Provider identifier (e.g., "chat")
            factory: Class or function building the provider
        """
        if not callable(factory):
            raise TypeError(f"Provider factory for {name!r} must be callable")
        if name in self._factories:
            logger.warning(f"Overwriting existing model provider: {name}")
        self._factories[name] = factory
        logger.debug(f"Registered model provider: {name}")

    def get(self, name: str) -> ProviderFactory:
        """Get a provider constructor by name.

        Raises:
            KeyError: If provider not found
        """
        if name not in self._factories:
            available = ", ".join(sorted(self._factories))
            raise KeyError(
                f"Unknown model provider: {name}. Available: {available if available else 'none'}"
            )
        return self._factories[name]

    def create(self, name: str, **kwargs: Any) -> ModelProvider:
        """Create a provider instance.

        Args:
            name: Provider identifier
            **kwargs: Constructor arguments

        Returns:
            The provider

        Raises:
            KeyError: If provider not found
            TypeError: If the constructed object is not a ModelProvider
        """
        provider = self.get(name)(**kwargs)
        if not isinstance(provider, ModelProvider):
            raise TypeError(f"Factory for {name!r} returned {type(provider).__name__}, not a ModelProvider")
        return provider

    def unregister(self, name: str) -> bool:
        return self._factories.pop(name, None) is not None

    def is_registered(self, name: str) -> bool:
        return name in self._factories

    def list_providers(self) -> List[str]:
        return sorted(self._factories)

    def clear(self) -> None:
        self._factories.clear()


def create_default_registry() -> ModelProviderRegistry:
    """Build a registry with the built-in adapters registered."""
    from victor_inline.providers.chat import ChatModelProvider, FunctionModelProvider

    registry = ModelProviderRegistry()
    registry.register("chat", ChatModelProvider)
    registry.register("function", FunctionModelProvider)
    return registry
