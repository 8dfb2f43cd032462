"""Adapter capability contract and registry.

An adapter is anything with async ``get_item``/``set_item``/``remove_item``.
Adapters that can observe writes made by *other* clients additionally
implement ``subscribe``; the synchronization engine only looks at those.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any, Protocol, runtime_checkable

from pypersist.exceptions import ConfigurationError

Unsubscribe = Callable[[], None]
AdapterFactory = Callable[[Mapping[str, Any], str], "StorageAdapter"]


@runtime_checkable
class StorageAdapter(Protocol):
    """Structural key-value backend interface.

    ``get_item`` must never raise: an unavailable backend resolves to
    ``None``.  ``set_item`` and ``remove_item`` raise to signal failure.
    """

    async def get_item(self, key: str) -> str | None: ...

    async def set_item(self, key: str, value: str) -> None: ...

    async def remove_item(self, key: str) -> None: ...


@runtime_checkable
class SubscribableAdapter(StorageAdapter, Protocol):
    def subscribe(self, key: str, on_change: Callable[[], None]) -> Unsubscribe: ...


def is_subscribable(adapter: Any) -> bool:
    return callable(getattr(adapter, "subscribe", None))


_REGISTRY: dict[str, AdapterFactory] = {}


def register_adapter(kind: str, factory: AdapterFactory) -> None:
    """Make *kind* resolvable from bucket configuration.

    Registering an existing kind replaces its factory.
    """
    _REGISTRY[kind] = factory


def registered_kinds() -> list[str]:
    return sorted(_REGISTRY)


def create_adapter(kind: str, options: Mapping[str, Any], container_id: str) -> StorageAdapter:
    factory = _REGISTRY.get(kind)
    if factory is None:
        raise ConfigurationError(f"Unknown adapter kind {kind!r} (known: {', '.join(registered_kinds())})")
    return factory(options, container_id)
