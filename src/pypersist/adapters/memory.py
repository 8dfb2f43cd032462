"""In-process adapters.

``session``
    A private dict per adapter instance.  Data lives as long as the
    binding, nothing is shared and no change notifications exist.

``memory-kv``
    A named, process-wide :class:`MemoryBackend` shared by every adapter
    instance that points at it.  A write through one instance notifies
    subscribers of every *other* instance, the way a shared store notifies
    other clients but not the writer.
"""

from __future__ import annotations

import itertools
import logging
from collections.abc import Callable, Mapping
from typing import Any

from pypersist.adapters.base import Unsubscribe

_logger = logging.getLogger(__name__)

_origin_ids = itertools.count(1)


class SessionAdapter:
    """Adapter over a private dict."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    async def get_item(self, key: str) -> str | None:
        return self._data.get(key)

    async def set_item(self, key: str, value: str) -> None:
        self._data[key] = value

    async def remove_item(self, key: str) -> None:
        self._data.pop(key, None)


class MemoryBackend:
    """Shared key-value dict with per-key change listeners."""

    _named: dict[str, MemoryBackend] = {}

    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self._listeners: dict[str, list[tuple[int, Callable[[], None]]]] = {}

    @classmethod
    def named(cls, name: str = "default") -> MemoryBackend:
        backend = cls._named.get(name)
        if backend is None:
            backend = cls()
            cls._named[name] = backend
        return backend

    @classmethod
    def reset_named(cls) -> None:
        cls._named.clear()

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str, *, origin: int = 0) -> None:
        self._data[key] = value
        self._notify(key, origin)

    def delete(self, key: str, *, origin: int = 0) -> None:
        if self._data.pop(key, None) is not None:
            self._notify(key, origin)

    def keys(self) -> list[str]:
        return list(self._data)

    def add_listener(self, key: str, origin: int, callback: Callable[[], None]) -> Unsubscribe:
        entry = (origin, callback)
        self._listeners.setdefault(key, []).append(entry)

        def unsubscribe() -> None:
            listeners = self._listeners.get(key)
            if listeners and entry in listeners:
                listeners.remove(entry)
                if not listeners:
                    del self._listeners[key]

        return unsubscribe

    def _notify(self, key: str, origin: int) -> None:
        for listener_origin, callback in list(self._listeners.get(key, ())):
            if origin and listener_origin == origin:
                continue
            try:
                callback()
            except Exception:
                _logger.debug("Memory backend listener failed key=%s", key, exc_info=True)


class MemoryKVAdapter:
    """Adapter over a shared :class:`MemoryBackend`."""

    def __init__(self, backend: MemoryBackend | None = None) -> None:
        self._backend = backend if backend is not None else MemoryBackend.named()
        self._origin = next(_origin_ids)

    @property
    def backend(self) -> MemoryBackend:
        return self._backend

    async def get_item(self, key: str) -> str | None:
        return self._backend.get(key)

    async def set_item(self, key: str, value: str) -> None:
        self._backend.set(key, value, origin=self._origin)

    async def remove_item(self, key: str) -> None:
        self._backend.delete(key, origin=self._origin)

    def subscribe(self, key: str, on_change: Callable[[], None]) -> Unsubscribe:
        return self._backend.add_listener(key, self._origin, on_change)


def create_session_adapter(options: Mapping[str, Any], container_id: str) -> SessionAdapter:
    return SessionAdapter()


def create_memory_kv_adapter(options: Mapping[str, Any], container_id: str) -> MemoryKVAdapter:
    backend = options.get("backend")
    if isinstance(backend, MemoryBackend):
        return MemoryKVAdapter(backend)
    name = backend if isinstance(backend, str) and backend else "default"
    return MemoryKVAdapter(MemoryBackend.named(name))
