"""Observable state container boundary.

The engine only needs three things from a container: a state snapshot, an
atomic partial patch, and a change notification that fires once per
committed mutation.  :class:`ObservableState` is a small in-memory
implementation of that contract.
"""

from __future__ import annotations

import copy
from collections.abc import Callable, Mapping
from typing import Any, Protocol, runtime_checkable

Listener = Callable[[Mapping[str, Any]], None]


@runtime_checkable
class StateContainer(Protocol):
    @property
    def container_id(self) -> str: ...

    @property
    def state(self) -> Mapping[str, Any]: ...

    def patch(self, changes: Mapping[str, Any]) -> None: ...

    def subscribe(self, listener: Listener) -> Callable[[], None]: ...


class ObservableState:
    """Ordered field mapping with atomic patches and change listeners.

    Usage::

        counter = ObservableState("counter", {"count": 0})
        counter.set("count", 5)
    """

    def __init__(self, container_id: str, initial: Mapping[str, Any] | None = None) -> None:
        container_id = container_id.strip()
        if not container_id:
            raise ValueError("container_id must be non-empty")
        self._id = container_id
        self._state: dict[str, Any] = copy.deepcopy(dict(initial or {}))
        self._listeners: list[Listener] = []

    @property
    def container_id(self) -> str:
        return self._id

    @property
    def state(self) -> Mapping[str, Any]:
        return self._state

    def __getitem__(self, field: str) -> Any:
        return self._state[field]

    def get(self, field: str, default: Any = None) -> Any:
        return self._state.get(field, default)

    def snapshot(self) -> dict[str, Any]:
        return copy.deepcopy(self._state)

    def patch(self, changes: Mapping[str, Any]) -> None:
        """Apply *changes* as one mutation and notify listeners once."""
        if not changes:
            return
        self._state.update(copy.deepcopy(dict(changes)))
        self._notify()

    def set(self, field: str, value: Any) -> None:
        self.patch({field: value})

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self._state)
