"""Include/exclude projection of container state."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pypersist.exceptions import ConfigurationError

State = Mapping[str, Any]


def _as_fields(value: str | list[str]) -> list[str]:
    if isinstance(value, str):
        return [value]
    return list(value)


def resolve_state(
    state: State,
    include: str | list[str] | None = None,
    exclude: str | list[str] | None = None,
) -> State:
    """Return the slice of *state* selected by *include* or *exclude*.

    - *include*: only the listed fields that exist in *state*, in listed order.
    - *exclude*: every field except the listed ones, in state order.
    - neither: *state* itself (same object, not a copy).

    Raises :class:`ConfigurationError` when both are given.
    """
    if include is not None and exclude is not None:
        raise ConfigurationError("Cannot use both include and exclude in the same bucket")

    if include is not None:
        return {field: state[field] for field in _as_fields(include) if field in state}

    if exclude is not None:
        excluded = set(_as_fields(exclude))
        return {field: value for field, value in state.items() if field not in excluded}

    return state
