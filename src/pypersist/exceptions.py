"""Custom exception hierarchy for pypersist."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pypersist.core.reporting import ErrorContext


class PersistError(Exception):
    """Base exception for all pypersist errors."""

    def __init__(self, message: str, *, context: ErrorContext | None = None) -> None:
        self.context = context
        super().__init__(message)


class ConfigurationError(PersistError, ValueError):
    """Invalid bucket or storage configuration.

    Raised synchronously (e.g. when a bucket declares both ``include`` and
    ``exclude``).  Never routed through the diagnostic sink.
    """


class AdapterError(PersistError):
    """A backend call failed."""

    def __init__(
        self,
        message: str,
        *,
        key: str = "",
        adapter_kind: str = "",
        context: ErrorContext | None = None,
    ) -> None:
        self.key = key
        self.adapter_kind = adapter_kind
        super().__init__(message, context=context)


class ReadError(AdapterError):
    """``get_item`` raised instead of resolving to ``None``."""


class WriteError(AdapterError):
    """``set_item`` was rejected by the backend."""


class RemoveError(AdapterError):
    """``remove_item`` was rejected by the backend."""


class ParseError(PersistError):
    """Persisted payload is not a JSON object."""


class TransformError(PersistError):
    """A ``transform_on_hydrate`` hook raised.

    The untransformed, filtered slice is used instead.
    """


class ChannelError(PersistError):
    """A synchronization round failed as a whole."""
