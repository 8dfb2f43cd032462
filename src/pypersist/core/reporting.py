"""Structured error contexts and the diagnostic sink wrapper."""

from __future__ import annotations

import inspect
import logging
from collections.abc import Callable, Mapping
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict

_logger = logging.getLogger(__name__)


class Stage(StrEnum):
    HYDRATE = "hydrate"
    PERSIST = "persist"
    SYNC = "sync"


class Operation(StrEnum):
    READ = "read"
    WRITE = "write"
    REMOVE = "remove"
    PARSE = "parse"
    TRANSFORM = "transform"
    CHANNEL = "channel"


class ErrorContext(BaseModel):
    """Where a non-fatal failure happened."""

    model_config = ConfigDict(frozen=True)

    stage: Stage
    operation: Operation
    container_id: str
    adapter_kind: str
    key: str | None = None


ErrorSink = Callable[[BaseException, ErrorContext], Any]


def create_error_context(
    stage: Stage | str,
    operation: Operation | str,
    container_id: str,
    adapter_kind: str,
    key: str | None = None,
) -> ErrorContext:
    return ErrorContext(
        stage=Stage(stage),
        operation=Operation(operation),
        container_id=container_id,
        adapter_kind=adapter_kind,
        key=key,
    )


def resolve_on_error(config: Any) -> ErrorSink | None:
    """Extract the container-level sink from storage configuration.

    Only structured configuration carries a sink; bare adapter names,
    buckets and bucket lists never do.
    """
    if config is None or isinstance(config, str):
        return None
    if isinstance(config, Mapping):
        sink = config.get("on_error", config.get("onError"))
    else:
        sink = getattr(config, "on_error", None)
    return sink if callable(sink) else None


class ErrorReporter:
    """Fire-and-forget dispatch to an optional diagnostic sink.

    Without a sink every report is silently absorbed.  Whatever the sink
    returns is ignored and whatever it raises is logged at DEBUG and dropped.
    Sinks are called synchronously; a coroutine returned by an ``async def``
    sink is closed without being run.
    """

    def __init__(self, sink: ErrorSink | None = None) -> None:
        self._sink = sink

    @property
    def has_sink(self) -> bool:
        return self._sink is not None

    def report(self, error: BaseException, context: ErrorContext) -> None:
        if self._sink is None:
            return
        try:
            result = self._sink(error, context)
        except Exception:
            _logger.debug(
                "Error sink raised while reporting stage=%s operation=%s key=%s",
                context.stage,
                context.operation,
                context.key,
                exc_info=True,
            )
        else:
            if inspect.iscoroutine(result):
                _logger.debug("Error sink returned a coroutine; async sinks are not awaited")
                result.close()


NULL_REPORTER = ErrorReporter()
