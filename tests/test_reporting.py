from __future__ import annotations

import warnings

from pypersist.config import StorageOptions
from pypersist.core.reporting import (
    ErrorContext,
    ErrorReporter,
    Operation,
    Stage,
    create_error_context,
    resolve_on_error,
)


def test_create_error_context_accepts_strings() -> None:
    context = create_error_context("persist", "write", "counter", "memory-kv", "counter")
    assert context == ErrorContext(
        stage=Stage.PERSIST,
        operation=Operation.WRITE,
        container_id="counter",
        adapter_kind="memory-kv",
        key="counter",
    )


def test_reporter_delivers_to_sink() -> None:
    seen: list[tuple[BaseException, ErrorContext]] = []
    reporter = ErrorReporter(lambda error, context: seen.append((error, context)))
    context = create_error_context(Stage.SYNC, Operation.READ, "c", "memory-kv")
    error = RuntimeError("boom")

    reporter.report(error, context)

    assert seen == [(error, context)]


def test_reporter_swallows_sink_failure() -> None:
    def sink(error: BaseException, context: ErrorContext) -> None:
        raise RuntimeError("sink broke")

    reporter = ErrorReporter(sink)
    reporter.report(ValueError("x"), create_error_context(Stage.HYDRATE, Operation.PARSE, "c", "session"))


def test_reporter_without_sink_is_silent() -> None:
    reporter = ErrorReporter()
    assert not reporter.has_sink
    reporter.report(ValueError("x"), create_error_context(Stage.HYDRATE, Operation.PARSE, "c", "session"))


def test_resolve_on_error_reads_structured_config_only() -> None:
    def sink(error: BaseException, context: ErrorContext) -> None:
        return None

    assert resolve_on_error(None) is None
    assert resolve_on_error("session") is None
    assert resolve_on_error({"buckets": [], "onError": sink}) is sink
    assert resolve_on_error(StorageOptions(on_error=sink)) is sink


def test_async_sink_coroutine_is_closed() -> None:
    started: list[bool] = []

    async def sink(error: BaseException, context: ErrorContext) -> None:
        started.append(True)

    reporter = ErrorReporter(sink)
    with warnings.catch_warnings():
        warnings.simplefilter("error", RuntimeWarning)
        reporter.report(ValueError("x"), create_error_context(Stage.SYNC, Operation.READ, "c", "memory-kv"))

    assert started == []
