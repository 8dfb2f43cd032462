from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING, Any

import pytest

from pypersist.adapters import SessionAdapter
from pypersist.config import Bucket, RateLimit
from pypersist.container import ObservableState
from pypersist.core.planner import Plan
from pypersist.core.reporting import ErrorContext, ErrorReporter, Operation, Stage
from pypersist.exceptions import WriteError
from pypersist.operations.persistence import PersistenceCoordinator, persist_plan
from pypersist.ratelimit import RateLimitMode

if TYPE_CHECKING:
    from conftest import FakeClock


class _RecordingAdapter(SessionAdapter):
    def __init__(self) -> None:
        super().__init__()
        self.writes: list[tuple[str, str]] = []

    async def set_item(self, key: str, value: str) -> None:
        self.writes.append((key, value))
        await super().set_item(key, value)


class _FlakyAdapter(_RecordingAdapter):
    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures

    async def set_item(self, key: str, value: str) -> None:
        if self.failures:
            self.failures -= 1
            raise ConnectionError("offline")
        await super().set_item(key, value)


def _plan(adapter: SessionAdapter, **bucket: Any) -> Plan:
    return Plan(bucket=Bucket(adapter_kind="session", **bucket), adapter=adapter)


@pytest.mark.asyncio
async def test_persist_plan_skips_unchanged_payload() -> None:
    adapter = _RecordingAdapter()
    plan = _plan(adapter, include=["a"])
    container = ObservableState("c", {"a": 1, "b": 2})
    cache: dict[Plan, str] = {}

    await persist_plan(plan, container, cache)
    container.set("b", 3)
    await persist_plan(plan, container, cache)

    assert adapter.writes == [("c", '{"a":1}')]
    assert cache[plan] == '{"a":1}'


@pytest.mark.asyncio
async def test_failed_write_leaves_cache_and_is_retried() -> None:
    adapter = _FlakyAdapter(failures=1)
    plan = _plan(adapter)
    container = ObservableState("c", {"a": 1})
    cache: dict[Plan, str] = {}
    seen: list[tuple[BaseException, ErrorContext]] = []
    reporter = ErrorReporter(lambda error, context: seen.append((error, context)))

    await persist_plan(plan, container, cache, reporter)
    assert plan not in cache
    ((error, context),) = seen
    assert isinstance(error, WriteError)
    assert isinstance(error.__cause__, ConnectionError)
    assert context.stage is Stage.PERSIST
    assert context.operation is Operation.WRITE
    assert context.key == "c"

    await persist_plan(plan, container, cache, reporter)
    assert adapter.writes == [("c", '{"a":1}')]


@pytest.mark.asyncio
async def test_change_detection_seeded_after_hydration() -> None:
    adapter = _RecordingAdapter()
    container = ObservableState("c", {"a": 1})
    coordinator = PersistenceCoordinator(container, [_plan(adapter)])
    coordinator.initialize_change_detection()

    coordinator.on_mutation()
    await coordinator.flush()

    assert adapter.writes == []


@pytest.mark.asyncio
async def test_immediate_bucket_writes_every_change() -> None:
    adapter = _RecordingAdapter()
    container = ObservableState("c", {"count": 0})
    coordinator = PersistenceCoordinator(container, [_plan(adapter)])

    for value in (1, 2):
        container.set("count", value)
        coordinator.on_mutation()
        await coordinator.flush()

    assert [json.loads(v)["count"] for _, v in adapter.writes] == [1, 2]


@pytest.mark.asyncio
async def test_debounced_bucket_writes_final_state_once(clock: FakeClock) -> None:
    adapter = _RecordingAdapter()
    container = ObservableState("c", {"count": 0})
    plan = _plan(adapter, rate_limit=RateLimit(debounce_ms=100))
    coordinator = PersistenceCoordinator(container, [plan], clock=clock)
    assert coordinator.rate_limit_for(plan).mode is RateLimitMode.DEBOUNCE

    for value in range(1, 6):
        container.set("count", value)
        coordinator.on_mutation()
        clock.advance(0.01)
    await coordinator.flush()
    assert adapter.writes == []

    clock.advance(0.1)
    await coordinator.flush()
    assert adapter.writes == [("c", '{"count":5}')]


@pytest.mark.asyncio
async def test_throttled_bucket_writes_leading_and_trailing(clock: FakeClock) -> None:
    adapter = _RecordingAdapter()
    container = ObservableState("c", {"count": 0})
    plan = _plan(adapter, rate_limit=RateLimit(throttle_ms=100))
    coordinator = PersistenceCoordinator(container, [plan], clock=clock)

    container.set("count", 1)
    coordinator.on_mutation()
    await coordinator.flush()
    clock.advance(0.01)
    container.set("count", 2)
    coordinator.on_mutation()
    container.set("count", 3)
    coordinator.on_mutation()
    await coordinator.flush()
    assert [json.loads(v)["count"] for _, v in adapter.writes] == [1]

    clock.advance(0.1)
    await coordinator.flush()
    assert [json.loads(v)["count"] for _, v in adapter.writes] == [1, 3]


@pytest.mark.asyncio
async def test_global_rate_limit_applies_without_bucket_limit(clock: FakeClock) -> None:
    adapter = _RecordingAdapter()
    container = ObservableState("c", {"count": 0})
    coordinator = PersistenceCoordinator(
        container, [_plan(adapter)], global_rate_limit=RateLimit(debounce_ms=50), clock=clock
    )

    container.set("count", 1)
    coordinator.on_mutation()
    await coordinator.flush()
    assert adapter.writes == []

    clock.advance(0.05)
    await coordinator.flush()
    assert adapter.writes == [("c", '{"count":1}')]


@pytest.mark.asyncio
async def test_close_cancels_pending_writes(clock: FakeClock) -> None:
    adapter = _RecordingAdapter()
    container = ObservableState("c", {"count": 0})
    coordinator = PersistenceCoordinator(
        container, [_plan(adapter, rate_limit=RateLimit(debounce_ms=100))], clock=clock
    )

    container.set("count", 1)
    coordinator.on_mutation()
    coordinator.close()
    clock.advance(1.0)
    await coordinator.flush()

    assert coordinator.closed
    assert adapter.writes == []


class _SlowFirstWriteAdapter(_RecordingAdapter):
    def __init__(self) -> None:
        super().__init__()
        self.calls = 0

    async def set_item(self, key: str, value: str) -> None:
        self.calls += 1
        if self.calls == 1:
            await asyncio.sleep(0.05)
        await super().set_item(key, value)


@pytest.mark.asyncio
async def test_mutation_during_slow_write_is_persisted_after_it() -> None:
    adapter = _SlowFirstWriteAdapter()
    container = ObservableState("c", {"count": 0})
    plan = _plan(adapter)
    coordinator = PersistenceCoordinator(container, [plan])

    container.set("count", 1)
    coordinator.on_mutation()
    await asyncio.sleep(0)
    container.set("count", 2)
    coordinator.on_mutation()
    await coordinator.flush()

    assert [json.loads(v)["count"] for _, v in adapter.writes] == [1, 2]
    assert json.loads(await adapter.get_item("c") or "{}") == {"count": 2}
    assert coordinator.cache[plan] == '{"count":2}'
