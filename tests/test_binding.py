from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import TYPE_CHECKING, Any

import pytest

from pypersist import (
    Bucket,
    GlobalOptions,
    MemoryBackend,
    ObservableState,
    StorageBinding,
    StorageOptions,
    create_storage_plugin,
    update_storage,
)
from pypersist.adapters import SessionAdapter, register_adapter
from pypersist.core.reporting import ErrorContext, Operation, Stage
from pypersist.exceptions import PersistError, WriteError

if TYPE_CHECKING:
    from conftest import FakeClock


class _FailingAdapter(SessionAdapter):
    async def set_item(self, key: str, value: str) -> None:
        raise ConnectionError("offline")


register_adapter("test-failing", lambda options, container_id: _FailingAdapter())


def _stored(name: str, key: str) -> dict[str, Any] | None:
    raw = MemoryBackend.named(name).get(key)
    return None if raw is None else json.loads(raw)


@pytest.mark.asyncio
async def test_counter_survives_restart_and_reaches_other_tabs(clock: FakeClock) -> None:
    first = ObservableState("counter", {"count": 0})
    async with StorageBinding(first, "memory-kv", clock=clock) as binding:
        first.set("count", 5)
        await binding.flush()

        assert _stored("default", "counter") == {"count": 5}

        second = ObservableState("counter", {"count": 0})
        async with StorageBinding(second, "memory-kv", clock=clock) as other:
            assert second["count"] == 5

            second.set("count", 6)
            await other.flush()
            clock.advance(0.05)
            await binding.flush()

            assert first["count"] == 6


@pytest.mark.asyncio
async def test_absorbed_change_is_not_written_back(clock: FakeClock) -> None:
    backend = MemoryBackend.named("default")
    writes: list[str] = []
    container = ObservableState("counter", {"count": 0})

    async with StorageBinding(container, "memory-kv", clock=clock) as binding:
        remote = ObservableState("counter", {"count": 0})
        async with StorageBinding(remote, "memory-kv", clock=clock) as remote_binding:
            backend.add_listener("counter", 0, lambda: writes.append(backend.get("counter") or ""))
            remote.set("count", 9)
            await remote_binding.flush()
            clock.advance(0.05)
            await binding.flush()

            assert container["count"] == 9
            assert writes == ['{"count":9}']

            container.set("count", 10)
            await binding.flush()
            assert writes == ['{"count":9}', '{"count":10}']


@pytest.mark.asyncio
async def test_multi_bucket_namespace_and_version(clock: FakeClock, tmp_path: Path) -> None:
    storage = StorageOptions(
        namespace="app",
        version=2,
        buckets=[
            Bucket(adapter_kind="memory-kv", key_suffix="prefs", include=["theme"]),
            Bucket(
                adapter_kind="file",
                key_suffix="rest",
                exclude=["theme"],
                adapter_options={"directory": str(tmp_path)},
            ),
        ],
    )
    container = ObservableState("settings", {"theme": "light", "volume": 3})

    async with StorageBinding(container, storage, clock=clock) as binding:
        assert [binding.key_for(p) for p in binding.plans] == ["app:v2:settings:prefs", "app:v2:settings:rest"]
        container.patch({"theme": "dark", "volume": 7})
        await binding.flush()
        clock.advance(0.1)
        await binding.flush()

    assert _stored("default", "app:v2:settings:prefs") == {"theme": "dark"}
    saved = json.loads((tmp_path / "app%3Av2%3Asettings%3Arest.json").read_text())
    assert saved == {"volume": 7}


@pytest.mark.asyncio
async def test_container_options_override_global_options(clock: FakeClock) -> None:
    globals_ = GlobalOptions(namespace="global", version="1", default_adapter_kind="memory-kv")
    container = ObservableState("c", {"a": 0})

    binding = StorageBinding(container, {"buckets": [], "namespace": "local"}, global_options=globals_, clock=clock)

    assert binding.namespace == "local"
    assert binding.version == "1"
    assert binding.plans[0].adapter_kind == "memory-kv"
    await binding.close()


@pytest.mark.asyncio
async def test_first_mutation_after_hydration_is_persisted(clock: FakeClock) -> None:
    MemoryBackend.named("default").set("c", json.dumps({"a": 1}))
    container = ObservableState("c", {"a": 0})

    async with StorageBinding(container, "memory-kv", clock=clock) as binding:
        assert container["a"] == 1
        container.set("a", 2)
        await binding.flush()

    assert _stored("default", "c") == {"a": 2}


@pytest.mark.asyncio
async def test_mutations_during_hydration_are_not_persisted(clock: FakeClock) -> None:
    container = ObservableState("c", {"a": 0})
    binding = StorageBinding(container, "memory-kv", clock=clock)

    binding.begin()
    assert binding.is_hydrating
    container.set("a", 1)
    await binding.flush()

    assert _stored("default", "c") is None
    await binding.close()


@pytest.mark.asyncio
async def test_write_failures_reach_the_sink(clock: FakeClock) -> None:
    seen: list[tuple[BaseException, ErrorContext]] = []
    storage = {"buckets": [{"adapterKind": "test-failing"}], "onError": lambda e, c: seen.append((e, c))}
    container = ObservableState("c", {"a": 0})

    async with StorageBinding(container, storage, clock=clock) as binding:
        container.set("a", 1)
        await binding.flush()

    ((error, context),) = seen
    assert isinstance(error, WriteError)
    assert context.stage is Stage.PERSIST
    assert context.operation is Operation.WRITE
    assert context.adapter_kind == "test-failing"


@pytest.mark.asyncio
async def test_closed_binding_cannot_restart(clock: FakeClock) -> None:
    binding = StorageBinding(ObservableState("c", {}), "session", clock=clock)
    await binding.close()
    await binding.close()
    with pytest.raises(PersistError):
        binding.begin()


@pytest.mark.asyncio
async def test_plugin_binds_with_shared_globals(clock: FakeClock) -> None:
    plugin = create_storage_plugin(GlobalOptions(namespace="shop", default_adapter_kind="memory-kv"), clock=clock)

    assert plugin(ObservableState("ignored", {}), None) is None

    cart = ObservableState("cart", {"items": []})
    binding = plugin(cart, {"buckets": []})
    assert binding is not None
    await binding.flush()
    cart.set("items", ["apple"])
    await binding.flush()
    await binding.close()

    assert _stored("default", "shop:cart") == {"items": ["apple"]}


@pytest.mark.asyncio
async def test_update_storage_writes_immediately() -> None:
    container = ObservableState("c", {"a": 1, "b": 2})

    await update_storage({"adapterKind": "memory-kv", "include": ["a"]}, container, namespace="app")

    assert _stored("default", "app:c") == {"a": 1}


@pytest.mark.asyncio
async def test_update_storage_reports_failures() -> None:
    seen: list[tuple[BaseException, ErrorContext]] = []

    await update_storage(
        Bucket(adapter_kind="test-failing"),
        ObservableState("c", {"a": 1}),
        lambda error, context: seen.append((error, context)),
    )

    ((error, context),) = seen
    assert isinstance(error, WriteError)
    assert isinstance(error.__cause__, ConnectionError)
    assert context.key == "c"


@pytest.mark.asyncio
async def test_background_hydration_task_is_exposed(clock: FakeClock) -> None:
    MemoryBackend.named("default").set("c", json.dumps({"a": 3}))
    container = ObservableState("c", {"a": 0})
    binding = StorageBinding(container, "memory-kv", clock=clock)

    task = binding.begin()
    assert binding.begin() is task
    await asyncio.wait_for(task, timeout=1.0)

    assert container["a"] == 3
    await binding.close()


@pytest.mark.asyncio
async def test_hydration_finishing_after_close_is_discarded(clock: FakeClock) -> None:
    MemoryBackend.named("default").set("c", json.dumps({"a": 3}))
    container = ObservableState("c", {"a": 0})
    binding = StorageBinding(container, "memory-kv", clock=clock)

    task = binding.begin()
    await binding.close()
    await task

    assert container["a"] == 0
    assert not binding.is_hydrating
