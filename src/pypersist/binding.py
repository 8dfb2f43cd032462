"""Attach the persistence engine to one state container."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from typing import Any

from pypersist.config import Bucket, GlobalOptions
from pypersist.container import StateContainer
from pypersist.core.keys import generate_key
from pypersist.core.planner import (
    Plan,
    StorageConfig,
    build_plans,
    resolve_buckets,
    resolve_storage_options,
)
from pypersist.core.reporting import (
    ErrorReporter,
    ErrorSink,
    Operation,
    Stage,
    create_error_context,
    resolve_on_error,
)
from pypersist.core.slicer import resolve_state
from pypersist.exceptions import PersistError, WriteError
from pypersist.operations._payload import serialize
from pypersist.operations.hydration import perform_hydration
from pypersist.operations.persistence import PersistenceCoordinator
from pypersist.operations.sync import SyncCoordinator
from pypersist.ratelimit import Clock

_logger = logging.getLogger(__name__)


class StorageBinding:
    """Hydrates, persists and synchronizes one container.

    Container-level namespace, version, rate limit and error sink take
    precedence over :class:`GlobalOptions`.

    Usage::

        counter = ObservableState("counter", {"count": 0})
        async with StorageBinding(counter, "memory-kv") as binding:
            counter.set("count", 5)
            await binding.flush()
    """

    def __init__(
        self,
        container: StateContainer,
        storage: StorageConfig,
        *,
        global_options: GlobalOptions | None = None,
        clock: Clock | None = None,
    ) -> None:
        defaults = global_options or GlobalOptions()
        options = resolve_storage_options(storage)

        self._container = container
        self._namespace = defaults.namespace
        self._version = defaults.version
        rate_limit = defaults.rate_limit
        if options is not None:
            if options.namespace is not None:
                self._namespace = options.namespace
            if options.version is not None:
                self._version = options.version
            if options.rate_limit is not None:
                rate_limit = options.rate_limit

        buckets = resolve_buckets(options if options is not None else storage, defaults.default_adapter_kind)

        self._reporter = ErrorReporter(resolve_on_error(storage) or defaults.on_error)
        self._plans: list[Plan] = build_plans(buckets, container.container_id)

        self._skip_next_persist = False
        self._is_hydrating = False
        self._closed = False
        self._adapters_closed = False
        self._hydration: asyncio.Task[None] | None = None
        self._unsubscribe_container: Callable[[], None] | None = None

        self._persistence = PersistenceCoordinator(
            container,
            self._plans,
            reporter=self._reporter,
            namespace=self._namespace,
            version=self._version,
            global_rate_limit=rate_limit,
            clock=clock,
        )
        self._sync = SyncCoordinator(
            container,
            self._plans,
            suppress_next_persist=self.suppress_next_persist,
            is_hydrating=lambda: self._is_hydrating,
            reporter=self._reporter,
            namespace=self._namespace,
            version=self._version,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> StorageBinding:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def container(self) -> StateContainer:
        return self._container

    @property
    def plans(self) -> list[Plan]:
        return list(self._plans)

    @property
    def namespace(self) -> str | None:
        return self._namespace

    @property
    def version(self) -> str | None:
        return self._version

    @property
    def is_hydrating(self) -> bool:
        return self._is_hydrating

    @property
    def persistence(self) -> PersistenceCoordinator:
        return self._persistence

    @property
    def sync(self) -> SyncCoordinator:
        return self._sync

    def key_for(self, plan: Plan) -> str:
        return generate_key(self._container.container_id, plan.bucket, self._namespace, self._version)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def begin(self) -> asyncio.Task[None]:
        """Subscribe to the container and backends, and start hydration.

        Returns the hydration task.  Persistence is suspended until it
        completes.
        """
        if self._closed:
            raise PersistError("Binding is closed")
        if self._hydration is not None:
            return self._hydration
        self._unsubscribe_container = self._container.subscribe(self._on_container_change)
        self._sync.start()
        self._is_hydrating = True
        self._hydration = asyncio.get_running_loop().create_task(self._hydrate())
        return self._hydration

    async def start(self) -> None:
        """Like :meth:`begin`, but wait for hydration to finish."""
        await self.begin()

    async def _hydrate(self) -> None:
        try:
            await perform_hydration(
                self._container,
                self._plans,
                self._reporter,
                self._namespace,
                self._version,
                discard=lambda: self._closed,
            )
            if not self._closed:
                self._persistence.initialize_change_detection()
        finally:
            self._is_hydrating = False

    def suppress_next_persist(self) -> None:
        self._skip_next_persist = True

    def _on_container_change(self, _state: Mapping[str, Any]) -> None:
        if self._skip_next_persist:
            self._skip_next_persist = False
            return
        if self._is_hydrating:
            return
        self._persistence.on_mutation()

    async def flush(self) -> None:
        """Wait for hydration, started writes and started sync rounds."""
        if self._hydration is not None:
            await self._hydration
        await self._persistence.flush()
        await self._sync.flush()

    def teardown(self) -> None:
        """Stop reacting to changes: drop subscriptions and cancel timers.  Idempotent."""
        self._closed = True
        unsubscribe, self._unsubscribe_container = self._unsubscribe_container, None
        if unsubscribe is not None:
            unsubscribe()
        self._sync.teardown()
        self._persistence.close()

    async def close(self) -> None:
        """Tear down and release every adapter that supports closing."""
        self.teardown()
        if self._adapters_closed:
            return
        self._adapters_closed = True
        closers = []
        for plan in self._plans:
            close = getattr(plan.adapter, "close", None)
            if callable(close):
                closers.append(close())
        for result in await asyncio.gather(*closers, return_exceptions=True):
            if isinstance(result, Exception):
                _logger.debug("Adapter close failed", exc_info=result)


def create_storage_plugin(
    global_options: GlobalOptions | None = None,
    *,
    clock: Clock | None = None,
) -> Callable[[StateContainer, StorageConfig], StorageBinding | None]:
    """Return a factory that binds containers with shared global options.

    The factory starts the binding (hydration runs in the background) and
    returns it, or returns ``None`` when *storage* configures no buckets.
    Must be called from inside a running event loop.
    """

    def plugin(container: StateContainer, storage: StorageConfig) -> StorageBinding | None:
        if storage is None:
            return None
        binding = StorageBinding(container, storage, global_options=global_options, clock=clock)
        binding.begin()
        return binding

    return plugin


async def update_storage(
    bucket: Bucket | Mapping[str, Any] | str,
    container: StateContainer,
    on_error: ErrorSink | None = None,
    *,
    namespace: str | None = None,
    version: str | None = None,
) -> None:
    """Write *bucket*'s slice of *container* immediately, bypassing change detection.

    A temporary adapter is created for the write and closed afterwards.
    Failures are reported to *on_error* and never raised.
    """
    resolved = resolve_buckets(bucket)[0]
    plan = build_plans([resolved], container.container_id)[0]
    reporter = ErrorReporter(on_error)
    key = generate_key(container.container_id, plan.bucket, namespace, version)
    partial = resolve_state(container.state, plan.bucket.include, plan.bucket.exclude)
    try:
        await plan.adapter.set_item(key, serialize(partial))
    except Exception as exc:
        context = create_error_context(Stage.PERSIST, Operation.WRITE, container.container_id, plan.adapter_kind, key)
        error = WriteError(f"Writing {key!r} failed: {exc}", key=key, adapter_kind=plan.adapter_kind, context=context)
        error.__cause__ = exc
        reporter.report(error, context)
    finally:
        close = getattr(plan.adapter, "close", None)
        if callable(close):
            await close()
