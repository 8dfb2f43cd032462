"""Absorb backend changes made by other processes.

Only plans whose adapter implements ``subscribe`` take part.  Notifications
from any number of keys are coalesced into one short debounce window; when
it closes, every pending key is re-read and the fields that differ from the
container are applied in a single patch.  Right before that patch the
persistence side is told to skip the next mutation, so the absorbed change
is not written straight back.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Callable, Coroutine, Mapping, Sequence
from typing import Any

from pypersist._constants import SYNC_DEBOUNCE_S, UNIFIED_ADAPTER_KIND
from pypersist.adapters import Unsubscribe, is_subscribable
from pypersist.container import StateContainer
from pypersist.core.keys import generate_key
from pypersist.core.planner import Plan
from pypersist.core.reporting import NULL_REPORTER, ErrorReporter, Operation, Stage, create_error_context
from pypersist.exceptions import ChannelError, ReadError
from pypersist.operations._payload import load_slice
from pypersist.ratelimit import Clock, Debouncer

_logger = logging.getLogger(__name__)


def deep_equal(a: Any, b: Any) -> bool:
    """Structural equality over JSON-like values.

    Unlike ``==``, ``True`` never equals ``1``; lists and tuples compare
    element-wise.
    """
    if isinstance(a, bool) or isinstance(b, bool):
        return type(a) is type(b) and a == b
    if isinstance(a, Mapping) and isinstance(b, Mapping):
        if a.keys() != b.keys():
            return False
        return all(deep_equal(a[k], b[k]) for k in a)
    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        return len(a) == len(b) and all(deep_equal(x, y) for x, y in zip(a, b, strict=True))
    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return a == b
    return type(a) is type(b) and a == b


class SyncCoordinator:
    """Per-container subscription, coalescing and merge of external changes."""

    def __init__(
        self,
        container: StateContainer,
        plans: Sequence[Plan],
        *,
        suppress_next_persist: Callable[[], None],
        is_hydrating: Callable[[], bool],
        reporter: ErrorReporter = NULL_REPORTER,
        namespace: str | None = None,
        version: str | None = None,
        clock: Clock | None = None,
        window: float = SYNC_DEBOUNCE_S,
    ) -> None:
        self._container = container
        self._reporter = reporter
        self._suppress_next_persist = suppress_next_persist
        self._is_hydrating = is_hydrating

        # Distinct plans may resolve to the same key; they share one subscription.
        self._groups: dict[str, list[Plan]] = {}
        for plan in plans:
            if not is_subscribable(plan.adapter):
                continue
            key = generate_key(container.container_id, plan.bucket, namespace, version)
            self._groups.setdefault(key, []).append(plan)

        self._pending: dict[str, None] = {}
        self._unsubscribes: list[Unsubscribe] = []
        self._window = Debouncer(self._on_window_closed, window, clock=clock)
        self._tasks: set[asyncio.Task[None]] = set()
        self._closed = False

    @property
    def keys(self) -> list[str]:
        return list(self._groups)

    @property
    def pending(self) -> list[str]:
        return list(self._pending)

    def start(self) -> None:
        for key, group in self._groups.items():
            adapter: Any = group[0].adapter
            self._unsubscribes.append(adapter.subscribe(key, functools.partial(self._on_notify, key)))
        if self._groups:
            _logger.debug("Sync subscribed container=%s keys=%s", self._container.container_id, self.keys)

    def _on_notify(self, key: str) -> None:
        if self._closed:
            return
        self._pending[key] = None
        self._window()

    def _on_window_closed(self) -> None:
        if self._closed:
            return
        self._spawn(self.perform_sync())

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def perform_sync(self) -> None:
        """Run one synchronization round over the pending keys.

        While hydration is running the round is skipped and the keys stay
        pending for the next notification.
        """
        if self._is_hydrating():
            _logger.debug("Sync round skipped during hydration container=%s", self._container.container_id)
            return
        keys = list(self._pending)
        self._pending.clear()
        if not keys:
            return

        container_id = self._container.container_id
        try:
            jobs = [(key, plan) for key in keys for plan in self._groups.get(key, ())]
            results = await asyncio.gather(
                *(
                    load_slice(plan, key, container_id=container_id, stage=Stage.SYNC, reporter=self._reporter)
                    for key, plan in jobs
                ),
                return_exceptions=True,
            )
            if self._closed:
                return

            current = self._container.state
            changes: dict[str, Any] = {}
            for (key, plan), result in zip(jobs, results, strict=True):
                if isinstance(result, BaseException):
                    if not isinstance(result, Exception):
                        raise result
                    self._report_read_failure(key, plan, result)
                    continue
                if not result:
                    continue
                for field, value in result.items():
                    if field not in current or not deep_equal(current[field], value):
                        changes[field] = value

            if changes:
                _logger.debug("Sync applying %d field(s) to %s", len(changes), container_id)
                self._suppress_next_persist()
                self._container.patch(changes)
        except Exception as exc:
            context = create_error_context(Stage.SYNC, Operation.CHANNEL, container_id, UNIFIED_ADAPTER_KIND, container_id)
            error = ChannelError(f"Synchronization round failed: {exc}", context=context)
            error.__cause__ = exc
            _logger.debug("Sync round failed container=%s", container_id, exc_info=True)
            self._reporter.report(error, context)

    def _report_read_failure(self, key: str, plan: Plan, exc: Exception) -> None:
        context = create_error_context(
            Stage.SYNC, Operation.READ, self._container.container_id, plan.adapter_kind, key
        )
        error = ReadError(f"Re-reading {key!r} failed: {exc}", key=key, adapter_kind=plan.adapter_kind, context=context)
        error.__cause__ = exc
        self._reporter.report(error, context)

    async def flush(self) -> None:
        """Wait until every started round has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def teardown(self) -> None:
        """Cancel the pending window and drop every subscription.  Idempotent."""
        self._closed = True
        self._window.cancel()
        unsubscribes, self._unsubscribes = self._unsubscribes, []
        for unsubscribe in unsubscribes:
            try:
                unsubscribe()
            except Exception:
                _logger.debug("Unsubscribe failed", exc_info=True)
        self._pending.clear()


def setup_unified_sync(
    container: StateContainer,
    plans: Sequence[Plan],
    reporter: ErrorReporter = NULL_REPORTER,
    namespace: str | None = None,
    version: str | None = None,
    suppress_next_persist: Callable[[], None] = lambda: None,
    is_hydrating: Callable[[], bool] = lambda: False,
    clock: Clock | None = None,
) -> Callable[[], None]:
    """Subscribe to every notifying backend and return the teardown callable."""
    coordinator = SyncCoordinator(
        container,
        plans,
        suppress_next_persist=suppress_next_persist,
        is_hydrating=is_hydrating,
        reporter=reporter,
        namespace=namespace,
        version=version,
        clock=clock,
    )
    coordinator.start()
    return coordinator.teardown
