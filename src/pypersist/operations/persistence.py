"""Write container mutations back to their backends."""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Callable, Coroutine, Sequence
from typing import Any

from pypersist._redact import redact_for_log
from pypersist.config import RateLimit
from pypersist.container import StateContainer
from pypersist.core.keys import generate_key
from pypersist.core.planner import Plan
from pypersist.core.reporting import NULL_REPORTER, ErrorReporter, Operation, Stage, create_error_context
from pypersist.core.slicer import resolve_state
from pypersist.exceptions import WriteError
from pypersist.operations._payload import serialize
from pypersist.ratelimit import (
    Clock,
    Debouncer,
    ResolvedRateLimit,
    Throttler,
    create_limiter,
    resolve_rate_limit,
)

_logger = logging.getLogger(__name__)

ChangeCache = dict[Plan, str]


async def persist_plan(
    plan: Plan,
    container: StateContainer,
    cache: ChangeCache,
    reporter: ErrorReporter = NULL_REPORTER,
    namespace: str | None = None,
    version: str | None = None,
) -> None:
    """Write *plan*'s slice if it differs from the last successful write.

    The cache entry only moves after ``set_item`` succeeds; a failed write
    leaves it untouched so the next mutation retries.
    """
    partial = resolve_state(container.state, plan.bucket.include, plan.bucket.exclude)
    serialized = serialize(partial)
    if cache.get(plan) == serialized:
        return

    key = generate_key(container.container_id, plan.bucket, namespace, version)
    _logger.debug("Persisting key=%s adapter=%s payload=%s", key, plan.adapter_kind, redact_for_log(serialized))
    try:
        await plan.adapter.set_item(key, serialized)
    except Exception as exc:
        context = create_error_context(
            Stage.PERSIST, Operation.WRITE, container.container_id, plan.adapter_kind, key
        )
        if isinstance(exc, WriteError):
            error = exc
            error.context = context
        else:
            error = WriteError(
                f"Writing {key!r} failed: {exc}",
                key=key,
                adapter_kind=plan.adapter_kind,
                context=context,
            )
            error.__cause__ = exc
        _logger.debug("Write failed key=%s", key, exc_info=True)
        reporter.report(error, context)
        return
    cache[plan] = serialized


def initialize_change_detection(plans: Sequence[Plan], container: StateContainer, cache: ChangeCache) -> None:
    """Seed *cache* with the current slices so hydrated values are not rewritten."""
    for plan in plans:
        partial = resolve_state(container.state, plan.bucket.include, plan.bucket.exclude)
        cache[plan] = serialize(partial)


class PersistenceCoordinator:
    """Per-container persistence state: change cache, limiters and in-flight writes.

    Plans whose effective rate limit is identical share one limiter; each
    plan still runs its own change detection when that limiter fires.
    Must be driven from inside a running event loop.
    """

    def __init__(
        self,
        container: StateContainer,
        plans: Sequence[Plan],
        *,
        reporter: ErrorReporter = NULL_REPORTER,
        namespace: str | None = None,
        version: str | None = None,
        global_rate_limit: RateLimit | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._container = container
        self._plans = list(plans)
        self._reporter = reporter
        self._namespace = namespace
        self._version = version
        self._cache: ChangeCache = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._in_flight: set[Plan] = set()
        self._dirty: set[Plan] = set()
        self._closed = False

        groups: dict[ResolvedRateLimit, list[Plan]] = {}
        for plan in self._plans:
            groups.setdefault(resolve_rate_limit(plan.bucket, global_rate_limit), []).append(plan)

        self._limits = {plan: limit for limit, group in groups.items() for plan in group}
        self._triggers: list[Callable[[], None]] = [
            create_limiter(functools.partial(self._persist_group, tuple(group)), limit, clock=clock)
            for limit, group in groups.items()
        ]

    @property
    def cache(self) -> ChangeCache:
        return self._cache

    @property
    def closed(self) -> bool:
        return self._closed

    def rate_limit_for(self, plan: Plan) -> ResolvedRateLimit:
        return self._limits[plan]

    def initialize_change_detection(self) -> None:
        initialize_change_detection(self._plans, self._container, self._cache)

    def on_mutation(self) -> None:
        """Feed one committed container mutation to every limiter."""
        if self._closed:
            return
        for trigger in self._triggers:
            trigger()

    def _persist_group(self, plans: tuple[Plan, ...]) -> None:
        if self._closed:
            return
        for plan in plans:
            if plan in self._in_flight:
                # Picked up by the running write once it settles.
                self._dirty.add(plan)
                continue
            self._in_flight.add(plan)
            self._spawn(self._write_plan(plan))

    async def _write_plan(self, plan: Plan) -> None:
        """Write *plan* until no trigger arrived during the last write."""
        try:
            while True:
                self._dirty.discard(plan)
                await persist_plan(
                    plan,
                    self._container,
                    self._cache,
                    self._reporter,
                    self._namespace,
                    self._version,
                )
                if self._closed or plan not in self._dirty:
                    return
                _logger.debug("Re-persisting %s after concurrent mutation", plan.adapter_kind)
        finally:
            self._in_flight.discard(plan)
            self._dirty.discard(plan)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def flush(self) -> None:
        """Wait until every write started so far has settled."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def close(self) -> None:
        """Cancel pending limiter timers.  Writes already started finish on their own."""
        self._closed = True
        for trigger in self._triggers:
            if isinstance(trigger, (Debouncer, Throttler)):
                trigger.cancel()
