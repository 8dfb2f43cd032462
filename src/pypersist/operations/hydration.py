"""Load persisted state into a freshly created container."""

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from pypersist.container import StateContainer
from pypersist.core.keys import generate_key
from pypersist.core.planner import Plan
from pypersist.core.reporting import NULL_REPORTER, ErrorReporter, Operation, Stage, create_error_context
from pypersist.exceptions import TransformError
from pypersist.operations._payload import load_slice

_logger = logging.getLogger(__name__)


def _apply_transform(
    plan: Plan,
    key: str,
    filtered: Mapping[str, Any],
    container: StateContainer,
    reporter: ErrorReporter,
) -> Mapping[str, Any]:
    hook = plan.bucket.transform_on_hydrate
    if hook is None:
        return filtered

    candidate = copy.deepcopy(dict(filtered))
    try:
        result = hook(candidate, container)
    except Exception as exc:
        context = create_error_context(
            Stage.HYDRATE, Operation.TRANSFORM, container.container_id, plan.adapter_kind, key
        )
        error = TransformError(f"transform_on_hydrate failed for {key!r}: {exc}", context=context)
        error.__cause__ = exc
        reporter.report(error, context)
        return filtered

    if result is None:
        # In-place edits of the copy are honored.
        return candidate
    if isinstance(result, Mapping):
        return result
    _logger.debug("transform_on_hydrate for %s returned %s; keeping slice", key, type(result).__name__)
    return filtered


async def _hydrate_plan(
    plan: Plan,
    container: StateContainer,
    reporter: ErrorReporter,
    namespace: str | None,
    version: str | None,
) -> Mapping[str, Any] | None:
    key = generate_key(container.container_id, plan.bucket, namespace, version)
    filtered = await load_slice(
        plan,
        key,
        container_id=container.container_id,
        stage=Stage.HYDRATE,
        reporter=reporter,
    )
    if filtered is None:
        return None
    return _apply_transform(plan, key, filtered, container, reporter)


async def perform_hydration(
    container: StateContainer,
    plans: Sequence[Plan],
    reporter: ErrorReporter = NULL_REPORTER,
    namespace: str | None = None,
    version: str | None = None,
    *,
    discard: Callable[[], bool] | None = None,
) -> None:
    """Read every plan concurrently and apply the merged result in one patch.

    Contributions are merged in declared plan order, so when two buckets
    carry the same field the later-declared bucket wins regardless of which
    read finished first.  When *discard* returns true once the reads have
    settled, nothing is applied.
    """
    results = await asyncio.gather(
        *(_hydrate_plan(plan, container, reporter, namespace, version) for plan in plans),
        return_exceptions=True,
    )

    if discard is not None and discard():
        _logger.debug("Hydration of %s discarded", container.container_id)
        return

    merged: dict[str, Any] = {}
    for plan, result in zip(plans, results, strict=True):
        if isinstance(result, BaseException):
            if not isinstance(result, Exception):
                raise result
            _logger.debug("Hydration of %s bucket failed", plan.adapter_kind, exc_info=result)
            continue
        if result:
            merged.update(result)

    if merged:
        _logger.debug("Hydrating %s with %d field(s)", container.container_id, len(merged))
        container.patch(merged)
