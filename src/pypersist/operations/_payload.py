"""Shared read path: fetch, parse and slice one plan's persisted payload."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any

from pypersist.core.planner import Plan
from pypersist.core.reporting import ErrorReporter, Operation, Stage, create_error_context
from pypersist.core.slicer import resolve_state
from pypersist.exceptions import ParseError, ReadError

_logger = logging.getLogger(__name__)


def serialize(state: Mapping[str, Any]) -> str:
    """Canonical serialized form used for writes and change detection."""
    return json.dumps(state, separators=(",", ":"), ensure_ascii=False)


def parse_payload(raw: str) -> dict[str, Any]:
    """Decode a persisted payload, which must be a JSON object."""
    try:
        parsed = json.loads(raw)
    except ValueError as exc:
        raise ParseError(f"Persisted payload is not valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ParseError(f"Persisted payload is a JSON {type(parsed).__name__}, expected an object")
    return parsed


async def load_slice(
    plan: Plan,
    key: str,
    *,
    container_id: str,
    stage: Stage,
    reporter: ErrorReporter,
) -> Mapping[str, Any] | None:
    """Read *key* through *plan*'s adapter and return the filtered slice.

    Returns ``None`` when nothing is stored or the payload is unusable; the
    latter is reported with the given *stage*.
    """
    try:
        raw = await plan.adapter.get_item(key)
    except Exception as exc:
        context = create_error_context(stage, Operation.READ, container_id, plan.adapter_kind, key)
        error = ReadError(f"Reading {key!r} failed: {exc}", key=key, adapter_kind=plan.adapter_kind, context=context)
        error.__cause__ = exc
        reporter.report(error, context)
        return None

    if raw is None or raw == "":
        return None

    try:
        parsed = parse_payload(raw)
    except ParseError as exc:
        context = create_error_context(stage, Operation.PARSE, container_id, plan.adapter_kind, key)
        exc.context = context
        _logger.debug("Unusable payload stage=%s key=%s: %s", stage, key, exc)
        reporter.report(exc, context)
        return None

    return resolve_state(parsed, plan.bucket.include, plan.bucket.exclude)
