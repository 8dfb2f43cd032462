"""Planning layer.

Pure, synchronous building blocks: bucket resolution, state slicing, key
derivation and error-context reporting.  Nothing here performs I/O.
"""

from pypersist.core.keys import generate_key
from pypersist.core.planner import Plan, build_plans, resolve_buckets, resolve_storage_options
from pypersist.core.reporting import (
    NULL_REPORTER,
    ErrorContext,
    ErrorReporter,
    ErrorSink,
    Operation,
    Stage,
    create_error_context,
    resolve_on_error,
)
from pypersist.core.slicer import resolve_state

__all__ = [
    "NULL_REPORTER",
    "ErrorContext",
    "ErrorReporter",
    "ErrorSink",
    "Operation",
    "Plan",
    "Stage",
    "build_plans",
    "create_error_context",
    "generate_key",
    "resolve_buckets",
    "resolve_on_error",
    "resolve_state",
    "resolve_storage_options",
]
