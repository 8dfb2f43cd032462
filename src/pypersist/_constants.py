"""Internal constants shared across the library."""

#: Adapter kind used when neither the bucket nor the storage options name one.
FALLBACK_ADAPTER_KIND = "session"

#: Coalescing window for external change notifications (seconds).
SYNC_DEBOUNCE_S = 0.05

#: ``adapter_kind`` reported for errors of a synchronization batch as a whole.
UNIFIED_ADAPTER_KIND = "unified"

KEY_SEPARATOR = ":"

# ------------------------------------------------------------------
# Adapter-kind defaults
# ------------------------------------------------------------------

#: Options used when a bucket names a kind that needs structured options
#: but does not provide any.
DEFAULT_ADAPTER_OPTIONS: dict[str, dict[str, object]] = {
    "file": {"directory": ".pypersist"},
    "http": {"base_url": "http://localhost:8080/kv"},
    "mqtt": {"host": "localhost", "port": 1883},
}

#: Rate limits applied when neither the bucket nor the storage options set
#: one.  Values are ``(mode, delay_ms)``.
DEFAULT_ADAPTER_RATE_LIMITS: dict[str, tuple[str, float]] = {
    "file": ("debounce", 100.0),
    "http": ("throttle", 500.0),
    "mqtt": ("throttle", 250.0),
}
