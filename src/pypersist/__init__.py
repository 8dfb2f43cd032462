"""pypersist - Declarative, multi-backend persistence for observable state."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pypersist")
except PackageNotFoundError:
    __version__ = "0+local"
from pypersist.adapters import (
    FileAdapter,
    HttpAdapter,
    MemoryBackend,
    MemoryKVAdapter,
    MqttAdapter,
    SessionAdapter,
    StorageAdapter,
    SubscribableAdapter,
    create_adapter,
    register_adapter,
)
from pypersist.binding import StorageBinding, create_storage_plugin, update_storage
from pypersist.config import Bucket, GlobalOptions, RateLimit, StorageOptions
from pypersist.container import ObservableState, StateContainer
from pypersist.core import (
    ErrorContext,
    ErrorReporter,
    Operation,
    Plan,
    Stage,
    build_plans,
    create_error_context,
    generate_key,
    resolve_buckets,
    resolve_state,
)
from pypersist.exceptions import (
    AdapterError,
    ChannelError,
    ConfigurationError,
    ParseError,
    PersistError,
    ReadError,
    RemoveError,
    TransformError,
    WriteError,
)
from pypersist.operations import (
    PersistenceCoordinator,
    SyncCoordinator,
    deep_equal,
    perform_hydration,
    setup_unified_sync,
)
from pypersist.ratelimit import (
    Clock,
    Debouncer,
    LoopClock,
    RateLimitMode,
    ResolvedRateLimit,
    Throttler,
    resolve_rate_limit,
)

__all__ = [
    "AdapterError",
    "Bucket",
    "ChannelError",
    "Clock",
    "ConfigurationError",
    "Debouncer",
    "ErrorContext",
    "ErrorReporter",
    "FileAdapter",
    "GlobalOptions",
    "HttpAdapter",
    "LoopClock",
    "MemoryBackend",
    "MemoryKVAdapter",
    "MqttAdapter",
    "ObservableState",
    "Operation",
    "ParseError",
    "PersistError",
    "PersistenceCoordinator",
    "Plan",
    "RateLimit",
    "RateLimitMode",
    "ReadError",
    "RemoveError",
    "ResolvedRateLimit",
    "SessionAdapter",
    "Stage",
    "StateContainer",
    "StorageAdapter",
    "StorageBinding",
    "StorageOptions",
    "SubscribableAdapter",
    "SyncCoordinator",
    "Throttler",
    "TransformError",
    "WriteError",
    "__version__",
    "build_plans",
    "create_adapter",
    "create_error_context",
    "create_storage_plugin",
    "deep_equal",
    "generate_key",
    "perform_hydration",
    "register_adapter",
    "resolve_buckets",
    "resolve_rate_limit",
    "resolve_state",
    "setup_unified_sync",
    "update_storage",
]
