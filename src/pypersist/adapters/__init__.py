"""Storage backends.

Built-in kinds: ``session``, ``memory-kv``, ``file``, ``http``, ``mqtt``.
Additional kinds can be made available with :func:`register_adapter`.
"""

from pypersist.adapters.base import (
    StorageAdapter,
    SubscribableAdapter,
    Unsubscribe,
    create_adapter,
    is_subscribable,
    register_adapter,
    registered_kinds,
)
from pypersist.adapters.file import FileAdapter, create_file_adapter
from pypersist.adapters.http import HttpAdapter, create_http_adapter
from pypersist.adapters.memory import (
    MemoryBackend,
    MemoryKVAdapter,
    SessionAdapter,
    create_memory_kv_adapter,
    create_session_adapter,
)
from pypersist.adapters.mqtt import MqttAdapter, create_mqtt_adapter

register_adapter("session", create_session_adapter)
register_adapter("memory-kv", create_memory_kv_adapter)
register_adapter("file", create_file_adapter)
register_adapter("http", create_http_adapter)
register_adapter("mqtt", create_mqtt_adapter)

__all__ = [
    "FileAdapter",
    "HttpAdapter",
    "MemoryBackend",
    "MemoryKVAdapter",
    "MqttAdapter",
    "SessionAdapter",
    "StorageAdapter",
    "SubscribableAdapter",
    "Unsubscribe",
    "create_adapter",
    "is_subscribable",
    "register_adapter",
    "registered_kinds",
]
