"""Asynchronous engine operations: hydration, persistence, synchronization."""

from pypersist.operations.hydration import perform_hydration
from pypersist.operations.persistence import (
    ChangeCache,
    PersistenceCoordinator,
    initialize_change_detection,
    persist_plan,
)
from pypersist.operations.sync import SyncCoordinator, deep_equal, setup_unified_sync

__all__ = [
    "ChangeCache",
    "PersistenceCoordinator",
    "SyncCoordinator",
    "deep_equal",
    "initialize_change_detection",
    "perform_hydration",
    "persist_plan",
    "setup_unified_sync",
]
