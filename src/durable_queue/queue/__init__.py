"""
Durable queue engines (store-backed with an in-process fallback).

Items go to the configured Redis list store while it is connected. When no
store is configured, or it is unreachable, they go to a per-engine fallback
buffer that is snapshotted to a persistence log and replayed on restart and
on reconnect.
"""

from __future__ import annotations

from pathlib import Path

from durable_queue.config import Settings, get_settings

from .buffer import FallbackBuffer
from .engine import QueueEngine
from .errors import (
    PersistenceError,
    PersistenceParseError,
    PersistenceReadError,
    PersistenceWriteError,
    QueueError,
    SerializationError,
    StoreOperationError,
    StoreUnavailableError,
)
from .interfaces import StoreAdapter, StoreBatch
from .options import QueueOptions, channel_log_file, normalize_log_file
from .redis_store import RedisStore
from .registry import QueueRegistry
from .stores import StoreRegistry, build_store_registry

__all__ = [
    "FallbackBuffer",
    "PersistenceError",
    "PersistenceParseError",
    "PersistenceReadError",
    "PersistenceWriteError",
    "QueueEngine",
    "QueueError",
    "QueueOptions",
    "QueueRegistry",
    "RedisStore",
    "SerializationError",
    "StoreAdapter",
    "StoreBatch",
    "StoreOperationError",
    "StoreRegistry",
    "StoreUnavailableError",
    "build_queue_registry",
    "build_store_registry",
    "channel_log_file",
    "normalize_log_file",
]


def build_queue_registry(
    *,
    stores: StoreRegistry | None = None,
    settings: Settings | None = None,
) -> QueueRegistry:
    """
    Return the queue registry configured from settings.

    QUEUE_STORE names the store engines bind to; it must be registered in
    `stores` (see build_store_registry) or engines run in-memory.
    """
    s = settings or get_settings()
    stores = stores if stores is not None else StoreRegistry()
    return QueueRegistry(
        QueueOptions.from_settings(s),
        get_store_cb=stores.get,
        root=Path(s.app_root),
    )
