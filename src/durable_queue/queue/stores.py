from __future__ import annotations

import asyncio
from typing import Any

from durable_queue.config import Settings, get_settings
from durable_queue.utils.log import logger

from .interfaces import StoreAdapter
from .redis_store import RedisStore


class StoreRegistry:
    """
    Named durable stores available to queue engines.

    `get` is what engines use as their `get_store_cb`: an unknown name yields
    None and the engine falls back to its in-memory buffer.
    """

    def __init__(self) -> None:
        self._stores: dict[str, StoreAdapter] = {}

    def __contains__(self, name: object) -> bool:
        return name in self._stores

    def register(self, store: StoreAdapter) -> StoreAdapter:
        self._stores[str(store.name)] = store
        return store

    def get(self, name: str) -> StoreAdapter | None:
        return self._stores.get(str(name))

    async def start(self) -> None:
        for store in self._stores.values():
            start = getattr(store, "start", None)
            if start is not None:
                await start()

    async def stop(self) -> None:
        stops: list[Any] = []
        for store in self._stores.values():
            stop = getattr(store, "stop", None)
            if stop is not None:
                stops.append(stop())
        if stops:
            await asyncio.gather(*stops, return_exceptions=True)


def build_store_registry(s: Settings | None = None) -> StoreRegistry:
    """
    Register a RedisStore under QUEUE_STORE when REDIS_URL is set.

    Without either one the registry stays empty and queues run in-memory.
    """
    s = s or get_settings()
    stores = StoreRegistry()
    name = str(s.queue_store or "").strip()
    redis_url = str(s.redis_url or "").strip()
    if name and redis_url:
        stores.register(
            RedisStore(
                name=name,
                redis_url=redis_url,
                health_interval_s=float(s.redis_health_interval_s),
            )
        )
    elif name:
        logger.warning("store_not_configured", store=name, reason="REDIS_URL not set")
    return stores
