from __future__ import annotations

import asyncio
from typing import Any, Callable

import redis.asyncio as redis
from redis.exceptions import RedisError

from durable_queue.utils.log import logger

from .errors import StoreOperationError
from .interfaces import StoreEvent


class RedisBatch:
    """Commands staged for one MULTI/EXEC round trip."""

    def __init__(self, store: "RedisStore") -> None:
        self._store = store
        self._commands: list[tuple[str, tuple[Any, ...]]] = []

    def queue(self, command: str, *args: Any) -> "RedisBatch":
        self._commands.append((str(command), args))
        return self

    async def commit(self) -> list[Any]:
        if not self._commands:
            return []
        client = self._store._client_or_raise()
        try:
            async with client.pipeline(transaction=True) as pipe:
                for command, args in self._commands:
                    pipe.execute_command(command, *args)
                return list(await pipe.execute())
        except (RedisError, OSError) as ex:
            names = "/".join(c for c, _ in self._commands)
            raise StoreOperationError(f"redis batch {names} failed: {ex}") from ex


class RedisStore:
    """
    Durable list store over redis.asyncio.

    Connection state comes from a ping loop; transitions are announced to
    `connect` / `disconnect` subscribers. Commands are not retried here: a
    failed round trip raises StoreOperationError for that call only.
    """

    type = "redis"

    def __init__(self, *, name: str, redis_url: str, health_interval_s: float = 2.0) -> None:
        self.name = str(name)
        self._redis_url = str(redis_url or "").strip()
        self._health_interval_s = max(0.05, float(health_interval_s))
        self._client: redis.Redis | None = None
        self._connected = False
        self._handlers: dict[str, list[Callable[[], None]]] = {"connect": [], "disconnect": []}
        self._task: asyncio.Task | None = None
        self._stopping = False

    def _redis(self) -> redis.Redis | None:
        if self._client is not None:
            return self._client
        try:
            self._client = redis.Redis.from_url(self._redis_url, decode_responses=True)
            return self._client
        except (RedisError, ValueError) as ex:
            # Do not log the URL (may contain credentials).
            logger.warning("store.redis_init_failed", store=self.name, error=str(ex))
            return None

    def _client_or_raise(self) -> redis.Redis:
        client = self._redis()
        if client is None:
            raise StoreOperationError(f"redis store {self.name} has no client")
        return client

    def is_connected(self) -> bool:
        return self._connected

    def on(self, event: StoreEvent, handler: Callable[[], None]) -> "RedisStore":
        if event not in self._handlers:
            raise ValueError(f"unknown store event: {event}")
        self._handlers[event].append(handler)
        return self

    async def start(self) -> None:
        if self._task is not None:
            return
        self._stopping = False
        self._connected = await self._ping()
        self._task = asyncio.create_task(self._health_loop(), name=f"store.redis.health:{self.name}")
        logger.info("store_started", store=self.name, store_type=self.type, connected=self._connected)

    async def stop(self) -> None:
        self._stopping = True
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        if self._client is not None:
            await self._client.aclose()
        self._client = None

    async def execute(self, command: str, key: str, *args: Any) -> Any:
        client = self._client_or_raise()
        try:
            return await client.execute_command(str(command), key, *args)
        except (RedisError, OSError) as ex:
            raise StoreOperationError(f"redis {command} {key} failed: {ex}") from ex

    def batch(self) -> RedisBatch:
        return RedisBatch(self)

    async def _ping(self) -> bool:
        r = self._redis()
        if r is None:
            return False
        try:
            return bool(await r.ping())
        except (RedisError, OSError):
            return False

    def _set_connected(self, ok: bool) -> None:
        if ok == self._connected:
            return
        self._connected = ok
        event = "connect" if ok else "disconnect"
        logger.info("store_connection_changed", store=self.name, transition=event)
        for handler in list(self._handlers[event]):
            try:
                handler()
            except Exception as ex:
                logger.error("store_event_handler_failed", store=self.name, transition=event, error=str(ex))

    async def _health_loop(self) -> None:
        try:
            while not self._stopping:
                await asyncio.sleep(self._health_interval_s)
                self._set_connected(await self._ping())
        except asyncio.CancelledError:
            logger.info("task stopped", task=f"store.redis.health:{self.name}")
            return
