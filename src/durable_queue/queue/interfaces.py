from __future__ import annotations

from typing import Any, Callable, Literal, Protocol

StoreEvent = Literal["connect", "disconnect"]


class StoreBatch(Protocol):
    """
    Commands staged for one atomic round trip.

    `commit()` runs every staged command as a single indivisible unit and
    returns the per-command results in staging order.
    """

    def queue(self, command: str, *args: Any) -> "StoreBatch": ...

    async def commit(self) -> list[Any]: ...


class StoreAdapter(Protocol):
    """
    What a queue engine needs from a durable list store.

    - `type` selects support (only "redis" is understood by the engine)
    - `is_connected()` is the current connection state
    - `on("connect" | "disconnect", handler)` subscribes synchronous handlers
    - `execute()` runs one list command (RPUSH/LRANGE/LTRIM) against `key`
    - `batch()` stages commands for atomic execution

    Failed round trips raise `StoreOperationError`.
    """

    name: str
    type: str

    def is_connected(self) -> bool: ...

    def on(self, event: StoreEvent, handler: Callable[[], None]) -> "StoreAdapter": ...

    async def execute(self, command: str, key: str, *args: Any) -> Any: ...

    def batch(self) -> StoreBatch: ...
