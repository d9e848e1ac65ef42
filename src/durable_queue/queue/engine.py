from __future__ import annotations

import asyncio
import json
import math
import sys
from typing import Any, Awaitable, Callable

from durable_queue.utils.log import get_logger

from .buffer import FallbackBuffer
from .errors import SerializationError, StoreOperationError, StoreUnavailableError
from .interfaces import StoreAdapter
from .options import QueueOptions
from .persistence import PersistenceLog, PersistTicker, persist_interval_s

SUPPORTED_STORE_TYPES = frozenset({"redis"})

# Dequeue count meaning "everything available".
UNBOUNDED_COUNT = sys.maxsize

EnqueueCallback = Callable[[BaseException | None], Any]
DequeueCallback = Callable[[BaseException | None, list[Any] | None], Any]


def serialize_item(item: Any) -> str:
    try:
        return json.dumps(item, separators=(",", ":"), allow_nan=False)
    except (TypeError, ValueError) as ex:
        raise SerializationError(f"item is not JSON-serializable: {ex}") from ex


def coerce_count(count: Any) -> int:
    if isinstance(count, bool) or not isinstance(count, (int, float)):
        return 1
    if count != count:  # NaN
        return 1
    if not math.isfinite(count):
        return UNBOUNDED_COUNT if count > 0 else 1
    return min(max(1, int(count)), UNBOUNDED_COUNT)


class QueueEngine:
    """
    One queue channel family backed by a durable store with an in-process fallback.

    Dispatch:
    - virtual (no usable store) or disconnected -> fallback buffer
    - connected -> store (RPUSH / atomic LRANGE+LTRIM)

    The fallback buffer is snapshotted to the persistence log: on every
    mutation while virtual, on enqueue while disconnected, and on a ticker
    while a bound store is unreachable. `start()` replays the log before the
    engine is handed out; a reconnect replays the buffer into the store.
    """

    def __init__(
        self,
        options: QueueOptions,
        *,
        get_store_cb: Callable[[str], StoreAdapter | None] | None = None,
    ) -> None:
        self._options = options
        self._get_store = get_store_cb
        self._logger = get_logger(options.logger)
        self._store: StoreAdapter | None = None
        self._buffer = FallbackBuffer()
        self._log: PersistenceLog | None = (
            PersistenceLog(options.log_file, snapshot_cb=self._buffer.dumps, logger=self._logger)
            if options.log_file is not None
            else None
        )
        self._ticker = PersistTicker(
            self._persist,
            interval_s=persist_interval_s(options.log_persist_ms),
            name=f"queue.persist_ticker:{options.channel}",
            logger=self._logger,
        )
        self._tasks: set[asyncio.Task] = set()
        self._reconnect: asyncio.Task | None = None
        self._started = False
        self._stopped = False
        self._virtual = False
        self._connected = False

    @property
    def options(self) -> QueueOptions:
        return self._options

    @property
    def channel(self) -> str:
        return self._options.channel

    @property
    def virtual(self) -> bool:
        return self._virtual

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def persistence(self) -> PersistenceLog | None:
        return self._log

    @property
    def ticker(self) -> PersistTicker:
        return self._ticker

    # --- lifecycle ---

    async def start(self) -> "QueueEngine":
        if self._started:
            return self
        self._started = True
        try:
            store = self._resolve_store()
        except StoreUnavailableError as ex:
            self._logger.warning("queue_store_unavailable", store=self._options.store, error=str(ex))
            store = None
        if store is None:
            self._virtual = True
        else:
            self._store = store
            self._connected = bool(store.is_connected())
            store.on("connect", self._on_connect).on("disconnect", self._on_disconnect)
            if not self._connected:
                self._start_ticker()
        await self.drain()
        self._logger.debug(
            "queue_started",
            channel=self.channel,
            virtual=self._virtual,
            connected=self._connected,
        )
        return self

    async def stop(self) -> None:
        if self._stopped or not self._started:
            return
        self._stopped = True
        await self._ticker.aclose()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        if self._log is not None:
            await self._log.wait_idle()
            self._log.write_snapshot()

    def _resolve_store(self) -> StoreAdapter | None:
        name = self._options.store
        if not name:
            return None
        store = self._get_store(name) if self._get_store is not None else None
        if store is None:
            raise StoreUnavailableError(f"store {name} is not loaded; using in-memory queue")
        store_type = str(getattr(store, "type", "") or "")
        if store_type not in SUPPORTED_STORE_TYPES:
            raise StoreUnavailableError(
                f"store {name} type {store_type or '?'} is not supported; using in-memory queue"
            )
        return store

    def _on_connect(self) -> None:
        if self._stopped:
            return
        self._connected = True
        self._ticker.stop()
        self._reconnect = self._spawn(
            self._drain_after_reconnect(), name=f"queue.reconnect_drain:{self.channel}"
        )

    def _on_disconnect(self) -> None:
        if self._stopped:
            return
        self._connected = False
        self._start_ticker()

    def _start_ticker(self) -> None:
        if self._log is None:
            return
        self._ticker.start()

    def _spawn(self, coro: Awaitable[Any], *, name: str) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _persist(self) -> None:
        if self._log is not None:
            self._log.persist()

    def _use_buffer(self) -> bool:
        return self._virtual or not self._connected

    async def _settle(self) -> None:
        # Buffered items reach the store before any call that follows a reconnect.
        task = self._reconnect
        if task is None or task.done() or task is asyncio.current_task():
            return
        await asyncio.wait({task})

    def _channel(self, channel: Any) -> str:
        if isinstance(channel, str) and channel:
            return channel
        return self._options.channel

    # --- enqueue / dequeue ---

    async def enqueue(self, item: Any, channel: str | None = None) -> None:
        """
        Add `item` to the tail of `channel`.

        Raises SerializationError (nothing is mutated) or StoreOperationError.
        """
        ch = self._channel(channel)
        try:
            payload = serialize_item(item)
        except SerializationError:
            self._logger.warning("queue_enqueue_not_serializable", channel=ch)
            raise
        await self._settle()
        if self._use_buffer():
            self._buffer.append(ch, payload)
            self._persist()
            return
        await self._push(ch, payload)

    async def dequeue(self, count: Any = 1, channel: str | None = None) -> list[Any]:
        """
        Remove and return up to `count` items from the head of `channel`.

        Raises StoreOperationError when the store round trip fails.
        """
        ch = self._channel(channel)
        n = coerce_count(count)
        await self._settle()
        if self._use_buffer():
            payloads = self._buffer.pop(ch, n)
            if self._virtual:
                self._persist()
        else:
            payloads = await self._range_and_trim(ch, n)
        return [self._decode(ch, p) for p in payloads]

    def enqueue_with_callback(
        self,
        item: Any,
        callback: EnqueueCallback,
        channel: str | None = None,
    ) -> "QueueEngine":
        self._spawn(
            _complete(self.enqueue(item, channel), lambda err, _res: callback(err), self._logger),
            name=f"queue.enqueue:{self._channel(channel)}",
        )
        return self

    def dequeue_with_callback(
        self,
        callback: DequeueCallback,
        count: Any = 1,
        channel: str | None = None,
    ) -> "QueueEngine":
        self._spawn(
            _complete(self.dequeue(count, channel), callback, self._logger),
            name=f"queue.dequeue:{self._channel(channel)}",
        )
        return self

    def _bound_store(self) -> StoreAdapter:
        if self._store is None:
            raise StoreOperationError(f"queue {self.channel} has no bound store")
        return self._store

    async def _push(self, channel: str, payload: str) -> None:
        store = self._bound_store()
        try:
            await store.execute("RPUSH", channel, payload)
        except StoreOperationError:
            raise
        except Exception as ex:
            raise StoreOperationError(f"RPUSH {channel} failed: {ex}") from ex

    async def _range_and_trim(self, channel: str, count: int) -> list[Any]:
        store = self._bound_store()
        if count >= UNBOUNDED_COUNT:
            # Whole list; LTRIM with start > stop empties it.
            last, keep = -1, (1, 0)
        else:
            last, keep = count - 1, (count, -1)
        try:
            results = await (
                store.batch()
                .queue("LRANGE", channel, 0, last)
                .queue("LTRIM", channel, *keep)
                .commit()
            )
        except StoreOperationError:
            raise
        except Exception as ex:
            raise StoreOperationError(f"LRANGE/LTRIM {channel} failed: {ex}") from ex
        items = results[0] if results else None
        return list(items or [])

    def _decode(self, channel: str, payload: Any) -> Any:
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8", errors="replace")
        try:
            return json.loads(payload)
        except (TypeError, ValueError):
            self._logger.warning("queue_item_not_parseable", channel=channel, item=str(payload))
            return payload

    # --- persistence ---

    def persist(self) -> None:
        """Schedule a snapshot of the fallback buffer to the persistence log."""
        self._persist()

    async def drain(self) -> int:
        """
        Replay the persistence log through `enqueue()`.

        The log is truncated before replay. Returns the number of items that
        were replayed; items the store refused go back into the buffer.
        """
        if self._log is None:
            return 0
        recovered = self._log.take()
        if not recovered:
            return 0
        replayed, failed = await self._replay(recovered)
        self._logger.info("queue_drain_replayed", channel=self.channel, count=replayed, failed=failed)
        return replayed

    async def _drain_after_reconnect(self) -> None:
        if self._log is not None:
            # The buffer is the source of truth; make the log match it before draining.
            await self._log.wait_idle()
            if self._log.write_snapshot():
                self._buffer.take_all()
                await self.drain()
                return
        pending = self._buffer.take_all()
        if pending:
            replayed, failed = await self._replay(pending)
            self._logger.info(
                "queue_buffer_replayed", channel=self.channel, count=replayed, failed=failed
            )

    async def _replay(self, recovered: dict[str, list[str]]) -> tuple[int, int]:
        replayed = failed = 0
        for channel, payloads in recovered.items():
            for payload in payloads:
                try:
                    item = json.loads(payload)
                except ValueError:
                    item = payload
                try:
                    await self.enqueue(item, channel)
                except StoreOperationError as ex:
                    self._logger.warning("queue_replay_failed", channel=channel, error=str(ex))
                    self._buffer.append(channel, payload)
                    self._persist()
                    failed += 1
                else:
                    replayed += 1
        return replayed, failed


async def _complete(
    op: Awaitable[Any],
    callback: Callable[[BaseException | None, Any], Any],
    logger: Any,
) -> None:
    """Await `op` and report to `callback` exactly once."""
    try:
        result = await op
    except Exception as ex:
        err: BaseException | None = ex
        result = None
    else:
        err = None
    try:
        callback(err, result)
    except Exception as ex:
        logger.error("queue_callback_failed", error=str(ex))
