from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Callable

from .errors import PersistenceParseError, PersistenceReadError, PersistenceWriteError

MIN_PERSIST_INTERVAL_MS = 500


def persist_interval_s(log_persist_ms: int | float | None) -> float:
    return max(int(log_persist_ms or 0), MIN_PERSIST_INTERVAL_MS) / 1000.0


def _validate_snapshot(data: Any) -> dict[str, list[str]]:
    if not isinstance(data, dict):
        raise PersistenceParseError(f"expected an object of channels, got {type(data).__name__}")
    out: dict[str, list[str]] = {}
    for channel, payloads in data.items():
        if not isinstance(payloads, list) or not all(isinstance(p, str) for p in payloads):
            raise PersistenceParseError(f"channel {channel!r} is not a list of serialized items")
        if payloads:
            out[str(channel)] = payloads
    return out


class PersistenceLog:
    """
    On-disk snapshot of one engine's fallback buffer.

    File format: empty, or a JSON object of channel -> list of JSON-encoded
    item strings. Every write replaces the whole file through a temporary
    sibling, so readers never see a partial snapshot.

    Background writes (`persist()`) are exclusive: while one is in flight a
    new request only marks the log dirty, and a single trailing write picks up
    the latest buffer state once the current one lands.
    """

    def __init__(self, path: Path, *, snapshot_cb: Callable[[], str], logger: Any) -> None:
        self._path = Path(path)
        self._snapshot = snapshot_cb
        self._logger = logger
        self._task: asyncio.Task | None = None
        self._dirty = False

    @property
    def path(self) -> Path:
        return self._path

    @property
    def writing(self) -> bool:
        return self._task is not None

    def ensure_exists(self) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.touch(exist_ok=True)
        except OSError as ex:
            raise PersistenceWriteError(f"could not create queue log {self._path}: {ex}") from ex

    def read(self) -> dict[str, list[str]]:
        """
        Parse the log. An absent or blank file yields {}.

        Raises PersistenceReadError / PersistenceParseError.
        """
        try:
            text = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except (OSError, UnicodeDecodeError) as ex:
            raise PersistenceReadError(f"could not read queue log {self._path}: {ex}") from ex
        if not text.strip():
            return {}
        try:
            data = json.loads(text)
        except ValueError as ex:
            raise PersistenceParseError(f"could not parse queue log {self._path}: {ex}") from ex
        return _validate_snapshot(data)

    def take(self) -> dict[str, list[str]]:
        """
        Read the log and truncate it, so a crash during replay cannot replay twice.

        Read/parse failures are logged and leave the file untouched.
        """
        try:
            data = self.read()
        except PersistenceReadError as ex:
            self._logger.warning("queue_log_read_failed", path=str(self._path), error=str(ex))
            return {}
        except PersistenceParseError as ex:
            self._logger.error("queue_log_parse_failed", path=str(self._path), error=str(ex))
            return {}
        if not data:
            return {}
        try:
            self.write_text("")
        except PersistenceWriteError as ex:
            self._logger.warning("queue_log_truncate_failed", path=str(self._path), error=str(ex))
        return data

    def write_text(self, text: str) -> None:
        tmp = self._path.with_name(self._path.name + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(text, encoding="utf-8")
            tmp.replace(self._path)
        except OSError as ex:
            raise PersistenceWriteError(f"could not write queue log {self._path}: {ex}") from ex

    def write_snapshot(self) -> bool:
        """Synchronous full snapshot. Logs and returns False on failure."""
        try:
            text = self._snapshot()
        except (TypeError, ValueError) as ex:
            self._logger.warning("queue_log_serialize_failed", path=str(self._path), error=str(ex))
            return False
        try:
            self.write_text(text)
        except PersistenceWriteError as ex:
            self._logger.warning("queue_log_write_failed", path=str(self._path), error=str(ex))
            return False
        return True

    def persist(self) -> None:
        """Fire-and-forget snapshot write. Never raises."""
        if self._task is not None:
            self._dirty = True
            return
        try:
            text = self._snapshot()
        except (TypeError, ValueError) as ex:
            self._logger.warning("queue_log_serialize_failed", path=str(self._path), error=str(ex))
            return
        self._task = asyncio.create_task(
            self._write_async(text), name=f"queue.persist:{self._path.name}"
        )
        self._task.add_done_callback(self._on_written)

    async def wait_idle(self) -> None:
        """Wait until no write (including a trailing one) is in flight."""
        while self._task is not None:
            await asyncio.wait({self._task})

    async def _write_async(self, text: str) -> None:
        try:
            await asyncio.to_thread(self.write_text, text)
        except PersistenceWriteError as ex:
            self._logger.warning("queue_log_write_failed", path=str(self._path), error=str(ex))

    def _on_written(self, task: asyncio.Task) -> None:
        self._task = None
        if task.cancelled():
            self._dirty = False
            return
        if self._dirty:
            self._dirty = False
            self.persist()


class PersistTicker:
    """
    Periodic persist while a bound store is unreachable.

    One asyncio task per engine; cancelling the task is the stop signal.
    """

    def __init__(
        self,
        tick_cb: Callable[[], None],
        *,
        interval_s: float,
        name: str,
        logger: Any,
    ) -> None:
        self._tick = tick_cb
        self._interval_s = float(interval_s)
        self._name = name
        self._logger = logger
        self._task: asyncio.Task | None = None

    @property
    def interval_s(self) -> float:
        return self._interval_s

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        self.stop()
        self._task = asyncio.create_task(self._run(), name=self._name)

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
        self._task = None

    async def aclose(self) -> None:
        task = self._task
        self.stop()
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def _run(self) -> None:
        try:
            while True:
                await asyncio.sleep(self._interval_s)
                self._tick()
        except asyncio.CancelledError:
            self._logger.debug("task stopped", task=self._name)
            return
