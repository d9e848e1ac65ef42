from __future__ import annotations

import asyncio
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Mapping

from durable_queue.utils.log import logger

from .engine import QueueEngine
from .errors import PersistenceWriteError
from .interfaces import StoreAdapter
from .options import QueueOptions, channel_log_file
from .persistence import PersistenceLog

ChannelConfig = str | Mapping[str, Any] | None


class QueueRegistry:
    """
    Channel name -> independently configured QueueEngine, created lazily.

    Per-call options are merged over `defaults`; relative log files resolve
    against `root`. Channels other than the default get a sibling log file
    (see channel_log_file) unless they name one, and no two engines may share
    a log. An engine is started before it is handed out and is never
    replaced once created.
    """

    def __init__(
        self,
        defaults: QueueOptions,
        *,
        get_store_cb: Callable[[str], StoreAdapter | None] | None = None,
        root: Path | str = ".",
    ) -> None:
        self._root = Path(root)
        self._defaults = defaults.normalized(self._root)
        self._get_store = get_store_cb
        self._engines: dict[str, QueueEngine] = {}
        self._pending: dict[str, asyncio.Future[QueueEngine]] = {}
        # Persistence log -> owning channel.
        self._log_owners: dict[Path, str] = {}

    @property
    def defaults(self) -> QueueOptions:
        return self._defaults

    @property
    def default(self) -> QueueEngine | None:
        return self._engines.get(self._defaults.channel)

    def __contains__(self, channel: object) -> bool:
        return channel in self._engines

    def options_for(self, channel_config: ChannelConfig = None) -> QueueOptions:
        if isinstance(channel_config, str):
            overrides: Mapping[str, Any] = {"channel": channel_config} if channel_config else {}
        else:
            overrides = channel_config or {}
        opts = self._defaults.merged(overrides)
        # Each engine snapshots only its own buffer, so non-default channels get their own log.
        if (
            "log_file" not in overrides
            and opts.log_file is not None
            and opts.channel != self._defaults.channel
        ):
            opts = replace(opts, log_file=channel_log_file(opts.log_file, opts.channel))
        return opts.normalized(self._root)

    def setup(self) -> None:
        """Make sure the default persistence log exists."""
        if self._defaults.log_file is None:
            return
        log = PersistenceLog(self._defaults.log_file, snapshot_cb=lambda: "", logger=logger)
        try:
            log.ensure_exists()
        except PersistenceWriteError as ex:
            logger.warning("queue_log_create_failed", path=str(self._defaults.log_file), error=str(ex))
            raise

    async def start(self) -> QueueEngine:
        return await self.get()

    async def get(self, channel_config: ChannelConfig = None) -> QueueEngine:
        opts = self.options_for(channel_config)
        engine = self._engines.get(opts.channel)
        if engine is not None:
            return engine
        return await self.create(channel_config)

    async def create(self, channel_config: ChannelConfig = None) -> QueueEngine:
        opts = self.options_for(channel_config)
        existing = self._engines.get(opts.channel)
        if existing is not None:
            return existing
        pending = self._pending.get(opts.channel)
        if pending is not None:
            return await asyncio.shield(pending)

        self._claim_log(opts)
        fut: asyncio.Future[QueueEngine] = asyncio.get_running_loop().create_future()
        self._pending[opts.channel] = fut
        try:
            engine = QueueEngine(opts, get_store_cb=self._get_store)
            await engine.start()
            self._engines[opts.channel] = engine
            fut.set_result(engine)
            return engine
        except Exception as ex:
            self._release_log(opts)
            fut.set_exception(ex)
            # Mark retrieved: only concurrent waiters should see this exception.
            fut.exception()
            raise
        finally:
            self._pending.pop(opts.channel, None)
            if not fut.done():
                fut.cancel()

    def _claim_log(self, opts: QueueOptions) -> None:
        if opts.log_file is None:
            return
        owner = self._log_owners.get(opts.log_file)
        if owner is not None and owner != opts.channel:
            raise ValueError(f"queue log {opts.log_file} is already used by channel {owner}")
        self._log_owners[opts.log_file] = opts.channel

    def _release_log(self, opts: QueueOptions) -> None:
        if opts.log_file is not None and self._log_owners.get(opts.log_file) == opts.channel:
            del self._log_owners[opts.log_file]

    async def stop(self) -> None:
        engines = list(self._engines.values())
        if engines:
            await asyncio.gather(*(e.stop() for e in engines), return_exceptions=True)
