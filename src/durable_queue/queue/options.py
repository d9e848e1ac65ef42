from __future__ import annotations

import hashlib
import os
import re
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping

from durable_queue.config import Settings

_UNSAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._-]")


@dataclass(frozen=True, slots=True)
class QueueOptions:
    logger: str = "queue"
    # Store name to bind to; None means in-memory only.
    store: str | None = None
    channel: str = "durable.queue"
    # Default number of items to dequeue at once (CLI / batch consumers).
    batch: int = 10
    # None disables persistence of the fallback buffer.
    log_file: Path | None = Path("config/.queue")
    # Milliseconds between persist ticks while the store is unreachable (floored at 500).
    log_persist_ms: int = 1000

    @classmethod
    def from_settings(cls, s: Settings) -> "QueueOptions":
        log_file = str(s.queue_log_file or "").strip()
        return cls(
            logger=str(s.queue_logger or "queue"),
            store=str(s.queue_store or "").strip() or None,
            channel=str(s.queue_channel or "durable.queue"),
            batch=max(1, int(s.queue_batch)),
            log_file=Path(log_file) if log_file else None,
            log_persist_ms=int(s.queue_log_persist_ms),
        )

    def merged(self, overrides: Mapping[str, Any] | None) -> "QueueOptions":
        if not overrides:
            return self
        known = {f.name for f in fields(self)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise ValueError(f"unknown queue option(s): {', '.join(unknown)}")
        values = dict(overrides)
        if "log_file" in values and values["log_file"] is not None:
            values["log_file"] = Path(values["log_file"]) if str(values["log_file"]) else None
        return replace(self, **values)

    def normalized(self, root: Path) -> "QueueOptions":
        if self.log_file is None:
            return self
        return replace(self, log_file=normalize_log_file(self.log_file, root))


def normalize_log_file(path: str | Path, root: str | Path) -> Path:
    """Absolute paths are kept, relative ones hang off `root`; `..` segments are collapsed."""
    p = Path(path)
    if not p.is_absolute():
        p = Path(root) / p
    return Path(os.path.normpath(str(p)))


def channel_log_file(log_file: Path, channel: str) -> Path:
    """
    Sibling log file owned by `channel`: `config/.queue` -> `config/.queue.mail`.

    Characters unsafe in file names are replaced and a short digest of the
    channel is appended, so distinct channels never share a file.
    """
    safe = _UNSAFE_NAME_RE.sub("_", channel)
    if safe != channel:
        safe += "-" + hashlib.sha1(channel.encode("utf-8")).hexdigest()[:8]
    return log_file.with_name(f"{log_file.name}.{safe}")
