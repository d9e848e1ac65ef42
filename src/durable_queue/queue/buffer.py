from __future__ import annotations

import json
from collections import deque


class FallbackBuffer:
    """
    In-process per-channel FIFO of serialized items.

    Used whenever the durable store is absent or unreachable. A channel key
    exists only while its sequence is non-empty.
    """

    def __init__(self) -> None:
        self._channels: dict[str, deque[str]] = {}

    def __len__(self) -> int:
        return sum(len(q) for q in self._channels.values())

    def __contains__(self, channel: object) -> bool:
        return channel in self._channels

    def append(self, channel: str, payload: str) -> None:
        self._channels.setdefault(channel, deque()).append(payload)

    def pop(self, channel: str, count: int) -> list[str]:
        q = self._channels.get(channel)
        if q is None:
            return []
        out = [q.popleft() for _ in range(min(int(count), len(q)))]
        if not q:
            del self._channels[channel]
        return out

    def snapshot(self) -> dict[str, list[str]]:
        return {channel: list(q) for channel, q in self._channels.items()}

    def take_all(self) -> dict[str, list[str]]:
        out = self.snapshot()
        self._channels.clear()
        return out

    def dumps(self) -> str:
        # Empty buffer persists as an empty file, not "{}".
        if not self._channels:
            return ""
        return json.dumps(self.snapshot(), separators=(",", ":"))
