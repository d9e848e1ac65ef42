from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from durable_queue.queue import (
    QueueEngine,
    QueueOptions,
    SerializationError,
    StoreOperationError,
)
from durable_queue.queue.engine import UNBOUNDED_COUNT, coerce_count, serialize_item
from tests._helpers.store import FakeStore


def _opts(tmp_path: Path, **kw) -> QueueOptions:
    base = {"channel": "jobs", "log_file": tmp_path / "queue.log", "log_persist_ms": 500}
    base.update(kw)
    return QueueOptions(**base)


def _engine(tmp_path: Path, store: FakeStore | None = None, **kw) -> QueueEngine:
    if store is not None:
        kw.setdefault("store", store.name)
    return QueueEngine(
        _opts(tmp_path, **kw),
        get_store_cb=lambda name: store if store is not None and name == store.name else None,
    )


def test_virtual_fifo_example(tmp_path: Path) -> None:
    async def _run():
        q = await _engine(tmp_path).start()
        await q.enqueue({"a": 1}, "jobs")
        await q.enqueue({"a": 2}, "jobs")
        first = await q.dequeue(2, "jobs")
        second = await q.dequeue(1, "jobs")
        await q.stop()
        return q, first, second

    q, first, second = asyncio.run(_run())
    assert q.virtual is True
    assert first == [{"a": 1}, {"a": 2}]
    assert second == []


def test_dequeue_more_than_available_removes_channel(tmp_path: Path) -> None:
    async def _run():
        q = await _engine(tmp_path).start()
        for i in range(3):
            await q.enqueue(i, "nums")
        got = await q.dequeue(10, "nums")
        return q, got

    q, got = asyncio.run(_run())
    assert got == [0, 1, 2]
    assert "nums" not in q._buffer
    assert len(q._buffer) == 0


def test_dequeue_unknown_channel_is_empty(tmp_path: Path) -> None:
    async def _run():
        q = await _engine(tmp_path).start()
        return await q.dequeue(5, "nope")

    assert asyncio.run(_run()) == []


def test_non_serializable_item_leaves_buffer_unchanged(tmp_path: Path) -> None:
    async def _run():
        q = await _engine(tmp_path).start()
        await q.enqueue({"ok": True}, "jobs")
        with pytest.raises(SerializationError):
            await q.enqueue({"bad": object()}, "jobs")
        with pytest.raises(SerializationError):
            await q.enqueue(float("nan"), "jobs")
        return q._buffer.snapshot()

    assert asyncio.run(_run()) == {"jobs": ['{"ok":true}']}


def test_default_channel_when_channel_missing(tmp_path: Path) -> None:
    async def _run():
        q = await _engine(tmp_path, channel="default.lane").start()
        await q.enqueue("x")
        await q.enqueue("y", "")
        return q._buffer.snapshot(), await q.dequeue(2)

    snap, got = asyncio.run(_run())
    assert list(snap) == ["default.lane"]
    assert got == ["x", "y"]


def test_count_coercion() -> None:
    assert coerce_count(0) == 1
    assert coerce_count(-5) == 1
    assert coerce_count(2.7) == 2
    assert coerce_count("3") == 1
    assert coerce_count(None) == 1
    assert coerce_count(True) == 1
    assert coerce_count(4) == 4
    assert coerce_count(float("inf")) == UNBOUNDED_COUNT
    assert coerce_count(float("-inf")) == 1
    assert coerce_count(1e300) == UNBOUNDED_COUNT


def test_serialize_item_is_compact_json() -> None:
    assert serialize_item({"a": [1, 2]}) == '{"a":[1,2]}'
    with pytest.raises(SerializationError):
        serialize_item({1, 2})


def test_unparseable_payload_passes_through_raw(tmp_path: Path) -> None:
    async def _run():
        q = await _engine(tmp_path).start()
        q._buffer.append("jobs", "not-json{")
        await q.enqueue({"a": 1}, "jobs")
        return await q.dequeue(2, "jobs")

    assert asyncio.run(_run()) == ["not-json{", {"a": 1}]


def test_callback_forms_report_exactly_once(tmp_path: Path) -> None:
    calls: list[tuple] = []

    async def _run():
        q = await _engine(tmp_path).start()
        ret = q.enqueue_with_callback({"a": 1}, lambda err: calls.append(("enq", err)), "jobs")
        assert ret is q
        q.enqueue_with_callback({"bad": object()}, lambda err: calls.append(("enq_bad", err)), "jobs")
        q.dequeue_with_callback(lambda err, items: calls.append(("deq", err, items)), 5, "jobs")
        await q.stop()

    asyncio.run(_run())
    assert [c[0] for c in calls] == ["enq", "enq_bad", "deq"]
    assert calls[0][1] is None
    assert isinstance(calls[1][1], SerializationError)
    assert calls[2][1] is None
    assert calls[2][2] == [{"a": 1}]


def test_callback_error_does_not_escape(tmp_path: Path) -> None:
    async def _run():
        q = await _engine(tmp_path).start()

        def boom(err):
            raise RuntimeError("callback blew up")

        q.enqueue_with_callback(1, boom)
        await q.stop()
        return await q.dequeue(1)

    assert asyncio.run(_run()) == [1]


def test_connected_store_receives_traffic(tmp_path: Path) -> None:
    store = FakeStore()

    async def _run():
        q = await _engine(tmp_path, store).start()
        await q.enqueue({"a": 1}, "jobs")
        await q.enqueue({"a": 2}, "jobs")
        await q.enqueue({"a": 3}, "jobs")
        stored = list(store.lists["jobs"])
        got = await q.dequeue(2, "jobs")
        return q, stored, got

    q, stored, got = asyncio.run(_run())
    assert q.virtual is False
    assert q.connected is True
    assert stored == ['{"a":1}', '{"a":2}', '{"a":3}']
    assert got == [{"a": 1}, {"a": 2}]
    assert store.lists["jobs"] == ['{"a":3}']
    assert len(q._buffer) == 0


def test_store_payload_that_does_not_parse_is_returned_raw(tmp_path: Path) -> None:
    store = FakeStore()
    store.lists["jobs"] = ["plain text", '{"a":1}']

    async def _run():
        q = await _engine(tmp_path, store).start()
        return await q.dequeue(5, "jobs")

    assert asyncio.run(_run()) == ["plain text", {"a": 1}]


def test_concurrent_dequeues_never_overlap(tmp_path: Path) -> None:
    store = FakeStore()
    store.lists["jobs"] = [json.dumps(i) for i in range(10)]

    async def _run():
        q = await _engine(tmp_path, store).start()
        return await asyncio.gather(*(q.dequeue(3, "jobs") for _ in range(4)))

    batches = asyncio.run(_run())
    flat = [i for b in batches for i in b]
    assert sorted(flat) == list(range(10))
    assert len(flat) == len(set(flat))
    assert all(b == sorted(b) for b in batches)


def test_store_failure_is_reported_to_the_call(tmp_path: Path) -> None:
    store = FakeStore()

    async def _run():
        q = await _engine(tmp_path, store).start()
        store.fail = True
        with pytest.raises(StoreOperationError):
            await q.enqueue({"a": 1}, "jobs")
        with pytest.raises(StoreOperationError):
            await q.dequeue(1, "jobs")
        store.fail = False
        await q.enqueue({"a": 2}, "jobs")
        return q, await q.dequeue(5, "jobs")

    q, got = asyncio.run(_run())
    assert got == [{"a": 2}]
    assert len(q._buffer) == 0


def test_unknown_store_degrades_to_virtual(tmp_path: Path) -> None:
    async def _run():
        q = QueueEngine(_opts(tmp_path, store="missing"), get_store_cb=lambda _name: None)
        await q.start()
        await q.enqueue("x", "jobs")
        return q

    q = asyncio.run(_run())
    assert q.virtual is True
    assert q._buffer.snapshot() == {"jobs": ['"x"']}


def test_unsupported_store_type_degrades_to_virtual(tmp_path: Path) -> None:
    store = FakeStore(store_type="memcached")

    async def _run():
        q = await _engine(tmp_path, store).start()
        await q.enqueue("x", "jobs")
        return q

    q = asyncio.run(_run())
    assert q.virtual is True
    assert "jobs" not in store.lists


def test_disconnected_store_routes_to_buffer(tmp_path: Path) -> None:
    store = FakeStore(connected=False)

    async def _run():
        q = await _engine(tmp_path, store).start()
        ticking = q.ticker.active
        await q.enqueue({"a": 1}, "jobs")
        got = await q.dequeue(1, "jobs")
        await q.enqueue({"a": 2}, "jobs")
        snap = q._buffer.snapshot()
        await q.stop()
        return q, ticking, got, snap

    q, ticking, got, snap = asyncio.run(_run())
    assert q.virtual is False
    assert q.connected is False
    assert ticking is True
    assert got == [{"a": 1}]
    assert snap == {"jobs": ['{"a":2}']}
    assert store.lists == {}


def test_disconnect_then_reconnect_replays_buffer_into_store(tmp_path: Path) -> None:
    store = FakeStore()

    async def _run():
        q = await _engine(tmp_path, store).start()
        assert q.ticker.active is False
        store.set_connected(False)
        assert q.connected is False
        assert q.ticker.active is True
        await q.enqueue({"n": 1}, "jobs")
        await q.enqueue({"n": 2}, "jobs")
        await q.enqueue({"n": 3}, "other")
        store.set_connected(True)
        assert q.connected is True
        assert q.ticker.active is False
        await q.stop()
        return q

    q = asyncio.run(_run())
    assert store.lists == {"jobs": ['{"n":1}', '{"n":2}'], "other": ['{"n":3}']}
    assert len(q._buffer) == 0
    assert (tmp_path / "queue.log").read_text(encoding="utf-8") == ""


def test_reconnect_does_not_replay_items_already_dequeued(tmp_path: Path) -> None:
    store = FakeStore(connected=False)

    async def _run():
        q = await _engine(tmp_path, store).start()
        await q.enqueue("a", "jobs")
        await q.persistence.wait_idle()
        # Outage dequeue does not re-persist: the log still holds "a".
        assert await q.dequeue(1, "jobs") == ["a"]
        store.set_connected(True)
        await q.stop()

    asyncio.run(_run())
    assert store.lists == {}


def test_reconnect_without_log_file_replays_buffer(tmp_path: Path) -> None:
    store = FakeStore(connected=False)

    async def _run():
        q = await _engine(tmp_path, store, log_file=None).start()
        assert q.ticker.active is False
        await q.enqueue(1, "jobs")
        await q.enqueue(2, "jobs")
        store.set_connected(True)
        await q.stop()

    asyncio.run(_run())
    assert store.lists == {"jobs": ["1", "2"]}


def test_events_after_stop_are_ignored(tmp_path: Path) -> None:
    store = FakeStore()

    async def _run():
        q = await _engine(tmp_path, store).start()
        await q.stop()
        store.set_connected(False)
        return q

    q = asyncio.run(_run())
    assert q.connected is True
    assert q.ticker.active is False


def test_start_is_idempotent(tmp_path: Path) -> None:
    store = FakeStore()

    async def _run():
        q = _engine(tmp_path, store)
        await q.start()
        await q.start()
        return q

    asyncio.run(_run())
    assert len(store._handlers["connect"]) == 1


def test_infinite_count_takes_everything_from_buffer(tmp_path: Path) -> None:
    async def _run():
        q = await _engine(tmp_path).start()
        for i in range(3):
            await q.enqueue(i, "jobs")
        got = await q.dequeue(float("inf"), "jobs")
        return q, got

    q, got = asyncio.run(_run())
    assert got == [0, 1, 2]
    assert len(q._buffer) == 0


def test_infinite_count_takes_everything_from_store(tmp_path: Path) -> None:
    store = FakeStore()
    store.lists["jobs"] = [json.dumps(i) for i in range(4)]

    async def _run():
        q = await _engine(tmp_path, store).start()
        return await q.dequeue(float("inf"), "jobs")

    assert asyncio.run(_run()) == [0, 1, 2, 3]
    assert store.lists == {}


def test_calls_after_reconnect_wait_for_buffer_replay(tmp_path: Path) -> None:
    store = FakeStore(connected=False)

    async def _run():
        q = await _engine(tmp_path, store).start()
        await q.enqueue("old-1", "jobs")
        await q.enqueue("old-2", "jobs")
        store.set_connected(True)
        # Issued before the replay task has had a chance to run.
        await q.enqueue("new", "jobs")
        got = await q.dequeue(10, "jobs")
        await q.stop()
        return q, got

    q, got = asyncio.run(_run())
    assert got == ["old-1", "old-2", "new"]
    assert len(q._buffer) == 0
    assert store.lists == {}


def test_drain_counts_only_items_the_store_accepted(tmp_path: Path) -> None:
    store = FakeStore()
    log_file = tmp_path / "queue.log"

    async def _run():
        q = await _engine(tmp_path, store).start()
        log_file.write_text(json.dumps({"jobs": ['"a"', '"b"']}), encoding="utf-8")
        store.fail = True
        replayed = await q.drain()
        store.fail = False
        return q, replayed

    q, replayed = asyncio.run(_run())
    assert replayed == 0
    assert q._buffer.snapshot() == {"jobs": ['"a"', '"b"']}
    assert store.lists == {}


def test_store_commands_without_bound_store_raise(tmp_path: Path) -> None:
    async def _run():
        q = await _engine(tmp_path).start()
        with pytest.raises(StoreOperationError):
            await q._push("jobs", '"x"')
        with pytest.raises(StoreOperationError):
            await q._range_and_trim("jobs", 1)

    asyncio.run(_run())
