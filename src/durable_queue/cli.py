from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable

import click

from durable_queue.config import get_safe_config_report, get_settings
from durable_queue.queue import (
    QueueEngine,
    QueueError,
    build_queue_registry,
    build_store_registry,
)
from durable_queue.utils.log import set_log_level


def _parse_item(raw: str) -> Any:
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def _with_queue(channel: str | None, fn: Callable[[QueueEngine], Awaitable[Any]]) -> Any:
    """
    Start stores + queue, run `fn`, stop everything.

    Stopping writes the final buffer snapshot, so items that could not reach
    the store survive until the next run drains them.
    """

    async def _run() -> Any:
        stores = build_store_registry()
        registry = build_queue_registry(stores=stores)
        await stores.start()
        try:
            engine = await registry.get(channel)
            return await fn(engine)
        finally:
            await registry.stop()
            await stores.stop()

    return asyncio.run(_run())


@click.group(name="durable-queue")
@click.option("--log-level", default=None, help="Override LOG_LEVEL for this run.")
def cli(log_level: str | None) -> None:
    """
    Enqueue and dequeue JSON items on named channels.
    """
    if log_level:
        set_log_level(log_level)


@cli.command()
@click.argument("item")
@click.option("--channel", default=None, help="Channel (default: QUEUE_CHANNEL).")
def enqueue(item: str, channel: str | None) -> None:
    """
    Enqueue ITEM (parsed as JSON, else taken as a plain string).
    """
    value = _parse_item(item)
    try:
        _with_queue(channel, lambda q: q.enqueue(value, channel))
    except QueueError as ex:
        raise click.ClickException(str(ex)) from ex


@cli.command()
@click.option("--count", type=int, default=None, help="Items to dequeue (default: QUEUE_BATCH).")
@click.option("--channel", default=None, help="Channel (default: QUEUE_CHANNEL).")
def dequeue(count: int | None, channel: str | None) -> None:
    """
    Dequeue items and print one JSON document per line.
    """
    n = count if count is not None else int(get_settings().queue_batch)
    try:
        items = _with_queue(channel, lambda q: q.dequeue(n, channel))
    except QueueError as ex:
        raise click.ClickException(str(ex)) from ex
    for item in items:
        click.echo(json.dumps(item, sort_keys=True))


@cli.command()
def setup() -> None:
    """
    Create the persistence log file.
    """
    registry = build_queue_registry()
    try:
        registry.setup()
    except QueueError as ex:
        raise click.ClickException(str(ex)) from ex
    log_file = registry.defaults.log_file
    click.echo(f"Queue log: {log_file if log_file is not None else 'disabled'}")


@cli.command(name="show-config")
def show_config() -> None:
    """
    Print the effective, non-sensitive configuration.
    """
    click.echo(json.dumps(get_safe_config_report(), indent=2, sort_keys=True))


if __name__ == "__main__":  # pragma: no cover
    cli()
