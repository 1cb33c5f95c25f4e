"""CLI commands for the invalidation transports.

Usage:
    shopcache emit-change menu_items --type update --payload '{"id": 4}'
    shopcache listen
    shopcache listen --duration 60
"""

from __future__ import annotations

import asyncio

import orjson
import typer

from shopcache.config import Settings
from shopcache.errors import TransportFailure
from shopcache.events.changes import RedisStreamChangeFeed
from shopcache.events.channel import BroadcastChannel, ChannelHandler
from shopcache.events.runtime import create_broadcast_channel, create_change_feed
from shopcache.events.schemas import ChangeEvent, ChangeType, InvalidationEvent


def emit_change(
    resource: str = typer.Argument(..., help="Backend resource that changed"),
    change_type: ChangeType = typer.Option(
        ChangeType.UPDATE,
        "--type",
        "-t",
        help="Kind of change",
    ),
    payload: str = typer.Option(
        "{}",
        "--payload",
        "-p",
        help="Changed record as a JSON object",
    ),
) -> None:
    """Append a change record to a resource's change stream."""
    from rich.console import Console

    from shopcache.config import settings

    console = Console()

    try:
        record = orjson.loads(payload)
    except orjson.JSONDecodeError as e:
        console.print(f"[red]Invalid payload JSON:[/red] {e}")
        raise typer.Exit(code=1) from e
    if not isinstance(record, dict):
        console.print("[red]Payload must be a JSON object[/red]")
        raise typer.Exit(code=1)

    feed = create_change_feed(settings)
    if not isinstance(feed, RedisStreamChangeFeed):
        console.print("[red]emit-change requires transport_backend=redis[/red]")
        raise typer.Exit(code=1)

    event = ChangeEvent(event_type=change_type, resource=resource, payload=record)
    try:
        message_id = asyncio.run(_publish_change(feed, event))
    except TransportFailure as e:
        console.print(f"[red]Failed to publish change:[/red] {e}")
        raise typer.Exit(code=1) from e

    console.print(f"[green]Published {change_type.value} on {resource}[/green] ({message_id})")


async def _publish_change(feed: RedisStreamChangeFeed, event: ChangeEvent) -> str:
    try:
        return await feed.publish_change(event)
    finally:
        await feed.close()


def listen(
    duration: float | None = typer.Option(
        None,
        "--duration",
        "-d",
        help="Stop after this many seconds (default: until interrupted)",
    ),
) -> None:
    """Print invalidation events as they arrive."""
    from rich.console import Console

    from shopcache.config import settings

    console = Console()

    async def _print(event: InvalidationEvent) -> None:
        keys = ", ".join(sorted(event.affected_keys))
        console.print(f"[blue]{event.origin.value}[/blue] from {event.sender or '?'}: {keys}")

    channel = create_broadcast_channel(settings)
    console.print(f"[blue]Listening on {settings.broadcast_topic}...[/blue]")
    try:
        asyncio.run(_listen(settings, channel, _print, duration))
    except KeyboardInterrupt:
        console.print("Stopped")
    except TransportFailure as e:
        console.print(f"[red]Failed to subscribe:[/red] {e}")
        raise typer.Exit(code=1) from e


async def _listen(
    settings: Settings,
    channel: BroadcastChannel,
    handler: ChannelHandler,
    duration: float | None,
) -> None:
    try:
        await channel.subscribe(settings.broadcast_topic, handler)
        if duration is None:
            await asyncio.Event().wait()
        else:
            await asyncio.sleep(duration)
    finally:
        await channel.close()
