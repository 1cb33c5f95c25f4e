"""CLI commands operating on cache storage.

Usage:
    shopcache sweep
    shopcache sweep --clear
    shopcache stats
    shopcache invalidate menu_items header_settings
    shopcache invalidate carousel_images --resource
"""

from __future__ import annotations

import asyncio

import typer

from shopcache.cache.backends import BackendKind, create_backends
from shopcache.cache.store import KeyValueCache
from shopcache.config import Settings


def _open_cache(settings: Settings) -> KeyValueCache:
    return KeyValueCache(
        create_backends(settings),
        default_ttl=settings.default_ttl,
        version=settings.schema_version,
        default_backend=settings.default_backend,
        sweep_on_startup=False,
    )


def sweep(
    clear: bool = typer.Option(
        False,
        "--clear",
        help="Remove every cache entry, not only expired ones",
    ),
) -> None:
    """Remove expired and unreadable entries from durable storage."""
    from rich.console import Console

    from shopcache.config import settings

    console = Console()
    cache = _open_cache(settings)

    if clear:
        removed = cache.clear("all")
        console.print(f"[green]Cleared {removed} cache entries[/green]")
    else:
        removed = cache.sweep_expired()
        console.print(f"[green]Swept {removed} expired cache entries[/green]")


def stats(
    keys: bool = typer.Option(
        False,
        "--keys",
        "-k",
        help="List the durable keys as well",
    ),
) -> None:
    """Show cached key counts per backend."""
    from rich.console import Console
    from rich.table import Table

    from shopcache.config import settings

    console = Console()
    cache = _open_cache(settings)
    counts = cache.stats()

    table = Table(title="Cache entries")
    table.add_column("Backend")
    table.add_column("Keys", justify="right")
    table.add_row(BackendKind.MEMORY.value, str(counts.memory))
    table.add_row(BackendKind.DURABLE.value, str(counts.durable))
    table.add_row(BackendKind.SESSION.value, str(counts.session))
    table.add_row("[bold]total[/bold]", f"[bold]{counts.total}[/bold]")
    console.print(table)

    if keys:
        for key in sorted(cache.keys(BackendKind.DURABLE)):
            console.print(f"  {key}")


def invalidate(
    names: list[str] = typer.Argument(
        ...,
        help="Cache keys to invalidate (resource names with --resource)",
    ),
    resource: bool = typer.Option(
        False,
        "--resource",
        "-r",
        help="Treat names as backend resources and invalidate their mapped keys",
    ),
) -> None:
    """Broadcast an admin invalidation to every listening session."""
    from rich.console import Console

    from shopcache.config import settings

    console = Console()
    published = asyncio.run(_invalidate(settings, names, resource))

    if not published:
        console.print("[red]Invalidation was applied locally but not published[/red]")
        raise typer.Exit(code=1)
    console.print(f"[green]Invalidated:[/green] {', '.join(names)}")


async def _invalidate(settings: Settings, names: list[str], resource: bool) -> bool:
    from shopcache.runtime import CacheRuntime

    async with CacheRuntime(settings) as runtime:
        if resource:
            results = [await runtime.admin.invalidate_resource(name) for name in names]
            return all(results)
        return await runtime.bus.broadcast_invalidation(names)
