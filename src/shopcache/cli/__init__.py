"""CLI commands for shopcache.

Provides command-line interface using Typer:
- shopcache sweep: Remove expired entries from durable storage
- shopcache stats: Show cached key counts per backend
- shopcache invalidate: Broadcast an invalidation for keys or resources
- shopcache emit-change: Append a change record to a resource's change stream
- shopcache listen: Print invalidation events as they arrive

Usage:
    shopcache --help
    shopcache sweep --clear
    shopcache invalidate menu_items --resource
    shopcache emit-change menu_items --type update --payload '{"id": 4}'
    shopcache listen --duration 30
"""

import typer

from shopcache.cli.cache_cmd import invalidate, stats, sweep
from shopcache.cli.events_cmd import emit_change, listen

# Main CLI application
app = typer.Typer(
    name="shopcache",
    help="shopcache: storefront caching with real-time invalidation",
    no_args_is_help=True,
)

app.command("sweep")(sweep)
app.command("stats")(stats)
app.command("invalidate")(invalidate)
app.command("emit-change")(emit_change)
app.command("listen")(listen)


@app.callback()
def callback(
    log_level: str | None = typer.Option(
        None,
        "--log-level",
        "-l",
        help="Log level: debug, info, warning, error",
    ),
) -> None:
    """shopcache: storefront caching with real-time invalidation."""
    from shopcache.config import settings
    from shopcache.observability.logging import configure_logging

    configure_logging(json_format=settings.log_json, level=log_level or settings.log_level)


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
