"""``cache-serde`` maintenance CLI.

Inspects and cleans a cache root without going through a decorated
function::

    cache-serde --root ~/.cache/weather stats
    cache-serde --root ~/.cache/weather list --json
    cache-serde --root ~/.cache/weather prune --older-than 86400
    cache-serde --root ~/.cache/weather clear --yes
    cache-serde --root ~/.cache/weather invalidate <key>
    cache-serde hash "explicit key text"

Options not given on the command line are resolved through
:func:`~cache_serde.config.resolve_config`, so ``CACHE_SERDE_ROOT`` and
``./cache_serde.json`` apply here too. Errors derived from
:class:`~cache_serde.exceptions.CacheSerdeError` exit with their
``exit_code``.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any, Coroutine, Optional, TypeVar

import typer

from cache_serde import __version__
from cache_serde.config import render_cache_root, resolve_config
from cache_serde.exceptions import CacheSerdeError
from cache_serde.freshness import is_fresh, utcnow
from cache_serde.keys import hash_key, validate_key
from cache_serde.models import CacheConfig, EntryInfo
from cache_serde.output import OutputFormat, OutputManager, configure_logging, get_output, set_output
from cache_serde.store import DiskcacheStore, FileStore, open_store

T = TypeVar("T")

app = typer.Typer(
    name="cache-serde",
    help="Inspect and maintain cache_serde cache directories.",
    no_args_is_help=True,
    add_completion=False,
)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"cache-serde {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    ctx: typer.Context,
    version: bool = typer.Option(
        False, "--version", callback=_version_callback, is_eager=True, help="Show version and exit."
    ),
    root: Optional[str] = typer.Option(None, "--root", "-r", help="Cache root directory."),
    backend: Optional[str] = typer.Option(None, "--backend", help="Storage backend: file or diskcache."),
    json_output: bool = typer.Option(False, "--json", help="JSON output format."),
    plain_output: bool = typer.Option(False, "--plain", help="Plain text output."),
    no_color: bool = typer.Option(False, "--no-color", help="Disable color output."),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Suppress non-essential output."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Install the output manager and logging, and stash shared options in ``ctx.obj``."""
    fmt = OutputFormat.AUTO
    if json_output:
        fmt = OutputFormat.JSON
    elif plain_output:
        fmt = OutputFormat.PLAIN
    set_output(OutputManager(format=fmt, no_color=no_color, quiet=quiet))
    configure_logging(verbose)

    ctx.ensure_object(dict)
    ctx.obj["root"] = root
    ctx.obj["backend"] = backend


# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #


def _run(coro: Coroutine[Any, Any, T], store: Any = None) -> T:
    """Run *coro* to completion, mapping cache errors to exit codes."""
    try:
        return asyncio.run(coro)
    except CacheSerdeError as exc:
        get_output().error(str(exc))
        raise typer.Exit(code=exc.exit_code) from exc
    finally:
        if isinstance(store, DiskcacheStore):
            store.close()


def _open(ctx: typer.Context) -> tuple[CacheConfig, FileStore | DiskcacheStore]:
    obj = ctx.obj or {}
    try:
        config = resolve_config(cache_root=obj.get("root"), backend=obj.get("backend"))
        root = render_cache_root(config.cache_root, {})
    except CacheSerdeError as exc:
        get_output().error(str(exc))
        raise typer.Exit(code=exc.exit_code) from exc
    return config, open_store(config.backend, root)


def _age_seconds(entry: EntryInfo) -> int:
    return int(max(utcnow() - entry.last_modified, timedelta(0)).total_seconds())


# ------------------------------------------------------------------ #
# Commands
# ------------------------------------------------------------------ #


@app.command("stats")
def stats_command(ctx: typer.Context) -> None:
    """Show entry count, total size and how many entries are stale."""
    config, store = _open(ctx)
    entries = _run(store.entries(), store)
    now = utcnow()
    stale = sum(
        1 for e in entries if not is_fresh(e.last_modified, now, config.invalidation_interval)
    )
    get_output().write_record(
        {
            "root": str(store.root),
            "backend": config.backend,
            "entries": len(entries),
            "total_bytes": sum(e.size for e in entries),
            "invalidation_interval": config.invalidation_interval,
            "stale": stale,
        }
    )


@app.command("list")
def list_command(ctx: typer.Context) -> None:
    """List stored entries with their size, age and freshness."""
    config, store = _open(ctx)
    entries = _run(store.entries(), store)
    now = utcnow()
    rows = [
        [
            e.key,
            str(e.size),
            e.last_modified.isoformat(),
            str(_age_seconds(e)),
            "fresh" if is_fresh(e.last_modified, now, config.invalidation_interval) else "stale",
        ]
        for e in entries
    ]
    headers = ["key", "size", "last_modified", "age_seconds", "state"]
    get_output().write_rows(headers, rows, title=str(store.root))


@app.command("prune")
def prune_command(
    ctx: typer.Context,
    older_than: Optional[int] = typer.Option(
        None,
        "--older-than",
        min=0,
        help="Delete entries at least this many seconds old (default: the invalidation interval).",
    ),
) -> None:
    """Delete stale entries."""
    config, store = _open(ctx)
    interval = config.invalidation_interval if older_than is None else older_than

    async def _prune() -> int:
        now = utcnow()
        removed = 0
        for entry in await store.entries():
            if not is_fresh(entry.last_modified, now, interval) and await store.delete(entry.key):
                removed += 1
        return removed

    removed = _run(_prune(), store)
    get_output().success(f"Pruned {removed} entr{'y' if removed == 1 else 'ies'} older than {interval}s")


@app.command("clear")
def clear_command(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt."),
) -> None:
    """Delete every entry under the cache root."""
    _, store = _open(ctx)
    if not yes:
        typer.confirm(f"Delete all cache entries under {store.root}?", abort=True)
    removed = _run(store.clear(), store)
    get_output().success(f"Removed {removed} entr{'y' if removed == 1 else 'ies'}")


@app.command("invalidate")
def invalidate_command(
    ctx: typer.Context,
    key: str = typer.Argument(help="Cache key (64-character hex digest)."),
) -> None:
    """Delete the entry for one key."""
    try:
        validate_key(key)
    except CacheSerdeError as exc:
        get_output().error(str(exc))
        raise typer.Exit(code=exc.exit_code) from exc
    _, store = _open(ctx)
    if _run(store.delete(key), store):
        get_output().success(f"Invalidated {key}")
    else:
        get_output().warning(f"No entry for {key}")


@app.command("hash")
def hash_command(
    text: str = typer.Argument(help="Explicit key text to hash."),
) -> None:
    """Print the cache key derived from an explicit key string."""
    get_output().info("SHA-256 of the UTF-8 encoded text:")
    typer.echo(hash_key(text))


def main() -> None:
    """Console-script entry point."""
    app()
