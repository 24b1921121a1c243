"""
CLI interface for the Azure Updates mirror.

Usage:
    azupdates sync
    azupdates search "key vault" --tag Retirements
    azupdates get <id>
"""

import json
import os
from pathlib import Path
from typing import Any, Optional

import typer
from typing_extensions import Annotated

from .api import AzureUpdates, SearchValidationError, build_search_query
from .feed_client import FeedClientError
from .formatting import format_detail_text, format_summary_line, search_response_dict, update_detail
from .logging_config import configure_quiet_mode, enable_debug_mode, is_verbose_env
from .search import SearchError
from .types import SYNC_IN_PROGRESS

# Set AZURE_UPDATES_VERBOSE=1 to enable debug mode via environment
if is_verbose_env():
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from . import __version__
        print(f"azupdates {__version__}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_store_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _get_json_output() -> bool:
    return _json_output


def _store_callback(value: Optional[Path]):
    global _store_override
    if value is not None:
        _store_override = value


def _get_store_override() -> Optional[Path]:
    return _store_override


app = typer.Typer(
    name="azupdates",
    help="Local, searchable mirror of the Azure Updates feed.",
    no_args_is_help=False,
    invoke_without_command=True,
    rich_markup_mode=None,
)


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="AZURE_UPDATES_STORE_PATH",
        help="Path to the store directory",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """Local, searchable mirror of the Azure Updates feed."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())


# -----------------------------------------------------------------------------
# Common Options
# -----------------------------------------------------------------------------

StoreOption = Annotated[
    Optional[Path],
    typer.Option(
        "--store", "-s",
        envvar="AZURE_UPDATES_STORE_PATH",
        help="Path to the store directory (default: ~/.azupdates/)"
    )
]


def _get_updates(store: Optional[Path]) -> AzureUpdates:
    """Open the store, handling errors gracefully."""
    import atexit

    actual_store = store if store is not None else _get_store_override()
    try:
        au = AzureUpdates(actual_store)
    except (ValueError, OSError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    atexit.register(au.close)
    return au


def _echo_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, ensure_ascii=False))


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

@app.command()
def sync(
    retention_start: Annotated[Optional[str], typer.Option(
        "--retention-start",
        help="Keep only updates created or modified on/after this date (YYYY-MM-DD)"
    )] = None,
    store: StoreOption = None,
):
    """
    Fetch new and changed updates from the feed.

    The first run downloads everything (from the retention date, if set);
    later runs only fetch updates modified since the last sync.
    """
    au = _get_updates(store)
    result = au.sync(retention_start)

    if _get_json_output():
        _echo_json(result.to_dict())
    elif result.success:
        if result.records_processed:
            typer.echo(
                f"Synced {result.records_processed} updates "
                f"({result.records_inserted} new, {result.records_updated} updated) "
                f"in {result.duration_ms}ms"
            )
        else:
            typer.echo(f"No new updates ({result.duration_ms}ms)")
        typer.echo(f"{au.count()} updates in store")
    else:
        typer.echo(f"Sync failed: {result.error}", err=True)

    if not result.success:
        raise typer.Exit(1)


@app.command()
def search(
    query: Annotated[Optional[str], typer.Argument(help="Keywords to search for")] = None,
    tag: Annotated[Optional[list[str]], typer.Option(
        "--tag", "-t",
        help="Required tag (repeatable; all must match)"
    )] = None,
    category: Annotated[Optional[list[str]], typer.Option(
        "--category", "-c",
        help="Required product category (repeatable; all must match)"
    )] = None,
    product: Annotated[Optional[list[str]], typer.Option(
        "--product", "-p",
        help="Required product (repeatable; all must match)"
    )] = None,
    status: Annotated[Optional[str], typer.Option(
        "--status",
        help="Exact status, e.g. Active"
    )] = None,
    ring: Annotated[Optional[str], typer.Option(
        "--ring",
        help="Availability ring (General Availability, Preview, Private Preview, Retirement)"
    )] = None,
    modified_from: Annotated[Optional[str], typer.Option(
        "--modified-from",
        help="Modified on or after (YYYY-MM-DD or ISO timestamp)"
    )] = None,
    modified_to: Annotated[Optional[str], typer.Option(
        "--modified-to",
        help="Modified on or before (a bare date includes the whole day)"
    )] = None,
    retirement_from: Annotated[Optional[str], typer.Option(
        "--retirement-from",
        help="Retirement month on or after (YYYY-MM)"
    )] = None,
    retirement_to: Annotated[Optional[str], typer.Option(
        "--retirement-to",
        help="Retirement month on or before (YYYY-MM)"
    )] = None,
    sort: Annotated[Optional[str], typer.Option(
        "--sort",
        help="relevance, modified:desc|asc, created:desc|asc, retirement:asc|desc"
    )] = None,
    limit: Annotated[int, typer.Option(
        "--limit", "-n",
        help="Maximum results to return (1-100)"
    )] = 20,
    offset: Annotated[int, typer.Option(
        "--offset",
        help="Number of results to skip"
    )] = 0,
    store: StoreOption = None,
):
    """
    Search updates by keywords and filters.

    \b
    Examples:
        azupdates search "key vault"
        azupdates search -t Retirements --retirement-from 2026-03 --sort retirement:asc
        azupdates search "sql" -c Databases --ring Preview
    """
    try:
        request = build_search_query(
            query,
            tags=tag,
            product_categories=category,
            products=product,
            status=status,
            availability_ring=ring,
            modified_from=modified_from,
            modified_to=modified_to,
            retirement_from=retirement_from,
            retirement_to=retirement_to,
            sort_by=sort,
            limit=limit,
            offset=offset,
        )
    except SearchValidationError as e:
        for message in e.errors:
            typer.echo(f"Error: {message}", err=True)
        raise typer.Exit(1)

    au = _get_updates(store)
    try:
        response = au.search(request)
    except SearchError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    if _get_json_output():
        _echo_json(search_response_dict(response))
        return

    for record in response.results:
        typer.echo(format_summary_line(record))
    meta = response.metadata
    if meta.returned:
        first = meta.offset + 1
        typer.echo(f"\n{first}-{meta.offset + meta.returned} of {meta.total}"
                   + (f" (next: --offset {meta.offset + meta.returned})" if meta.has_more else ""))
    else:
        typer.echo(f"No results ({meta.total} total)")


@app.command()
def get(
    id: Annotated[str, typer.Argument(help="Update id")],
    store: StoreOption = None,
):
    """Show one update with its full description."""
    au = _get_updates(store)
    record = au.get(id)
    if record is None:
        typer.echo(f"Not found: {id}", err=True)
        raise typer.Exit(1)

    if _get_json_output():
        _echo_json(update_detail(record))
    else:
        typer.echo(format_detail_text(record))


@app.command()
def status(
    remote: Annotated[bool, typer.Option(
        "--remote", "-r",
        help="Also ask the feed how many updates it holds"
    )] = False,
    store: StoreOption = None,
):
    """Show the sync checkpoint and data freshness."""
    au = _get_updates(store)
    info = au.status()
    if remote:
        try:
            info["upstreamCount"] = au.remote_count()
        except FeedClientError as e:
            info["upstreamCount"] = None
            info["upstreamError"] = str(e)

    if _get_json_output():
        _echo_json(info)
        return

    typer.echo(f"store:        {info['storePath']}")
    typer.echo(f"status:       {info['syncStatus']}")
    typer.echo(f"records:      {info['recordCount']}")
    typer.echo(f"watermark:    {info['lastSync']}")
    if info["lastChecked"]:
        typer.echo(f"last checked: {info['lastChecked']}")
    if info["hoursSinceSync"] is not None:
        typer.echo(f"age:          {info['hoursSinceSync']}h" + (" (stale)" if info["stale"] else ""))
    if info["lastError"]:
        typer.echo(f"last error:   {info['lastError']}")
    if remote:
        if info["upstreamCount"] is not None:
            typer.echo(f"upstream:     {info['upstreamCount']} updates in the feed")
        else:
            typer.echo(f"upstream:     unavailable ({info['upstreamError']})")
    if info["syncStatus"] == SYNC_IN_PROGRESS:
        typer.echo("A sync is in progress. If no sync is running, release it with: azupdates unlock")


@app.command()
def guide(
    store: StoreOption = None,
):
    """Print the search guide (filter values, examples, freshness) as JSON."""
    au = _get_updates(store)
    _echo_json(au.guide())


@app.command()
def unlock(
    store: StoreOption = None,
):
    """Release a sync lock left behind by an interrupted sync."""
    au = _get_updates(store)
    if au.unlock():
        typer.echo("Sync lock released")
    else:
        typer.echo("No sync lock held")


@app.command()
def mcp(
    store: StoreOption = None,
):
    """Start MCP stdio server for AI agent integration."""
    if store is not None:
        os.environ["AZURE_UPDATES_STORE_PATH"] = str(store)
    elif _get_store_override() is not None:
        os.environ["AZURE_UPDATES_STORE_PATH"] = str(_get_store_override())
    from .mcp import main as mcp_main
    mcp_main()


# -----------------------------------------------------------------------------

def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="azupdates CLI", store_path=_get_store_override())
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
