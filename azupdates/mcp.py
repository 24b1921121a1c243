"""
MCP stdio server for the Azure Updates mirror.

Exposes search over the local replica as MCP tools, plus a guide resource
that lists the filter values present in the data.

Usage:
    azupdates mcp                                   # stdio server (via CLI)
    claude mcp add azure-updates -- azupdates mcp   # Claude Code integration

All store calls are serialized through a single asyncio.Lock. A startup
sync, when the data is stale, runs on a background thread with its own
writer connection and does not block tool calls.
"""

import asyncio
import json
import logging
import os
import threading
from pathlib import Path
from typing import Annotated, Any, Literal, Optional

from mcp.server.fastmcp import FastMCP
from mcp.types import ToolAnnotations
from pydantic import Field

from .api import AzureUpdates, SearchValidationError, build_search_query
from .formatting import search_response_dict, update_detail
from .guide import GUIDE_URI
from .search import SearchError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Server setup
# ---------------------------------------------------------------------------

mcp = FastMCP(
    "azure-updates",
    instructions=(
        "Search Azure service updates, retirements and feature announcements "
        "from a locally synced copy of the Azure Updates feed. "
        "Read the azure-updates://guide resource for available tags, "
        "categories, products and query tips."
    ),
)

_updates: Optional[AzureUpdates] = None
_lock = asyncio.Lock()


def _get_updates() -> AzureUpdates:
    """Lazy-init AzureUpdates with default config (respects AZURE_UPDATES_STORE_PATH).

    Must be called inside ``async with _lock`` or before the server starts.
    """
    global _updates
    if _updates is None:
        store_path = os.environ.get("AZURE_UPDATES_STORE_PATH")
        _updates = AzureUpdates(store_path=Path(store_path) if store_path else None)
    return _updates


def _json(data: Any) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False)


def _error(error: str, details: Any) -> str:
    return _json({"error": error, "details": details})


# ---------------------------------------------------------------------------
# Tool annotations
# ---------------------------------------------------------------------------

_READ_ONLY = ToolAnnotations(readOnlyHint=True, destructiveHint=False)

SortOption = Literal[
    "relevance",
    "modified:desc",
    "modified:asc",
    "created:desc",
    "created:asc",
    "retirement:asc",
    "retirement:desc",
]


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool(
    description=(
        "Search Azure updates by keywords and structured filters. "
        "Returns lightweight summaries (no descriptions) with pagination metadata; "
        "use get_azure_update for the full text of one update. "
        "Multiple values in tags, productCategories or products must ALL be present."
    ),
    annotations=_READ_ONLY,
)
async def search_azure_updates(
    query: Annotated[Optional[str], Field(
        description="Keywords to match against title and description (prefix matching, any word).",
    )] = None,
    tags: Annotated[Optional[list[str]], Field(
        description='Required tags, e.g. ["Retirements"] or ["Security", "Features"].',
    )] = None,
    productCategories: Annotated[Optional[list[str]], Field(
        description='Required product categories, e.g. ["Compute"].',
    )] = None,
    products: Annotated[Optional[list[str]], Field(
        description='Required products, e.g. ["Azure Key Vault"].',
    )] = None,
    status: Annotated[Optional[str], Field(
        description="Exact status, e.g. Active.",
    )] = None,
    availabilityRing: Annotated[Optional[str], Field(
        description="General Availability, Preview, Private Preview or Retirement.",
    )] = None,
    modifiedFrom: Annotated[Optional[str], Field(
        description="Modified on or after this date (YYYY-MM-DD or ISO 8601 timestamp).",
    )] = None,
    modifiedTo: Annotated[Optional[str], Field(
        description="Modified on or before this date (a bare date includes the whole day).",
    )] = None,
    retirementFrom: Annotated[Optional[str], Field(
        description="Retirement month on or after (YYYY-MM or YYYY-MM-DD).",
    )] = None,
    retirementTo: Annotated[Optional[str], Field(
        description="Retirement month on or before (YYYY-MM or YYYY-MM-DD).",
    )] = None,
    sortBy: Annotated[Optional[SortOption], Field(
        description="Sort order. Defaults to relevance with keywords, else modified:desc.",
    )] = None,
    limit: Annotated[Optional[int], Field(
        description="Results per page, 1-100 (default 20).",
    )] = None,
    offset: Annotated[Optional[int], Field(
        description="Number of results to skip (default 0).",
    )] = None,
) -> str:
    """Search updates."""
    try:
        request = build_search_query(
            query,
            tags=tags,
            product_categories=productCategories,
            products=products,
            status=status,
            availability_ring=availabilityRing,
            modified_from=modifiedFrom,
            modified_to=modifiedTo,
            retirement_from=retirementFrom,
            retirement_to=retirementTo,
            sort_by=sortBy,
            limit=limit,
            offset=offset,
        )
    except SearchValidationError as e:
        logger.warning("search_azure_updates validation failed: %s", e.errors)
        return _error("Validation failed", e.errors)

    async with _lock:
        try:
            response = _get_updates().search(request)
        except (SearchError, ValueError) as e:
            logger.error("search_azure_updates failed: %s", e)
            return _error("Search failed", str(e))

    logger.info("Search returned %d of %d (%dms)",
                response.metadata.returned, response.metadata.total,
                response.metadata.query_time_ms)
    return _json(search_response_dict(response))


@mcp.tool(
    description=(
        "Get one Azure update by id, including its full markdown description, "
        "availability milestones and retirement date."
    ),
    annotations=_READ_ONLY,
)
async def get_azure_update(
    id: Annotated[str, Field(
        description="Update id as returned by search_azure_updates.",
    )],
) -> str:
    """Fetch one update."""
    if not id or not id.strip():
        return _error("Validation failed", ["id must be a non-empty string"])

    async with _lock:
        try:
            record = _get_updates().get(id.strip())
        except SearchError as e:
            logger.error("get_azure_update failed: %s", e)
            return _error("Lookup failed", str(e))

    if record is None:
        return _error("Not found", f"No update with id {id.strip()!r}")
    return _json(update_detail(record))


@mcp.tool(
    description="Report when the local copy was last synced, how many updates it holds, and whether it is stale.",
    annotations=_READ_ONLY,
)
async def sync_status() -> str:
    """Sync checkpoint summary."""
    async with _lock:
        return _json(_get_updates().status())


# ---------------------------------------------------------------------------
# Resources
# ---------------------------------------------------------------------------


@mcp.resource(
    GUIDE_URI,
    name="Azure Updates Search Guide",
    description="Available filter values, usage examples, data freshness and query tips.",
    mime_type="application/json",
)
async def search_guide() -> str:
    """Guide document."""
    async with _lock:
        return _json(_get_updates().guide())


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def _background_sync(updates: AzureUpdates) -> None:
    result = updates.sync()
    if result.success:
        logger.info("Startup sync finished: %d records processed", result.records_processed)
    else:
        logger.warning("Startup sync failed: %s", result.error)


def start_background_sync(updates: AzureUpdates) -> Optional[threading.Thread]:
    """Start a sync thread if startup sync is enabled and the data is stale."""
    if not updates.config.sync.sync_on_startup:
        logger.info("Startup sync disabled")
        return None
    if not updates.is_sync_needed():
        logger.info("Data is fresh, skipping startup sync")
        return None
    thread = threading.Thread(
        target=_background_sync, args=(updates,), name="azupdates-sync", daemon=True
    )
    thread.start()
    return thread


def main():
    """Run the MCP stdio server."""
    import signal
    # anyio's stdin reader shields the blocking readline from cancellation,
    # so the first Ctrl+C would otherwise be ignored
    signal.signal(signal.SIGINT, lambda *_: os._exit(130))

    start_background_sync(_get_updates())
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
