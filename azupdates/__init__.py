"""
Local, searchable mirror of the Azure Updates feed.

Sync the feed into a SQLite store and search it by keyword and filters,
from Python, the ``azupdates`` CLI, or as an MCP server.
"""

__version__ = "0.3.0"

from .api import AzureUpdates, SearchValidationError, build_search_query
from .search import SearchError
from .types import SearchFilters, SearchQuery, SearchResponse, SyncResult, UpdateRecord

__all__ = [
    "AzureUpdates",
    "SearchError",
    "SearchFilters",
    "SearchQuery",
    "SearchResponse",
    "SearchValidationError",
    "SyncResult",
    "UpdateRecord",
    "build_search_query",
]
