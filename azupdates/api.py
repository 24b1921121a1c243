"""
Core API for the Azure Updates mirror.

``AzureUpdates`` wires configuration, the record store, the feed client and
both engines together:
- sync(): fetch changes from the feed into the store
- search(): keyword + filter search with pagination
- get(): retrieve one update by id

``build_search_query()`` is the shared request validation used by the MCP
tools and the CLI.
"""

import logging
from pathlib import Path
from typing import Optional

from .config import StoreConfig, get_default_store_path, load_or_create_config
from .feed_client import FeedClient
from .guide import generate_guide
from .logging_config import configure_ops_log, remove_ops_log
from .protocol import UpdateFeedProtocol
from .search import MAX_LIMIT, SearchEngine
from .sync import SyncEngine, checkpoint_needs_sync, checkpoint_status
from .types import (
    AVAILABILITY_RINGS,
    SORT_OPTIONS,
    SearchFilters,
    SearchQuery,
    SearchResponse,
    SyncResult,
    UpdateRecord,
    is_date_only,
    normalize_month,
    parse_utc_timestamp,
)
from .update_store import UpdateStore

logger = logging.getLogger(__name__)

# Page size when a caller gives no limit
DEFAULT_PAGE_LIMIT = 20


class SearchValidationError(ValueError):
    """One or more search arguments were rejected."""

    def __init__(self, errors: list[str]):
        super().__init__("; ".join(errors))
        self.errors = errors


def _is_iso_date(value: str) -> bool:
    if is_date_only(value):
        try:
            parse_utc_timestamp(f"{value}T00:00:00Z")
        except ValueError:
            return False
        return True
    if "T" not in value:
        return False
    try:
        parse_utc_timestamp(value)
    except ValueError:
        return False
    return True


def _check_list(name: str, value, errors: list[str]) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str) or not isinstance(value, (list, tuple)):
        errors.append(f"{name} must be an array of strings")
        return []
    if not all(isinstance(v, str) for v in value):
        errors.append(f"{name} must be an array of strings")
        return []
    return [v.strip() for v in value if v.strip()]


def build_search_query(
    query: Optional[str] = None,
    *,
    tags: Optional[list[str]] = None,
    product_categories: Optional[list[str]] = None,
    products: Optional[list[str]] = None,
    status: Optional[str] = None,
    availability_ring: Optional[str] = None,
    modified_from: Optional[str] = None,
    modified_to: Optional[str] = None,
    retirement_from: Optional[str] = None,
    retirement_to: Optional[str] = None,
    sort_by: Optional[str] = None,
    limit: Optional[int] = None,
    offset: Optional[int] = None,
) -> SearchQuery:
    """
    Validate caller-supplied search arguments and build a SearchQuery.

    All problems are collected before raising, so a caller sees every
    rejected argument at once.

    Raises:
        SearchValidationError: If any argument is invalid
    """
    errors: list[str] = []

    if query is not None and not isinstance(query, str):
        errors.append("query must be a string")

    if limit is not None:
        if isinstance(limit, bool) or not isinstance(limit, int):
            errors.append("limit must be an integer")
        elif not 1 <= limit <= MAX_LIMIT:
            errors.append(f"limit must be between 1 and {MAX_LIMIT}")

    if offset is not None:
        if isinstance(offset, bool) or not isinstance(offset, int):
            errors.append("offset must be an integer")
        elif offset < 0:
            errors.append("offset must be non-negative")

    if sort_by is not None and sort_by not in SORT_OPTIONS:
        errors.append(f"sortBy must be one of: {', '.join(SORT_OPTIONS)}")

    if availability_ring is not None and availability_ring not in AVAILABILITY_RINGS:
        errors.append(f"availabilityRing must be one of: {', '.join(AVAILABILITY_RINGS)}")

    for name, value in (("modifiedFrom", modified_from), ("modifiedTo", modified_to)):
        if value is not None and not _is_iso_date(value):
            errors.append(f"{name} must be a valid ISO 8601 date (YYYY-MM-DD or timestamp)")

    months = {}
    for name, value in (("retirementFrom", retirement_from), ("retirementTo", retirement_to)):
        if value is None:
            continue
        try:
            months[name] = normalize_month(value)
        except ValueError:
            errors.append(
                f"{name} must be in YYYY-MM or YYYY-MM-DD format "
                "(e.g., 2026-03 or 2026-03-15 for March 2026)"
            )

    filters = SearchFilters(
        status=status or None,
        availability_ring=availability_ring or None,
        tags=_check_list("tags", tags, errors),
        product_categories=_check_list("productCategories", product_categories, errors),
        products=_check_list("products", products, errors),
        modified_from=modified_from or None,
        modified_to=modified_to or None,
        retirement_from=months.get("retirementFrom"),
        retirement_to=months.get("retirementTo"),
    )

    if errors:
        raise SearchValidationError(errors)

    return SearchQuery(
        query=query.strip() if query and query.strip() else None,
        filters=filters,
        sort_by=sort_by,
        limit=limit if limit is not None else DEFAULT_PAGE_LIMIT,
        offset=offset or 0,
    )


class AzureUpdates:
    """
    Local mirror of the Azure Updates feed.

    Example:
        au = AzureUpdates()
        au.sync()
        page = au.search(build_search_query("key vault", tags=["Retirements"]))
    """

    def __init__(
        self,
        store_path: Optional[str | Path] = None,
        *,
        config: Optional[StoreConfig] = None,
        feed: Optional[UpdateFeedProtocol] = None,
    ) -> None:
        """
        Open (or create) a store.

        Args:
            store_path: Store directory. Uses the default if not specified.
            config: Pre-loaded StoreConfig (skips filesystem config discovery)
            feed: Injected feed (skips creating an HTTP client)
        """
        if config is not None:
            self._config = config
        else:
            path = Path(store_path).expanduser().resolve() if store_path else get_default_store_path()
            self._config = load_or_create_config(path)
        self._store_path = self._config.path
        self._store_path.mkdir(parents=True, exist_ok=True)

        self._ops_log_handler = configure_ops_log(self._store_path)

        # Writer and reader use separate connections; with WAL a reader only
        # ever sees committed batches
        db_path = self._config.database_path
        self._writer = UpdateStore(db_path)
        self._reader = UpdateStore(db_path)

        self._feed = feed
        self._owns_feed = feed is None
        self._sync_engine: Optional[SyncEngine] = None
        self._search_engine = SearchEngine(self._reader)

    @property
    def config(self) -> StoreConfig:
        return self._config

    @property
    def store_path(self) -> Path:
        return self._store_path

    def _get_feed(self) -> UpdateFeedProtocol:
        if self._feed is None:
            feed_cfg = self._config.feed
            self._feed = FeedClient(
                feed_cfg.endpoint,
                page_size=feed_cfg.page_size,
                max_retries=feed_cfg.max_retries,
                timeout=feed_cfg.timeout,
            )
        return self._feed

    def _get_sync_engine(self) -> SyncEngine:
        if self._sync_engine is None:
            self._sync_engine = SyncEngine(self._writer, self._get_feed())
        return self._sync_engine

    # -------------------------------------------------------------------------
    # Sync
    # -------------------------------------------------------------------------

    def sync(self, retention_start_date: Optional[str] = None) -> SyncResult:
        """
        Run one sync against the feed.

        Args:
            retention_start_date: Overrides the configured retention floor

        Returns:
            SyncResult (never raises)
        """
        floor = retention_start_date or self._config.sync.retention_start_date
        return self._get_sync_engine().run_sync(floor)

    # Freshness reads go through the reader so they never wait on a running
    # sync transaction; WAL shows them the last committed checkpoint

    def is_sync_needed(self) -> bool:
        """True if the mirror is missing, failed last time, or stale."""
        return checkpoint_needs_sync(self._reader.get_checkpoint(),
                                     self._config.sync.staleness_hours)

    def status(self) -> dict:
        """Checkpoint summary plus the store location."""
        checkpoint = self._reader.get_checkpoint()
        status = checkpoint_status(checkpoint)
        status["storePath"] = str(self._store_path)
        status["stale"] = checkpoint_needs_sync(checkpoint, self._config.sync.staleness_hours)
        return status

    def remote_count(self) -> int:
        """
        Number of updates the feed holds right now.

        Raises:
            FeedClientError: If the feed cannot be queried
        """
        return self._get_feed().fetch_count()

    def unlock(self) -> bool:
        """Release a sync guard left behind by a crashed process."""
        return self._writer.reset_sync_lock()

    # -------------------------------------------------------------------------
    # Query
    # -------------------------------------------------------------------------

    def search(self, request: SearchQuery) -> SearchResponse:
        """Run a validated search request."""
        return self._search_engine.search(request)

    def get(self, update_id: str) -> Optional[UpdateRecord]:
        """Retrieve one update by id."""
        return self._search_engine.get_by_id(update_id)

    def guide(self) -> dict:
        """Search guide with live filter values and freshness."""
        return generate_guide(self._reader, self._config.sync.retention_start_date)

    def count(self) -> int:
        return self._reader.count()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close stores, the HTTP client and the ops log."""
        if self._owns_feed and self._feed is not None:
            self._feed.close()
        self._feed = None
        self._sync_engine = None
        self._writer.close()
        self._reader.close()
        if self._ops_log_handler is not None:
            remove_ops_log(self._ops_log_handler)
            self._ops_log_handler = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
