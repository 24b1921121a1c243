"""
Search over the mirrored updates.

A request combines optional free text with structured filters. Free text
goes through the FTS5 index with prefix matching and BM25 ranking; filters
become one AND-combined predicate. The page and the total count run against
the identical predicate, so ``total`` and ``has_more`` always agree with the
rows returned. Multi-valued side data (tags, categories, products,
availabilities) is attached afterwards by id.

Within one multi-valued filter dimension every listed value must be present
on the record (AND), for tags, product categories and products alike.
"""

import json
import logging
import re
import sqlite3
import time
from typing import Any, Optional

from .types import (
    RETIREMENT_RING,
    SORT_OPTIONS,
    SearchFilters,
    SearchMetadata,
    SearchQuery,
    SearchResponse,
    UpdateRecord,
    canonical_timestamp,
    is_date_only,
    normalize_month,
)
from .update_store import UpdateStore

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 50
MAX_LIMIT = 100

# Characters with meaning to the FTS5 query parser
_FTS_SPECIAL = re.compile(r"""[(){}\[\]^~*:"'\-“”‘’]""")

_COLUMNS = """
    au.id, au.title, au.description_html, au.description_md, au.status,
    au.locale, au.created, au.modified, au.metadata
"""

# Earliest dated Retirement milestone of the outer row
_RETIREMENT_DATE = f"""(
    SELECT MIN(ra.date) FROM update_availabilities ra
    WHERE ra.update_id = au.id AND ra.ring = '{RETIREMENT_RING}' AND ra.date IS NOT NULL
)"""

# (table, value column) per multi-valued filter dimension
_DIMENSIONS = (
    ("tags", "update_tags", "tag"),
    ("product_categories", "update_categories", "category"),
    ("products", "update_products", "product"),
)


class SearchError(Exception):
    """The store could not answer a search."""


def sanitize_fts_query(text: Optional[str]) -> Optional[str]:
    """
    Turn free text into a broad FTS5 query.

    Operator characters are removed, each remaining word becomes a quoted
    prefix term, and the terms are OR-joined for recall on short input.

    Returns:
        FTS5 query string, or None if nothing searchable is left
    """
    if not text:
        return None
    cleaned = _FTS_SPECIAL.sub(" ", text)
    terms = [f'"{word}"*' for word in cleaned.split()]
    return " OR ".join(terms) if terms else None


def _resolve_sort(sort_by: Optional[str], has_text: bool) -> str:
    if sort_by is None:
        return "relevance" if has_text else "modified:desc"
    if sort_by not in SORT_OPTIONS:
        raise ValueError(f"sort_by must be one of: {', '.join(SORT_OPTIONS)}")
    if sort_by == "relevance" and not has_text:
        return "modified:desc"
    return sort_by


def _order_clause(sort: str) -> str:
    tiebreak = "au.modified DESC, au.id ASC"
    if sort == "relevance":
        return f"score ASC, {tiebreak}"
    key, direction = sort.split(":")
    direction = direction.upper()
    if key == "retirement":
        # Records without a retirement date go last in both directions
        return (f"retirement_date IS NULL, retirement_date {direction}, {tiebreak}")
    return f"au.{key} {direction}, {tiebreak}"


def _modified_lower_bound(value: str) -> str:
    if is_date_only(value):
        return f"{value}T00:00:00.0000000Z"
    return canonical_timestamp(value)


def _modified_upper_bound(value: str) -> str:
    # A bare date covers the whole day
    if is_date_only(value):
        return f"{value}T23:59:59.9999999Z"
    return canonical_timestamp(value)



def build_filter_clauses(filters: Optional[SearchFilters], params: list[Any]) -> list[str]:
    """
    Build WHERE clauses for the structured filters.

    Args:
        filters: Filters to apply (None for none)
        params: Parameter list, extended in clause order

    Returns:
        Clauses to be AND-combined
    """
    if filters is None:
        return []

    clauses: list[str] = []

    for attr, table, column in _DIMENSIONS:
        values = list(dict.fromkeys(v for v in getattr(filters, attr) or [] if v))
        for value in values:
            clauses.append(
                f"EXISTS (SELECT 1 FROM {table} x WHERE x.update_id = au.id AND x.{column} = ?)"
            )
            params.append(value)

    if filters.status:
        clauses.append("au.status = ?")
        params.append(filters.status)

    if filters.availability_ring:
        clauses.append(
            "EXISTS (SELECT 1 FROM update_availabilities ua "
            "WHERE ua.update_id = au.id AND ua.ring = ?)"
        )
        params.append(filters.availability_ring)

    if filters.modified_from:
        clauses.append("au.modified >= ?")
        params.append(_modified_lower_bound(filters.modified_from))

    if filters.modified_to:
        clauses.append("au.modified <= ?")
        params.append(_modified_upper_bound(filters.modified_to))

    if filters.retirement_from or filters.retirement_to:
        # Both bounds must hold for the same Retirement milestone
        conditions = ["rt.update_id = au.id", "rt.ring = ?", "rt.date IS NOT NULL"]
        params.append(RETIREMENT_RING)
        if filters.retirement_from:
            conditions.append("rt.date >= ?")
            params.append(normalize_month(filters.retirement_from))
        if filters.retirement_to:
            conditions.append("rt.date <= ?")
            params.append(normalize_month(filters.retirement_to))
        clauses.append(
            f"EXISTS (SELECT 1 FROM update_availabilities rt WHERE {' AND '.join(conditions)})"
        )

    return clauses


class SearchEngine:
    """Ranked, filtered, paginated reads against an UpdateStore."""

    def __init__(self, store: UpdateStore):
        self._store = store

    def search(self, request: SearchQuery) -> SearchResponse:
        """
        Run a search request.

        Args:
            request: Text, filters, sort and pagination

        Returns:
            SearchResponse with the page and exact total

        Raises:
            ValueError: Malformed sort key or date filter
            SearchError: The store failed to answer
        """
        started = time.monotonic()
        limit = min(request.limit if request.limit is not None else DEFAULT_LIMIT, MAX_LIMIT)
        offset = request.offset or 0

        fts_query = None
        if request.query and request.query.strip():
            fts_query = sanitize_fts_query(request.query)
        sort = _resolve_sort(request.sort_by, fts_query is not None)

        params: list[Any] = []
        joins = ""
        where: list[str] = []
        rank_column = "NULL AS score"
        if fts_query is not None:
            joins = "JOIN updates_fts ON updates_fts.rowid = au.rowid"
            where.append("updates_fts MATCH ?")
            params.append(fts_query)
            rank_column = "bm25(updates_fts) AS score"
        where.extend(build_filter_clauses(request.filters, params))
        where_sql = f"WHERE {' AND '.join(where)}" if where else ""

        page_sql = f"""
            SELECT {_COLUMNS}, {rank_column}, {_RETIREMENT_DATE} AS retirement_date
            FROM azure_updates au
            {joins}
            {where_sql}
            ORDER BY {_order_clause(sort)}
            LIMIT ? OFFSET ?
        """
        count_sql = f"""
            SELECT COUNT(*) FROM azure_updates au
            {joins}
            {where_sql}
        """

        logger.debug("Search: text=%r sort=%s limit=%d offset=%d filters=%s",
                     fts_query, sort, limit, offset, request.filters)

        try:
            rows = self._store.query(page_sql, [*params, limit, offset])
            total = self._store.query_one(count_sql, params)[0]
            results = self._project(rows)
        except sqlite3.Error as e:
            raise SearchError(f"Search failed: {e}") from e

        query_time_ms = int((time.monotonic() - started) * 1000)
        return SearchResponse(
            results=results,
            metadata=SearchMetadata(
                total=total,
                returned=len(results),
                limit=limit,
                offset=offset,
                has_more=total > offset + len(results),
                query_time_ms=query_time_ms,
            ),
        )

    def get_by_id(self, update_id: str) -> Optional[UpdateRecord]:
        """
        Fetch a single update with its associations.

        Raises:
            SearchError: The store failed to answer
        """
        try:
            rows = self._store.query(f"""
                SELECT {_COLUMNS}, NULL AS score
                FROM azure_updates au
                WHERE au.id = ?
            """, (update_id,))
            results = self._project(rows)
        except sqlite3.Error as e:
            raise SearchError(f"Lookup failed: {e}") from e
        return results[0] if results else None

    def _project(self, rows: list[sqlite3.Row]) -> list[UpdateRecord]:
        """Map primary rows to records and attach their side data."""
        ids = [row["id"] for row in rows]
        related = self._store.get_associations(ids)
        records = []
        for row in rows:
            extra = related[row["id"]]
            score = row["score"]
            records.append(UpdateRecord(
                id=row["id"],
                title=row["title"],
                description_html=row["description_html"] or "",
                description_md=row["description_md"],
                status=row["status"],
                locale=row["locale"],
                created=row["created"],
                modified=row["modified"],
                metadata=json.loads(row["metadata"]) if row["metadata"] else None,
                tags=extra["tags"],
                product_categories=extra["categories"],
                products=extra["products"],
                availabilities=extra["availabilities"],
                # bm25 is lower-is-better; expose higher-is-better
                relevance=-score if score is not None else None,
            ))
        return records
