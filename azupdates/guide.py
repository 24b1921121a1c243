"""
Search guide: what is in the mirror and how to query it.

Served as the ``azure-updates://guide`` MCP resource and by ``azupdates
guide``. Filter values come straight from the store so a client can pick
exact tag, category and product names.
"""

import logging
from typing import Any, Optional

from .sync import hours_since
from .update_store import UpdateStore

logger = logging.getLogger(__name__)

GUIDE_URI = "azure-updates://guide"

QUERY_TIPS = [
    'Use natural language queries like "security updates" or "database retirements"',
    "Combine keyword search with filters for precise results",
    "Use modifiedFrom/modifiedTo for time ranges (YYYY-MM-DD or full ISO 8601 timestamps)",
    "Use retirementFrom/retirementTo with YYYY-MM to find upcoming retirements by month",
    "Multiple values in one array filter use AND logic: every listed tag, category or product must be present",
    "Different filter types are combined with AND logic",
    "Set limit (max 100) and offset for pagination through large result sets",
    "Relevance scores are returned for keyword searches; higher is a better match",
]

USAGE_EXAMPLES = [
    {
        "description": "Natural language search with tag filter",
        "query": {"query": "OAuth authentication security", "tags": ["Security"], "limit": 10},
    },
    {
        "description": "Compute retirements scheduled between March and December 2026",
        "query": {
            "tags": ["Retirements"],
            "productCategories": ["Compute"],
            "retirementFrom": "2026-03",
            "retirementTo": "2026-12",
            "sortBy": "retirement:asc",
        },
    },
    {
        "description": "Machine learning features in preview",
        "query": {
            "query": "machine learning",
            "availabilityRing": "Preview",
            "productCategories": ["AI + machine learning"],
        },
    },
    {
        "description": "Updates modified since the start of the year, newest first",
        "query": {"modifiedFrom": "2025-01-01", "sortBy": "modified:desc"},
    },
]


def generate_guide(store: UpdateStore, retention_start_date: Optional[str] = None) -> dict[str, Any]:
    """
    Build the guide document.

    Args:
        store: Store to describe
        retention_start_date: Configured retention floor, if any

    Returns:
        JSON-ready dict
    """
    checkpoint = store.get_checkpoint()
    total = store.count()

    hours_since_sync = None
    if not checkpoint.never_synced:
        hours = hours_since(checkpoint.last_checked or checkpoint.last_sync)
        hours_since_sync = round(hours, 1) if hours is not None else None

    if retention_start_date:
        note = (f"Updates are retained from {retention_start_date} onwards. "
                "Older updates are filtered out during sync.")
    else:
        note = "All historical updates are retained without date filtering."

    guide = {
        "overview": (
            "Local mirror of the Azure Updates feed: service updates, retirements "
            f"and feature announcements. Search across {total:,} updates with "
            "keywords and structured filters."
        ),
        "dataAvailability": {
            "retentionStartDate": retention_start_date,
            "note": note,
        },
        "availableFilters": {
            "tags": store.list_tags(),
            "productCategories": store.list_categories(),
            "products": store.list_products(),
            "statuses": store.list_statuses(),
            "availabilityRings": store.list_availability_rings(),
        },
        "usageExamples": USAGE_EXAMPLES,
        "dataFreshness": {
            "lastSync": None if checkpoint.never_synced else checkpoint.last_sync,
            "lastChecked": checkpoint.last_checked,
            "hoursSinceSync": hours_since_sync,
            "totalRecords": total,
            "syncStatus": checkpoint.sync_status,
        },
        "queryTips": QUERY_TIPS,
    }
    logger.debug("Guide generated: %d records, %d tags",
                 total, len(guide["availableFilters"]["tags"]))
    return guide
