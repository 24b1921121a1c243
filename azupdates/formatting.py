"""
Shaping of stored records for output.

Availability dates are stored as the first of the month ("2026-03-01") and
shown as ``{ring, year, month}`` with the month spelled out. Search results
are summaries without descriptions; single-record lookups carry the full
record including the markdown rendering.
"""

import re
from typing import Any, Optional

from .types import MONTH_NAMES, Availability, SearchResponse, UpdateRecord

_YEAR_MONTH = re.compile(r"^(\d{4})-(\d{2})")


def month_name(month: int) -> str:
    """Month name for 1-12, empty string otherwise."""
    if 1 <= month <= 12:
        return MONTH_NAMES[month - 1]
    return ""


def format_availability(availability: Availability) -> dict[str, Any]:
    """
    Convert a stored availability to its display shape.

    "2026-03-01" becomes {ring, year: 2026, month: "March"}; a missing or
    unparseable date yields just {ring}.
    """
    if not availability.date:
        return {"ring": availability.ring}
    m = _YEAR_MONTH.match(availability.date)
    if not m:
        return {"ring": availability.ring}
    return {
        "ring": availability.ring,
        "year": int(m.group(1)),
        "month": month_name(int(m.group(2))),
    }


def format_availabilities(availabilities: list[Availability]) -> list[dict[str, Any]]:
    return [format_availability(a) for a in availabilities]


def update_summary(record: UpdateRecord) -> dict[str, Any]:
    """Lightweight search-result shape (no descriptions)."""
    return {
        "id": record.id,
        "title": record.title,
        "status": record.status,
        "tags": record.tags,
        "productCategories": record.product_categories,
        "products": record.products,
        "availabilities": format_availabilities(record.availabilities),
        "created": record.created,
        "modified": record.modified,
        "relevance": record.relevance,
    }


def update_detail(record: UpdateRecord) -> dict[str, Any]:
    """Full record shape for single-update lookups."""
    detail = update_summary(record)
    del detail["relevance"]
    detail.update({
        "description": record.description_md or "",
        "descriptionHtml": record.description_html,
        "locale": record.locale,
        "retirementDate": record.retirement_date(),
    })
    if record.metadata:
        detail["metadata"] = record.metadata
    return detail


def search_response_dict(response: SearchResponse) -> dict[str, Any]:
    """Search response as a JSON-ready dict."""
    meta = response.metadata
    return {
        "results": [update_summary(r) for r in response.results],
        "metadata": {
            "total": meta.total,
            "returned": meta.returned,
            "limit": meta.limit,
            "offset": meta.offset,
            "hasMore": meta.has_more,
            "queryTime": meta.query_time_ms,
        },
    }


def _availability_text(availability: dict[str, Any]) -> str:
    if "year" in availability:
        return f"{availability['ring']} ({availability['month']} {availability['year']})"
    return availability["ring"]


def format_summary_line(record: UpdateRecord) -> str:
    """One-line rendering for terminal listings."""
    modified = record.modified[:10]
    status = f" [{record.status}]" if record.status else ""
    score = f" ({record.relevance:.2f})" if record.relevance is not None else ""
    return f"{record.id}  {modified}{status}  {record.title}{score}"


def format_detail_text(record: UpdateRecord, width: Optional[int] = None) -> str:
    """Multi-line rendering of one record for the terminal."""
    lines = [
        record.title,
        "=" * min(len(record.title), width or 80),
        f"id:        {record.id}",
        f"status:    {record.status or '-'}",
        f"created:   {record.created}",
        f"modified:  {record.modified}",
    ]
    if record.tags:
        lines.append(f"tags:      {', '.join(record.tags)}")
    if record.product_categories:
        lines.append(f"category:  {', '.join(record.product_categories)}")
    if record.products:
        lines.append(f"products:  {', '.join(record.products)}")
    if record.availabilities:
        rings = [_availability_text(a) for a in format_availabilities(record.availabilities)]
        lines.append(f"rings:     {', '.join(rings)}")
    lines.append("")
    lines.append(record.description_md or "(no description)")
    return "\n".join(lines)
