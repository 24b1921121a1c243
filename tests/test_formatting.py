"""Tests for output shaping: availability months, summaries, details."""

from azupdates.formatting import (
    format_availability,
    format_detail_text,
    format_summary_line,
    month_name,
    search_response_dict,
    update_detail,
    update_summary,
)
from azupdates.types import (
    Availability,
    SearchMetadata,
    SearchResponse,
    UpdateRecord,
)


def _record(**kwargs):
    defaults = dict(
        id="abc",
        title="Retirement: Basic SKU",
        description_html="<p>Move off Basic.</p>",
        description_md="Move off Basic.",
        status="Active",
        locale="en-US",
        created="2025-01-01T00:00:00.0000000Z",
        modified="2025-02-03T04:05:06.0000000Z",
        tags=["Retirements"],
        product_categories=["Networking"],
        products=["Load Balancer"],
        availabilities=[Availability("Retirement", "2026-09-01"), Availability("Preview")],
    )
    defaults.update(kwargs)
    return UpdateRecord(**defaults)


class TestAvailability:

    def test_month_names(self):
        assert month_name(1) == "January"
        assert month_name(12) == "December"
        assert month_name(0) == ""
        assert month_name(13) == ""

    def test_dated(self):
        assert format_availability(Availability("Retirement", "2026-03-01")) == \
            {"ring": "Retirement", "year": 2026, "month": "March"}

    def test_undated(self):
        assert format_availability(Availability("Preview")) == {"ring": "Preview"}

    def test_unparseable_date(self):
        assert format_availability(Availability("Preview", "soon")) == {"ring": "Preview"}


class TestShapes:

    def test_summary_has_no_description(self):
        summary = update_summary(_record(relevance=1.5))
        assert set(summary) == {
            "id", "title", "status", "tags", "productCategories", "products",
            "availabilities", "created", "modified", "relevance",
        }
        assert summary["availabilities"][0] == {"ring": "Retirement", "year": 2026, "month": "September"}
        assert summary["relevance"] == 1.5

    def test_detail_includes_description_and_retirement(self):
        detail = update_detail(_record(metadata={"x": 1}))
        assert detail["description"] == "Move off Basic."
        assert detail["descriptionHtml"] == "<p>Move off Basic.</p>"
        assert detail["retirementDate"] == "2026-09-01"
        assert detail["metadata"] == {"x": 1}
        assert "relevance" not in detail

    def test_search_response_metadata(self):
        response = SearchResponse(
            results=[_record()],
            metadata=SearchMetadata(total=7, returned=1, limit=1, offset=3,
                                    has_more=True, query_time_ms=4),
        )
        data = search_response_dict(response)
        assert data["metadata"] == {
            "total": 7, "returned": 1, "limit": 1, "offset": 3,
            "hasMore": True, "queryTime": 4,
        }
        assert data["results"][0]["id"] == "abc"


class TestText:

    def test_summary_line(self):
        line = format_summary_line(_record(relevance=2.5))
        assert line == "abc  2025-02-03 [Active]  Retirement: Basic SKU (2.50)"

    def test_detail_text(self):
        text = format_detail_text(_record())
        assert "rings:     Retirement (September 2026), Preview" in text
        assert text.endswith("Move off Basic.")
