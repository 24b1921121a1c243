"""Tests for the search engine: text matching, filters, sorting, pagination."""

import pytest

from azupdates.search import (
    DEFAULT_LIMIT,
    MAX_LIMIT,
    SearchEngine,
    SearchError,
    sanitize_fts_query,
)
from azupdates.sync import SyncEngine
from azupdates.types import SearchFilters, SearchQuery

from conftest import FakeFeed, make_raw


def retirement(year, month):
    return {"ring": "Retirement", "year": year, "month": month}


@pytest.fixture
def records():
    return [
        make_raw(
            "sec", title="Key Vault adds managed HSM support",
            description="<p>Security improvements for <b>Key Vault</b>.</p>",
            created="2025-01-01T00:00:00.0000000Z", modified="2025-03-01T10:00:00.0000000Z",
            tags=["Security", "Compliance"], product_categories=["Security"],
            products=["Azure Key Vault"],
            availabilities=[{"ring": "General Availability", "year": 2025, "month": "March"}],
        ),
        make_raw(
            "ret-mar", title="Retirement: Classic VMs",
            description="<p>Classic virtual machines retire.</p>",
            created="2025-01-02T00:00:00.0000000Z", modified="2025-02-01T10:00:00.0000000Z",
            tags=["Retirements"], product_categories=["Compute"], products=["Virtual Machines"],
            availabilities=[retirement(2026, "March")],
        ),
        make_raw(
            "ret-jun", title="Retirement: Basic load balancer",
            description="<p>Upgrade to the standard SKU.</p>",
            created="2025-01-03T00:00:00.0000000Z", modified="2025-02-15T10:00:00.0000000Z",
            tags=["Retirements"], product_categories=["Networking"], products=["Load Balancer"],
            availabilities=[retirement(2026, "June")],
        ),
        make_raw(
            "k8s", title="Kubernetes 1.31 generally available in AKS",
            description="<p>Upgrade your node pools.</p>",
            status="Launched",
            created="2025-01-04T00:00:00.0000000Z", modified="2025-01-20T10:00:00.0000000Z",
            tags=["Features"], product_categories=["Containers", "Compute"],
            products=["Azure Kubernetes Service"],
            availabilities=[{"ring": "Preview", "year": 2024, "month": "November"},
                            {"ring": "General Availability", "year": 2025, "month": "January"}],
        ),
        make_raw(
            "split", title="Retirement window for legacy storage",
            description="<p>Two-phase retirement.</p>",
            created="2025-01-05T00:00:00.0000000Z", modified="2025-01-25T10:00:00.0000000Z",
            tags=["Retirements"], product_categories=["Storage"],
            availabilities=[retirement(2026, "January"), retirement(2026, "December")],
        ),
    ]


@pytest.fixture
def engine(store, records):
    result = SyncEngine(store, FakeFeed(records)).run_sync()
    assert result.success
    return SearchEngine(store)


def ids(response):
    return [r.id for r in response.results]


def search(engine, query=None, sort_by=None, limit=None, offset=0, **filters):
    return engine.search(SearchQuery(
        query=query, filters=SearchFilters(**filters),
        sort_by=sort_by, limit=limit, offset=offset,
    ))


class TestSanitize:

    def test_terms_become_or_prefix_matches(self):
        assert sanitize_fts_query("key vault") == '"key"* OR "vault"*'

    def test_operator_characters_removed(self):
        assert sanitize_fts_query('C++ "quoted" (group) a-b x:y ~z^') == \
            '"C++"* OR "quoted"* OR "group"* OR "a"* OR "b"* OR "x"* OR "y"* OR "z"*'

    def test_curly_quotes_removed(self):
        assert sanitize_fts_query("“smart” ‘quotes’") == '"smart"* OR "quotes"*'

    @pytest.mark.parametrize("text", [None, "", "   ", '"*()"'])
    def test_blank_is_absent(self, text):
        assert sanitize_fts_query(text) is None


class TestTextSearch:

    def test_prefix_match(self, engine):
        assert ids(search(engine, "kube")) == ["k8s"]

    def test_or_semantics_across_terms(self, engine):
        assert set(ids(search(engine, "kubernetes vault"))) == {"k8s", "sec"}

    def test_matches_normalized_description(self, engine):
        assert ids(search(engine, "node pools")) == ["k8s"]

    def test_relevance_is_returned_and_ordered(self, engine):
        response = search(engine, "retirement")
        scores = [r.relevance for r in response.results]
        assert scores and all(s is not None and s > 0 for s in scores)
        assert scores == sorted(scores, reverse=True)

    def test_no_relevance_without_text(self, engine):
        assert all(r.relevance is None for r in search(engine).results)

    def test_special_characters_do_not_error(self, engine):
        response = search(engine, 'vault" OR (')
        assert "sec" in ids(response)

    def test_blank_query_lists_everything(self, engine):
        assert search(engine, "   ").metadata.total == 5


class TestFilters:

    def test_tag_filter(self, engine):
        assert ids(search(engine, tags=["Security"])) == ["sec"]

    def test_tags_within_dimension_are_and(self, engine):
        assert ids(search(engine, tags=["Security", "Compliance"])) == ["sec"]
        assert search(engine, tags=["Security", "Pricing"]).metadata.total == 0

    def test_categories_within_dimension_are_and(self, engine):
        assert ids(search(engine, product_categories=["Compute"], sort_by="created:asc")) == \
            ["ret-mar", "k8s"]
        assert ids(search(engine, product_categories=["Compute", "Containers"])) == ["k8s"]

    def test_products_filter(self, engine):
        assert ids(search(engine, products=["Load Balancer"])) == ["ret-jun"]

    def test_filters_combine_with_and(self, engine):
        response = search(engine, tags=["Retirements"], product_categories=["Compute"])
        assert ids(response) == ["ret-mar"]
        for record in response.results:
            assert "Retirements" in record.tags and "Compute" in record.product_categories

    def test_status(self, engine):
        assert ids(search(engine, status="Launched")) == ["k8s"]

    def test_availability_ring(self, engine):
        assert ids(search(engine, availability_ring="Preview")) == ["k8s"]

    def test_modified_range_inclusive(self, engine):
        response = search(engine, modified_from="2025-02-01T10:00:00.0000000Z",
                          modified_to="2025-02-15T10:00:00.0000000Z", sort_by="modified:asc")
        assert ids(response) == ["ret-mar", "ret-jun"]

    def test_date_only_upper_bound_covers_day(self, engine):
        assert "ret-jun" in ids(search(engine, modified_to="2025-02-15"))
        assert "ret-jun" not in ids(search(engine, modified_to="2025-02-14"))

    def test_bound_without_fraction_is_inclusive(self, engine):
        response = search(engine, modified_from="2025-02-15T10:00:00Z")
        assert "ret-jun" in ids(response)
        response = search(engine, modified_to="2025-02-01T10:00:00Z")
        assert "ret-mar" in ids(response)

    def test_offset_bounds_compare_as_utc(self, engine):
        # 12:00+02:00 is 10:00Z
        assert "ret-jun" in ids(search(engine, modified_from="2025-02-15T12:00:00+02:00"))
        response = search(engine, modified_to="2025-02-01T12:00:00+02:00")
        assert "ret-mar" in ids(response)
        assert "ret-jun" not in ids(response)

    def test_malformed_modified_bound(self, engine):
        with pytest.raises(ValueError):
            search(engine, modified_from="last tuesday")


    def test_retirement_from(self, engine):
        response = search(engine, retirement_from="2026-04")
        assert set(ids(response)) == {"ret-jun", "split"}

    def test_retirement_from_excludes_earlier(self, engine):
        assert "ret-mar" not in ids(search(engine, retirement_from="2026-04"))

    def test_retirement_day_normalized_to_month(self, engine):
        # 2026-03-15 means March 2026, so the March retirement is included
        assert "ret-mar" in ids(search(engine, retirement_from="2026-03-15"))

    def test_retirement_range_matches_single_entry(self, engine):
        # "split" has January and December entries, neither inside May-July
        response = search(engine, retirement_from="2026-05", retirement_to="2026-07")
        assert ids(response) == ["ret-jun"]

    def test_bad_retirement_value(self, engine):
        with pytest.raises(ValueError):
            search(engine, retirement_from="March 2026")

    def test_empty_list_filters_are_ignored(self, engine):
        assert search(engine, tags=[], products=[]).metadata.total == 5


class TestSorting:

    def test_default_without_text_is_modified_desc(self, engine):
        assert ids(search(engine)) == ["sec", "ret-jun", "ret-mar", "split", "k8s"]

    def test_relevance_without_text_falls_back(self, engine):
        assert ids(search(engine, sort_by="relevance")) == ids(search(engine))

    def test_created_asc(self, engine):
        assert ids(search(engine, sort_by="created:asc")) == \
            ["sec", "ret-mar", "ret-jun", "k8s", "split"]

    def test_retirement_asc_nulls_last(self, engine):
        assert ids(search(engine, sort_by="retirement:asc")) == \
            ["split", "ret-mar", "ret-jun", "sec", "k8s"]

    def test_retirement_desc_nulls_last(self, engine):
        assert ids(search(engine, sort_by="retirement:desc")) == \
            ["ret-jun", "ret-mar", "split", "sec", "k8s"]

    def test_explicit_sort_overrides_relevance(self, engine):
        response = search(engine, "retirement", sort_by="modified:asc")
        assert ids(response) == ["split", "ret-mar", "ret-jun"]

    def test_unknown_sort_rejected(self, engine):
        with pytest.raises(ValueError, match="sort_by"):
            search(engine, sort_by="title:asc")


class TestPagination:

    def test_default_limit(self, engine):
        assert search(engine).metadata.limit == DEFAULT_LIMIT

    def test_limit_clamped(self, engine):
        assert search(engine, limit=500).metadata.limit == MAX_LIMIT

    def test_pages_cover_all_results_once(self, engine):
        seen = []
        offset = 0
        while True:
            response = search(engine, limit=2, offset=offset)
            assert response.metadata.total == 5
            seen.extend(ids(response))
            if not response.metadata.has_more:
                break
            offset += response.metadata.returned
        assert len(seen) == len(set(seen)) == 5

    def test_has_more(self, engine):
        meta = search(engine, limit=2, offset=2).metadata
        assert (meta.returned, meta.has_more) == (2, True)
        meta = search(engine, limit=2, offset=4).metadata
        assert (meta.returned, meta.has_more) == (1, False)

    def test_offset_beyond_total(self, engine):
        response = search(engine, limit=10, offset=50)
        assert response.results == []
        assert response.metadata.total == 5
        assert response.metadata.has_more is False

    def test_total_respects_filters(self, engine):
        meta = search(engine, "retirement", tags=["Retirements"], limit=1).metadata
        assert meta.total == 3
        assert meta.returned == 1
        assert meta.has_more


class TestGetById:

    def test_returns_full_record(self, engine):
        record = engine.get_by_id("k8s")
        assert record.title.startswith("Kubernetes")
        assert record.tags == ["Features"]
        assert record.product_categories == ["Compute", "Containers"]
        assert [(a.ring, a.date) for a in record.availabilities] == [
            ("Preview", "2024-11-01"), ("General Availability", "2025-01-01"),
        ]
        assert record.description_md == "Upgrade your node pools."
        assert record.relevance is None

    def test_retirement_date_is_earliest(self, engine):
        assert engine.get_by_id("split").retirement_date() == "2026-01-01"

    def test_unknown_id(self, engine):
        assert engine.get_by_id("nope") is None


class TestErrors:

    def test_store_failure_raises_search_error(self, engine, store):
        store.query("DROP TABLE updates_fts")
        with pytest.raises(SearchError):
            search(engine, "vault")
