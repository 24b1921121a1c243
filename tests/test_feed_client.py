"""Tests for azupdates.feed_client, the HTTP client for the update feed."""

from datetime import datetime, timedelta, timezone
from email.utils import format_datetime
from unittest.mock import MagicMock, patch

import httpx
import pytest

from azupdates.feed_client import (
    DEFAULT_ENDPOINT,
    MAX_RETRY_AFTER,
    FeedClient,
    FeedNetworkError,
    FeedResponseError,
    retry_after_seconds,
)

from conftest import make_api_record


class FakeResponse:
    """Minimal httpx.Response stand-in."""

    def __init__(self, status_code=200, json_data=None, headers=None, bad_json=False):
        self.status_code = status_code
        self._json = json_data if json_data is not None else {}
        self.headers = headers or {}
        self._bad_json = bad_json

    def json(self):
        if self._bad_json:
            raise ValueError("Expecting value")
        return self._json

    def raise_for_status(self):
        if self.status_code >= 400:
            raise httpx.HTTPStatusError(
                f"{self.status_code}",
                request=httpx.Request("GET", "http://test"),
                response=self,
            )


def page(*ids, **extra):
    data = {"value": [make_api_record(i) for i in ids]}
    data.update(extra)
    return FakeResponse(json_data=data)


@pytest.fixture
def mock_client():
    """FeedClient with a mocked httpx.Client and no real sleeping."""
    with patch("azupdates.feed_client.httpx.Client") as MockClient, \
            patch("azupdates.feed_client.time.sleep") as sleep:
        client_instance = MagicMock()
        MockClient.return_value = client_instance
        fc = FeedClient(page_size=2, backoff_base=0.5)
        yield fc, client_instance, sleep


class TestConstruction:

    def test_defaults(self):
        with patch("azupdates.feed_client.httpx.Client") as MockClient:
            fc = FeedClient()
        assert fc.endpoint == DEFAULT_ENDPOINT
        kwargs = MockClient.call_args.kwargs
        assert kwargs["headers"]["Accept"] == "application/json"
        assert kwargs["follow_redirects"] is True

    def test_rejects_bad_page_size(self):
        with pytest.raises(ValueError, match="page_size"):
            FeedClient(page_size=0)


class TestFetch:

    def test_pages_until_short_page(self, mock_client):
        fc, http, _ = mock_client
        http.get.side_effect = [page("a", "b"), page("c")]

        updates = fc.fetch()

        assert [u.id for u in updates] == ["a", "b", "c"]
        first, second = http.get.call_args_list
        assert first.args[0] == DEFAULT_ENDPOINT
        assert first.kwargs["params"] == {"$top": 2, "$skip": 0}
        assert second.kwargs["params"]["$skip"] == 2

    def test_stops_on_empty_page(self, mock_client):
        fc, http, _ = mock_client
        http.get.side_effect = [page("a", "b"), page()]
        assert len(fc.fetch()) == 2
        assert http.get.call_count == 2

    def test_modified_since_filter(self, mock_client):
        fc, http, _ = mock_client
        http.get.side_effect = [page()]
        fc.fetch(modified_since="2025-01-15T10:30:00.0000000Z", include_count=True)
        params = http.get.call_args.kwargs["params"]
        assert params["$filter"] == "modified gt 2025-01-15T10:30:00.0000000Z"
        assert params["$count"] == "true"

    def test_follows_next_link(self, mock_client):
        fc, http, _ = mock_client
        http.get.side_effect = [
            page("a", "b", **{"@odata.nextLink": "https://next.example/page2"}),
            page("c", "d"),
        ]
        updates = fc.fetch()
        assert [u.id for u in updates] == ["a", "b", "c", "d"]
        second = http.get.call_args_list[1]
        assert second.args[0] == "https://next.example/page2"
        assert second.kwargs["params"] is None

    def test_parses_record_fields(self, mock_client):
        fc, http, _ = mock_client
        record = make_api_record(
            "x", tags=["Security"], product_categories=["Compute"], products=["VMs"],
            availabilities=[{"ring": "Retirement", "year": 2026, "month": "March"},
                            {"ring": "Preview", "year": None, "month": None}],
            generalAvailabilityDate="2025-06",
        )
        http.get.side_effect = [FakeResponse(json_data={"value": [record]})]

        update = fc.fetch()[0]

        assert update.tags == ["Security"]
        assert update.product_categories == ["Compute"]
        assert [(a.ring, a.date) for a in update.availabilities] == [
            ("Retirement", "2026-03-01"), ("Preview", None),
        ]
        assert update.extra == {"generalAvailabilityDate": "2025-06"}

    def test_malformed_record(self, mock_client):
        fc, http, _ = mock_client
        http.get.side_effect = [FakeResponse(json_data={"value": [{"id": "x"}]})]
        with pytest.raises(FeedResponseError, match="Malformed"):
            fc.fetch()

    def test_missing_value_array(self, mock_client):
        fc, http, _ = mock_client
        http.get.side_effect = [FakeResponse(json_data={"error": "nope"})]
        with pytest.raises(FeedResponseError, match="value"):
            fc.fetch()

    def test_invalid_json(self, mock_client):
        fc, http, _ = mock_client
        http.get.side_effect = [FakeResponse(bad_json=True)]
        with pytest.raises(FeedResponseError, match="invalid JSON"):
            fc.fetch()


class TestRetries:

    def test_retries_server_errors_with_backoff(self, mock_client):
        fc, http, sleep = mock_client
        http.get.side_effect = [FakeResponse(503), FakeResponse(502), page("a")]

        assert [u.id for u in fc.fetch()] == ["a"]
        assert [c.args[0] for c in sleep.call_args_list] == [0.5, 1.0]

    def test_retries_transport_errors(self, mock_client):
        fc, http, _ = mock_client
        http.get.side_effect = [httpx.ConnectTimeout("slow"), page("a")]
        assert len(fc.fetch()) == 1

    def test_network_error_after_max_retries(self, mock_client):
        fc, http, _ = mock_client
        http.get.side_effect = httpx.ConnectError("refused")
        with pytest.raises(FeedNetworkError, match="after 3 attempts"):
            fc.fetch()
        assert http.get.call_count == 3

    def test_server_error_after_max_retries(self, mock_client):
        fc, http, _ = mock_client
        http.get.return_value = FakeResponse(500)
        with pytest.raises(FeedResponseError) as exc_info:
            fc.fetch()
        assert exc_info.value.status_code == 500

    def test_client_error_not_retried(self, mock_client):
        fc, http, sleep = mock_client
        http.get.return_value = FakeResponse(404)
        with pytest.raises(FeedResponseError) as exc_info:
            fc.fetch()
        assert exc_info.value.status_code == 404
        assert http.get.call_count == 1
        sleep.assert_not_called()

    def test_rate_limit_honours_retry_after(self, mock_client):
        fc, http, sleep = mock_client
        http.get.side_effect = [FakeResponse(429, headers={"Retry-After": "7"}), page("a")]
        assert len(fc.fetch()) == 1
        sleep.assert_called_once_with(7.0)

    def test_retry_after_http_date(self, mock_client):
        fc, http, sleep = mock_client
        http.get.side_effect = [
            FakeResponse(429, headers={"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"}),
            page("a"),
        ]
        assert len(fc.fetch()) == 1
        sleep.assert_called_once_with(0.0)

    def test_unparseable_retry_after_uses_backoff(self, mock_client):
        fc, http, sleep = mock_client
        http.get.side_effect = [FakeResponse(429, headers={"Retry-After": "soon"}), page("a")]
        assert len(fc.fetch()) == 1
        sleep.assert_called_once_with(0.5)

    def test_rate_limit_exhausted_raises_feed_error(self, mock_client):
        fc, http, _ = mock_client
        http.get.return_value = FakeResponse(429, headers={"Retry-After": "Thu, 01 Jan 2099 00:00:00 GMT"})
        with pytest.raises(FeedResponseError) as exc_info:
            fc.fetch()
        assert exc_info.value.status_code == 429


class TestRetryAfter:

    def test_seconds_are_capped(self):
        assert retry_after_seconds("7", fallback=1.0) == 7.0
        assert retry_after_seconds("3600", fallback=1.0) == MAX_RETRY_AFTER

    def test_future_http_date(self):
        when = datetime.now(timezone.utc) + timedelta(seconds=30)
        delay = retry_after_seconds(format_datetime(when, usegmt=True), fallback=1.0)
        assert 25 <= delay <= 30

    @pytest.mark.parametrize("header", [None, "", "nan", "later"])
    def test_missing_or_bad_value_falls_back(self, header):
        assert retry_after_seconds(header, fallback=2.0) == 2.0



class TestCount:

    def test_fetch_count(self, mock_client):
        fc, http, _ = mock_client
        http.get.return_value = FakeResponse(json_data={"@odata.count": 1234, "value": []})
        assert fc.fetch_count() == 1234
        assert http.get.call_args.kwargs["params"] == {"$count": "true", "$top": 0}

    def test_fetch_count_missing(self, mock_client):
        fc, http, _ = mock_client
        http.get.return_value = FakeResponse(json_data={"value": []})
        with pytest.raises(FeedResponseError):
            fc.fetch_count()


class TestLifecycle:

    def test_context_manager_closes(self, mock_client):
        fc, http, _ = mock_client
        with fc:
            pass
        http.close.assert_called_once()
