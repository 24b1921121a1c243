"""
HTTP client for the Azure release communications feed.

The feed is an OData v4 endpoint. Records are fetched page by page
(``$top``/``$skip``, or ``@odata.nextLink`` when the server provides one)
and can be restricted to those modified after a watermark with
``$filter=modified gt <timestamp>``.

Transient failures (timeouts, connection errors, 429 and 5xx responses)
are retried with exponential backoff. Anything left after the last attempt
is raised as a FeedClientError subclass for the sync engine to report.
"""

from __future__ import annotations

import logging
import math
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Optional

import httpx

from .types import RawUpdate

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "https://www.microsoft.com/releasecommunications/api/v2/azure"

# Paging
DEFAULT_PAGE_SIZE = 100
MAX_PAGES = 10_000

# Retry config
MAX_RETRIES = 3
RETRY_BACKOFF_BASE = 1.0  # seconds
MAX_RETRY_AFTER = 60.0

# Timeouts
DEFAULT_TIMEOUT = 30.0


def retry_after_seconds(header: Optional[str], fallback: float) -> float:
    """
    Delay requested by a Retry-After header, capped at MAX_RETRY_AFTER.

    The header is either delay-seconds or an HTTP-date. A missing or
    unparseable value gives ``fallback``; a date in the past gives 0.
    """
    if not header:
        return min(fallback, MAX_RETRY_AFTER)
    try:
        seconds = float(header)
    except ValueError:
        try:
            when = parsedate_to_datetime(header)
        except (TypeError, ValueError):
            logger.debug("Ignoring unparseable Retry-After: %r", header)
            return min(fallback, MAX_RETRY_AFTER)
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        seconds = (when - datetime.now(timezone.utc)).total_seconds()
    if not math.isfinite(seconds):
        return min(fallback, MAX_RETRY_AFTER)
    return min(max(seconds, 0.0), MAX_RETRY_AFTER)


class FeedClientError(Exception):
    """Error communicating with the update feed."""


class FeedNetworkError(FeedClientError):
    """The feed could not be reached (timeouts, connection failures)."""


class FeedResponseError(FeedClientError):
    """The feed answered with a non-success status or an unusable body."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class FeedClient:
    """HTTP client for the Azure Updates feed."""

    def __init__(
        self,
        endpoint: str = DEFAULT_ENDPOINT,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_retries: int = MAX_RETRIES,
        backoff_base: float = RETRY_BACKOFF_BASE,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        if page_size < 1:
            raise ValueError(f"page_size must be positive (got {page_size})")
        self._endpoint = endpoint
        self._page_size = page_size
        self._max_retries = max(1, max_retries)
        self._backoff_base = backoff_base

        self._client = httpx.Client(
            headers={"Accept": "application/json"},
            timeout=timeout,
            follow_redirects=True,
        )

    @property
    def endpoint(self) -> str:
        return self._endpoint

    def fetch(
        self,
        modified_since: Optional[str] = None,
        include_count: bool = False,
    ) -> list[RawUpdate]:
        """
        Fetch all records, optionally only those modified after a timestamp.

        Args:
            modified_since: Only records with ``modified`` strictly greater
            include_count: Ask the server for the total (logged for progress)

        Returns:
            Parsed records in feed order

        Raises:
            FeedNetworkError: Feed unreachable after all retries
            FeedResponseError: Non-success response or malformed payload
        """
        base_params: dict[str, Any] = {"$top": self._page_size}
        if modified_since:
            base_params["$filter"] = f"modified gt {modified_since}"
        if include_count:
            base_params["$count"] = "true"

        updates: list[RawUpdate] = []
        skip = 0
        next_link: Optional[str] = None
        followed_link = False
        expected: Optional[int] = None

        for page in range(MAX_PAGES):
            if next_link:
                data = self._get_json(next_link, None)
            else:
                data = self._get_json(self._endpoint, {**base_params, "$skip": skip})
            if expected is None and "@odata.count" in data:
                expected = data["@odata.count"]
                logger.info("Feed reports %d matching records", expected)

            values = data.get("value")
            if not isinstance(values, list):
                raise FeedResponseError("Feed response has no 'value' array")

            for item in values:
                try:
                    updates.append(RawUpdate.from_api(item))
                except (ValueError, TypeError, AttributeError) as e:
                    raise FeedResponseError(f"Malformed feed record: {e}") from e

            logger.debug("Fetched page %d: %d records (%d total)",
                         page + 1, len(values), len(updates))

            next_link = data.get("@odata.nextLink")
            if next_link:
                followed_link = True
                continue
            # A server that pages with nextLink omits it on the last page
            if followed_link or len(values) < self._page_size:
                break
            skip += len(values)
        else:
            logger.warning("Stopped paging after %d pages", MAX_PAGES)

        return updates

    def fetch_count(self) -> int:
        """Total number of records the feed currently holds."""
        data = self._get_json(self._endpoint, {"$count": "true", "$top": 0})
        try:
            return int(data["@odata.count"])
        except (KeyError, TypeError, ValueError) as e:
            raise FeedResponseError("Feed response has no '@odata.count'") from e

    def _get_json(self, url: str, params: Optional[dict]) -> dict:
        """GET with retries; returns the decoded JSON object."""
        last_error: Exception | None = None
        for attempt in range(self._max_retries):
            try:
                resp = self._client.get(url, params=params)
                if resp.status_code == 429:
                    # Rate limited, honour Retry-After
                    retry_after = retry_after_seconds(
                        resp.headers.get("Retry-After"),
                        fallback=self._backoff_base * (2 ** attempt),
                    )
                    last_error = FeedResponseError("Rate limited by feed", 429)
                    if attempt < self._max_retries - 1:
                        logger.info("Rate limited, retrying after %.1fs", retry_after)
                        time.sleep(retry_after)
                    continue
                resp.raise_for_status()
                try:
                    data = resp.json()
                except ValueError as e:
                    raise FeedResponseError(
                        f"Feed returned invalid JSON: {e}", resp.status_code
                    ) from e
                if not isinstance(data, dict):
                    raise FeedResponseError("Feed returned a non-object payload",
                                            resp.status_code)
                return data
            except httpx.HTTPStatusError as e:
                if e.response.status_code < 500:
                    # Client errors other than 429 are not retried
                    raise FeedResponseError(
                        f"Feed request rejected: {e.response.status_code}",
                        e.response.status_code,
                    ) from e
                last_error = FeedResponseError(
                    f"Feed server error: {e.response.status_code}",
                    e.response.status_code,
                )
            except httpx.TransportError as e:
                last_error = e

            if attempt < self._max_retries - 1:
                delay = self._backoff_base * (2 ** attempt)
                logger.info(
                    "Feed request attempt %d failed, retrying in %.1fs: %s",
                    attempt + 1, delay, last_error,
                )
                time.sleep(delay)

        if isinstance(last_error, FeedResponseError):
            raise FeedResponseError(
                f"Feed request failed after {self._max_retries} attempts: {last_error}",
                last_error.status_code,
            ) from last_error
        raise FeedNetworkError(
            f"Feed unreachable after {self._max_retries} attempts: {last_error}"
        ) from last_error

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
