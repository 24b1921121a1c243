"""
Shared pytest fixtures for azupdates tests.

Provides a temporary store, a factory for feed-shaped records, and a
scripted fake feed so no test touches the network.
"""

from pathlib import Path
from typing import Any, Optional

import pytest

from azupdates.types import RawUpdate
from azupdates.update_store import UpdateStore


def make_api_record(
    id: str,
    *,
    title: Optional[str] = None,
    description: Optional[str] = "<p>Details of the update.</p>",
    status: Optional[str] = "Active",
    created: str = "2025-01-10T09:00:00.0000000Z",
    modified: str = "2025-01-15T10:30:00.0000000Z",
    tags: Optional[list[str]] = None,
    product_categories: Optional[list[str]] = None,
    products: Optional[list[str]] = None,
    availabilities: Optional[list[dict[str, Any]]] = None,
    **extra: Any,
) -> dict[str, Any]:
    """Build one element of the feed's ``value`` array."""
    record = {
        "id": id,
        "title": title if title is not None else f"Update {id}",
        "description": description,
        "status": status,
        "locale": "en-US",
        "created": created,
        "modified": modified,
        "tags": tags or [],
        "productCategories": product_categories or [],
        "products": products or [],
        "availabilities": availabilities or [],
    }
    record.update(extra)
    return record


def make_raw(id: str, **kwargs: Any) -> RawUpdate:
    """Build a parsed RawUpdate (see make_api_record for arguments)."""
    return RawUpdate.from_api(make_api_record(id, **kwargs))


class FakeFeed:
    """
    Scripted feed for sync tests.

    Each fetch() returns the next scripted batch (the last batch repeats).
    A batch may be an Exception instance, which is raised instead.
    """

    def __init__(self, *batches):
        self.batches = list(batches) or [[]]
        self.calls: list[dict[str, Any]] = []

    def fetch(self, modified_since=None, include_count=False):
        self.calls.append({"modified_since": modified_since, "include_count": include_count})
        index = min(len(self.calls) - 1, len(self.batches) - 1)
        batch = self.batches[index]
        if isinstance(batch, Exception):
            raise batch
        return list(batch)

    def fetch_count(self):
        batch = self.batches[0]
        if isinstance(batch, Exception):
            raise batch
        return len(batch)

    def close(self):
        self.closed = True


@pytest.fixture
def db_path(tmp_path) -> Path:
    return tmp_path / "updates.db"


@pytest.fixture
def store(db_path):
    """A fresh UpdateStore in a temp directory."""
    s = UpdateStore(db_path)
    yield s
    s.close()


@pytest.fixture
def fake_feed():
    return FakeFeed()
