"""
Protocol definitions for the collaborators the sync engine consumes.

- UpdateFeedProtocol: the remote feed (FeedClient over HTTP, fakes in tests)
- Normalizer: HTML description -> markdown, must never raise
"""

from typing import Callable, Optional, Protocol, runtime_checkable

from .types import RawUpdate


@runtime_checkable
class UpdateFeedProtocol(Protocol):
    """
    Source of raw update records.

    Implemented by:
    - FeedClient (Azure release communications API)
    """

    def fetch(
        self,
        modified_since: Optional[str] = None,
        include_count: bool = False,
    ) -> list[RawUpdate]: ...

    def fetch_count(self) -> int:
        """Total number of records the feed currently holds."""
        ...


Normalizer = Callable[[Optional[str]], Optional[str]]
