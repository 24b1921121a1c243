"""
Data types for the Azure Updates mirror.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional


# Watermark seeded into the checkpoint before the first sync
EPOCH_WATERMARK = "1970-01-01T00:00:00.0000000Z"

# Checkpoint statuses
SYNC_SUCCESS = "success"
SYNC_FAILED = "failed"
SYNC_IN_PROGRESS = "in_progress"

RETIREMENT_RING = "Retirement"

AVAILABILITY_RINGS = (
    "General Availability",
    "Preview",
    "Private Preview",
    "Retirement",
)

SORT_OPTIONS = (
    "relevance",
    "modified:desc",
    "modified:asc",
    "created:desc",
    "created:asc",
    "retirement:asc",
    "retirement:desc",
)

MONTH_NAMES = (
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
)

_MONTH_RE = re.compile(r"^(\d{4})-(0[1-9]|1[0-2])(?:-(0[1-9]|[12]\d|3[01]))?$")
_DATE_ONLY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def utc_now() -> str:
    """Current UTC timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat()


def parse_utc_timestamp(ts: str) -> datetime:
    """Parse a feed or stored timestamp to a timezone-aware UTC datetime.

    The feed emits seven fractional digits ("2025-01-15T10:30:00.0000000Z"),
    which datetime.fromisoformat rejects on older interpreters, so the
    fraction is trimmed to microseconds first.
    """
    ts = ts.strip().replace("Z", "+00:00")
    m = re.match(r"^(.*T\d{2}:\d{2}:\d{2})\.(\d+)(.*)$", ts)
    if m:
        ts = f"{m.group(1)}.{m.group(2)[:6].ljust(6, '0')}{m.group(3)}"
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_utc_timestamp(dt: datetime) -> str:
    """Render a datetime in the feed's fixed-width form (seven fractional digits, Z)."""
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond:06d}0Z"


def canonical_timestamp(ts: str) -> str:
    """Normalize any ISO 8601 timestamp to ``YYYY-MM-DDTHH:MM:SS.fffffffZ``.

    Stored timestamps are compared as text in SQL, so every value has to
    share one width and one zone. Precision beyond microseconds is dropped.

    Raises:
        ValueError: If the value is not an ISO 8601 timestamp
    """
    return format_utc_timestamp(parse_utc_timestamp(ts))


def is_date_only(value: str) -> bool:
    """True for a bare YYYY-MM-DD date."""
    return bool(_DATE_ONLY_RE.match(value))


def parse_retention_date(value: str) -> datetime:
    """Parse a YYYY-MM-DD retention floor to UTC midnight.

    Raises:
        ValueError: If the value is not a valid calendar date
    """
    if not is_date_only(value):
        raise ValueError(f"Retention start date must be YYYY-MM-DD (got {value!r})")
    return datetime.strptime(value, "%Y-%m-%d").replace(tzinfo=timezone.utc)


def normalize_month(value: str) -> str:
    """Normalize a YYYY-MM or YYYY-MM-DD value to the first of its month.

    "2026-03" and "2026-03-15" both become "2026-03-01".

    Raises:
        ValueError: If the value is in neither format
    """
    m = _MONTH_RE.match(value.strip())
    if not m:
        raise ValueError(
            f"Expected YYYY-MM or YYYY-MM-DD (e.g. 2026-03 or 2026-03-15), got {value!r}"
        )
    return f"{m.group(1)}-{m.group(2)}-01"


def month_number(month: Any) -> Optional[int]:
    """Resolve a month given as a name ("March"), abbreviation or number."""
    if month is None or month == "":
        return None
    if isinstance(month, int):
        return month if 1 <= month <= 12 else None
    text = str(month).strip()
    if text.isdigit():
        num = int(text)
        return num if 1 <= num <= 12 else None
    lowered = text.casefold()
    for i, name in enumerate(MONTH_NAMES, start=1):
        if name.casefold() == lowered or name[:3].casefold() == lowered:
            return i
    return None


@dataclass
class Availability:
    """One availability milestone: a ring and an optional month."""
    ring: str
    date: Optional[str] = None  # always YYYY-MM-01 when set

    @classmethod
    def from_api(cls, data: dict) -> "Availability":
        """Build from the feed's {ring, year, month} shape."""
        ring = str(data.get("ring") or "").strip()
        year = data.get("year")
        month = month_number(data.get("month"))
        date = None
        if year and month:
            date = f"{int(year):04d}-{month:02d}-01"
        return cls(ring=ring, date=date)


@dataclass
class RawUpdate:
    """A record as delivered by the remote feed."""
    id: str
    title: str
    description: Optional[str]
    status: Optional[str]
    locale: Optional[str]
    created: str
    modified: str
    tags: list[str] = field(default_factory=list)
    product_categories: list[str] = field(default_factory=list)
    products: list[str] = field(default_factory=list)
    availabilities: list[Availability] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    _KNOWN = frozenset({
        "id", "title", "description", "status", "locale", "created", "modified",
        "tags", "productCategories", "products", "availabilities",
    })

    @classmethod
    def from_api(cls, data: dict) -> "RawUpdate":
        """Parse one element of the feed's ``value`` array.

        Raises:
            ValueError: If id, created or modified are missing or malformed
        """
        missing = [k for k in ("id", "created", "modified") if not data.get(k)]
        if missing:
            raise ValueError(f"Feed record missing required fields: {', '.join(missing)}")
        return cls(
            id=str(data["id"]),
            title=data.get("title") or "",
            description=data.get("description"),
            status=data.get("status"),
            locale=data.get("locale"),
            created=canonical_timestamp(str(data["created"])),
            modified=canonical_timestamp(str(data["modified"])),
            tags=list(data.get("tags") or []),
            product_categories=list(data.get("productCategories") or []),
            products=list(data.get("products") or []),
            availabilities=[
                Availability.from_api(a) for a in (data.get("availabilities") or [])
                if isinstance(a, dict) and a.get("ring")
            ],
            extra={k: v for k, v in data.items()
                   if k not in cls._KNOWN and not k.startswith("@")},
        )

    def latest_timestamp(self) -> datetime:
        """The later of created and modified."""
        return max(parse_utc_timestamp(self.created), parse_utc_timestamp(self.modified))


@dataclass
class UpdateRecord:
    """A stored update with its associations, as returned by queries."""
    id: str
    title: str
    description_html: str
    description_md: Optional[str]
    status: Optional[str]
    locale: Optional[str]
    created: str
    modified: str
    metadata: Optional[dict] = None
    tags: list[str] = field(default_factory=list)
    product_categories: list[str] = field(default_factory=list)
    products: list[str] = field(default_factory=list)
    availabilities: list[Availability] = field(default_factory=list)
    relevance: Optional[float] = None

    def retirement_date(self) -> Optional[str]:
        """Earliest dated Retirement-ring milestone, if any."""
        dates = [a.date for a in self.availabilities
                 if a.ring == RETIREMENT_RING and a.date]
        return min(dates) if dates else None


@dataclass
class SyncCheckpoint:
    """The singleton sync checkpoint row."""
    last_sync: str
    sync_status: str
    record_count: int
    duration_ms: Optional[int] = None
    error_message: Optional[str] = None
    last_checked: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def never_synced(self) -> bool:
        return self.last_sync == EPOCH_WATERMARK


@dataclass
class SyncResult:
    """Outcome of one sync run. The engine never raises; it returns this."""
    success: bool
    records_processed: int = 0
    records_inserted: int = 0
    records_updated: int = 0
    duration_ms: int = 0
    error: Optional[str] = None

    def to_dict(self) -> dict:
        d = {
            "success": self.success,
            "recordsProcessed": self.records_processed,
            "recordsInserted": self.records_inserted,
            "recordsUpdated": self.records_updated,
            "durationMs": self.duration_ms,
        }
        if self.error is not None:
            d["error"] = self.error
        return d


@dataclass
class SearchFilters:
    """Structured filters; every supplied dimension must hold (AND)."""
    status: Optional[str] = None
    availability_ring: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    product_categories: list[str] = field(default_factory=list)
    products: list[str] = field(default_factory=list)
    modified_from: Optional[str] = None
    modified_to: Optional[str] = None
    retirement_from: Optional[str] = None
    retirement_to: Optional[str] = None


@dataclass
class SearchQuery:
    """A search request as handed over by the boundary layer."""
    query: Optional[str] = None
    filters: SearchFilters = field(default_factory=SearchFilters)
    sort_by: Optional[str] = None
    limit: Optional[int] = None
    offset: int = 0


@dataclass
class SearchMetadata:
    total: int
    returned: int
    limit: int
    offset: int
    has_more: bool
    query_time_ms: int


@dataclass
class SearchResponse:
    results: list[UpdateRecord]
    metadata: SearchMetadata
