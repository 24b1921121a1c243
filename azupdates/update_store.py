"""
Update store using SQLite.

Local replica of the Azure Updates feed. The store is the source of truth for:
- Update records (title, HTML and markdown descriptions, timestamps)
- Tag / product category / product associations
- Availability milestones (ring + month)
- The singleton sync checkpoint

Full-text search uses an FTS5 external-content table over title and the
markdown description. Triggers keep it in step with ``azure_updates`` inside
the same transaction as every insert, update and delete.

The checkpoint's ``in_progress`` status is the only concurrency primitive:
``start_sync()`` is a conditional update, so it acts as a compare-and-set
that survives process restarts.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional

from .types import (
    EPOCH_WATERMARK,
    SYNC_FAILED,
    SYNC_IN_PROGRESS,
    SYNC_SUCCESS,
    Availability,
    SyncCheckpoint,
    utc_now,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

_SCHEMA = f"""
CREATE TABLE IF NOT EXISTS azure_updates (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    description_html TEXT,
    description_md TEXT,
    status TEXT,
    locale TEXT,
    created TEXT NOT NULL,
    modified TEXT NOT NULL,
    metadata TEXT,
    CONSTRAINT chk_dates CHECK (modified >= created)
);

CREATE INDEX IF NOT EXISTS idx_updates_modified ON azure_updates(modified DESC);
CREATE INDEX IF NOT EXISTS idx_updates_created ON azure_updates(created);
CREATE INDEX IF NOT EXISTS idx_updates_status ON azure_updates(status);

CREATE TABLE IF NOT EXISTS update_tags (
    update_id TEXT NOT NULL,
    tag TEXT NOT NULL,
    PRIMARY KEY (update_id, tag),
    FOREIGN KEY (update_id) REFERENCES azure_updates(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_tags_tag ON update_tags(tag);

CREATE TABLE IF NOT EXISTS update_categories (
    update_id TEXT NOT NULL,
    category TEXT NOT NULL,
    PRIMARY KEY (update_id, category),
    FOREIGN KEY (update_id) REFERENCES azure_updates(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_categories_category ON update_categories(category);

CREATE TABLE IF NOT EXISTS update_products (
    update_id TEXT NOT NULL,
    product TEXT NOT NULL,
    PRIMARY KEY (update_id, product),
    FOREIGN KEY (update_id) REFERENCES azure_updates(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_products_product ON update_products(product);

CREATE TABLE IF NOT EXISTS update_availabilities (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    update_id TEXT NOT NULL,
    ring TEXT NOT NULL,
    date TEXT,
    FOREIGN KEY (update_id) REFERENCES azure_updates(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_availabilities_update ON update_availabilities(update_id);
CREATE INDEX IF NOT EXISTS idx_availabilities_ring ON update_availabilities(ring);
CREATE INDEX IF NOT EXISTS idx_availabilities_date ON update_availabilities(date);
CREATE INDEX IF NOT EXISTS idx_availabilities_ring_date ON update_availabilities(ring, date);

CREATE VIRTUAL TABLE IF NOT EXISTS updates_fts USING fts5(
    title,
    description_md,
    content='azure_updates',
    content_rowid='rowid'
);

CREATE TRIGGER IF NOT EXISTS updates_fts_ai AFTER INSERT ON azure_updates BEGIN
    INSERT INTO updates_fts(rowid, title, description_md)
    VALUES (new.rowid, new.title, new.description_md);
END;

CREATE TRIGGER IF NOT EXISTS updates_fts_ad AFTER DELETE ON azure_updates BEGIN
    INSERT INTO updates_fts(updates_fts, rowid, title, description_md)
    VALUES ('delete', old.rowid, old.title, old.description_md);
END;

CREATE TRIGGER IF NOT EXISTS updates_fts_au AFTER UPDATE ON azure_updates BEGIN
    INSERT INTO updates_fts(updates_fts, rowid, title, description_md)
    VALUES ('delete', old.rowid, old.title, old.description_md);
    INSERT INTO updates_fts(rowid, title, description_md)
    VALUES (new.rowid, new.title, new.description_md);
END;

CREATE TABLE IF NOT EXISTS sync_checkpoints (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    last_sync TEXT NOT NULL,
    sync_status TEXT NOT NULL
        CHECK (sync_status IN ('{SYNC_SUCCESS}', '{SYNC_FAILED}', '{SYNC_IN_PROGRESS}')),
    record_count INTEGER NOT NULL DEFAULT 0,
    duration_ms INTEGER,
    error_message TEXT,
    last_checked TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);
"""

# Association tables: (table, value column)
_ASSOCIATIONS = {
    "tags": ("update_tags", "tag"),
    "categories": ("update_categories", "category"),
    "products": ("update_products", "product"),
}


@dataclass
class UpdateRow:
    """Scalar columns of one ``azure_updates`` row, as written by sync."""
    id: str
    title: str
    description_html: str
    description_md: Optional[str]
    status: Optional[str]
    locale: Optional[str]
    created: str
    modified: str
    metadata: Optional[dict] = None


class UpdateStore:
    """
    SQLite-backed store for mirrored Azure updates.

    One connection per store instance, serialized by a re-entrant lock.
    Use separate instances for the writer (sync) and readers (search):
    with WAL, readers then see the last committed state and are never
    exposed to a half-written batch.
    """

    def __init__(self, store_path: Path):
        """
        Args:
            store_path: Path to SQLite database file
        """
        self._db_path = Path(store_path)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        # isolation_level=None gives us manual transaction control
        # so a whole sync batch can run under one BEGIN IMMEDIATE
        self._conn = sqlite3.connect(
            str(self._db_path), check_same_thread=False,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row

        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._conn.execute("PRAGMA foreign_keys=ON")

        self._conn.executescript(_SCHEMA)

        # Seed the checkpoint; exactly one row exists from here on
        self._conn.execute("""
            INSERT OR IGNORE INTO sync_checkpoints (id, last_sync, sync_status, record_count)
            VALUES (1, ?, ?, 0)
        """, (EPOCH_WATERMARK, SYNC_SUCCESS))

        version = self._conn.execute("PRAGMA user_version").fetchone()[0]
        if version < SCHEMA_VERSION:
            self._conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """
        Run a block as one atomic unit of work.

        BEGIN IMMEDIATE takes the write lock up front. Any exception rolls
        back everything written inside the block and is re-raised.
        """
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield
            except BaseException:
                self._conn.rollback()
                raise
            else:
                self._conn.commit()

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def upsert_update(self, row: UpdateRow) -> bool:
        """
        Insert or fully overwrite an update record.

        ON CONFLICT DO UPDATE keeps the rowid stable, which is the key of
        the full-text index.

        Returns:
            True if the record was inserted, False if it already existed
        """
        metadata_json = (
            json.dumps(row.metadata, ensure_ascii=False) if row.metadata else None
        )
        with self._lock:
            existed = self.exists(row.id)
            self._conn.execute("""
                INSERT INTO azure_updates
                (id, title, description_html, description_md, status, locale,
                 created, modified, metadata)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    title = excluded.title,
                    description_html = excluded.description_html,
                    description_md = excluded.description_md,
                    status = excluded.status,
                    locale = excluded.locale,
                    created = excluded.created,
                    modified = excluded.modified,
                    metadata = excluded.metadata
            """, (
                row.id, row.title, row.description_html, row.description_md,
                row.status, row.locale, row.created, row.modified, metadata_json,
            ))
        return not existed

    def _replace_values(self, kind: str, update_id: str, values: Iterable[str]) -> None:
        table, column = _ASSOCIATIONS[kind]
        # Set semantics: drop blanks and duplicates, keep first-seen order
        unique = list(dict.fromkeys(v for v in values if v))
        with self._lock:
            self._conn.execute(f"DELETE FROM {table} WHERE update_id = ?", (update_id,))
            if unique:
                self._conn.executemany(
                    f"INSERT INTO {table} (update_id, {column}) VALUES (?, ?)",
                    [(update_id, v) for v in unique],
                )

    def replace_tags(self, update_id: str, tags: Iterable[str]) -> None:
        """Replace the tag set of an update."""
        self._replace_values("tags", update_id, tags)

    def replace_categories(self, update_id: str, categories: Iterable[str]) -> None:
        """Replace the product category set of an update."""
        self._replace_values("categories", update_id, categories)

    def replace_products(self, update_id: str, products: Iterable[str]) -> None:
        """Replace the product set of an update."""
        self._replace_values("products", update_id, products)

    def replace_availabilities(
        self,
        update_id: str,
        availabilities: Iterable[Availability],
    ) -> None:
        """Replace the availability list of an update, preserving order."""
        rows = [(update_id, a.ring, a.date) for a in availabilities]
        with self._lock:
            self._conn.execute(
                "DELETE FROM update_availabilities WHERE update_id = ?", (update_id,)
            )
            if rows:
                self._conn.executemany(
                    "INSERT INTO update_availabilities (update_id, ring, date) VALUES (?, ?, ?)",
                    rows,
                )

    def delete_before(self, retention_start_date: str) -> int:
        """
        Delete updates whose newer timestamp precedes the retention floor.

        A record created long ago but modified recently is kept.

        Args:
            retention_start_date: YYYY-MM-DD floor (UTC midnight)

        Returns:
            Number of updates deleted
        """
        cutoff = f"{retention_start_date}T00:00:00"
        with self._lock:
            cursor = self._conn.execute("""
                DELETE FROM azure_updates
                WHERE julianday(max(created, modified)) < julianday(?)
            """, (cutoff,))
        return cursor.rowcount

    # -------------------------------------------------------------------------
    # Sync Checkpoint
    # -------------------------------------------------------------------------

    def get_checkpoint(self) -> SyncCheckpoint:
        """Read the singleton checkpoint row."""
        with self._lock:
            row = self._conn.execute("""
                SELECT last_sync, sync_status, record_count, duration_ms,
                       error_message, last_checked, updated_at
                FROM sync_checkpoints WHERE id = 1
            """).fetchone()
        return SyncCheckpoint(
            last_sync=row["last_sync"],
            sync_status=row["sync_status"],
            record_count=row["record_count"],
            duration_ms=row["duration_ms"],
            error_message=row["error_message"],
            last_checked=row["last_checked"],
            updated_at=row["updated_at"],
        )

    def start_sync(self) -> bool:
        """
        Atomically move the checkpoint to in_progress.

        The update is conditional on the current status, so only one caller
        can win even across processes.

        Returns:
            True if the guard was acquired, False if a sync is already running
        """
        with self._lock:
            cursor = self._conn.execute("""
                UPDATE sync_checkpoints
                SET sync_status = ?, updated_at = ?
                WHERE id = 1 AND sync_status != ?
            """, (SYNC_IN_PROGRESS, utc_now(), SYNC_IN_PROGRESS))
        return cursor.rowcount == 1

    def complete_sync_success(
        self,
        watermark: str,
        record_count: int,
        duration_ms: int,
    ) -> None:
        """Record a successful sync and advance the watermark."""
        now = utc_now()
        with self._lock:
            self._conn.execute("""
                UPDATE sync_checkpoints
                SET last_sync = ?, sync_status = ?, record_count = ?,
                    duration_ms = ?, error_message = NULL,
                    last_checked = ?, updated_at = ?
                WHERE id = 1
            """, (watermark, SYNC_SUCCESS, record_count, duration_ms, now, now))

    def mark_checked(self, record_count: int, duration_ms: int) -> None:
        """Record a successful sync that found nothing new.

        The watermark is left alone; only the last-checked time moves.
        """
        now = utc_now()
        with self._lock:
            self._conn.execute("""
                UPDATE sync_checkpoints
                SET sync_status = ?, record_count = ?, duration_ms = ?,
                    error_message = NULL, last_checked = ?, updated_at = ?
                WHERE id = 1
            """, (SYNC_SUCCESS, record_count, duration_ms, now, now))

    def complete_sync_failure(self, error: str) -> None:
        """Record a failed sync. The watermark is not touched."""
        with self._lock:
            self._conn.execute("""
                UPDATE sync_checkpoints
                SET sync_status = ?, error_message = ?, updated_at = ?
                WHERE id = 1
            """, (SYNC_FAILED, error, utc_now()))

    def reset_sync_lock(self) -> bool:
        """
        Release an in_progress guard left behind by a crashed process.

        Returns:
            True if a stuck guard was released
        """
        with self._lock:
            cursor = self._conn.execute("""
                UPDATE sync_checkpoints
                SET sync_status = ?, error_message = ?, updated_at = ?
                WHERE id = 1 AND sync_status = ?
            """, (SYNC_FAILED, "Sync lock reset manually", utc_now(), SYNC_IN_PROGRESS))
        released = cursor.rowcount == 1
        if released:
            logger.warning("Released stale sync lock")
        return released

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def query(self, sql: str, params: Iterable[Any] = ()) -> list[sqlite3.Row]:
        """Run a read query and return all rows."""
        with self._lock:
            return self._conn.execute(sql, tuple(params)).fetchall()

    def query_one(self, sql: str, params: Iterable[Any] = ()) -> Optional[sqlite3.Row]:
        """Run a read query and return the first row, if any."""
        with self._lock:
            return self._conn.execute(sql, tuple(params)).fetchone()

    def get_row(self, update_id: str) -> Optional[UpdateRow]:
        """Get the scalar columns of one update."""
        row = self.query_one("""
            SELECT id, title, description_html, description_md, status, locale,
                   created, modified, metadata
            FROM azure_updates WHERE id = ?
        """, (update_id,))
        if row is None:
            return None
        return UpdateRow(
            id=row["id"],
            title=row["title"],
            description_html=row["description_html"] or "",
            description_md=row["description_md"],
            status=row["status"],
            locale=row["locale"],
            created=row["created"],
            modified=row["modified"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else None,
        )

    def exists(self, update_id: str) -> bool:
        """Check if an update exists."""
        return self.query_one(
            "SELECT 1 FROM azure_updates WHERE id = ?", (update_id,)
        ) is not None

    def count(self) -> int:
        """Count stored updates."""
        return self.query_one("SELECT COUNT(*) FROM azure_updates")[0]

    def get_associations(self, update_ids: list[str]) -> dict[str, dict[str, list]]:
        """
        Load the multi-valued side data for a set of updates.

        Returns:
            Dict mapping id -> {"tags", "categories", "products",
            "availabilities"}; set-valued lists are sorted, availabilities
            keep their stored order
        """
        result: dict[str, dict[str, list]] = {
            uid: {"tags": [], "categories": [], "products": [], "availabilities": []}
            for uid in update_ids
        }
        if not update_ids:
            return result

        placeholders = ",".join("?" * len(update_ids))
        for kind, (table, column) in _ASSOCIATIONS.items():
            rows = self.query(f"""
                SELECT update_id, {column} AS value FROM {table}
                WHERE update_id IN ({placeholders})
                ORDER BY {column}
            """, update_ids)
            for row in rows:
                result[row["update_id"]][kind].append(row["value"])

        rows = self.query(f"""
            SELECT update_id, ring, date FROM update_availabilities
            WHERE update_id IN ({placeholders})
            ORDER BY id
        """, update_ids)
        for row in rows:
            result[row["update_id"]]["availabilities"].append(
                Availability(ring=row["ring"], date=row["date"])
            )
        return result

    # -------------------------------------------------------------------------
    # Filter Metadata
    # -------------------------------------------------------------------------

    def _distinct(self, sql: str) -> list[str]:
        return [row[0] for row in self.query(sql)]

    def list_tags(self) -> list[str]:
        """All distinct tags, sorted."""
        return self._distinct("SELECT DISTINCT tag FROM update_tags ORDER BY tag")

    def list_categories(self) -> list[str]:
        """All distinct product categories, sorted."""
        return self._distinct(
            "SELECT DISTINCT category FROM update_categories ORDER BY category"
        )

    def list_products(self) -> list[str]:
        """All distinct products, sorted."""
        return self._distinct("SELECT DISTINCT product FROM update_products ORDER BY product")

    def list_availability_rings(self) -> list[str]:
        """All distinct availability rings, sorted."""
        return self._distinct(
            "SELECT DISTINCT ring FROM update_availabilities ORDER BY ring"
        )

    def list_statuses(self) -> list[str]:
        """All distinct non-null statuses, sorted."""
        return self._distinct("""
            SELECT DISTINCT status FROM azure_updates
            WHERE status IS NOT NULL ORDER BY status
        """)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        self.close()
