"""
Sync engine: keeps the local store in step with the remote feed.

One run is: acquire the persisted guard, fetch (everything on the first run,
only records modified after the watermark afterwards), drop records older
than the retention floor, persist the batch in a single transaction, then
advance the checkpoint. A failure anywhere marks the checkpoint failed and
leaves the watermark where it was, so the next run resumes from the last
good point. ``run_sync`` never raises.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Optional

from .html_converter import convert_html_to_markdown
from .protocol import Normalizer, UpdateFeedProtocol
from .types import (
    SYNC_FAILED,
    RawUpdate,
    SyncCheckpoint,
    SyncResult,
    parse_retention_date,
    parse_utc_timestamp,
)
from .update_store import UpdateRow, UpdateStore

logger = logging.getLogger(__name__)

ALREADY_IN_PROGRESS = "Sync already in progress"

# Progress is logged every N records inside the batch
PROGRESS_INTERVAL = 100


def filter_by_retention(updates: list[RawUpdate], retention_start_date: str) -> list[RawUpdate]:
    """
    Drop records whose newer timestamp precedes the retention floor.

    Args:
        updates: Records as fetched
        retention_start_date: YYYY-MM-DD (UTC midnight)

    Returns:
        Records with max(created, modified) on or after the floor
    """
    cutoff = parse_retention_date(retention_start_date)
    return [u for u in updates if u.latest_timestamp() >= cutoff]


def newest_watermark(updates: list[RawUpdate], previous: str) -> str:
    """
    The largest ``modified`` of a batch, never earlier than ``previous``.

    Compared as datetimes; the winning record's own (canonical) string is
    kept.
    """
    best = previous
    best_dt = parse_utc_timestamp(previous)
    for u in updates:
        dt = parse_utc_timestamp(u.modified)
        if dt > best_dt:
            best, best_dt = u.modified, dt
    return best


class SyncEngine:
    """Checkpointed differential ingestion from the feed into the store."""

    def __init__(
        self,
        store: UpdateStore,
        feed: UpdateFeedProtocol,
        normalizer: Normalizer = convert_html_to_markdown,
    ):
        self._store = store
        self._feed = feed
        self._normalize = normalizer

    def run_sync(self, retention_start_date: Optional[str] = None) -> SyncResult:
        """
        Perform an initial or differential sync.

        Args:
            retention_start_date: Optional YYYY-MM-DD floor; older records
                are neither stored nor kept

        Returns:
            SyncResult with counts, duration, and error on failure
        """
        started = time.monotonic()
        logger.info("Starting sync")

        if not self._store.start_sync():
            logger.warning("Sync already in progress, skipping")
            return SyncResult(
                success=False,
                duration_ms=_elapsed_ms(started),
                error=ALREADY_IN_PROGRESS,
            )

        try:
            return self._run(started, retention_start_date)
        except Exception as e:
            duration_ms = _elapsed_ms(started)
            logger.error("Sync failed after %dms: %s", duration_ms, e, exc_info=True)
            try:
                self._store.complete_sync_failure(str(e))
            except Exception as mark_error:
                logger.error("Could not record sync failure: %s", mark_error)
            return SyncResult(success=False, duration_ms=duration_ms, error=str(e))

    def _run(self, started: float, retention_start_date: Optional[str]) -> SyncResult:
        checkpoint = self._store.get_checkpoint()
        watermark = checkpoint.last_sync
        initial = checkpoint.never_synced

        if retention_start_date:
            parse_retention_date(retention_start_date)  # fail fast on bad config

        logger.info("Sync mode: %s (watermark %s)",
                    "initial" if initial else "differential", watermark)

        if initial:
            # Push the retention floor down to the feed to shrink the transfer
            since = f"{retention_start_date}T00:00:00.000Z" if retention_start_date else None
        else:
            since = watermark

        fetched = self._feed.fetch(modified_since=since, include_count=initial)

        updates = fetched
        if retention_start_date:
            updates = filter_by_retention(fetched, retention_start_date)
            if len(updates) != len(fetched):
                logger.info("Filtered %d of %d records older than %s",
                            len(fetched) - len(updates), len(fetched),
                            retention_start_date)

        if not updates:
            if retention_start_date:
                with self._store.transaction():
                    pruned = self._store.delete_before(retention_start_date)
                if pruned:
                    logger.info("Pruned %d records older than %s", pruned, retention_start_date)
            duration_ms = _elapsed_ms(started)
            self._store.mark_checked(self._store.count(), duration_ms)
            logger.info("Sync completed - no new updates (%dms)", duration_ms)
            return SyncResult(success=True, duration_ms=duration_ms)

        inserted = self._persist(updates, retention_start_date)
        processed = len(updates)
        new_watermark = newest_watermark(updates, watermark)
        total = self._store.count()
        duration_ms = _elapsed_ms(started)

        self._store.complete_sync_success(new_watermark, total, duration_ms)
        logger.info(
            "Sync completed: %d processed, %d inserted, %d updated, %d total (%dms)",
            processed, inserted, processed - inserted, total, duration_ms,
        )
        return SyncResult(
            success=True,
            records_processed=processed,
            records_inserted=inserted,
            records_updated=processed - inserted,
            duration_ms=duration_ms,
        )

    def _persist(self, updates: list[RawUpdate], retention_start_date: Optional[str]) -> int:
        """
        Write the whole batch in one transaction.

        Any failing record aborts and rolls back everything.

        Returns:
            Number of records that were new to the store
        """
        inserted = 0
        with self._store.transaction():
            for n, update in enumerate(updates, start=1):
                try:
                    if self._write_update(update):
                        inserted += 1
                except Exception as e:
                    logger.warning("Failed to sync update %s: %s", update.id, e)
                    raise RuntimeError(f"Failed to sync update {update.id}: {e}") from e
                if n % PROGRESS_INTERVAL == 0:
                    logger.debug("Sync progress: %d/%d", n, len(updates))

            if retention_start_date:
                pruned = self._store.delete_before(retention_start_date)
                if pruned:
                    logger.info("Pruned %d records older than %s", pruned, retention_start_date)
        return inserted

    def _write_update(self, update: RawUpdate) -> bool:
        description_md = self._normalize(update.description) if update.description else None
        is_new = self._store.upsert_update(UpdateRow(
            id=update.id,
            title=update.title,
            description_html=update.description or "",
            description_md=description_md,
            status=update.status,
            locale=update.locale,
            created=update.created,
            modified=update.modified,
            metadata=update.extra or None,
        ))
        # Supersede, don't merge
        self._store.replace_tags(update.id, update.tags)
        self._store.replace_categories(update.id, update.product_categories)
        self._store.replace_products(update.id, update.products)
        self._store.replace_availabilities(update.id, update.availabilities)
        return is_new

    # -------------------------------------------------------------------------
    # Freshness
    # -------------------------------------------------------------------------

    def is_sync_needed(self, staleness_hours: float) -> bool:
        """True when the mirror has never synced, last failed, or is stale."""
        return checkpoint_needs_sync(self._store.get_checkpoint(), staleness_hours)

    def get_status(self) -> dict:
        """Checkpoint summary for display."""
        return checkpoint_status(self._store.get_checkpoint())


def checkpoint_needs_sync(checkpoint: SyncCheckpoint, staleness_hours: float) -> bool:
    """
    True when the checkpoint shows no sync yet, a failed sync, or stale data.

    Staleness is measured from the last successful check, so an empty
    differential run counts as fresh.
    """
    if checkpoint.never_synced or checkpoint.sync_status == SYNC_FAILED:
        return True
    hours = hours_since(checkpoint.last_checked or checkpoint.last_sync)
    return hours is None or hours >= staleness_hours


def checkpoint_status(checkpoint: SyncCheckpoint) -> dict:
    """Display summary of a checkpoint."""
    hours = None
    if not checkpoint.never_synced:
        hours = hours_since(checkpoint.last_checked or checkpoint.last_sync)
    return {
        "lastSync": checkpoint.last_sync,
        "lastChecked": checkpoint.last_checked,
        "syncStatus": checkpoint.sync_status,
        "recordCount": checkpoint.record_count,
        "durationMs": checkpoint.duration_ms,
        "hoursSinceSync": round(hours, 1) if hours is not None else None,
        "lastError": checkpoint.error_message,
    }


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def hours_since(ts: Optional[str]) -> Optional[float]:
    if not ts:
        return None
    try:
        then = parse_utc_timestamp(ts)
    except ValueError:
        return None
    return (datetime.now(timezone.utc) - then).total_seconds() / 3600
