"""
SukiStudy - Sync Engine

Keeps the local store up to date with the WaniKani API using per-resource
"updated after" cursors.

A sync cycle:
- refreshes the user profile
- pulls subjects, assignments and study materials, strictly in that order
- follows pagination until a page is empty or has no next_url
- commits each kind's cursor only after all of its pages are stored

The cursor committed for a kind is the time captured *before* its first
request, so records changed remotely while the kind was being pulled are
picked up again next cycle. A failure leaves the failed kind's cursor
untouched; upserts are idempotent so resuming from the old cursor is safe.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from .client import WaniKaniClient
from .exceptions import AuthenticationError, SyncAbortedError
from .models import CURRENT_USER_ID, CollectionPage, format_timestamp, utc_now
from .store import LocalStore

logger = logging.getLogger(__name__)

# Collection name -> client accessor for "updated after" pulls
SYNC_ORDER: tuple[tuple[str, str], ...] = (
    ("subjects", "get_subjects_updated_after"),
    ("assignments", "get_assignments_updated_after"),
    ("study_materials", "get_study_materials_updated_after"),
)

DEFAULT_SYNC_INTERVAL = 600.0
DEFAULT_CONNECTIVITY_POLL = 5.0


@dataclass
class SyncResult:
    """Result of a sync cycle."""
    success: bool
    skipped: bool = False
    auth_failed: bool = False
    counts: dict[str, int] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0
    timestamp: datetime = field(default_factory=utc_now)

    @property
    def items_processed(self) -> int:
        return sum(self.counts.values())


class SyncEngine:
    """Pulls remote changes into the local store."""

    def __init__(
        self,
        client: WaniKaniClient,
        store: LocalStore,
        is_online: Callable[[], bool] = lambda: True,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.client = client
        self.store = store
        self._is_online = is_online
        self._clock = clock

        self._in_progress = False
        self._generation: Optional[int] = None
        self._running = False
        self._sync_task: Optional[asyncio.Task] = None
        self._pending: set[asyncio.Task] = set()

        self.last_result: Optional[SyncResult] = None
        self.last_synced_at: Optional[datetime] = None

    @property
    def in_progress(self) -> bool:
        return self._in_progress

    # === Sync Cycle ===

    async def sync(self) -> SyncResult:
        """
        Run one sync cycle.

        Never raises for API or storage failures: errors are logged and
        reported on the returned SyncResult.
        """
        if not self._is_online():
            logger.info("[Sync] Offline, skipping sync.")
            return SyncResult(success=True, skipped=True)

        token = self.store.get_credential()
        if not token:
            logger.debug("[Sync] No credential stored, skipping sync.")
            return SyncResult(success=True, skipped=True)

        if self._in_progress:
            logger.info("[Sync] Sync already in progress, skipping.")
            return SyncResult(success=True, skipped=True)

        self._in_progress = True
        self._generation = self.store.generation
        self.client.set_token(token)
        result = SyncResult(success=True)
        start_time = time.monotonic()

        logger.info("[Sync] Starting synchronization...")

        try:
            await self.sync_user()
            for name, accessor in SYNC_ORDER:
                result.counts[name] = await self.sync_collection(name, accessor)

        except AuthenticationError as e:
            logger.warning(f"[Sync] Authentication failed, clearing local data: {e}")
            self.store.clear_all()
            self.store.clear_credential()
            self.client.clear_token()
            result.success = False
            result.auth_failed = True
            result.errors.append(str(e))

        except SyncAbortedError as e:
            logger.info(f"[Sync] Cycle abandoned: {e}")
            result.success = False
            result.errors.append(str(e))

        except Exception as e:
            logger.error(f"[Sync] Error during sync: {e}")
            result.success = False
            result.errors.append(str(e))

        finally:
            self._in_progress = False
            self._generation = None
            result.duration_seconds = time.monotonic() - start_time
            self.last_result = result

        if result.success:
            self.last_synced_at = result.timestamp
            logger.info(
                f"[Sync] Synchronization complete in {result.duration_seconds:.2f}s: "
                f"{result.items_processed} items updated"
            )

        return result

    async def sync_user(self) -> None:
        """Replace the local profile with the remote one."""
        resource = await self.client.get_user()
        record = resource.to_record()
        record["id"] = CURRENT_USER_ID
        self._check_generation()
        self.store.users.upsert(record)

    async def sync_collection(self, name: str, accessor: str) -> int:
        """
        Pull every page of one resource kind updated since its cursor.

        Returns:
            Number of records stored.
        """
        collection = getattr(self.store, name)
        cursor = self.store.get_cursor(name)
        next_cursor = format_timestamp(self._clock())

        logger.info(f"[Sync] Syncing {name} (updated after {cursor or 'beginning'})")

        fetch = getattr(self.client, accessor)
        page: CollectionPage = await fetch(cursor)
        count = 0

        while True:
            records = page.records()
            # An empty page ends pagination even if next_url is set
            if not records:
                break

            self._check_generation()
            collection.upsert_many(records)
            count += len(records)
            logger.debug(f"[Sync] Stored {len(records)} {name}")

            if not page.next_url:
                break

            logger.debug(f"[Sync] Fetching next page of {name}...")
            page = await self.client.get_collection(page.next_url)

        self._check_generation()
        self.store.set_cursor(name, next_cursor)
        logger.info(f"[Sync] Finished {name}: {count} updated")
        return count

    async def full_resync(self) -> SyncResult:
        """Drop all cursors and pull everything again."""
        if self._in_progress:
            logger.info("[Sync] Sync already in progress, skipping full resync.")
            return SyncResult(success=True, skipped=True)

        self.store.reset_cursors()
        return await self.sync()

    def trigger(self) -> asyncio.Task:
        """Start a cycle in the background and return its task."""
        task = asyncio.get_running_loop().create_task(self.sync())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def cancel_pending(self) -> None:
        """Cancel cycles started with trigger() and wait for them to finish."""
        tasks = list(self._pending)
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        if tasks:
            logger.info(f"[Sync] Cancelled {len(tasks)} pending sync(s)")

    def _check_generation(self) -> None:
        if self._generation is not None and self._generation != self.store.generation:
            raise SyncAbortedError("Local data was cleared during sync")

    # === Background Sync ===

    async def start_background_sync(
        self,
        interval: float = DEFAULT_SYNC_INTERVAL,
        poll_interval: float = DEFAULT_CONNECTIVITY_POLL,
    ) -> None:
        """
        Start periodic sync cycles.

        Connectivity is checked every ``poll_interval`` seconds; coming back
        online starts a cycle right away instead of waiting for ``interval``.
        """
        if self._running:
            logger.warning("Background sync already running")
            return

        self._running = True
        self._sync_task = asyncio.create_task(self._background_sync_loop(interval, poll_interval))
        logger.info(f"Background sync started (every {interval:.0f}s)")

    async def stop_background_sync(self) -> None:
        """Stop periodic sync cycles."""
        self._running = False
        if self._sync_task:
            self._sync_task.cancel()
            try:
                await self._sync_task
            except asyncio.CancelledError:
                pass
            self._sync_task = None
        logger.info("Background sync stopped")

    async def _background_sync_loop(self, interval: float, poll_interval: float) -> None:
        """Main background sync loop."""
        was_online = self._is_online()
        next_sync = time.monotonic()

        while self._running:
            try:
                online = self._is_online()
                if online and not was_online:
                    logger.info("[Sync] Back online, syncing now.")
                    next_sync = time.monotonic()
                was_online = online

                if time.monotonic() >= next_sync:
                    await self.sync()
                    next_sync = time.monotonic() + interval

                await asyncio.sleep(max(0.0, min(poll_interval, next_sync - time.monotonic())))
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in background sync: {e}")
                await asyncio.sleep(10)  # Back off on error

    # === Status ===

    def get_status(self) -> dict:
        """Get current sync status information."""
        return {
            "in_progress": self._in_progress,
            "last_synced_at": self.last_synced_at.isoformat() if self.last_synced_at else None,
            "cursors": {name: self.store.get_cursor(name) for name, _ in SYNC_ORDER},
            "rate_limit_remaining": self.client.rate_limiter.remaining,
            "is_authenticated": self.store.get_credential() is not None,
            "background_sync_running": self._running,
        }
