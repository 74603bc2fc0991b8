import asyncio
import logging
from typing import Optional

from config import ARCHIVE_AFTER_DAYS, ARCHIVE_DELETE_DAYS, ARCHIVE_INTERVAL_SECONDS
from database import DatabaseManager
from exceptions import DependencyError
from posts import Post
from storage import BlobStore
from utils import Clock, days, timestamp


class Archiver:
    """Moves threads through ACTIVE -> ARCHIVED -> deleted on a fixed period.

    Each tick runs the archive sweep and then the purge sweep. Both are safe
    to re-run: archiving only touches active threads, and purging deletes blobs
    before rows so an interrupted purge is simply picked up on the next tick.
    """

    def __init__(self, db: DatabaseManager, store: BlobStore,
                 archive_after_days: int = ARCHIVE_AFTER_DAYS,
                 retention_days: int = ARCHIVE_DELETE_DAYS,
                 interval: float = ARCHIVE_INTERVAL_SECONDS,
                 clock: Clock = timestamp, logger: Optional[logging.Logger] = None) -> None:
        self.db = db
        self.store = store
        self.archive_after_days = archive_after_days
        self.retention_days = retention_days
        self.interval = interval
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)
        self._task: Optional[asyncio.Task] = None
        self._tick_lock = asyncio.Lock()

    async def archive_threads(self) -> int:
        """Archive every thread not bumped within the archive window."""
        now = self.clock()
        archived = await self.db.archive_threads_bumped_before(now - days(self.archive_after_days), now)
        if archived:
            self.logger.info("Archiver: archived %d inactive threads", archived)
        return archived

    async def _purge_thread(self, thread: Post) -> bool:
        try:
            for image_url in await self.db.get_image_urls(thread.id):
                await self.store.delete(image_url)
        except DependencyError as e:
            self.logger.error("Archiver: failed to delete image for thread %d: %s", thread.id, e)
            return False

        try:
            await self.db.delete_post(thread.id)
        except DependencyError as e:
            self.logger.error("Archiver: failed to delete thread %d: %s", thread.id, e)
            return False
        return True

    async def purge_threads(self) -> int:
        """Delete threads archived longer than the retention window, with their replies and images."""
        cutoff = self.clock() - days(self.retention_days)
        purged = 0
        for thread in await self.db.get_threads_archived_before(cutoff):
            if await self._purge_thread(thread):
                purged += 1
        if purged:
            self.logger.info("Archiver: deleted %d archived threads", purged)
        return purged

    async def run(self) -> None:
        """Run one tick. A tick that fires while another is in progress is skipped."""
        if self._tick_lock.locked():
            self.logger.warning("Archiver: previous run still in progress, skipping")
            return

        async with self._tick_lock:
            try:
                await self.archive_threads()
            except Exception:
                self.logger.exception("Archiver: failed to archive threads")

            try:
                await self.purge_threads()
            except Exception:
                self.logger.exception("Archiver: failed to delete old threads")

    async def _periodic_run(self):
        while True:
            await asyncio.sleep(self.interval)
            await self.run()

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self._periodic_run())
            self.logger.info("Archiver: scheduled every %ss", self.interval)

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
