import asyncio
import logging
import os
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from fastapi.concurrency import run_in_threadpool

from .config import Settings
from .models import SessionStore

logger = logging.getLogger(__name__)


class Reaper:
    """Evicts upload sessions that have been idle longer than STALE_THRESHOLD.

    ``start`` spawns the sweep loop on the running event loop and ``stop``
    signals it and waits for it to finish, so the application controls its
    lifetime explicitly.
    """

    def __init__(
        self,
        store: SessionStore,
        config: Settings,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.interval = config.CLEANUP_INTERVAL
        self.threshold = timedelta(seconds=config.STALE_THRESHOLD)
        self.clock = clock
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    def sweep(self, now: Optional[datetime] = None) -> List[str]:
        """Run one eviction pass and return the IDs that were removed."""
        cutoff = (now or self.clock()) - self.threshold
        evicted = self.store.evict_stale(cutoff)

        for session in evicted:
            with session.lock:
                try:
                    session.close_spool()
                except OSError as e:
                    logger.warning(f"Failed to close spool for stale upload {session.id}: {e}")
            try:
                os.remove(session.spool_path)
            except FileNotFoundError:
                logger.warning(f"Spool for stale upload {session.id} was already gone")
            except OSError as e:
                logger.error(f"Failed to delete spool for stale upload {session.id}: {e}")
            logger.info(f"Cleaned up stale upload: {session.id} ({session.bytes_received}/{session.total_size} bytes)")

        return [session.id for session in evicted]

    async def run(self):
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await run_in_threadpool(self.sweep)
            except Exception:
                logger.exception("Upload cleanup sweep failed")

    def start(self) -> None:
        if self._task is not None:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self.run())
        logger.info(f"Upload reaper started (interval={self.interval}s, threshold={self.threshold})")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        logger.info("Upload reaper stopped")
