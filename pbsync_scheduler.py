from __future__ import annotations

import threading

import structlog

from pbsync_models import SyncResult
from pbsync_sources import SyncMode
from pbsync_sync import SyncService

logger = structlog.get_logger()


class SyncScheduler:
    """Interval trigger for SyncService that never lets two runs overlap.

    SyncService itself does not guard against concurrent invocations; a
    manual trigger arriving while a run is in progress is skipped here.
    """

    def __init__(self, service: SyncService, interval_seconds: int = 300):
        self.service = service
        self.interval_seconds = interval_seconds
        self._running = threading.Lock()
        self._stop = threading.Event()

    @property
    def in_progress(self) -> bool:
        return self._running.locked()

    def trigger(self, mode: SyncMode = SyncMode.INCREMENTAL) -> SyncResult | None:
        """Run one sync unless one is already in progress (returns None then)."""
        if not self._running.acquire(blocking=False):
            logger.warning("Sync already in progress, skipping trigger", mode=mode.value)
            return None
        try:
            result = self.service.run_sync(mode)
        except Exception:
            logger.exception("Fatal error during scheduled sync")
            return None
        finally:
            self._running.release()
        if result.success:
            logger.info("Scheduled sync completed", status=result.status.value, added=result.added)
        else:
            logger.error("Scheduled sync failed", message=result.message)
        return result

    def run_forever(self, first_mode: SyncMode = SyncMode.INCREMENTAL) -> None:
        """Run once immediately, then every interval until stop() is called."""
        logger.info("Sync scheduler started", interval_seconds=self.interval_seconds)
        mode = first_mode
        while not self._stop.is_set():
            self.trigger(mode)
            mode = SyncMode.INCREMENTAL
            self._stop.wait(self.interval_seconds)
        logger.info("Sync scheduler stopped")

    def stop(self) -> None:
        self._stop.set()
