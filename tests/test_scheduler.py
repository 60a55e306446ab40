"""
tests/test_scheduler.py

SyncScheduler: overlap guard and loop control.
"""

from __future__ import annotations

import threading

from pbsync_models import SyncResult, SyncStatus
from pbsync_scheduler import SyncScheduler
from pbsync_sources import SyncMode


class RecordingService:
    def __init__(self, result: SyncResult | None = None, exc: Exception | None = None):
        self.calls: list[SyncMode] = []
        self.result = result or SyncResult(success=True, status=SyncStatus.COMPLETED, source="FAKE")
        self.exc = exc

    def run_sync(self, mode: SyncMode = SyncMode.INCREMENTAL) -> SyncResult:
        self.calls.append(mode)
        if self.exc:
            raise self.exc
        return self.result


def test_trigger_runs_sync() -> None:
    service = RecordingService()
    result = SyncScheduler(service).trigger(SyncMode.FULL)
    assert result is service.result
    assert service.calls == [SyncMode.FULL]


def test_overlapping_trigger_is_skipped() -> None:
    started = threading.Event()
    release = threading.Event()

    class SlowService(RecordingService):
        def run_sync(self, mode=SyncMode.INCREMENTAL):
            started.set()
            release.wait(5)
            return super().run_sync(mode)

    service = SlowService()
    scheduler = SyncScheduler(service)
    worker = threading.Thread(target=scheduler.trigger)
    worker.start()
    assert started.wait(5)

    assert scheduler.in_progress
    assert scheduler.trigger() is None

    release.set()
    worker.join(5)
    assert not scheduler.in_progress
    assert len(service.calls) == 1


def test_exception_does_not_wedge_the_lock() -> None:
    scheduler = SyncScheduler(RecordingService(exc=RuntimeError("boom")))
    assert scheduler.trigger() is None
    assert not scheduler.in_progress


def test_run_forever_first_mode_then_incremental() -> None:
    service = RecordingService()
    scheduler = SyncScheduler(service, interval_seconds=0)

    original = service.run_sync

    def counting(mode=SyncMode.INCREMENTAL):
        if len(service.calls) >= 2:
            scheduler.stop()
        return original(mode)

    service.run_sync = counting
    scheduler.run_forever(SyncMode.FULL)
    assert service.calls == [SyncMode.FULL, SyncMode.INCREMENTAL, SyncMode.INCREMENTAL]
