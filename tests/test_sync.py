"""
tests/test_sync.py

SyncService and Reconciler behaviour.

Coverage
--------
- Idempotence across repeated runs
- Missing PO never persisted
- Natural-key deduplication and due-date refresh rules
- Per-record failure isolation
- Zero-match and unreachable reporting
- End-to-end against the SQLite store
"""

from __future__ import annotations

from datetime import datetime

import pytest

from pbsync_config import SyncConfig
from pbsync_db import TaskStore
from pbsync_models import NormalizedRecord, SyncStatus, TaskStatus
from pbsync_normalize import normalize
from pbsync_sources import ApiSource, CsvSource, SyncMode
from pbsync_sync import Outcome, Reconciler, SyncService, build_service


def ramp_rows(record_factory, n: int) -> list[dict]:
    return [
        record_factory(PO_NO=f"PO-{i}", INV_NO=f"INV-{i}", ITEM_NO=f"RMP-{i}") for i in range(1, n + 1)
    ]


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------


class TestReconciler:
    def test_miss_creates_arrived_task(self, store, record_factory) -> None:
        rec = normalize(record_factory())
        outcome = Reconciler(store).reconcile(rec, datetime(2024, 1, 15))
        assert outcome == Outcome.ADDED
        (task,) = store.tasks.values()
        assert task.status == TaskStatus.ARRIVED
        assert (task.invoice_no, task.part_no, task.vendor) == ("INV-9001", "RMP-200", "ACME METAL")
        assert task.plan_qty == 12
        assert task.due_date == datetime(2024, 1, 15)
        assert task.po_date == datetime(2024, 1, 2)
        assert task.spec == "SUS304 t2.0"
        assert task.currency == "USD"

    def test_hit_while_arrived_refreshes_due_date_only(self, store, record_factory) -> None:
        r = Reconciler(store)
        r.reconcile(normalize(record_factory()), datetime(2024, 1, 15))
        changed = normalize(record_factory(REPLY_QTY="99"))
        assert r.reconcile(changed, datetime(2024, 2, 1)) == Outcome.UPDATED
        (task,) = store.tasks.values()
        assert task.due_date == datetime(2024, 2, 1)
        assert task.plan_qty == 12

    def test_hit_after_arrival_is_left_alone(self, store, record_factory) -> None:
        r = Reconciler(store)
        r.reconcile(normalize(record_factory()), datetime(2024, 1, 15))
        task_id = next(iter(store.tasks))
        store.update(task_id, status=TaskStatus.PENDING)

        assert r.reconcile(normalize(record_factory()), datetime(2030, 1, 1)) == Outcome.SKIPPED
        assert store.tasks[task_id].due_date == datetime(2024, 1, 15)

    def test_store_error_is_failed_outcome(self, store_factory, record_factory) -> None:
        store = store_factory(fail_on_create={1})
        assert Reconciler(store).reconcile(normalize(record_factory()), None) == Outcome.FAILED

    def test_concurrent_insert_is_treated_as_known(self, store, record_factory) -> None:
        rec = normalize(record_factory())
        Reconciler(store).reconcile(rec, None)

        class BlindStore:
            def find_by_natural_key(self, *key):
                return None

            def create(self, task):
                return store.create(task)

            def update(self, task_id, **fields):
                raise AssertionError("not expected")

        assert Reconciler(BlindStore()).reconcile(rec, None) == Outcome.SKIPPED
        assert len(store.tasks) == 1

    def test_sentinel_key_fields(self, store) -> None:
        rec = NormalizedRecord(po_no="PO-1", part_name="RAMP")
        Reconciler(store).reconcile(rec, None)
        (task,) = store.tasks.values()
        assert (task.invoice_no, task.part_no, task.vendor) == ("N/A", "N/A", "UNKNOWN")


# ---------------------------------------------------------------------------
# SyncService
# ---------------------------------------------------------------------------


class TestSyncService:
    def test_first_run_adds_everything(self, store, source_factory, record_factory) -> None:
        result = SyncService(source_factory(ramp_rows(record_factory, 4)), store).run_sync()
        assert result.success
        assert result.status == SyncStatus.COMPLETED
        assert (result.added, result.skipped, result.errors, result.total) == (4, 0, 0, 4)
        assert result.source == "FAKE"
        assert "Added new items: 4" in result.message

    def test_second_run_is_idempotent(self, store, source_factory, record_factory) -> None:
        service = SyncService(source_factory(ramp_rows(record_factory, 4)), store)
        service.run_sync()
        second = service.run_sync()
        assert second.added == 0
        assert second.duplicates == 4
        assert second.skipped == 4
        assert len(store.tasks) == 4

    def test_missing_po_never_persisted(self, store, source_factory, record_factory) -> None:
        rows = [record_factory(PO_NO=""), record_factory(PO_NO=None, INV_NO="X")]
        rows.append({k: v for k, v in record_factory(INV_NO="Y").items() if k != "PO_NO"})
        rows.append(record_factory(PO_NO="", poNo="PO-CAMEL", INV_NO="Z"))
        result = SyncService(source_factory(rows), store).run_sync()

        assert result.missing_po == 3
        assert result.added == 1
        assert [t.po_no for t in store.tasks.values()] == ["PO-CAMEL"]

    def test_natural_key_duplicates_in_one_batch(self, store, source_factory, record_factory) -> None:
        rows = [record_factory(REPLY_QTY="1"), record_factory(REPLY_QTY="50")]
        result = SyncService(source_factory(rows), store).run_sync()
        assert result.added == 1
        assert result.duplicates == 1
        assert len(store.tasks) == 1

    def test_non_matching_counted(self, store, source_factory, record_factory) -> None:
        rows = ramp_rows(record_factory, 2) + [
            record_factory(ITEM_NAME="BOLT", ITEM_NO="B-1", SPEC="M8", INV_NO="INV-B")
        ]
        result = SyncService(source_factory(rows), store).run_sync()
        assert result.added == 2
        assert result.non_matching == 1
        assert result.skipped == 1
        assert result.candidates == 2

    def test_partial_failure_isolated(self, store_factory, source_factory, record_factory) -> None:
        store = store_factory(fail_on_create={3})
        result = SyncService(source_factory(ramp_rows(record_factory, 5)), store).run_sync()

        assert result.success
        assert result.errors == 1
        assert result.added == 4
        assert store.create_calls == 5
        assert sorted(t.po_no for t in store.tasks.values()) == ["PO-1", "PO-2", "PO-4", "PO-5"]

    def test_zero_matches_reported_distinctly(self, store, source_factory, record_factory) -> None:
        rows = [
            record_factory(PO_NO=f"PO-{i}", ITEM_NAME="BOLT", ITEM_NO=f"B-{i}", SPEC="M8")
            for i in range(100)
        ]
        result = SyncService(source_factory(rows), store).run_sync()

        assert result.success
        assert result.status == SyncStatus.NO_MATCHES
        assert (result.skipped, result.added, result.errors, result.total) == (100, 0, 0, 100)
        assert "NO matching parts" in result.message
        assert store.lookups == 0

    def test_unreachable_touches_nothing(self, store, source_factory) -> None:
        result = SyncService(source_factory(error="Connection refused"), store).run_sync()
        assert not result.success
        assert result.status == SyncStatus.UNREACHABLE
        assert result.message == "Connection refused"
        assert (result.added, result.skipped, result.errors, result.total) == (0, 0, 0, 0)
        assert store.lookups == 0

    def test_empty_upstream_is_completed(self, store, source_factory) -> None:
        result = SyncService(source_factory([]), store).run_sync()
        assert result.success
        assert result.status == SyncStatus.COMPLETED
        assert result.total == 0
        assert "no records" in result.message

    def test_mode_passed_to_source(self, store, source_factory) -> None:
        source = source_factory([])
        SyncService(source, store).run_sync(SyncMode.FULL)
        assert source.modes == [SyncMode.FULL]

    def test_custom_keywords(self, store, source_factory, record_factory) -> None:
        rows = [record_factory(ITEM_NAME="CONVEYOR BELT", ITEM_NO="CB-1", SPEC="")]
        result = SyncService(source_factory(rows), store, keywords=["conveyor"]).run_sync()
        assert result.added == 1

    def test_unparseable_date_still_creates(self, store, source_factory, record_factory) -> None:
        rows = [record_factory(INV_DATE="someday")]
        result = SyncService(source_factory(rows), store).run_sync()
        assert result.added == 1
        assert next(iter(store.tasks.values())).due_date is None


# ---------------------------------------------------------------------------
# End to end with SQLite
# ---------------------------------------------------------------------------


class TestSqliteEndToEnd:
    def test_two_runs_against_sqlite(self, tmp_path, source_factory, record_factory) -> None:
        db = TaskStore(str(tmp_path / "e2e.sqlite3"))
        service = SyncService(source_factory(ramp_rows(record_factory, 3)), db)

        first = service.run_sync()
        second = service.run_sync()

        assert first.added == 3
        assert second.added == 0
        assert second.duplicates == 3
        assert db.count() == 3
        assert all(t.due_date == datetime(2024, 1, 15) for t in db.list_tasks())


class TestBuildService:
    def test_csv_source_selected(self, tmp_path) -> None:
        cfg = SyncConfig(source="csv", csv_path=str(tmp_path / "x.csv"))
        service = build_service(cfg, store=TaskStore(str(tmp_path / "db.sqlite3")))
        assert isinstance(service.source, CsvSource)

    def test_csv_source_requires_path(self, tmp_path) -> None:
        with pytest.raises(ValueError):
            build_service(SyncConfig(source="csv"), store=TaskStore(str(tmp_path / "db.sqlite3")))

    def test_api_source_default(self, tmp_path) -> None:
        cfg = SyncConfig(keywords=["ramp"], lookback_days=7)
        service = build_service(cfg, store=TaskStore(str(tmp_path / "db.sqlite3")))
        assert isinstance(service.source, ApiSource)
        assert service.source.lookback_days == 7
        assert service.keywords == ["ramp"]
