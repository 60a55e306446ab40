"""
tests/conftest.py

Shared fixtures: an in-memory task repository, a scripted record source and
a small library of upstream response shapes seen from PBASS.
"""

from __future__ import annotations

import itertools
from datetime import datetime, timezone
from typing import Any

import pytest

from pbsync_db import DuplicateTaskError
from pbsync_http import FetchResult, UpstreamError
from pbsync_models import InboundTask, InboundTaskCreate
from pbsync_sources import SyncMode


class FakeStore:
    """Dict-backed stand-in for TaskStore with an optional failure hook."""

    def __init__(self, fail_on_create: set[int] | None = None):
        self.tasks: dict[int, InboundTask] = {}
        self._ids = itertools.count(1)
        self.create_calls = 0
        self.fail_on_create = fail_on_create or set()
        self.lookups = 0

    def find_by_natural_key(self, invoice_no: str, part_no: str, vendor: str) -> InboundTask | None:
        self.lookups += 1
        for t in self.tasks.values():
            if (t.invoice_no, t.part_no, t.vendor) == (invoice_no, part_no, vendor):
                return t
        return None

    def create(self, task: InboundTaskCreate) -> InboundTask:
        self.create_calls += 1
        if self.create_calls in self.fail_on_create:
            raise RuntimeError("database is locked")
        if self.find_by_natural_key(task.invoice_no, task.part_no, task.vendor):
            raise DuplicateTaskError("exists")
        now = datetime.now(timezone.utc)
        row = InboundTask(id=next(self._ids), created_at=now, updated_at=now, **task.model_dump())
        self.tasks[row.id] = row
        return row

    def update(self, task_id: int, **fields: Any) -> None:
        self.tasks[task_id] = self.tasks[task_id].model_copy(update=fields)


class FakeSource:
    label = "FAKE"

    def __init__(self, records: list[dict[str, Any]] | None = None, error: str | None = None):
        self.records = records or []
        self.error = error
        self.modes: list[SyncMode] = []

    def fetch_records(self, mode: SyncMode = SyncMode.INCREMENTAL) -> FetchResult:
        self.modes.append(mode)
        if self.error:
            return FetchResult.failed(UpstreamError("refused", self.error))
        return FetchResult(success=True, records=[dict(r) for r in self.records])


def make_record(**overrides: Any) -> dict[str, Any]:
    record = {
        "PLAC": "A35BP",
        "DIVI": "T271DM",
        "VENDOR": "V0042",
        "VENDOR_NAME": "ACME METAL",
        "PO_NO": "PO-1001",
        "ITEM_NO": "RMP-200",
        "ITEM_NAME": "RAMP PLATE 200",
        "SPEC": "SUS304 t2.0",
        "DRAW": "DWG-77",
        "PO_DATE": "02/01/2024",
        "INV_DATE": "15/01/2024",
        "INV_NO": "INV-9001",
        "REPLY_QTY": "12",
        "REPLY_UNIT": "PCS",
        "REPLY_UP": "3.50",
        "REPLY_AMT": "42.00",
        "REPLY_CUR": "USD",
        "REMARK": "",
    }
    record.update(overrides)
    return record


@pytest.fixture()
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture()
def record_factory():
    return make_record


@pytest.fixture()
def upstream_shapes() -> dict[str, Any]:
    """Representative response bodies keyed by shape name."""
    rows = [make_record(PO_NO=f"PO-{i}", INV_NO=f"INV-{i}") for i in range(3)]
    return {
        "top_level_array": rows,
        "data_wrapper": {"success": True, "data": rows},
        "records_wrapper": {"count": 3, "records": rows},
        "nested_unknown": {"status": "OK", "wrapper": {"meta": {"tags": ["a"]}, "inner": rows}},
        "deeply_nested": {"a": {"b": {"c": {"d": rows}}}},
        "no_array": {"status": "OK", "message": "nothing here"},
        "scalar": 42,
    }


@pytest.fixture()
def store_factory():
    return FakeStore


@pytest.fixture()
def source_factory():
    return FakeSource
