from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from enum import Enum
from typing import Protocol

import structlog

from pbsync_config import DEFAULT_KEYWORDS, SyncConfig, load_config
from pbsync_db import DuplicateTaskError, TaskStore
from pbsync_http import PbassClient
from pbsync_models import (
    InboundTask,
    InboundTaskCreate,
    NormalizedRecord,
    SyncResult,
    SyncStatus,
    TaskStatus,
)
from pbsync_normalize import is_in_scope, matches_keywords, normalize, parse_flexible_date
from pbsync_settings import RawSettings, get_settings
from pbsync_sources import ApiSource, CsvSource, RecordSource, SyncMode

logger = structlog.get_logger()


class Outcome(str, Enum):
    ADDED = "added"
    UPDATED = "updated"
    SKIPPED = "skipped"
    FAILED = "failed"


class TaskRepository(Protocol):
    def find_by_natural_key(self, invoice_no: str, part_no: str, vendor: str) -> InboundTask | None: ...

    def create(self, task: InboundTaskCreate) -> InboundTask: ...

    def update(self, task_id: int, **fields) -> None: ...


def task_from_record(record: NormalizedRecord, due_date: datetime | None) -> InboundTaskCreate:
    return InboundTaskCreate(
        po_no=record.po_no,
        vendor=record.vendor_name or "UNKNOWN",
        part_no=record.part_number,
        part_name=record.part_name or "N/A",
        plan_qty=record.quantity,
        invoice_no=record.invoice_no or "",
        due_date=due_date,
        status=TaskStatus.ARRIVED,
        spec=record.spec,
        drawing_no=record.drawing_no,
        unit=record.unit,
        remark=record.remark,
        tax_invoice=record.tax_invoice,
        plant=record.plant,
        division=record.division,
        vendor_code=record.vendor_code,
        po_date=parse_flexible_date(record.po_date),
        unit_price=record.unit_price,
        amount=record.amount,
        currency=record.currency,
    )


class Reconciler:
    """Create-or-refresh of one inbound task against the store."""

    def __init__(self, store: TaskRepository):
        self.store = store

    def reconcile(self, record: NormalizedRecord, due_date: datetime | None) -> Outcome:
        key = (record.invoice_no or "", record.part_number or "", record.vendor_name or "UNKNOWN")
        try:
            existing = self.store.find_by_natural_key(*key)
            if existing is None:
                try:
                    self.store.create(task_from_record(record, due_date))
                except DuplicateTaskError:
                    # Another writer got there between lookup and insert
                    logger.info("Task appeared concurrently, treating as known", key=key)
                    return Outcome.SKIPPED
                return Outcome.ADDED

            # Due date is the only field PBASS stays authoritative for, and only while ARRIVED
            if existing.status == TaskStatus.ARRIVED:
                self.store.update(existing.id, due_date=due_date)
                return Outcome.UPDATED
            return Outcome.SKIPPED
        except Exception as e:
            logger.error("Failed to reconcile record", po_no=record.po_no, key=key, error=str(e))
            return Outcome.FAILED


def _summary(result: SyncResult) -> str:
    return (
        "Sync completed successfully\n"
        f"  Added new items: {result.added}\n"
        f"  Skipped/duplicates: {result.skipped}\n"
        "  Breakdown:\n"
        f"    Non-matching parts: {result.non_matching}\n"
        f"    Missing PO number: {result.missing_po}\n"
        f"    Existing records: {result.duplicates}\n"
        f"    Data errors: {result.errors}"
    )


class SyncService:
    """Fetch -> normalize -> filter -> reconcile, one pass per call."""

    def __init__(
        self,
        source: RecordSource,
        store: TaskRepository,
        keywords: Iterable[str] = DEFAULT_KEYWORDS,
    ):
        self.source = source
        self.reconciler = Reconciler(store)
        self.keywords = list(keywords)

    def run_sync(self, mode: SyncMode = SyncMode.INCREMENTAL) -> SyncResult:
        label = self.source.label
        logger.info("Starting sync", source=label, mode=mode.value)

        fetched = self.source.fetch_records(mode)
        if not fetched.success:
            logger.warning("Source failed, nothing touched", source=label, error=fetched.error)
            return SyncResult(
                success=False,
                status=SyncStatus.UNREACHABLE,
                source=label,
                message=fetched.error or "Source failed or returned no data",
            )

        records = fetched.records
        result = SyncResult(success=True, status=SyncStatus.COMPLETED, source=label, total=len(records))

        # Filter everything up front so the store only sees candidates
        candidates: list[NormalizedRecord] = []
        for raw in records:
            rec = normalize(raw)
            if not matches_keywords(rec, self.keywords):
                result.non_matching += 1
            elif not is_in_scope(rec, self.keywords):
                result.missing_po += 1
            else:
                candidates.append(rec)
        result.candidates = len(candidates)
        logger.info("Pre-filtered records", total=len(records), candidates=len(candidates))

        if not candidates and records:
            sample = sorted({normalize(r).part_name for r in records[:100]} - {"N/A"})[:5]
            logger.warning("No matching parts in fetched records", total=len(records), sample=sample)
            result.status = SyncStatus.NO_MATCHES
            result.skipped = result.non_matching + result.missing_po
            result.message = (
                f"Found {len(records)} records, but NO matching parts "
                f"({result.non_matching} without keywords {', '.join(self.keywords)}, "
                f"{result.missing_po} without PO number). Check the part names in PBASS."
            )
            return result

        # Sequential on purpose: lookup-then-create is not atomic
        for rec in candidates:
            try:
                due_date = parse_flexible_date(rec.external_date)
            except Exception as e:
                logger.error("Date parsing failed", po_no=rec.po_no, error=str(e))
                result.errors += 1
                continue
            outcome = self.reconciler.reconcile(rec, due_date)
            if outcome == Outcome.ADDED:
                result.added += 1
            elif outcome == Outcome.FAILED:
                result.errors += 1
            else:
                result.duplicates += 1

        result.skipped = result.non_matching + result.missing_po + result.duplicates
        if records:
            result.message = _summary(result)
        else:
            result.message = f"{label} returned no records"
        logger.info(
            "Sync finished",
            source=label,
            added=result.added,
            skipped=result.skipped,
            errors=result.errors,
            total=result.total,
        )
        return result


def build_source(config: SyncConfig, settings: RawSettings | None = None) -> RecordSource:
    if config.source == "csv":
        if not config.csv_path:
            raise ValueError("csv_path is required when source is 'csv'")
        return CsvSource(config.csv_path)
    return ApiSource(PbassClient.from_settings(settings), lookback_days=config.lookback_days)


def build_service(
    config: SyncConfig | None = None,
    settings: RawSettings | None = None,
    store: TaskRepository | None = None,
) -> SyncService:
    """Wire a SyncService from config and settings."""
    config = config or load_config()
    settings = settings or get_settings()
    return SyncService(
        source=build_source(config, settings),
        store=store or TaskStore(settings.DB_PATH),
        keywords=config.keywords,
    )
