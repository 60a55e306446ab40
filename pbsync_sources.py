from __future__ import annotations

import csv
import re
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Protocol

import structlog

from pbsync_http import FetchResult, PbassClient, UpstreamError

logger = structlog.get_logger()

# PBASS encodes the query window as /YYYYMMDD/YYYYMMDD/ path segments.
DATE_RANGE_RE = re.compile(r"/(\d{8})/(\d{8})/")


class SyncMode(str, Enum):
    INCREMENTAL = "incremental"
    FULL = "full"


class RecordSource(Protocol):
    label: str

    def fetch_records(self, mode: SyncMode = SyncMode.INCREMENTAL) -> FetchResult: ...


def build_dynamic_url(
    url: str,
    mode: SyncMode = SyncMode.INCREMENTAL,
    lookback_days: int = 30,
    today: date | None = None,
) -> str:
    """Rewrite the date-window path segment for full or incremental sync.

    Full sync widens the window to ALL/ALL; incremental uses a rolling window
    ending today (UTC). URLs without a date window are returned unchanged.
    """
    if not DATE_RANGE_RE.search(url):
        return url
    if mode == SyncMode.FULL:
        return DATE_RANGE_RE.sub("/ALL/ALL/", url, count=1)
    end = today or datetime.now(timezone.utc).date()
    start = end - timedelta(days=lookback_days)
    return DATE_RANGE_RE.sub(f"/{start:%Y%m%d}/{end:%Y%m%d}/", url, count=1)


class ApiSource:
    label = "API"

    def __init__(self, client: PbassClient, lookback_days: int = 30):
        self.client = client
        self.lookback_days = lookback_days

    def fetch_records(self, mode: SyncMode = SyncMode.INCREMENTAL) -> FetchResult:
        url = build_dynamic_url(self.client.base_url, mode, self.lookback_days)
        logger.debug("Resolved PBASS URL", original=self.client.base_url, dynamic=url, mode=mode.value)
        return self.client.fetch_records(custom_url=url or None)


class CsvSource:
    """Reads a PBASS CSV export (same column headers as the API)."""

    label = "CSV"

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def fetch_records(self, mode: SyncMode = SyncMode.INCREMENTAL) -> FetchResult:
        # An export is always a full snapshot; mode does not apply
        if not self.path.exists():
            return FetchResult.failed(UpstreamError("not_found", f"CSV file not found: {self.path}"))
        try:
            with self.path.open(newline="", encoding="utf-8-sig") as fh:
                reader = csv.DictReader(fh, skipinitialspace=True)
                records = []
                for row in reader:
                    cleaned = {
                        (k or "").strip(): (v.strip() if isinstance(v, str) else v)
                        for k, v in row.items()
                        if k
                    }
                    if any(cleaned.values()):
                        records.append(cleaned)
        except (OSError, UnicodeDecodeError, csv.Error) as e:
            return FetchResult.failed(UpstreamError("csv", f"Failed to read CSV {self.path}: {e}"))
        logger.info("Loaded CSV export", path=str(self.path), count=len(records))
        return FetchResult(success=True, records=records)
