from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel


class TaskStatus(str, Enum):
    ARRIVED = "ARRIVED"
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"


class NormalizedRecord(BaseModel):
    po_no: str = ""
    vendor_name: str = "UNKNOWN"
    part_number: str = "N/A"
    part_name: str = "N/A"
    quantity: float = 0.0
    invoice_no: str = "N/A"
    external_date: str | None = None

    # Descriptive
    spec: str | None = None
    drawing_no: str | None = None
    unit: str | None = None
    remark: str | None = None
    tax_invoice: str | None = None
    po_date: str | None = None

    # Commercial
    unit_price: float = 0.0
    amount: float = 0.0
    currency: str | None = None
    plant: str | None = None
    division: str | None = None
    vendor_code: str | None = None


class InboundTaskCreate(BaseModel):
    po_no: str
    vendor: str
    part_no: str
    part_name: str
    plan_qty: float = 0.0
    invoice_no: str
    due_date: datetime | None = None
    status: TaskStatus = TaskStatus.ARRIVED
    spec: str | None = None
    drawing_no: str | None = None
    unit: str | None = None
    remark: str | None = None
    tax_invoice: str | None = None
    plant: str | None = None
    division: str | None = None
    vendor_code: str | None = None
    po_date: datetime | None = None
    unit_price: float = 0.0
    amount: float = 0.0
    currency: str | None = None


class InboundTask(InboundTaskCreate):
    id: int
    created_at: datetime | None = None
    updated_at: datetime | None = None


class SyncStatus(str, Enum):
    COMPLETED = "completed"
    NO_MATCHES = "no_matches"
    UNREACHABLE = "unreachable"


class SyncResult(BaseModel):
    success: bool
    status: SyncStatus
    source: str
    added: int = 0
    skipped: int = 0
    errors: int = 0
    total: int = 0

    # Skip breakdown
    candidates: int = 0
    duplicates: int = 0
    non_matching: int = 0
    missing_po: int = 0

    message: str = ""
