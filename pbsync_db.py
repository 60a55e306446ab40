from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from typing import Any

from pbsync_models import InboundTask, InboundTaskCreate, TaskStatus
from pbsync_settings import get_settings

# Columns a caller may change through update(); identity and natural key are fixed.
UPDATABLE_COLUMNS = {
    "due_date",
    "status",
    "plan_qty",
    "part_name",
    "remark",
    "spec",
    "drawing_no",
    "unit",
    "tax_invoice",
    "unit_price",
    "amount",
    "currency",
}

_DATE_COLUMNS = ("due_date", "po_date", "created_at", "updated_at")


class DuplicateTaskError(Exception):
    """Insert collided with an existing (invoice_no, part_no, vendor) row."""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_db(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, TaskStatus):
        return value.value
    return value


def _row_to_task(row: sqlite3.Row) -> InboundTask:
    data = dict(row)
    for col in _DATE_COLUMNS:
        if data.get(col):
            data[col] = datetime.fromisoformat(data[col])
    return InboundTask(**data)


class TaskStore:
    """SQLite-backed inbound task table keyed by (invoice_no, part_no, vendor)."""

    def __init__(self, db_path: str | None = None):
        self.db_path = db_path or get_settings().DB_PATH
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        cx = sqlite3.connect(self.db_path)
        cx.row_factory = sqlite3.Row
        return cx

    def _init_db(self) -> None:
        with self._connect() as cx:
            cx.execute(
                """CREATE TABLE IF NOT EXISTS inbound_task(
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                po_no TEXT NOT NULL,
                vendor TEXT NOT NULL,
                part_no TEXT NOT NULL,
                part_name TEXT NOT NULL,
                plan_qty REAL NOT NULL DEFAULT 0,
                invoice_no TEXT NOT NULL,
                due_date TEXT,
                status TEXT NOT NULL DEFAULT 'ARRIVED',
                spec TEXT,
                drawing_no TEXT,
                unit TEXT,
                remark TEXT,
                tax_invoice TEXT,
                plant TEXT,
                division TEXT,
                vendor_code TEXT,
                po_date TEXT,
                unit_price REAL NOT NULL DEFAULT 0,
                amount REAL NOT NULL DEFAULT 0,
                currency TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE(invoice_no, part_no, vendor)
            )"""
            )
        # sqlite3's context manager commits but does not close
        cx.close()

    def find_by_natural_key(self, invoice_no: str, part_no: str, vendor: str) -> InboundTask | None:
        cx = self._connect()
        try:
            cur = cx.execute(
                "SELECT * FROM inbound_task WHERE invoice_no=? AND part_no=? AND vendor=?",
                (invoice_no, part_no, vendor),
            )
            r = cur.fetchone()
            return _row_to_task(r) if r else None
        finally:
            cx.close()

    def get(self, task_id: int) -> InboundTask | None:
        cx = self._connect()
        try:
            r = cx.execute("SELECT * FROM inbound_task WHERE id=?", (task_id,)).fetchone()
            return _row_to_task(r) if r else None
        finally:
            cx.close()

    def create(self, task: InboundTaskCreate) -> InboundTask:
        data = {k: _to_db(v) for k, v in task.model_dump().items()}
        stamp = _now()
        data["created_at"] = stamp
        data["updated_at"] = stamp
        cols = ", ".join(data)
        marks = ", ".join("?" for _ in data)
        cx = self._connect()
        try:
            with cx:
                cur = cx.execute(
                    f"INSERT INTO inbound_task({cols}) VALUES({marks})", tuple(data.values())
                )
            new_id = cur.lastrowid
        except sqlite3.IntegrityError as e:
            if "UNIQUE" in str(e).upper():
                raise DuplicateTaskError(
                    f"Task exists for invoice={task.invoice_no} part={task.part_no} vendor={task.vendor}"
                ) from e
            raise
        finally:
            cx.close()
        created = self.get(int(new_id))
        if created is None:
            raise sqlite3.DatabaseError(f"Inserted task {new_id} could not be read back")
        return created

    def update(self, task_id: int, **fields: Any) -> None:
        unknown = set(fields) - UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update columns: {', '.join(sorted(unknown))}")
        if not fields:
            return
        values = {k: _to_db(v) for k, v in fields.items()}
        values["updated_at"] = _now()
        assignments = ", ".join(f"{k}=?" for k in values)
        cx = self._connect()
        try:
            with cx:
                cx.execute(
                    f"UPDATE inbound_task SET {assignments} WHERE id=?",
                    (*values.values(), task_id),
                )
        finally:
            cx.close()

    def list_tasks(self, status: TaskStatus | None = None, limit: int = 50) -> list[InboundTask]:
        sql = "SELECT * FROM inbound_task"
        params: list[Any] = []
        if status is not None:
            sql += " WHERE status=?"
            params.append(status.value)
        sql += " ORDER BY id DESC"
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        cx = self._connect()
        try:
            return [_row_to_task(r) for r in cx.execute(sql, params).fetchall()]
        finally:
            cx.close()

    def count(self) -> int:
        cx = self._connect()
        try:
            return int(cx.execute("SELECT COUNT(*) FROM inbound_task").fetchone()[0])
        finally:
            cx.close()
