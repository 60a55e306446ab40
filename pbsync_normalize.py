from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

from dateutil import parser as date_parser

from pbsync_config import DEFAULT_KEYWORDS
from pbsync_models import NormalizedRecord

# Canonical field -> upstream keys, historical UPPER_SNAKE first, then camelCase.
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "po_no": ("PO_NO", "poNo", "PONo"),
    "vendor_name": ("VENDOR_NAME", "vendorName"),
    "part_number": ("ITEM_NO", "itemNo"),
    "part_name": ("ITEM_NAME", "itemName"),
    "quantity": ("REPLY_QTY", "replyQty"),
    "invoice_no": ("INV_NO", "invNo"),
    "external_date": ("INV_DATE", "invDate", "DUE_DATE", "dueDate"),
    "spec": ("SPEC", "spec"),
    "drawing_no": ("DRAW", "draw"),
    "unit": ("REPLY_UNIT", "replyUnit"),
    "remark": ("REMARK", "remark"),
    "tax_invoice": ("TAX_INVOICE", "taxInvoice"),
    "po_date": ("PO_DATE", "poDate"),
    "unit_price": ("REPLY_UP", "replyUp"),
    "amount": ("REPLY_AMT", "replyAmt"),
    "currency": ("REPLY_CUR", "replyCur"),
    "plant": ("PLAC", "plac"),
    "division": ("DIVI", "divi"),
    "vendor_code": ("VENDOR", "vendorCode"),
}


def pick(raw: Mapping[str, Any], keys: Iterable[str]) -> str | None:
    """Return the first non-blank value among keys, as a stripped string."""
    for key in keys:
        value = raw.get(key)
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def parse_number(value: Any) -> float:
    """Lenient numeric parse: anything unusable becomes 0.0."""
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        num = float(value)
    else:
        text = str(value).strip().replace(",", "")
        if not text:
            return 0.0
        try:
            num = float(text)
        except ValueError:
            return 0.0
    return num if math.isfinite(num) else 0.0


def normalize(raw: Mapping[str, Any]) -> NormalizedRecord:
    """Project one upstream record onto the canonical field set. Never raises."""
    if not isinstance(raw, Mapping):
        return NormalizedRecord()

    def field(name: str) -> str | None:
        return pick(raw, FIELD_ALIASES[name])

    part_name = field("part_name")
    return NormalizedRecord(
        po_no=field("po_no") or "",
        vendor_name=field("vendor_name") or "UNKNOWN",
        part_number=field("part_number") or part_name or "N/A",
        part_name=part_name or "N/A",
        quantity=parse_number(pick(raw, FIELD_ALIASES["quantity"])),
        invoice_no=field("invoice_no") or "N/A",
        external_date=field("external_date"),
        spec=field("spec"),
        drawing_no=field("drawing_no"),
        unit=field("unit"),
        remark=field("remark"),
        tax_invoice=field("tax_invoice"),
        po_date=field("po_date"),
        unit_price=parse_number(pick(raw, FIELD_ALIASES["unit_price"])),
        amount=parse_number(pick(raw, FIELD_ALIASES["amount"])),
        currency=field("currency"),
        plant=field("plant"),
        division=field("division"),
        vendor_code=field("vendor_code"),
    )


def matches_keywords(record: NormalizedRecord, keywords: Iterable[str] = DEFAULT_KEYWORDS) -> bool:
    """Case-insensitive substring match of any keyword in part name, part number or spec.

    Upstream data entry is inconsistent, so this stays an OR over fields with
    substring matching; tightening it drops real inbound tasks.
    """
    haystacks = [
        (record.part_name or "").upper(),
        (record.part_number or "").upper(),
        (record.spec or "").upper(),
    ]
    needles = [kw.upper() for kw in keywords if kw]
    return any(needle in hay for hay in haystacks for needle in needles)


def is_in_scope(record: NormalizedRecord, keywords: Iterable[str] = DEFAULT_KEYWORDS) -> bool:
    if not record.po_no:
        return False
    return matches_keywords(record, keywords)


_FILL_DEFAULTS = (datetime(2000, 1, 1), datetime(2001, 2, 2))


def _day_first(text: str) -> datetime | None:
    parts = [p.strip() for p in text.split("/")]
    if len(parts) != 3 or not all(p.isdigit() for p in parts):
        return None
    day, month, year = (int(p) for p in parts)
    if len(parts[2]) <= 2:
        year += 2000
    try:
        return datetime(year, month, day)
    except ValueError:
        return None


def parse_flexible_date(value: Any) -> datetime | None:
    """Parse an upstream date, preferring DD/MM/YYYY.

    Returns None for empty, incomplete or unparseable input instead of raising.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    text = str(value).strip()
    if not text:
        return None

    parsed = _day_first(text)
    if parsed is not None:
        return parsed

    # dateutil fills missing parts from its default; a value that parses
    # differently under two defaults is an incomplete date.
    try:
        first = date_parser.parse(text, default=_FILL_DEFAULTS[0])
        second = date_parser.parse(text, default=_FILL_DEFAULTS[1])
    except (ValueError, OverflowError, TypeError):
        return None
    if first != second:
        return None
    return first
