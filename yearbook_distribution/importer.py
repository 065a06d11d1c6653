"""Roster import: row validation, merge rules and CSV loading.

A row is a loose mapping (usually straight from `csv.DictReader`). Only the
keys present in a row are applied, so a partial export never clobbers fields
it does not carry. Rows are matched by external `student_id`, which makes
re-running the same file a no-op.
"""

from __future__ import annotations

import csv
from dataclasses import replace
from pathlib import Path
from typing import Any, Mapping

from .models import ORDER_FLAGS, PaymentStatus, Student, is_reserved_id, reconcile_status
from .settlement import to_money

STRING_FIELDS = ("first_name", "last_name", "order_type", "order_number", "photo_url")
FLAG_FIELDS = ORDER_FLAGS

_TRUE = {"true", "t", "yes", "y", "1", "x"}
_FALSE = {"false", "f", "no", "n", "0", ""}


class RowRejected(Exception):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


def _flag(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower() if value is not None else ""
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise RowRejected(f"{name}: not a yes/no value: {value!r}")


def parse_row(raw: Mapping[str, Any], *, allow_reserved: bool = False) -> tuple[str, dict[str, Any]]:
    """Validate one row.

    Reserved ids (`FREE-...`, `SYSTEM`) are rejected unless `allow_reserved`,
    which edits of existing complimentary students need.

    Returns:
        (student_id, typed fields present in the row)

    Raises:
        RowRejected: blank or reserved id, unparseable balance, unknown status or flag.
    """
    sid = raw.get("student_id")
    sid = str(sid).strip() if sid is not None else ""
    if not sid:
        raise RowRejected("student_id missing")
    if is_reserved_id(sid) and not allow_reserved:
        raise RowRejected(f"student_id {sid!r} is reserved")

    fields: dict[str, Any] = {}
    for name in STRING_FIELDS:
        if name in raw and raw[name] is not None:
            value = str(raw[name]).strip()
            fields[name] = value if value or name != "photo_url" else None

    for name in FLAG_FIELDS:
        if name in raw:
            fields[name] = _flag(name, raw[name])

    if "balance_due" in raw and str(raw["balance_due"]).strip() != "":
        value = raw["balance_due"]
        if isinstance(value, str):
            value = value.replace("$", "").replace(",", "").strip()
        try:
            balance = to_money(value)
        except ValueError:
            raise RowRejected(f"balance_due: not a number: {raw['balance_due']!r}") from None
        if balance < 0:
            raise RowRejected("balance_due: must be >= 0")
        fields["balance_due"] = balance

    status = raw.get("payment_status")
    if isinstance(status, PaymentStatus):
        fields["payment_status"] = status
    elif status is not None and str(status).strip():
        try:
            fields["payment_status"] = PaymentStatus(str(status).strip().upper())
        except ValueError:
            raise RowRejected(f"payment_status: unknown value {status!r}") from None

    return sid, fields


def merge(current: Student | None, student_id: str, fields: Mapping[str, Any]) -> Student:
    """Apply parsed fields over the stored student, or build a new one.

    New students need a balance; the status is always reconciled with it.
    """
    if current is None:
        if "balance_due" not in fields:
            raise RowRejected("balance_due required for a new student")
        merged = Student(student_id=student_id, **fields)
    else:
        merged = replace(current, **fields)
    return replace(merged, payment_status=reconcile_status(merged.balance_due, merged.payment_status))


def load_csv(path: str | Path, mapping: Mapping[str, str] | None = None) -> list[dict[str, Any]]:
    """Read a roster CSV into rows.

    `mapping` renames source columns to Student field names, e.g.
    ``{"ID": "student_id", "Balance": "balance_due"}``. Unmapped columns are
    kept under their own name and ignored unless they match a field.
    """
    rename = dict(mapping or {})
    rows: list[dict[str, Any]] = []
    with open(path, newline="", encoding="utf-8-sig") as fh:
        for record in csv.DictReader(fh):
            rows.append({rename.get(k, k): v for k, v in record.items() if k is not None})
    return rows

