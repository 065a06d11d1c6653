"""Roster records and the event envelope.

Records are plain dataclasses. Stores hand out copies, so mutating a record
you got back never changes persisted state; write it back with `upsert()`.
`to_message()` renders each record as the JSON-safe dict used on the wire and
inside action-log details.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

FREE_ID_PREFIX = "FREE-"
SYSTEM_STUDENT_ID = "SYSTEM"

ORDER_FLAGS = ("yearbook", "personalization", "signature_package", "clear_cover", "photo_pockets")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentStatus(str, Enum):
    UNPAID = "UNPAID"
    PAID = "PAID"
    FREE = "FREE"


def reconcile_status(balance: Decimal, status: PaymentStatus) -> PaymentStatus:
    """Return the status that keeps `balance == 0 <=> status in {PAID, FREE}`.

    The balance is authoritative: anything owed means UNPAID, and a cleared
    balance keeps FREE/PAID (UNPAID becomes PAID).
    """
    if balance > 0:
        return PaymentStatus.UNPAID
    if status == PaymentStatus.UNPAID:
        return PaymentStatus.PAID
    return status


def is_reserved_id(student_id: str) -> bool:
    """Ids the coordinator mints itself; stations and imports may not use them."""
    return student_id.startswith(FREE_ID_PREFIX) or student_id == SYSTEM_STUDENT_ID


def split_name(name: str) -> tuple[str, str]:
    """'Ada Lovelace King' -> ('Ada Lovelace', 'King'). A single word is a first name."""
    parts = name.split()
    if len(parts) > 1:
        return " ".join(parts[:-1]), parts[-1]
    return (parts[0] if parts else ""), ""


def _iso(ts: datetime | None) -> str | None:
    return ts.isoformat() if ts is not None else None


@dataclass
class Student:
    student_id: str
    first_name: str = ""
    last_name: str = ""
    balance_due: Decimal = Decimal("0.00")
    payment_status: PaymentStatus = PaymentStatus.UNPAID
    order_type: str = ""
    order_number: str = ""
    yearbook: bool = False
    personalization: bool = False
    signature_package: bool = False
    clear_cover: bool = False
    photo_pockets: bool = False
    photo_url: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    id: int | None = None

    @property
    def name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)

    def comparable(self) -> dict[str, Any]:
        """Field values that an import or edit may change."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name not in ("id", "created_at", "student_id")
        }

    def to_message(self) -> dict[str, Any]:
        msg = asdict(self)
        msg["name"] = self.name
        msg["balance_due"] = str(self.balance_due)
        msg["payment_status"] = self.payment_status.value
        msg["created_at"] = _iso(self.created_at)
        return msg


@dataclass
class Distribution:
    student_id: str
    operator_name: str
    timestamp: datetime = field(default_factory=utcnow)
    verified: bool = False
    verified_by: str | None = None
    verified_at: datetime | None = None
    id: int | None = None

    def to_message(self) -> dict[str, Any]:
        msg = asdict(self)
        msg["timestamp"] = _iso(self.timestamp)
        msg["verified_at"] = _iso(self.verified_at)
        return msg


@dataclass
class Payment:
    student_id: str
    operator_name: str
    bills: dict[str, int]
    amount_paid: Decimal
    change_due: Decimal
    change_bills: dict[str, int]
    coin_change: Decimal = Decimal("0.00")
    timestamp: datetime = field(default_factory=utcnow)
    id: int | None = None

    def to_message(self) -> dict[str, Any]:
        msg = asdict(self)
        msg["amount_paid"] = str(self.amount_paid)
        msg["change_due"] = str(self.change_due)
        msg["coin_change"] = str(self.coin_change)
        msg["timestamp"] = _iso(self.timestamp)
        return msg


@dataclass
class ActionLogEntry:
    action: str
    station_name: str
    operator_name: str
    student_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)
    id: int | None = None

    def to_message(self) -> dict[str, Any]:
        msg = asdict(self)
        msg["timestamp"] = _iso(self.timestamp)
        return msg


@dataclass(frozen=True)
class DomainEvent:
    """Broadcast notification of a committed change.

    `(log_id, seq)` identifies the event: `log_id` is the action-log entry of
    the command that produced it, `seq` its position within that command.
    """

    kind: str
    payload: dict[str, Any]
    log_id: int
    seq: int = 0
    log: dict[str, Any] | None = None
    emitted_at: float = field(default_factory=time.time)

    @property
    def key(self) -> tuple[int, int]:
        return (self.log_id, self.seq)

    def to_message(self) -> dict[str, Any]:
        return {
            "type": "event",
            "kind": self.kind,
            "log_id": self.log_id,
            "seq": self.seq,
            "payload": self.payload,
            "log": self.log,
            "emitted_at": self.emitted_at,
        }
