"""SQLAlchemy-backed Ledger Store.

Four tables (students, distributions, payments, action_logs), each with a
surrogate autoincrement id; students also carry the unique external
`student_id`. Works with SQLite for a single-box deployment or any other
SQLAlchemy URL.

Session handling follows the usual pattern: one session per transaction
scope, commit on success, rollback on error. Scopes are per-thread, so a
coordinator command running in a worker thread owns its own session. Driver
errors that mean "try again later" surface as `StoreUnavailable`.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterator, Mapping

from sqlalchemy import JSON, Boolean, DateTime, Integer, MetaData, Numeric, String, create_engine, delete, select
from sqlalchemy.exc import DisconnectionError, OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import StoreUnavailable
from .models import ActionLogEntry, Distribution, Payment, PaymentStatus, Student
from .store import ACTION_LOGS, DISTRIBUTIONS, PAYMENTS, STUDENTS, LedgerStore, Record, check_kind, kind_of

logger = logging.getLogger(__name__)

convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    metadata = MetaData(naming_convention=convention)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)


class StudentRow(Base):
    __tablename__ = STUDENTS

    student_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    first_name: Mapped[str] = mapped_column(String(200), default="")
    last_name: Mapped[str] = mapped_column(String(200), default="")
    balance_due: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0.00"))
    payment_status: Mapped[str] = mapped_column(String(16))
    order_type: Mapped[str] = mapped_column(String(100), default="")
    order_number: Mapped[str] = mapped_column(String(100), default="")
    yearbook: Mapped[bool] = mapped_column(Boolean, default=False)
    personalization: Mapped[bool] = mapped_column(Boolean, default=False)
    signature_package: Mapped[bool] = mapped_column(Boolean, default=False)
    clear_cover: Mapped[bool] = mapped_column(Boolean, default=False)
    photo_pockets: Mapped[bool] = mapped_column(Boolean, default=False)
    photo_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class DistributionRow(Base):
    __tablename__ = DISTRIBUTIONS

    student_id: Mapped[str] = mapped_column(String(64), index=True)
    operator_name: Mapped[str] = mapped_column(String(200))
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    verified: Mapped[bool] = mapped_column(Boolean, default=False)
    verified_by: Mapped[str | None] = mapped_column(String(200), nullable=True)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class PaymentRow(Base):
    __tablename__ = PAYMENTS

    student_id: Mapped[str] = mapped_column(String(64), index=True)
    operator_name: Mapped[str] = mapped_column(String(200))
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    bills: Mapped[dict[str, Any]] = mapped_column(JSON)
    amount_paid: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    change_due: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    change_bills: Mapped[dict[str, Any]] = mapped_column(JSON)
    coin_change: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0.00"))


class ActionLogRow(Base):
    __tablename__ = ACTION_LOGS

    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    student_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    action: Mapped[str] = mapped_column(String(64))
    details: Mapped[dict[str, Any]] = mapped_column(JSON)
    station_name: Mapped[str] = mapped_column(String(200))
    operator_name: Mapped[str] = mapped_column(String(200))


ROW_TYPES: dict[str, type[Base]] = {
    STUDENTS: StudentRow,
    DISTRIBUTIONS: DistributionRow,
    PAYMENTS: PaymentRow,
    ACTION_LOGS: ActionLogRow,
}

_TRANSIENT = (OperationalError, DisconnectionError)


def _aware(ts: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on the way back.
    if ts is not None and ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


def _money(value: Any) -> Decimal:
    return Decimal(value).quantize(Decimal("0.01"))


def _to_record(kind: str, row: Base) -> Record:
    if kind == STUDENTS:
        return Student(
            id=row.id,
            student_id=row.student_id,
            first_name=row.first_name,
            last_name=row.last_name,
            balance_due=_money(row.balance_due),
            payment_status=PaymentStatus(row.payment_status),
            order_type=row.order_type,
            order_number=row.order_number,
            yearbook=row.yearbook,
            personalization=row.personalization,
            signature_package=row.signature_package,
            clear_cover=row.clear_cover,
            photo_pockets=row.photo_pockets,
            photo_url=row.photo_url,
            created_at=_aware(row.created_at),
        )
    if kind == DISTRIBUTIONS:
        return Distribution(
            id=row.id,
            student_id=row.student_id,
            operator_name=row.operator_name,
            timestamp=_aware(row.timestamp),
            verified=row.verified,
            verified_by=row.verified_by,
            verified_at=_aware(row.verified_at),
        )
    if kind == PAYMENTS:
        return Payment(
            id=row.id,
            student_id=row.student_id,
            operator_name=row.operator_name,
            timestamp=_aware(row.timestamp),
            bills=dict(row.bills),
            amount_paid=_money(row.amount_paid),
            change_due=_money(row.change_due),
            change_bills=dict(row.change_bills),
            coin_change=_money(row.coin_change),
        )
    return ActionLogEntry(
        id=row.id,
        timestamp=_aware(row.timestamp),
        student_id=row.student_id,
        action=row.action,
        details=dict(row.details or {}),
        station_name=row.station_name,
        operator_name=row.operator_name,
    )


def _column_values(record: Record) -> dict[str, Any]:
    values = {k: v for k, v in vars(record).items() if k != "id"}
    if isinstance(record, Student):
        values["payment_status"] = record.payment_status.value
    return values


class SqlLedgerStore(LedgerStore):
    def __init__(self, database_url: str = "sqlite:///./yearbook.db", *, echo: bool = False) -> None:
        kwargs: dict[str, Any] = {"echo": echo, "pool_pre_ping": True}
        if database_url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
        self.engine = create_engine(database_url, **kwargs)
        self._sessions = sessionmaker(bind=self.engine, autoflush=True, expire_on_commit=False)
        self._local = threading.local()
        # SQLite allows one writer; serialize our own scopes instead of hitting "database is locked".
        self._write_lock = threading.RLock() if database_url.startswith("sqlite") else None
        Base.metadata.create_all(self.engine)

    def close(self) -> None:
        self.engine.dispose()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        current: Session | None = getattr(self._local, "session", None)
        if current is not None:
            yield current
            return

        if self._write_lock is not None:
            self._write_lock.acquire()
        session = self._sessions()
        self._local.session = session
        try:
            try:
                yield session
                session.commit()
            except _TRANSIENT as e:
                session.rollback()
                logger.warning("store transaction failed: %s", e)
                raise StoreUnavailable(f"store unavailable: {e}") from e
            except BaseException:
                session.rollback()
                raise
        finally:
            self._local.session = None
            session.close()
            if self._write_lock is not None:
                self._write_lock.release()

    def _find(self, session: Session, kind: str, key: Any) -> Base | None:
        row_type = ROW_TYPES[kind]
        if kind == STUDENTS:
            return session.scalars(select(StudentRow).where(StudentRow.student_id == key)).first()
        return session.get(row_type, key)

    def get(self, kind: str, key: Any) -> Record | None:
        check_kind(kind)
        with self.transaction() as session:
            row = self._find(session, kind, key)
            return _to_record(kind, row) if row is not None else None

    def upsert(self, record: Record) -> Record:
        kind = kind_of(record)
        if kind == PAYMENTS and record.id is not None:
            raise ValueError("payments are immutable")
        if kind == ACTION_LOGS and record.id is not None:
            raise ValueError("action log entries are append-only")

        with self.transaction() as session:
            values = _column_values(record)
            if kind == STUDENTS:
                row = self._find(session, kind, record.student_id)
            elif record.id is not None:
                row = session.get(ROW_TYPES[kind], record.id)
                if row is None:
                    raise KeyError(f"{kind} {record.id} does not exist")
            else:
                row = None

            if row is None:
                row = ROW_TYPES[kind](**values)
                session.add(row)
            else:
                for k, v in values.items():
                    setattr(row, k, v)
            session.flush()
            return _to_record(kind, row)

    def append(self, entry: ActionLogEntry) -> ActionLogEntry:
        return self.upsert(entry)

    def query(
        self,
        kind: str,
        filters: Mapping[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[Record]:
        check_kind(kind)
        row_type = ROW_TYPES[kind]
        stmt = select(row_type)
        for k, v in (filters or {}).items():
            if isinstance(v, PaymentStatus):
                v = v.value
            stmt = stmt.where(getattr(row_type, k) == v)
        stmt = stmt.order_by(row_type.id.desc())
        if limit is not None:
            stmt = stmt.limit(max(0, limit))
        with self.transaction() as session:
            return [_to_record(kind, row) for row in session.scalars(stmt)]

    def remove(self, kind: str, key: Any) -> bool:
        check_kind(kind)
        with self.transaction() as session:
            row = self._find(session, kind, key)
            if row is None:
                return False
            session.delete(row)
            session.flush()
            return True

    def delete(self, kind: str, exclude: Mapping[str, Any] | None = None) -> int:
        check_kind(kind)
        row_type = ROW_TYPES[kind]
        stmt = delete(row_type)
        if exclude:
            keep = [getattr(row_type, k) == v for k, v in exclude.items()]
            ids = select(row_type.id).where(*keep)
            stmt = stmt.where(row_type.id.not_in(ids))
        with self.transaction() as session:
            result = session.execute(stmt)
            return result.rowcount or 0
