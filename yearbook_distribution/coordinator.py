from __future__ import annotations

# The Lifecycle Coordinator is the *authoritative brain* of the system.
#
# Every command follows the same shape:
# 1) take the per-student lock(s)
# 2) inside one store transaction: validate, write rows, append exactly one
#    action-log entry
# 3) after commit (still under the lock): emit DomainEvents built from the
#    committed rows, in order
#
# Nothing is emitted when a command fails, and the coordinator is the only
# emitter of events. Stations never broadcast anything themselves.

import logging
import threading
import uuid
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Any, Callable, Iterable, Iterator, Mapping

from . import importer
from .errors import (
    AlreadyVerified,
    DistributionNotFound,
    InsufficientPayment,
    StoreUnavailable,
    StudentNotFound,
    ValidationError,
)
from .models import (
    FREE_ID_PREFIX,
    SYSTEM_STUDENT_ID,
    ActionLogEntry,
    Distribution,
    DomainEvent,
    Payment,
    PaymentStatus,
    Student,
    is_reserved_id,
    reconcile_status,
    split_name,
    utcnow,
)
from .retry import RetryConfig, retry_sync
from .settlement import settle, to_money
from .store import ACTION_LOGS, DISTRIBUTIONS, PAYMENTS, STUDENTS, LedgerStore

logger = logging.getLogger(__name__)

EventSink = Callable[[DomainEvent], None]

# Event kinds.
STUDENT_CREATED = "StudentCreated"
STUDENT_UPDATED = "StudentUpdated"
STUDENT_DELETED = "StudentDeleted"
PAYMENT_PROCESSED = "PaymentProcessed"
DISTRIBUTION_CREATED = "DistributionCreated"
DISTRIBUTION_VERIFIED = "DistributionVerified"
COMPLIMENTARY_ISSUED = "ComplimentaryIssued"
STUDENTS_IMPORTED = "StudentsImported"
STUDENTS_WIPED = "StudentsWiped"
DISTRIBUTIONS_WIPED = "DistributionsWiped"
LOGS_PURGED = "LogsPurged"

EDITABLE_FIELDS = importer.STRING_FIELDS + importer.FLAG_FIELDS + ("balance_due", "payment_status")


class KeyedLocks:
    """One mutex per key, created on demand and discarded when unused."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, tuple[threading.Lock, int]] = {}

    def _acquire_ref(self, key: str) -> threading.Lock:
        with self._guard:
            lock, refs = self._locks.get(key, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._locks[key] = (lock, refs + 1)
            return lock

    def _release_ref(self, key: str) -> None:
        with self._guard:
            lock, refs = self._locks[key]
            if refs <= 1:
                del self._locks[key]
            else:
                self._locks[key] = (lock, refs - 1)

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self._acquire_ref(key)
        try:
            with lock:
                yield
        finally:
            self._release_ref(key)

    @contextmanager
    def hold_many(self, keys: Iterable[str]) -> Iterator[None]:
        # Sorted acquisition keeps two multi-key holders from deadlocking.
        with ExitStack() as stack:
            for key in sorted(set(keys)):
                stack.enter_context(self.hold(key))
            yield

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


@dataclass
class _Outcome:
    """What a command wrote: its result, its log entry and the events to emit."""

    result: Any
    log: ActionLogEntry | None = None
    events: list[tuple[str, dict[str, Any]]] = field(default_factory=list)


@dataclass(frozen=True)
class ImportReport:
    created: int
    updated: int
    unchanged: int
    rejected: list[tuple[dict[str, Any], str]]
    log_id: int | None = None

    def to_message(self) -> dict[str, Any]:
        return {
            "created": self.created,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "rejected": [{"row": row, "reason": reason} for row, reason in self.rejected],
        }


class LedgerCoordinator:
    """Runs station commands against the store and emits the resulting events."""

    def __init__(
        self,
        store: LedgerStore,
        *,
        emit: EventSink | None = None,
        retry: RetryConfig | None = None,
    ) -> None:
        self.store = store
        self._emit = emit
        self._locks = KeyedLocks()
        self._retry = retry or RetryConfig(retryable_exceptions=(StoreUnavailable,))
        self._local = threading.local()

    @property
    def last_log_id(self) -> int | None:
        """Log id written by the last command this thread ran (None for a no-op)."""
        return getattr(self._local, "log_id", None)

    def set_emitter(self, emit: EventSink | None) -> None:
        self._emit = emit

    # -------------------- plumbing --------------------

    def _commit(self, work: Callable[[], _Outcome]) -> _Outcome:
        def attempt() -> _Outcome:
            with self.store.transaction():
                return work()

        return retry_sync(attempt, self._retry)

    def _publish(self, outcome: _Outcome) -> None:
        if outcome.log is None or outcome.log.id is None:
            return
        self._local.log_id = outcome.log.id
        log_msg = outcome.log.to_message()
        for seq, (kind, payload) in enumerate(outcome.events):
            event = DomainEvent(kind=kind, payload=payload, log_id=outcome.log.id, seq=seq, log=log_msg)
            if self._emit is None:
                continue
            try:
                self._emit(event)
            except Exception:
                # Delivery is decoupled from command success.
                logger.exception("event emit failed: %s log_id=%s", kind, outcome.log.id)

    def _run(self, keys: Iterable[str], work: Callable[[], _Outcome]) -> _Outcome:
        self._local.log_id = None
        with self._locks.hold_many(keys):
            outcome = self._commit(work)
            self._publish(outcome)
        if outcome.log is not None:
            logger.debug("committed %s log_id=%s", outcome.log.action, outcome.log.id)
        return outcome

    def _log(
        self,
        action: str,
        *,
        operator: str,
        station: str,
        student_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> ActionLogEntry:
        return self.store.append(
            ActionLogEntry(
                action=action,
                station_name=station,
                operator_name=operator,
                student_id=student_id,
                details=details or {},
            )
        )

    def _student(self, student_id: str) -> Student | None:
        return self.store.get(STUDENTS, student_id)

    @staticmethod
    def _require(value: Any, what: str) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"{what} required")
        return value.strip()

    @classmethod
    def _external_id(cls, student_id: Any) -> str:
        sid = cls._require(student_id, "student_id")
        if is_reserved_id(sid):
            raise ValidationError(f"student_id {sid!r} is reserved")
        return sid

    @staticmethod
    def _money(value: Any, what: str) -> Decimal:
        try:
            amount = to_money(value)
        except ValueError as e:
            raise ValidationError(f"{what}: {e}") from e
        if amount < 0:
            raise ValidationError(f"{what} must be >= 0")
        return amount

    def _new_student(self, student_id: str, name: str, owed: Decimal, **extra: Any) -> Student:
        first, last = split_name(name)
        student = Student(
            student_id=student_id,
            first_name=first,
            last_name=last,
            balance_due=owed,
            payment_status=reconcile_status(owed, PaymentStatus.UNPAID),
            **extra,
        )
        return self.store.upsert(student)

    # -------------------- queries --------------------

    def get_student(self, student_id: str) -> Student:
        student = self._student(student_id)
        if student is None:
            raise StudentNotFound(student_id)
        return student

    def list_students(self, *, status: PaymentStatus | None = None, limit: int | None = None) -> list[Student]:
        filters = {"payment_status": status} if status is not None else None
        return self.store.query(STUDENTS, filters, limit)

    def recent_logs(self, limit: int = 50) -> list[ActionLogEntry]:
        return self.store.query(ACTION_LOGS, None, limit)

    def distributions_for(self, student_id: str) -> list[Distribution]:
        return self.store.query(DISTRIBUTIONS, {"student_id": student_id})

    def payments_for(self, student_id: str) -> list[Payment]:
        return self.store.query(PAYMENTS, {"student_id": student_id})

    def logs_for(self, student_id: str, limit: int | None = None) -> list[ActionLogEntry]:
        return self.store.query(ACTION_LOGS, {"student_id": student_id}, limit)

    # -------------------- commands --------------------

    def register_or_create(
        self,
        student_id: str,
        name: str,
        owed: Any,
        *,
        operator: str,
        station: str = "Cash Station",
    ) -> Student:
        """Look up a student, creating an UNPAID one when the id is unknown."""
        sid = self._external_id(student_id)
        owed_d = self._money(owed, "owed")
        operator = self._require(operator, "operator")

        def work() -> _Outcome:
            existing = self._student(sid)
            if existing is not None:
                return _Outcome(existing)
            student = self._new_student(sid, name or "", owed_d, order_type="Walk-up")
            log = self._log(
                "CREATE_STUDENT",
                operator=operator,
                station=station,
                student_id=sid,
                details={"student": student.to_message()},
            )
            return _Outcome(student, log, [(STUDENT_CREATED, student.to_message())])

        return self._run([sid], work).result

    def process_payment(
        self,
        student_id: str,
        tender: Mapping[str, Any],
        *,
        operator: str,
        amount_due: Any = None,
        name: str | None = None,
        station: str = "Cash Station",
    ) -> Payment:
        """Settle a cash tender against a student's balance.

        `amount_due` is what this tender pays; it defaults to the whole
        outstanding balance. Unknown ids are created on the spot (walk-up),
        which needs `amount_due`.

        Raises:
            InsufficientPayment: tender below the amount due. Nothing is written.
        """
        sid = self._require(student_id, "student_id")
        operator = self._require(operator, "operator")
        due = self._money(amount_due, "amount_due") if amount_due is not None else None
        if not isinstance(tender, Mapping):
            raise ValidationError("tender must be a mapping of denomination to count")

        def work() -> _Outcome:
            events: list[tuple[str, dict[str, Any]]] = []
            student = self._student(sid)
            created = False
            if student is None:
                self._external_id(sid)
                if due is None:
                    raise ValidationError("amount_due required for a new student")
                student = self._new_student(sid, name or "", due, order_type="Cash Payment", yearbook=True)
                created = True
                events.append((STUDENT_CREATED, student.to_message()))

            owed = due if due is not None else student.balance_due
            if owed <= 0:
                raise ValidationError(f"nothing owed by {sid}")

            try:
                result = settle(owed, tender)
            except ValueError as e:
                raise ValidationError(str(e)) from e
            if not result.sufficient:
                raise InsufficientPayment(result)

            payment = self.store.upsert(
                Payment(
                    student_id=sid,
                    operator_name=operator,
                    bills=result.bills,
                    amount_paid=owed,
                    change_due=result.change_due,
                    change_bills=result.change_breakdown,
                    coin_change=result.coin_change,
                )
            )
            balance = max(Decimal("0.00"), student.balance_due - owed)
            student = self.store.upsert(
                replace(
                    student,
                    balance_due=balance,
                    payment_status=reconcile_status(balance, student.payment_status),
                )
            )
            log = self._log(
                "PROCESS_PAYMENT",
                operator=operator,
                station=station,
                student_id=sid,
                details={
                    "payment": payment.to_message(),
                    "student_created": created,
                    "balance_due": str(balance),
                    "payment_status": student.payment_status.value,
                },
            )
            events.append((PAYMENT_PROCESSED, payment.to_message()))
            events.append((STUDENT_UPDATED, student.to_message()))
            return _Outcome(payment, log, events)

        return self._run([sid], work).result

    def _distribute(self, student_id: str, operator: str) -> Distribution:
        return self.store.upsert(Distribution(student_id=student_id, operator_name=operator))

    def _verify(self, distribution: Distribution, verifier: str) -> Distribution:
        if distribution.verified:
            raise AlreadyVerified(distribution)
        return self.store.upsert(
            replace(distribution, verified=True, verified_by=verifier, verified_at=utcnow())
        )

    def create_distribution(
        self,
        student_id: str,
        *,
        operator: str,
        station: str = "Distribution Station",
    ) -> Distribution:
        """Record a physical handoff. Repeat handoffs are allowed."""
        sid = self._require(student_id, "student_id")
        operator = self._require(operator, "operator")

        def work() -> _Outcome:
            if self._student(sid) is None:
                raise StudentNotFound(sid)
            dist = self._distribute(sid, operator)
            log = self._log(
                "NEW_DISTRIBUTION",
                operator=operator,
                station=station,
                student_id=sid,
                details={"distribution": dist.to_message()},
            )
            return _Outcome(dist, log, [(DISTRIBUTION_CREATED, dist.to_message())])

        return self._run([sid], work).result

    def verify_distribution(
        self,
        distribution_id: int,
        *,
        verifier: str,
        station: str = "Checker Station",
    ) -> Distribution:
        """Confirm a handoff. A second call returns the verified row and writes nothing."""
        verifier = self._require(verifier, "verifier")
        if isinstance(distribution_id, bool) or not isinstance(distribution_id, int):
            raise ValidationError("distribution_id must be an integer")

        found = self.store.get(DISTRIBUTIONS, distribution_id)
        if found is None:
            raise DistributionNotFound(distribution_id)

        def work() -> _Outcome:
            dist = self.store.get(DISTRIBUTIONS, distribution_id)
            if dist is None:
                raise DistributionNotFound(distribution_id)
            verified = self._verify(dist, verifier)
            log = self._log(
                "VERIFY_DISTRIBUTION",
                operator=verifier,
                station=station,
                student_id=dist.student_id,
                details={"distribution": verified.to_message()},
            )
            return _Outcome(verified, log, [(DISTRIBUTION_VERIFIED, verified.to_message())])

        try:
            return self._run([found.student_id], work).result
        except AlreadyVerified as e:
            return e.distribution

    def issue_complimentary(
        self,
        name: str,
        *,
        operator: str,
        student_id: str | None = None,
        station: str = "Ruby Station",
    ) -> tuple[Student, Distribution]:
        """Give a free book: FREE student, plus a distribution already verified.

        Without `student_id` a synthetic `FREE-` student is created. With one,
        that existing student is converted to FREE.
        """
        operator = self._require(operator, "operator")
        if student_id is None:
            self._require(name, "name")
            sid = f"{FREE_ID_PREFIX}{uuid.uuid4().hex[:8].upper()}"
        else:
            sid = self._require(student_id, "student_id")

        def work() -> _Outcome:
            events: list[tuple[str, dict[str, Any]]] = []
            student = self._student(sid)
            if student is None:
                if student_id is not None:
                    raise StudentNotFound(sid)
                student = self._new_student(sid, name, Decimal("0.00"), order_type="Complimentary", yearbook=True)
                student = self.store.upsert(replace(student, payment_status=PaymentStatus.FREE))
                events.append((STUDENT_CREATED, student.to_message()))
            else:
                student = self.store.upsert(
                    replace(
                        student,
                        balance_due=Decimal("0.00"),
                        payment_status=PaymentStatus.FREE,
                        yearbook=True,
                    )
                )
                events.append((STUDENT_UPDATED, student.to_message()))

            dist = self._distribute(sid, operator)
            events.append((DISTRIBUTION_CREATED, dist.to_message()))
            verified = self._verify(dist, operator)
            events.append((DISTRIBUTION_VERIFIED, verified.to_message()))

            log = self._log(
                "FREE_BOOK",
                operator=operator,
                station=station,
                student_id=sid,
                details={"student": student.to_message(), "distribution": verified.to_message()},
            )
            events.append(
                (COMPLIMENTARY_ISSUED, {"student_id": sid, "distribution_id": verified.id, "name": student.name})
            )
            return _Outcome((student, verified), log, events)

        return self._run([sid], work).result

    def import_students(
        self,
        rows: Iterable[Mapping[str, Any]],
        *,
        operator: str,
        station: str = "Ruby Station",
    ) -> ImportReport:
        """Upsert a batch of raw rows by external id. Bad rows are rejected, not fatal."""
        operator = self._require(operator, "operator")
        parsed: list[tuple[str, dict[str, Any], dict[str, Any]]] = []
        rejected: list[tuple[dict[str, Any], str]] = []
        for raw in rows:
            try:
                sid, fields = importer.parse_row(raw)
            except importer.RowRejected as e:
                rejected.append((dict(raw), e.reason))
                continue
            parsed.append((sid, fields, dict(raw)))

        def work() -> _Outcome:
            created = updated = unchanged = 0
            bad = list(rejected)
            events: list[tuple[str, dict[str, Any]]] = []
            for sid, fields, raw in parsed:
                current = self._student(sid)
                try:
                    merged = importer.merge(current, sid, fields)
                except importer.RowRejected as e:
                    bad.append((raw, e.reason))
                    continue
                if current is not None and merged.comparable() == current.comparable():
                    unchanged += 1
                    continue
                saved = self.store.upsert(merged)
                if current is None:
                    created += 1
                    events.append((STUDENT_CREATED, saved.to_message()))
                else:
                    updated += 1
                    events.append((STUDENT_UPDATED, saved.to_message()))

            report = ImportReport(created, updated, unchanged, bad)
            log = self._log(
                "IMPORT_STUDENTS",
                operator=operator,
                station=station,
                details={**report.to_message(), "total": len(parsed) + len(rejected)},
            )
            events.append((STUDENTS_IMPORTED, report.to_message()))
            return _Outcome(replace(report, log_id=log.id), log, events)

        return self._run([sid for sid, _, _ in parsed], work).result

    # -------------------- administrative hub --------------------

    def update_student(
        self,
        student_id: str,
        changes: Mapping[str, Any],
        *,
        operator: str,
        station: str = "Ruby Station",
    ) -> Student:
        """Partial edit of a student; the payment status follows the balance."""
        sid = self._require(student_id, "student_id")
        operator = self._require(operator, "operator")
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"cannot edit: {', '.join(sorted(unknown))}")
        try:
            _, fields = importer.parse_row({**changes, "student_id": sid}, allow_reserved=True)
        except importer.RowRejected as e:
            raise ValidationError(e.reason) from e

        def work() -> _Outcome:
            current = self._student(sid)
            if current is None:
                raise StudentNotFound(sid)
            merged = importer.merge(current, sid, fields)
            if merged.comparable() == current.comparable():
                return _Outcome(current)
            saved = self.store.upsert(merged)
            log = self._log(
                "UPDATE_STUDENT",
                operator=operator,
                station=station,
                student_id=sid,
                details={"changes": {k: str(v) for k, v in changes.items()}, "student": saved.to_message()},
            )
            return _Outcome(saved, log, [(STUDENT_UPDATED, saved.to_message())])

        return self._run([sid], work).result

    def delete_student(self, student_id: str, *, operator: str, station: str = "Ruby Station") -> Student:
        """Remove one student. Their distributions and payments stay as history."""
        sid = self._require(student_id, "student_id")
        operator = self._require(operator, "operator")

        def work() -> _Outcome:
            student = self._student(sid)
            if student is None:
                raise StudentNotFound(sid)
            self.store.remove(STUDENTS, sid)
            log = self._log(
                "DELETE_STUDENT",
                operator=operator,
                station=station,
                student_id=sid,
                details={"student": student.to_message()},
            )
            return _Outcome(student, log, [(STUDENT_DELETED, student.to_message())])

        return self._run([sid], work).result

    def _wipe(self, kind: str, action: str, event_kind: str, *, operator: str, station: str, **exclude: Any) -> int:
        operator = self._require(operator, "operator")

        def work() -> _Outcome:
            count = self.store.delete(kind, exclude or None)
            log = self._log(
                action,
                operator=operator,
                station=station,
                student_id=SYSTEM_STUDENT_ID,
                details={"deleted": count},
            )
            return _Outcome(count, log, [(event_kind, {"deleted": count})])

        return self._run([SYSTEM_STUDENT_ID], work).result

    def wipe_students(self, *, operator: str, station: str = "Ruby Station") -> int:
        return self._wipe(STUDENTS, "WIPE_DATABASE", STUDENTS_WIPED, operator=operator, station=station)

    def wipe_distributions(self, *, operator: str, station: str = "Ruby Station") -> int:
        return self._wipe(DISTRIBUTIONS, "WIPE_CHECKERS", DISTRIBUTIONS_WIPED, operator=operator, station=station)

    def purge_logs(self, *, operator: str, station: str = "Ruby Station") -> int:
        """Delete the action log, keeping SYSTEM entries. The purge logs itself."""
        return self._wipe(
            ACTION_LOGS,
            "WIPE_LOGS",
            LOGS_PURGED,
            operator=operator,
            station=station,
            student_id=SYSTEM_STUDENT_ID,
        )
