from __future__ import annotations

# Ledger Store.
#
# The store is the only durable state in the system. It exposes a narrow
# repository interface:
# - get(kind, key)                    one record or None
# - upsert(record)                    insert (assigning an id) or replace
# - append(entry)                     action-log append
# - query(kind, filters, limit)       newest first
# - remove(kind, key)                 delete one record
# - delete(kind, exclude)             administrative wipes
# - transaction()                     all-or-nothing scope for one command
#
# Every call is atomic on its own. Inside `transaction()` a failure rolls back
# every write made in the scope.
#
# Kinds: "students" (keyed by external student_id), "distributions",
# "payments", "action_logs" (keyed by surrogate id).

import copy
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import replace
from typing import Any, Iterator, Mapping

from .models import ActionLogEntry, Distribution, Payment, Student

STUDENTS = "students"
DISTRIBUTIONS = "distributions"
PAYMENTS = "payments"
ACTION_LOGS = "action_logs"

KINDS = (STUDENTS, DISTRIBUTIONS, PAYMENTS, ACTION_LOGS)

Record = Student | Distribution | Payment | ActionLogEntry

_KIND_BY_TYPE: dict[type, str] = {
    Student: STUDENTS,
    Distribution: DISTRIBUTIONS,
    Payment: PAYMENTS,
    ActionLogEntry: ACTION_LOGS,
}


def kind_of(record: Record) -> str:
    try:
        return _KIND_BY_TYPE[type(record)]
    except KeyError:
        raise TypeError(f"not a ledger record: {type(record).__name__}") from None


def check_kind(kind: str) -> None:
    if kind not in KINDS:
        raise ValueError(f"unknown kind: {kind!r}")


class LedgerStore(ABC):
    @abstractmethod
    def get(self, kind: str, key: Any) -> Record | None: ...

    @abstractmethod
    def upsert(self, record: Record) -> Record: ...

    @abstractmethod
    def append(self, entry: ActionLogEntry) -> ActionLogEntry: ...

    @abstractmethod
    def query(
        self,
        kind: str,
        filters: Mapping[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[Record]: ...

    @abstractmethod
    def remove(self, kind: str, key: Any) -> bool:
        """Delete one record. False when it did not exist."""

    @abstractmethod
    def delete(self, kind: str, exclude: Mapping[str, Any] | None = None) -> int:
        """Delete every record of `kind` except those matching `exclude`."""

    @abstractmethod
    def transaction(self) -> Any:
        """Context manager. Nested scopes join the outer one."""

    def close(self) -> None:
        pass


def _matches(record: Record, filters: Mapping[str, Any] | None) -> bool:
    if not filters:
        return False
    return all(getattr(record, k) == v for k, v in filters.items())


_MISSING = object()


class _UndoJournal:
    """First-seen value of every key written inside one transaction."""

    def __init__(self) -> None:
        self.entries: list[tuple[str, Any, Any]] = []
        self._touched: set[tuple[str, Any]] = set()

    def note(self, kind: str, key: Any, previous: Any) -> None:
        if (kind, key) in self._touched:
            return
        self._touched.add((kind, key))
        self.entries.append((kind, key, previous))


class InMemoryLedgerStore(LedgerStore):
    """Dict-backed store for a single coordinator process (and for tests).

    The store lock is held per call only, so transactions on different
    students run side by side; callers serialize same-student work with
    their own locks. A transaction keeps an undo journal of the keys it
    wrote and restores exactly those on failure.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._tables: dict[str, dict[Any, Record]] = {k: {} for k in KINDS}
        self._last_id: dict[str, int] = {k: 0 for k in KINDS}
        self._local = threading.local()

    def _next_id(self, kind: str) -> int:
        self._last_id[kind] += 1
        return self._last_id[kind]

    def _journal_write(self, kind: str, key: Any) -> None:
        journal: _UndoJournal | None = getattr(self._local, "journal", None)
        if journal is not None:
            # Stored records are replaced, never mutated, so no copy is needed.
            journal.note(kind, key, self._tables[kind].get(key, _MISSING))

    @contextmanager
    def transaction(self) -> Iterator[InMemoryLedgerStore]:
        if getattr(self._local, "journal", None) is not None:
            yield self
            return

        journal = _UndoJournal()
        self._local.journal = journal
        try:
            yield self
        except BaseException:
            with self._lock:
                for kind, key, previous in reversed(journal.entries):
                    if previous is _MISSING:
                        self._tables[kind].pop(key, None)
                    else:
                        self._tables[kind][key] = previous
            raise
        finally:
            self._local.journal = None

    def get(self, kind: str, key: Any) -> Record | None:
        check_kind(kind)
        with self._lock:
            rec = self._tables[kind].get(key)
            return copy.deepcopy(rec) if rec is not None else None

    def upsert(self, record: Record) -> Record:
        kind = kind_of(record)
        with self._lock:
            table = self._tables[kind]
            if kind == STUDENTS:
                existing = table.get(record.student_id)
                if record.id is None:
                    new_id = existing.id if existing is not None else self._next_id(kind)
                    record = replace(record, id=new_id)
                self._journal_write(kind, record.student_id)
                table[record.student_id] = copy.deepcopy(record)
                return copy.deepcopy(record)

            if kind == PAYMENTS and record.id is not None:
                raise ValueError("payments are immutable")
            if kind == ACTION_LOGS and record.id is not None:
                raise ValueError("action log entries are append-only")

            if record.id is None:
                record = replace(record, id=self._next_id(kind))
            elif record.id not in table:
                raise KeyError(f"{kind} {record.id} does not exist")
            self._journal_write(kind, record.id)
            table[record.id] = copy.deepcopy(record)
            return copy.deepcopy(record)

    def append(self, entry: ActionLogEntry) -> ActionLogEntry:
        if entry.id is not None:
            raise ValueError("action log entries are append-only")
        return self.upsert(entry)

    def query(
        self,
        kind: str,
        filters: Mapping[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[Record]:
        check_kind(kind)
        with self._lock:
            rows = [r for r in self._tables[kind].values() if not filters or _matches(r, filters)]
            rows.sort(key=lambda r: r.id or 0, reverse=True)
            if limit is not None:
                rows = rows[: max(0, limit)]
            return copy.deepcopy(rows)

    def remove(self, kind: str, key: Any) -> bool:
        check_kind(kind)
        with self._lock:
            if key not in self._tables[kind]:
                return False
            self._journal_write(kind, key)
            del self._tables[kind][key]
            return True

    def delete(self, kind: str, exclude: Mapping[str, Any] | None = None) -> int:
        check_kind(kind)
        with self._lock:
            table = self._tables[kind]
            doomed = [key for key, rec in table.items() if not _matches(rec, exclude)]
            for key in doomed:
                self._journal_write(kind, key)
                del table[key]
            return len(doomed)
