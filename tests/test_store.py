import threading
import time
from decimal import Decimal

import pytest

from yearbook_distribution.models import ActionLogEntry, PaymentStatus, Student
from yearbook_distribution.store import ACTION_LOGS, STUDENTS, InMemoryLedgerStore


def student(sid, balance="10.00"):
    return Student(student_id=sid, balance_due=Decimal(balance), payment_status=PaymentStatus.UNPAID)


def test_rollback_restores_only_what_the_scope_wrote():
    store = InMemoryLedgerStore()
    store.upsert(student("S1", "10.00"))
    store.upsert(student("S2", "20.00"))

    with pytest.raises(RuntimeError):
        with store.transaction():
            store.upsert(student("S1", "0.00"))
            store.upsert(student("S3"))
            store.remove(STUDENTS, "S2")
            store.append(ActionLogEntry(action="X", station_name="s", operator_name="o"))
            raise RuntimeError("boom")

    assert store.get(STUDENTS, "S1").balance_due == Decimal("10.00")
    assert store.get(STUDENTS, "S2") is not None
    assert store.get(STUDENTS, "S3") is None
    assert store.query(ACTION_LOGS) == []


def test_rollback_after_wipe_brings_rows_back():
    store = InMemoryLedgerStore()
    store.upsert(student("S1"))
    with pytest.raises(RuntimeError):
        with store.transaction():
            assert store.delete(STUDENTS) == 1
            raise RuntimeError("boom")
    assert [s.student_id for s in store.query(STUDENTS)] == ["S1"]


def test_unrelated_transactions_do_not_wait_for_each_other():
    store = InMemoryLedgerStore()
    inside = threading.Event()
    release = threading.Event()

    def slow():
        with store.transaction():
            store.upsert(student("A"))
            inside.set()
            release.wait(2.0)

    t = threading.Thread(target=slow)
    t.start()
    assert inside.wait(2.0)
    started = time.monotonic()
    with store.transaction():
        store.upsert(student("B"))
    waited = time.monotonic() - started
    release.set()
    t.join()

    assert waited < 0.5
    assert {s.student_id for s in store.query(STUDENTS)} == {"A", "B"}


def test_remove_missing_key():
    store = InMemoryLedgerStore()
    assert store.remove(STUDENTS, "nope") is False
