from decimal import Decimal

import pytest

from yearbook_distribution.importer import RowRejected, load_csv, parse_row
from yearbook_distribution.models import PaymentStatus
from yearbook_distribution.store import ACTION_LOGS

ROSTER = [
    {"student_id": "A1", "first_name": "Ann", "last_name": "Lee", "balance_due": "45.00", "yearbook": "yes"},
    {"student_id": "B2", "first_name": "Ben", "last_name": "Ode", "balance_due": "0", "payment_status": "PAID"},
]


def test_reimport_is_a_no_op(coordinator, store, recorder):
    first = coordinator.import_students(ROSTER, operator="hub")
    assert (first.created, first.updated, first.unchanged) == (2, 0, 0)

    recorder.events.clear()
    second = coordinator.import_students(ROSTER, operator="hub")
    assert (second.created, second.updated, second.unchanged) == (0, 0, 2)
    # Only the batch summary is broadcast.
    assert recorder.kinds == ["StudentsImported"]
    assert [e.action for e in store.query(ACTION_LOGS)] == ["IMPORT_STUDENTS", "IMPORT_STUDENTS"]


def test_bad_rows_are_reported_not_fatal(coordinator):
    rows = [
        {"student_id": "", "first_name": "Nobody", "balance_due": "1"},
        {"student_id": "C3", "balance_due": "lots"},
        {"student_id": "D4", "balance_due": "-5"},
        {"student_id": "E5", "balance_due": "5", "payment_status": "MAYBE"},
        {"student_id": "F6", "first_name": "Fay"},
        {"student_id": "G7", "first_name": "Gus", "balance_due": "$1,250.50"},
    ]
    report = coordinator.import_students(rows, operator="hub")
    assert report.created == 1
    assert len(report.rejected) == 5
    assert coordinator.get_student("G7").balance_due == Decimal("1250.50")


def test_partial_rows_only_touch_present_fields(coordinator):
    coordinator.import_students(ROSTER, operator="hub")
    report = coordinator.import_students([{"student_id": "A1", "photo_url": "http://x/a1.jpg"}], operator="hub")
    assert report.updated == 1
    a1 = coordinator.get_student("A1")
    assert a1.first_name == "Ann"
    assert a1.balance_due == Decimal("45.00")
    assert a1.yearbook is True
    assert a1.photo_url == "http://x/a1.jpg"


def test_status_follows_balance_on_import(coordinator):
    coordinator.import_students(
        [{"student_id": "H8", "balance_due": "10", "payment_status": "PAID"}], operator="hub"
    )
    assert coordinator.get_student("H8").payment_status == PaymentStatus.UNPAID


@pytest.mark.parametrize(
    "raw",
    [{"first_name": "x"}, {"student_id": "  "}, {"student_id": "A", "clear_cover": "perhaps"}],
)
def test_parse_row_rejects(raw):
    with pytest.raises(RowRejected):
        parse_row(raw)


def test_load_csv_renames_columns(tmp_path, coordinator):
    path = tmp_path / "roster.csv"
    path.write_text("﻿ID,First,Last,Balance\nA1,Ann,Lee,45.00\nB2,Ben,Ode,0\n", encoding="utf-8")

    rows = load_csv(path, {"ID": "student_id", "First": "first_name", "Last": "last_name", "Balance": "balance_due"})

    assert rows[0] == {"student_id": "A1", "first_name": "Ann", "last_name": "Lee", "balance_due": "45.00"}
    report = coordinator.import_students(rows, operator="hub")
    assert report.created == 2
    assert coordinator.get_student("B2").payment_status == PaymentStatus.PAID


def test_reserved_ids_cannot_be_imported(coordinator):
    rows = [
        {"student_id": "FREE-ABC", "first_name": "Fake", "balance_due": "0"},
        {"student_id": "SYSTEM", "first_name": "Root", "balance_due": "0"},
    ]
    report = coordinator.import_students(rows, operator="hub")
    assert report.created == 0
    assert sorted(r["student_id"] for r, _ in report.rejected) == ["FREE-ABC", "SYSTEM"]
    assert all("reserved" in reason for _, reason in report.rejected)


def test_complimentary_student_can_still_be_edited(coordinator):
    student, _ = coordinator.issue_complimentary("Guest Reader", operator="hub")
    updated = coordinator.update_student(student.student_id, {"photo_url": "http://x/g.jpg"}, operator="hub")
    assert updated.photo_url == "http://x/g.jpg"
