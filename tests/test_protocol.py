import pytest

from yearbook_distribution.broadcaster import EventBroadcaster
from yearbook_distribution.coordinator import LedgerCoordinator
from yearbook_distribution.mqtt_topics import coordinator_requests, coordinator_responses, station_events
from yearbook_distribution.protocol import RequestHandler
from yearbook_distribution.store import InMemoryLedgerStore


def test_topic_helpers():
    ns = "demo/v0"
    assert coordinator_requests(ns) == "demo/v0/coordinator/requests"
    assert coordinator_responses("c1", ns) == "demo/v0/coordinator/responses/c1"
    assert station_events("D1", ns) == "demo/v0/stations/events/D1"


@pytest.fixture
def wired():
    broadcaster = EventBroadcaster()
    coordinator = LedgerCoordinator(InMemoryLedgerStore(), emit=broadcaster.publish)
    inboxes = {}

    def sender_for(station_id):
        return inboxes.setdefault(station_id, []).append

    handler = RequestHandler(coordinator, broadcaster, sender_for=sender_for)
    yield handler, broadcaster, inboxes
    broadcaster.close_all()


def test_unknown_request_type(wired):
    handler, _, _ = wired
    reply = handler.handle({"type": "teleport"})
    assert reply["type"] == "error"
    assert reply["code"] == "unknown_request"


def test_joined_stations_receive_each_others_events(wired):
    handler, broadcaster, inboxes = wired
    assert handler.handle({"type": "join", "station_id": "cash1"})["type"] == "ok"
    assert handler.handle({"type": "join", "station_id": "dist1"})["type"] == "ok"

    reply = handler.handle(
        {
            "type": "process_payment",
            "student_id": "S1",
            "bills": {"ten": 1, "five": 1},
            "amount_due": "13.00",
            "name": "Ada Lovelace",
            "operator": "pat",
            "station_name": "Cash 1",
        }
    )
    assert reply["type"] == "ok"
    assert reply["result"]["change_due"] == "2.00"
    assert reply["log_id"] is not None

    assert broadcaster.wait_idle(2.0)
    for station in ("cash1", "dist1"):
        kinds = [m["kind"] for m in inboxes[station]]
        assert kinds == ["StudentCreated", "PaymentProcessed", "StudentUpdated"]
        assert inboxes[station][0]["log"]["station_name"] == "Cash 1"


def test_insufficient_payment_reply_carries_shortfall(wired):
    handler, _, _ = wired
    handler.handle({"type": "register_student", "student_id": "S1", "name": "Ada", "owed": "13", "operator": "pat"})
    reply = handler.handle({"type": "process_payment", "student_id": "S1", "bills": {"ten": 1}, "operator": "pat"})
    assert reply["type"] == "error"
    assert reply["code"] == "insufficient_payment"
    assert reply["details"]["shortfall"] == "3.00"


def test_missing_operator_is_bad_request(wired):
    handler, _, _ = wired
    reply = handler.handle({"type": "register_student", "student_id": "S1", "name": "Ada", "owed": "1"})
    assert reply["code"] == "bad_request"


def test_malformed_fields_are_bad_request(wired):
    handler, _, _ = wired
    assert handler.handle({"type": "process_payment", "student_id": "S1", "bills": "ten"})["code"] == "bad_request"
    assert handler.handle({"type": "recent_logs", "limit": "many"})["code"] == "bad_request"
    assert handler.handle({"type": "import_students", "rows": []})["code"] == "bad_request"
    assert handler.handle({"type": "verify_distribution", "distribution_id": "7", "operator": "x"})["code"] == "bad_request"


def test_verify_twice_replies_ok_both_times(wired):
    handler, _, _ = wired
    handler.handle({"type": "register_student", "student_id": "S1", "name": "Ada", "owed": "0", "operator": "a"})
    dist = handler.handle({"type": "create_distribution", "student_id": "S1", "operator": "a"})["result"]
    first = handler.handle({"type": "verify_distribution", "distribution_id": dist["id"], "operator": "b"})
    second = handler.handle({"type": "verify_distribution", "distribution_id": dist["id"], "operator": "b"})
    assert first["result"]["verified"] and second["result"]["verified"]
    assert second["log_id"] is None


def test_queries_do_not_report_a_log_id(wired):
    handler, _, _ = wired
    handler.handle({"type": "register_student", "student_id": "S1", "name": "Ada", "owed": "5", "operator": "a"})
    reply = handler.handle({"type": "recent_logs", "limit": 10})
    assert reply["log_id"] is None
    assert [e["action"] for e in reply["result"]] == ["CREATE_STUDENT"]

    students = handler.handle({"type": "list_students", "status": "unpaid"})["result"]
    assert [s["student_id"] for s in students] == ["S1"]
    assert handler.handle({"type": "get_student", "student_id": "nope"})["code"] == "not_found"


def test_heartbeat_requires_join(wired):
    handler, _, _ = wired
    assert handler.handle({"type": "heartbeat", "station_id": "ghost"})["code"] == "unknown_station"
    handler.handle({"type": "join", "station_id": "ghost"})
    assert handler.handle({"type": "heartbeat", "station_id": "ghost"})["type"] == "ok"
    assert handler.handle({"type": "leave", "station_id": "ghost"})["result"]["left"] is True
    assert handler.handle({"type": "heartbeat", "station_id": "ghost"})["code"] == "unknown_station"


def test_import_and_admin_commands(wired):
    handler, _, _ = wired
    rows = [
        {"student_id": "A1", "first_name": "Ann", "last_name": "Lee", "balance_due": "$45.00"},
        {"student_id": "", "first_name": "Nobody"},
    ]
    reply = handler.handle({"type": "import_students", "rows": rows, "operator": "hub"})
    assert reply["result"]["created"] == 1
    assert len(reply["result"]["rejected"]) == 1

    reply = handler.handle(
        {"type": "update_student", "student_id": "A1", "changes": {"balance_due": "0"}, "operator": "hub"}
    )
    assert reply["result"]["payment_status"] == "PAID"

    free = handler.handle({"type": "issue_complimentary", "name": "Guest", "operator": "hub"})["result"]
    assert free["student"]["payment_status"] == "FREE"
    assert free["distribution"]["verified"] is True

    assert handler.handle({"type": "wipe_distributions", "operator": "hub"})["result"] == {"deleted": 1}
    assert handler.handle({"type": "wipe_students", "operator": "hub"})["result"] == {"deleted": 2}
    assert handler.handle({"type": "purge_logs", "operator": "hub"})["type"] == "ok"


def test_per_student_history_queries(wired):
    handler, _, _ = wired
    handler.handle({"type": "register_student", "student_id": "S1", "name": "Ada", "owed": "5", "operator": "a"})
    handler.handle({"type": "register_student", "student_id": "S2", "name": "Bo", "owed": "0", "operator": "a"})
    handler.handle({"type": "process_payment", "student_id": "S1", "bills": {"five": 1}, "operator": "cash"})
    handler.handle({"type": "create_distribution", "student_id": "S1", "operator": "a"})
    handler.handle({"type": "create_distribution", "student_id": "S2", "operator": "a"})

    dists = handler.handle({"type": "student_distributions", "student_id": "S1"})
    assert [d["student_id"] for d in dists["result"]] == ["S1"]
    assert dists["log_id"] is None

    payments = handler.handle({"type": "student_payments", "student_id": "S1"})["result"]
    assert [p["amount_paid"] for p in payments] == ["5.00"]

    logs = handler.handle({"type": "student_logs", "student_id": "S1", "limit": 2})["result"]
    assert [e["action"] for e in logs] == ["NEW_DISTRIBUTION", "PROCESS_PAYMENT"]

    assert handler.handle({"type": "student_payments"})["code"] == "bad_request"


def test_delete_student_is_a_logged_command(wired):
    handler, broadcaster, inboxes = wired
    handler.handle({"type": "join", "station_id": "hub"})
    handler.handle({"type": "register_student", "student_id": "S1", "name": "Ada", "owed": "5", "operator": "a"})

    reply = handler.handle({"type": "delete_student", "student_id": "S1", "operator": "admin"})
    assert reply["type"] == "ok"
    assert reply["log_id"] is not None
    assert handler.handle({"type": "get_student", "student_id": "S1"})["code"] == "not_found"
    assert handler.handle({"type": "delete_student", "student_id": "S1", "operator": "admin"})["code"] == "not_found"

    assert broadcaster.wait_idle(2.0)
    assert [m["kind"] for m in inboxes["hub"]][-1] == "StudentDeleted"
    assert inboxes["hub"][-1]["log"]["action"] == "DELETE_STUDENT"
