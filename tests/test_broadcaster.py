import threading
import time

from yearbook_distribution.broadcaster import ConnectionState, EventBroadcaster
from yearbook_distribution.models import DomainEvent


def ev(log_id, seq=0, kind="StudentUpdated"):
    return DomainEvent(kind=kind, payload={"n": log_id}, log_id=log_id, seq=seq)


def test_events_arrive_in_publish_order():
    b = EventBroadcaster()
    got = []
    b.connect("s1", got.append)

    for i in range(1, 51):
        assert b.publish(ev(i)) == 1

    assert b.wait_idle(2.0)
    assert [m["log_id"] for m in got] == list(range(1, 51))
    assert all(m["type"] == "event" for m in got)


def test_full_outbox_drops_only_the_slow_station():
    b = EventBroadcaster(max_queue=1)
    started = threading.Event()
    release = threading.Event()

    def slow_send(message):
        started.set()
        release.wait(2.0)

    fast = []
    b.connect("slow", slow_send)
    b.connect("fast", fast.append)

    b.publish(ev(1))
    assert started.wait(2.0)
    # Fast drains between publishes so only the slow outbox can fill up.
    _drain(b, "fast")
    b.publish(ev(2))
    _drain(b, "fast")
    b.publish(ev(3))

    assert b.connection_ids() == ["fast"]
    release.set()
    assert b.wait_idle(2.0)
    assert [m["log_id"] for m in fast] == [1, 2, 3]


def _drain(b, conn_id):
    conn = b.get(conn_id)
    deadline = 200
    while conn.pending and deadline:
        time.sleep(0.01)
        deadline -= 1


def test_send_failure_drops_connection():
    b = EventBroadcaster()
    failed = threading.Event()

    def broken(message):
        failed.set()
        raise OSError("broken pipe")

    conn = b.connect("s1", broken)
    b.publish(ev(1))
    assert failed.wait(2.0)
    for _ in range(200):
        if conn.state is ConnectionState.CLOSED:
            break
        time.sleep(0.01)
    assert conn.state is ConnectionState.CLOSED
    assert conn.close_reason.startswith("send failed")
    assert len(b) == 0


def test_reconnect_replaces_old_connection():
    b = EventBroadcaster()
    first = b.connect("s1", lambda m: None)
    second = b.connect("s1", lambda m: None)
    assert first.state is ConnectionState.CLOSED
    assert first.close_reason == "replaced"
    assert b.get("s1") is second
    assert len(b) == 1


def test_drop_stale_uses_heartbeats():
    b = EventBroadcaster()
    old = b.connect("old", lambda m: None)
    new = b.connect("new", lambda m: None)
    old.last_seen = 100.0
    new.last_seen = 100.0
    assert b.touch("new")
    new.last_seen = 190.0

    assert b.drop_stale(60.0, now=200.0) == ["old"]
    assert b.connection_ids() == ["new"]
    assert b.touch("old") is False


def test_disconnect_and_close_all():
    b = EventBroadcaster()
    b.connect("a", lambda m: None)
    b.connect("b", lambda m: None)
    assert b.disconnect("a") is True
    assert b.disconnect("a") is False
    b.close_all()
    assert len(b) == 0
    assert b.publish(ev(1)) == 0
