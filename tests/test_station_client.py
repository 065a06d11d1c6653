import time

import pytest

from yearbook_distribution.broadcaster import ConnectionState, EventBroadcaster
from yearbook_distribution.coordinator import LedgerCoordinator
from yearbook_distribution.mqtt_topics import station_events
from yearbook_distribution.protocol import RequestHandler
from yearbook_distribution.station import ReconnectPolicy, StationClient
from yearbook_distribution.store import InMemoryLedgerStore

NS = "t"


class FakeMqtt:
    """Answers requests in-process and pushes events to the subscribed handlers."""

    def __init__(self):
        self.broadcaster = EventBroadcaster()
        self.coordinator = LedgerCoordinator(InMemoryLedgerStore(), emit=self.broadcaster.publish)
        self.handler = RequestHandler(self.coordinator, self.broadcaster, sender_for=self.sender_for)
        self.subscriptions = []
        self.handlers = []
        self.connection_handlers = []
        self.sent = []
        self.failing = False

    def subscribe(self, topic):
        self.subscriptions.append(topic)

    def add_handler(self, handler):
        self.handlers.append(handler)

    def add_connection_handler(self, handler):
        self.connection_handlers.append(handler)

    def request(self, *, request_topic, response_topic, message, timeout):
        self.sent.append(message["type"])
        if self.failing:
            raise TimeoutError(f"no reply to {message['type']}")
        return self.handler.handle(dict(message))

    def sender_for(self, station_id):
        topic = station_events(station_id, NS)

        def send(message):
            for h in list(self.handlers):
                h(topic, message)

        return send

    def notify(self, up):
        for h in list(self.connection_handlers):
            h(up)


def wait_for(condition, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return condition()


@pytest.fixture
def mqtt():
    fake = FakeMqtt()
    yield fake
    fake.broadcaster.close_all()


def make_station(mqtt, policy=None):
    return StationClient(
        mqtt=mqtt,
        station_id="D1",
        station_name="Distribution 1",
        operator="pat",
        namespace=NS,
        policy=policy or ReconnectPolicy(max_attempts=2, base_delay=0.01, max_delay=0.01),
        timeout=0.5,
    )


def test_join_loads_snapshot_and_follows_events(mqtt):
    mqtt.coordinator.register_or_create("S0", "Bo", "0", operator="hub")
    station = make_station(mqtt)
    try:
        station.start(heartbeat_every=60.0)
        assert station.state is ConnectionState.OPEN
        assert mqtt.sent[:3] == ["join", "recent_logs", "list_students"]
        assert "t/stations/events/D1" in mqtt.subscriptions
        assert [e["action"] for e in station.view.log] == ["CREATE_STUDENT"]
        assert list(station.view.students) == ["S0"]

        result = station.command("register_student", student_id="S1", name="Ada", owed="5")
        assert result["student_id"] == "S1"
        assert mqtt.broadcaster.wait_idle(2.0)
        assert wait_for(lambda: "S1" in station.view.students)
        assert station.view.unconfirmed == set()
        assert station.view.log[0]["station_name"] == "Distribution 1"
    finally:
        station.stop()
    assert mqtt.broadcaster.get("D1") is None


def test_heartbeat_rejoins_after_being_dropped(mqtt):
    station = make_station(mqtt)
    try:
        station.start(heartbeat_every=0.05)
        mqtt.broadcaster.disconnect("D1", reason="stale")

        assert wait_for(lambda: mqtt.sent.count("join") == 2)
        assert wait_for(lambda: station.state is ConnectionState.OPEN)
        assert mqtt.broadcaster.get("D1") is not None
        assert station.disconnected is False
    finally:
        station.stop()


def test_gives_up_when_coordinator_never_answers(mqtt):
    mqtt.failing = True
    station = make_station(mqtt)
    try:
        station.start(heartbeat_every=60.0)
        assert station.disconnected is True
        assert station.state is ConnectionState.CLOSED
        # The first try plus one per backoff step.
        assert mqtt.sent == ["join", "join", "join"]
    finally:
        station.stop()


def test_lost_broker_link_is_eventually_reported(mqtt):
    station = make_station(mqtt)
    try:
        station.start(heartbeat_every=60.0)
        mqtt.notify(False)
        assert wait_for(lambda: station.disconnected)
        assert station.state is ConnectionState.CLOSED
    finally:
        station.stop()


def test_broker_link_back_in_time_rejoins(mqtt):
    station = make_station(mqtt, ReconnectPolicy(max_attempts=3, base_delay=0.1, max_delay=0.1))
    try:
        station.start(heartbeat_every=60.0)
        mqtt.notify(False)
        assert station.state is ConnectionState.CONNECTING
        mqtt.notify(True)

        assert wait_for(lambda: mqtt.sent.count("join") == 2)
        assert wait_for(lambda: station.state is ConnectionState.OPEN)
        # Outlast the whole backoff schedule.
        time.sleep(0.5)
        assert station.disconnected is False
        assert station.state is ConnectionState.OPEN
    finally:
        station.stop()
