from __future__ import annotations

# Station client adapter.
#
# A station (distribution, checker, cash or the admin hub) keeps a local,
# read-only picture of the roster that it rebuilds purely from:
# - a snapshot of recent action-log entries pulled on (re)join
# - the live DomainEvent stream pushed to its own events topic
#
# Command replies are never applied to the local view directly: they only
# register an expectation (`StationView.expect`) that the matching event
# will arrive. That way every station, the originator included, converges on
# the same history.
#
# Two layers, as elsewhere in this package:
# 1) `StationView` (pure logic, easy to unit test)
# 2) `StationClient` + `main()` (integration with the MQTT broker)

import argparse
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Iterable, TYPE_CHECKING

from .broadcaster import ConnectionState
from .coordinator import (
    DISTRIBUTION_CREATED,
    DISTRIBUTION_VERIFIED,
    DISTRIBUTIONS_WIPED,
    LOGS_PURGED,
    PAYMENT_PROCESSED,
    STUDENT_CREATED,
    STUDENT_DELETED,
    STUDENT_UPDATED,
    STUDENTS_WIPED,
)
from .mqtt_topics import DEFAULT_NAMESPACE, coordinator_requests, coordinator_responses, station_events

if TYPE_CHECKING:
    from .mqtt_client import MqttClient

logger = logging.getLogger(__name__)

EventListener = Callable[[dict[str, Any]], None]


class CommandFailed(Exception):
    """Typed failure reply from the coordinator."""

    def __init__(self, code: str, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message
        self.details = details or {}


@dataclass(frozen=True)
class ReconnectPolicy:
    """Bounded exponential backoff for rejoining the coordinator."""

    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0
    factor: float = 2.0

    def delays(self) -> list[float]:
        return [min(self.base_delay * (self.factor**i), self.max_delay) for i in range(self.max_attempts)]


class StationView:
    """Local read cache of one station, fed by snapshot + events."""

    def __init__(self, *, log_size: int = 50, dedupe_window: int = 4096) -> None:
        self.log: deque[dict[str, Any]] = deque(maxlen=log_size)
        self.students: dict[str, dict[str, Any]] = {}
        self.distributions: dict[int, dict[str, Any]] = {}
        self.payments: deque[dict[str, Any]] = deque(maxlen=log_size)
        self.watermark = 0

        self._lock = threading.RLock()
        self._seen: set[tuple[int, int]] = set()
        self._seen_order: deque[tuple[int, int]] = deque()
        self._dedupe_window = dedupe_window
        self._log_ids: set[int] = set()
        self._syncing = False
        self._buffered: list[dict[str, Any]] = []
        self._expected: set[int] = set()
        self._covered: set[int] = set()

    # -------------------- snapshot merge --------------------

    def begin_sync(self) -> None:
        """Start buffering live events until the next snapshot lands."""
        with self._lock:
            self._syncing = True
            self._buffered = []

    def load_snapshot(
        self,
        entries: Iterable[dict[str, Any]],
        roster: Iterable[dict[str, Any]] | None = None,
    ) -> int:
        """Replace the log buffer with `entries` and replay buffered events.

        `roster` must be fetched *after* `entries`. Events for log entries in
        the snapshot are already reflected and are skipped, whether they were
        buffered during the sync or arrive later. The rest of the buffer is
        replayed in order. Returns how many were replayed.
        """
        with self._lock:
            ordered = sorted(entries, key=lambda e: e.get("id") or 0)
            self.log.clear()
            self._log_ids.clear()
            self.payments.clear()
            for entry in ordered:
                self._remember_log(entry)
                details = entry.get("details") or {}
                if isinstance(details.get("distribution"), dict):
                    self._put_distribution(details["distribution"])
                if isinstance(details.get("payment"), dict):
                    self.payments.appendleft(details["payment"])
            if roster is not None:
                self.students = {s["student_id"]: s for s in roster}
            self._covered = {e["id"] for e in ordered if e.get("id") is not None}
            self.watermark = max([self.watermark, *self._covered])
            self._expected -= self._covered

            buffered, self._buffered, self._syncing = self._buffered, [], False
            replayed = 0
            for event in buffered:
                if self.apply(event):
                    replayed += 1
            return replayed

    # -------------------- live events --------------------

    def apply(self, event: dict[str, Any]) -> bool:
        """Apply one event. False for duplicates (or while syncing: buffered)."""
        with self._lock:
            if self._syncing:
                self._buffered.append(event)
                return False

            key = (int(event.get("log_id", 0)), int(event.get("seq", 0)))
            # Entries folded in from the snapshot are already reflected.
            if key in self._seen or key[0] in self._covered:
                return False
            self._mark_seen(key)

            kind = event.get("kind")
            payload = event.get("payload") or {}
            if kind in (STUDENT_CREATED, STUDENT_UPDATED):
                self.students[payload["student_id"]] = payload
            elif kind == STUDENT_DELETED:
                self.students.pop(payload["student_id"], None)
            elif kind in (DISTRIBUTION_CREATED, DISTRIBUTION_VERIFIED):
                self._put_distribution(payload)
            elif kind == PAYMENT_PROCESSED:
                self.payments.appendleft(payload)
            elif kind == STUDENTS_WIPED:
                self.students.clear()
            elif kind == DISTRIBUTIONS_WIPED:
                self.distributions.clear()
            elif kind == LOGS_PURGED:
                self.log.clear()
                self._log_ids.clear()

            entry = event.get("log")
            if isinstance(entry, dict):
                self._remember_log(entry)
            self._expected.discard(key[0])
            return True

    def _put_distribution(self, row: dict[str, Any]) -> None:
        known = self.distributions.get(row["id"])
        # Verification never goes backwards, whatever order rows arrive in.
        if not (known and known.get("verified") and not row.get("verified")):
            self.distributions[row["id"]] = row

    def _mark_seen(self, key: tuple[int, int]) -> None:
        self._seen.add(key)
        self._seen_order.append(key)
        while len(self._seen_order) > self._dedupe_window:
            self._seen.discard(self._seen_order.popleft())

    def _remember_log(self, entry: dict[str, Any]) -> None:
        entry_id = entry.get("id")
        if entry_id in self._log_ids:
            return
        self._log_ids.add(entry_id)
        self.log.appendleft(entry)
        if len(self._log_ids) > 4 * (self.log.maxlen or 1):
            self._log_ids = {e.get("id") for e in self.log}

    # -------------------- optimistic commands --------------------

    def expect(self, log_id: int | None) -> None:
        """Note a command whose event has not arrived yet."""
        if log_id is None:
            return
        with self._lock:
            if log_id not in self._covered and not any(k[0] == log_id for k in self._seen):
                self._expected.add(log_id)

    @property
    def unconfirmed(self) -> set[int]:
        with self._lock:
            return set(self._expected)


class StationClient:
    """MQTT adapter: join, snapshot, heartbeat, commands and rejoin."""

    def __init__(
        self,
        *,
        mqtt: MqttClient,
        station_id: str,
        station_name: str,
        operator: str,
        namespace: str = DEFAULT_NAMESPACE,
        snapshot_size: int = 50,
        policy: ReconnectPolicy | None = None,
        timeout: float = 5.0,
    ) -> None:
        self.mqtt = mqtt
        self.station_id = station_id
        self.station_name = station_name
        self.operator = operator
        self.namespace = namespace
        self.snapshot_size = snapshot_size
        self.policy = policy or ReconnectPolicy()
        self.timeout = timeout

        self.view = StationView(log_size=snapshot_size)
        self.state = ConnectionState.CLOSED
        self.disconnected = False

        self._reply_topic = coordinator_responses(f"station-{station_id}", namespace)
        self._events_topic = station_events(station_id, namespace)
        self._listeners: list[EventListener] = []
        self._rejoin_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._heartbeat_thread: threading.Thread | None = None
        self._link_up = threading.Event()
        self._link_up.set()
        self._watchdog: threading.Thread | None = None

    def add_listener(self, listener: EventListener) -> None:
        """Called with every event that changed the view."""
        self._listeners.append(listener)

    # -------------------- lifecycle --------------------

    def start(self, *, heartbeat_every: float = 5.0) -> None:
        self.mqtt.subscribe(self._reply_topic)
        self.mqtt.subscribe(self._events_topic)
        self.mqtt.add_handler(self._handle_message)
        self.mqtt.add_connection_handler(self._on_connection)
        if not self._join_once():
            self._rejoin()
        self._heartbeat_thread = threading.Thread(
            target=self._heartbeat_loop,
            args=(heartbeat_every,),
            daemon=True,
        )
        self._heartbeat_thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self.state is ConnectionState.OPEN:
            try:
                self._request({"type": "leave", "station_id": self.station_id})
            except (TimeoutError, ConnectionError, CommandFailed):
                pass
        self.state = ConnectionState.CLOSED
        t = self._heartbeat_thread
        if t and t.is_alive():
            t.join(timeout=1.0)

    def _join_once(self) -> bool:
        """Join, then pull the snapshot. Live events are buffered in between."""
        self.state = ConnectionState.CONNECTING
        self.view.begin_sync()
        try:
            self._request({"type": "join", "station_id": self.station_id, "station_name": self.station_name})
            snapshot = self._request({"type": "recent_logs", "limit": self.snapshot_size})
            roster = self._request({"type": "list_students"})
        except (TimeoutError, ConnectionError, CommandFailed) as e:
            logger.warning("[station %s] join failed: %s", self.station_id, e)
            self.state = ConnectionState.CLOSED
            return False
        self.view.load_snapshot(snapshot["result"], roster["result"])
        self.state = ConnectionState.OPEN
        self.disconnected = False
        return True

    def _rejoin(self) -> bool:
        """Retry joining with bounded backoff; give up and flag `disconnected`."""
        if not self._rejoin_lock.acquire(blocking=False):
            return False
        try:
            for attempt, delay in enumerate(self.policy.delays(), start=1):
                if self._stop_event.wait(delay):
                    return False
                logger.info("[station %s] rejoin attempt %d", self.station_id, attempt)
                if self._join_once():
                    return True
            self.state = ConnectionState.CLOSED
            self.disconnected = True
            logger.error("[station %s] giving up after %d attempts", self.station_id, self.policy.max_attempts)
            return False
        finally:
            self._rejoin_lock.release()

    def _on_connection(self, up: bool) -> None:
        if self._stop_event.is_set():
            return
        if not up:
            self._link_up.clear()
            self.state = ConnectionState.CONNECTING
            if self._watchdog is None or not self._watchdog.is_alive():
                self._watchdog = threading.Thread(target=self._watch_link, daemon=True)
                self._watchdog.start()
            return
        self._link_up.set()
        threading.Thread(target=self._rejoin, daemon=True).start()

    def _watch_link(self) -> None:
        """Give the broker link as long as the reconnect policy allows, then flag `disconnected`."""
        for delay in self.policy.delays():
            if self._stop_event.wait(delay) or self._link_up.is_set():
                return
        if self._link_up.is_set():
            return
        self.state = ConnectionState.CLOSED
        self.disconnected = True
        logger.error("[station %s] broker link down, giving up", self.station_id)

    def _heartbeat_loop(self, interval: float) -> None:
        while not self._stop_event.wait(interval):
            if self.state is not ConnectionState.OPEN:
                continue
            try:
                self._request({"type": "heartbeat", "station_id": self.station_id})
            except CommandFailed as e:
                if e.code == "unknown_station":
                    logger.warning("[station %s] dropped by coordinator, rejoining", self.station_id)
                    self._rejoin()
            except (TimeoutError, ConnectionError) as e:
                logger.warning("[station %s] heartbeat failed: %s", self.station_id, e)

    # -------------------- messaging --------------------

    def _request(self, message: dict[str, Any]) -> dict[str, Any]:
        reply = self.mqtt.request(
            request_topic=coordinator_requests(self.namespace),
            response_topic=self._reply_topic,
            message=message,
            timeout=self.timeout,
        )
        if reply.get("type") == "error":
            raise CommandFailed(str(reply.get("code")), str(reply.get("message")), reply.get("details"))
        return reply

    def command(self, mtype: str, **fields: Any) -> Any:
        """Send a command as this station/operator and return its result.

        Raises:
            CommandFailed: the coordinator answered with a typed error.
        """
        msg = {"type": mtype, "operator": self.operator, "station_name": self.station_name, **fields}
        reply = self._request(msg)
        self.view.expect(reply.get("log_id"))
        return reply.get("result")

    def _handle_message(self, topic: str, msg: dict[str, Any]) -> None:
        if topic != self._events_topic or msg.get("type") != "event":
            return
        if self.view.apply(msg):
            for listener in list(self._listeners):
                listener(msg)


def _print_event(station_id: str) -> EventListener:
    def show(event: dict[str, Any]) -> None:
        log = event.get("log") or {}
        print(
            f"[station {station_id}] #{event.get('log_id')}.{event.get('seq')} {event.get('kind')} "
            f"student={log.get('student_id')} by {log.get('operator_name')} @ {log.get('station_name')}"
        )

    return show


def main() -> None:
    from .mqtt_client import MqttClient

    parser = argparse.ArgumentParser(description="Station client (MQTT): follows the live event stream")
    parser.add_argument("--station-id", required=True)
    parser.add_argument("--station-name", default=None)
    parser.add_argument("--operator", default="observer")
    parser.add_argument("--mqtt-host", default="127.0.0.1")
    parser.add_argument("--mqtt-port", type=int, default=1883)
    parser.add_argument("--namespace", default=DEFAULT_NAMESPACE)
    parser.add_argument("--log-level", default="INFO")
    parser.add_argument("--snapshot-size", type=int, default=50)
    parser.add_argument("--heartbeat-every", type=float, default=5.0)
    args = parser.parse_args()

    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    mqtt_client = MqttClient(client_id=f"station-{args.station_id}", host=args.mqtt_host, port=args.mqtt_port)
    mqtt_client.start()

    station = StationClient(
        mqtt=mqtt_client,
        station_id=args.station_id,
        station_name=args.station_name or args.station_id,
        operator=args.operator,
        namespace=args.namespace,
        snapshot_size=args.snapshot_size,
    )
    station.add_listener(_print_event(args.station_id))
    station.start(heartbeat_every=args.heartbeat_every)

    print(f"[station {args.station_id}] {station.state.value}, {len(station.view.log)} recent log entries")
    for entry in reversed(station.view.log):
        print(f"[station {args.station_id}] #{entry.get('id')} {entry.get('action')} student={entry.get('student_id')}")

    try:
        while not station.disconnected:
            time.sleep(1)
        print(f"[station {args.station_id}] disconnected")
    except KeyboardInterrupt:
        pass
    finally:
        station.stop()
        mqtt_client.stop()


if __name__ == "__main__":
    main()
