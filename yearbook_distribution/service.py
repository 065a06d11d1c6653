from __future__ import annotations

# Coordinator service: the MQTT adapter around LedgerCoordinator.
#
# Layers:
# 1) `LedgerCoordinator` + `EventBroadcaster` (pure logic, easy to unit test)
# 2) `RequestHandler` (wire dict -> reply dict, still no MQTT)
# 3) `MqttCoordinatorService` + `main()` (integration with the MQTT broker)
#
# Requests arrive on paho's network thread; they are handed to a worker pool
# right away so a slow store write never stalls message delivery.

import argparse
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, TYPE_CHECKING

from .broadcaster import EventBroadcaster, Sender
from .coordinator import LedgerCoordinator
from .errors import ErrorResponse
from .mqtt_topics import DEFAULT_NAMESPACE, coordinator_requests, station_events
from .protocol import RequestHandler
from .store import InMemoryLedgerStore, LedgerStore

if TYPE_CHECKING:
    from .mqtt_client import MqttClient

logger = logging.getLogger(__name__)


def open_store(database_url: str | None) -> LedgerStore:
    """In-memory store when no URL is given, SQLAlchemy store otherwise."""
    if not database_url:
        return InMemoryLedgerStore()
    from .sql_store import SqlLedgerStore

    return SqlLedgerStore(database_url)


class MqttCoordinatorService:
    """MQTT adapter around the coordinator, broadcaster and request handler."""

    def __init__(
        self,
        *,
        mqtt: MqttClient,
        store: LedgerStore,
        namespace: str = DEFAULT_NAMESPACE,
        workers: int = 8,
        queue_size: int = 256,
    ) -> None:
        self.mqtt = mqtt
        self.namespace = namespace

        self.broadcaster = EventBroadcaster(max_queue=queue_size)
        self.coordinator = LedgerCoordinator(store, emit=self.broadcaster.publish)
        self.handler = RequestHandler(self.coordinator, self.broadcaster, sender_for=self._sender_for)

        self._pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="cmd")

        # Background reaper thread control.
        self._stop_event = threading.Event()
        self._reaper_thread: threading.Thread | None = None

    def _sender_for(self, station_id: str) -> Sender:
        topic = station_events(station_id, self.namespace)

        def send(message: dict[str, Any]) -> None:
            self.mqtt.publish(topic, message)

        return send

    def start(self, *, stale_after: float = 30.0) -> None:
        self.mqtt.subscribe(coordinator_requests(self.namespace))
        self.mqtt.add_handler(self._handle_message)

        self._reaper_thread = threading.Thread(
            target=self._reaper_loop,
            args=(stale_after,),
            daemon=True,
        )
        self._reaper_thread.start()

    def stop(self) -> None:
        """Finish in-flight commands, flush outboxes, stop background threads."""
        self._stop_event.set()
        t = self._reaper_thread
        if t and t.is_alive():
            t.join(timeout=1.0)
        self._pool.shutdown(wait=True)
        self.broadcaster.wait_idle(timeout=2.0)
        self.broadcaster.close_all()

    def _reaper_loop(self, stale_after: float) -> None:
        """Drop stations whose heartbeats stopped."""
        interval = max(0.5, stale_after / 3)
        while not self._stop_event.is_set():
            for station_id in self.broadcaster.drop_stale(stale_after):
                logger.info("station %s timed out", station_id)
            self._stop_event.wait(interval)

    def _reply(self, reply_to: str, corr_id: str | None, message: dict[str, Any]) -> None:
        msg = dict(message)
        if corr_id is not None:
            msg["corr_id"] = corr_id
        try:
            self.mqtt.publish(reply_to, msg)
        except ConnectionError as e:
            logger.warning("reply to %s lost: %s", reply_to, e)

    def _handle_message(self, topic: str, msg: dict[str, Any]) -> None:
        corr_id = msg.get("corr_id") if isinstance(msg.get("corr_id"), str) else None
        reply_to = msg.get("reply_to") if isinstance(msg.get("reply_to"), str) else None
        if not reply_to:
            return
        try:
            self._pool.submit(self._serve, reply_to, corr_id, msg)
        except RuntimeError:
            # Pool already shut down.
            self._reply(reply_to, corr_id, ErrorResponse("shutting_down", "Coordinator is stopping").to_message())

    def _serve(self, reply_to: str, corr_id: str | None, msg: dict[str, Any]) -> None:
        self._reply(reply_to, corr_id, self.handler.handle(msg))


def main() -> None:
    # Import MQTT dependencies only when running the real service.
    from .mqtt_client import MqttClient

    parser = argparse.ArgumentParser(description="Yearbook coordinator (MQTT)")
    parser.add_argument("--mqtt-host", default="127.0.0.1")
    parser.add_argument("--mqtt-port", type=int, default=1883)
    parser.add_argument("--namespace", default=DEFAULT_NAMESPACE)
    parser.add_argument("--log-level", default="INFO")
    parser.add_argument("--database-url", default="", help="SQLAlchemy URL; empty keeps the ledger in memory")
    parser.add_argument("--workers", type=int, default=8, help="concurrent command workers")
    parser.add_argument("--queue-size", type=int, default=256, help="per-station event outbox size")
    parser.add_argument(
        "--stale-after",
        type=float,
        default=30.0,
        help="seconds without a heartbeat before a station is dropped",
    )
    args = parser.parse_args()

    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    store = open_store(args.database_url)
    mqtt_client = MqttClient(client_id="coordinator", host=args.mqtt_host, port=args.mqtt_port)
    mqtt_client.start()

    service = MqttCoordinatorService(
        mqtt=mqtt_client,
        store=store,
        namespace=args.namespace,
        workers=args.workers,
        queue_size=args.queue_size,
    )
    service.start(stale_after=args.stale_after)

    print(f"[coordinator] connected to MQTT {args.mqtt_host}:{args.mqtt_port}, namespace={args.namespace}")

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        service.stop()
        mqtt_client.stop()
        store.close()


if __name__ == "__main__":
    main()
