"""JSON-over-MQTT transport shared by the coordinator and the stations.

paho-mqtt only offers callbacks; on top of that this module gives:
- a blocking `request()` for station commands, matched to its reply through
  a `corr_id` field and the caller's own `reply_to` topic
- handlers for everything else that arrives (events, incoming requests)
- connection handlers told `True`/`False` when the broker link comes and goes,
  with subscriptions restored on every reconnect

QoS 1 throughout. A redelivered event is harmless since stations de-dup on
`(log_id, seq)`.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from typing import Any, Callable

import paho.mqtt.client as mqtt

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, dict[str, Any]], None]
ConnectionHandler = Callable[[bool], None]


class _Waiter:
    """One outstanding request: the first reply carrying its corr_id wins."""

    def __init__(self) -> None:
        self.done = threading.Event()
        self.reply: dict[str, Any] | None = None

    def resolve(self, reply: dict[str, Any]) -> None:
        if not self.done.is_set():
            self.reply = reply
            self.done.set()


class MqttClient:
    """paho-mqtt client plus JSON encoding and request/reply correlation."""

    def __init__(
        self,
        *,
        client_id: str,
        host: str,
        port: int,
        keepalive: int = 30,
        qos: int = 1,
    ) -> None:
        self.client_id = client_id
        self.host = host
        self.port = port
        self.keepalive = keepalive
        self.qos = qos
        self.connected = threading.Event()

        self._client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=client_id, clean_session=True)
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message

        self._lock = threading.Lock()
        self._subscriptions: set[str] = set()
        self._waiters: dict[str, _Waiter] = {}
        self._message_handlers: list[MessageHandler] = []
        self._connection_handlers: list[ConnectionHandler] = []
        self._running = False

    # -------------------- lifecycle --------------------

    def start(self, *, timeout: float = 5.0) -> None:
        """Connect and run paho's network loop in the background.

        Raises:
            ConnectionError: broker not reachable within `timeout`.
        """
        if self._running:
            return
        try:
            self._client.connect(self.host, self.port, keepalive=self.keepalive)
        except OSError as e:
            raise ConnectionError(f"MQTT broker {self.host}:{self.port} unreachable: {e}") from e
        self._client.loop_start()
        self._running = True
        if not self.connected.wait(timeout):
            self.stop()
            raise ConnectionError(f"MQTT broker {self.host}:{self.port} did not accept the connection")

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self._client.disconnect()
        self._client.loop_stop()
        self.connected.clear()

    def add_handler(self, handler: MessageHandler) -> None:
        """`handler(topic, message)` for every message that is not a reply we wait for."""
        self._message_handlers.append(handler)

    def add_connection_handler(self, handler: ConnectionHandler) -> None:
        self._connection_handlers.append(handler)

    # -------------------- messaging --------------------

    def subscribe(self, topic: str) -> None:
        with self._lock:
            self._subscriptions.add(topic)
        self._client.subscribe(topic, qos=self.qos)

    def publish(self, topic: str, message: dict[str, Any]) -> None:
        """Raises ConnectionError when paho refuses to queue the message."""
        body = json.dumps(message, separators=(",", ":"), default=str).encode("utf-8")
        info = self._client.publish(topic, payload=body, qos=self.qos)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise ConnectionError(f"publish to {topic} failed: {mqtt.error_string(info.rc)}")

    def request(
        self,
        *,
        request_topic: str,
        response_topic: str,
        message: dict[str, Any],
        timeout: float = 5.0,
    ) -> dict[str, Any]:
        """Send `message` and block until the correlated reply arrives.

        `response_topic` must already be subscribed.

        Raises:
            TimeoutError: no reply within `timeout` seconds.
            ConnectionError: the request could not be published.
        """
        corr_id = uuid.uuid4().hex
        waiter = _Waiter()
        with self._lock:
            self._waiters[corr_id] = waiter
        try:
            self.publish(request_topic, {**message, "corr_id": corr_id, "reply_to": response_topic})
            if not waiter.done.wait(timeout) or waiter.reply is None:
                raise TimeoutError(f"{message.get('type')}: no reply within {timeout}s (corr_id={corr_id})")
            return waiter.reply
        finally:
            with self._lock:
                self._waiters.pop(corr_id, None)

    # -------------------- paho callbacks --------------------

    def _on_connect(self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any) -> None:
        if reason_code.is_failure:
            logger.warning("MQTT connect refused: %s", reason_code)
            return
        with self._lock:
            topics = sorted(self._subscriptions)
        for topic in topics:
            client.subscribe(topic, qos=self.qos)
        self.connected.set()
        self._notify_connection(True)

    def _on_disconnect(
        self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any
    ) -> None:
        was_up = self.connected.is_set()
        self.connected.clear()
        if was_up and self._running:
            logger.warning("MQTT connection lost: %s", reason_code)
            self._notify_connection(False)

    def _notify_connection(self, up: bool) -> None:
        for handler in list(self._connection_handlers):
            try:
                handler(up)
            except Exception:
                logger.exception("connection handler failed")

    def _on_message(self, client: mqtt.Client, userdata: Any, msg: mqtt.MQTTMessage) -> None:
        try:
            data = json.loads(bytes(msg.payload).decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            logger.debug("dropping malformed message on %s", msg.topic)
            return
        if not isinstance(data, dict):
            return

        corr_id = data.get("corr_id")
        if isinstance(corr_id, str) and "reply_to" not in data:
            with self._lock:
                waiter = self._waiters.get(corr_id)
            if waiter is not None:
                waiter.resolve(data)
                return

        # A failing handler must not take paho's network thread down with it.
        for handler in list(self._message_handlers):
            try:
                handler(msg.topic, data)
            except Exception:
                logger.exception("message handler failed on %s", msg.topic)
