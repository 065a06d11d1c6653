from __future__ import annotations

# Event Broadcaster.
#
# Owns the registry of live station connections. Each connection gets:
# - a bounded outbox queue
# - a sender thread draining that queue into the connection's `send` callable
#
# `publish()` only does `put_nowait` on every outbox, so the coordinator never
# waits on a slow station. When an outbox is full, or `send` raises, that one
# connection is dropped and logged; other stations are unaffected.
#
# No history is replayed over a connection: a (re)joining station pulls a
# snapshot of recent log entries itself and de-dups against live events.

import logging
import queue
import threading
import time
from enum import Enum
from typing import Any, Callable

from .models import DomainEvent

logger = logging.getLogger(__name__)

Sender = Callable[[dict[str, Any]], None]

_STOP = object()


class ConnectionState(str, Enum):
    CONNECTING = "CONNECTING"
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class Connection:
    def __init__(self, conn_id: str, send: Sender, *, max_queue: int = 256) -> None:
        self.conn_id = conn_id
        self.state = ConnectionState.CONNECTING
        self.last_seen = time.time()
        self.delivered = 0
        self.close_reason: str | None = None

        self._send = send
        self._outbox: "queue.Queue[Any]" = queue.Queue(maxsize=max_queue)
        self._thread = threading.Thread(target=self._sender_loop, name=f"conn-{conn_id}", daemon=True)
        self._on_failure: Callable[[Connection, str], None] | None = None

    def open(self, on_failure: Callable[[Connection, str], None] | None = None) -> None:
        self._on_failure = on_failure
        self.state = ConnectionState.OPEN
        self._thread.start()

    def offer(self, message: dict[str, Any]) -> bool:
        """Queue a message without blocking. False means the outbox is full."""
        if self.state is not ConnectionState.OPEN:
            return False
        try:
            self._outbox.put_nowait(message)
        except queue.Full:
            return False
        return True

    def close(self, reason: str = "closed") -> None:
        if self.state is ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSED
        self.close_reason = reason
        try:
            self._outbox.put_nowait(_STOP)
        except queue.Full:
            # Sender exits on its next wakeup once it sees CLOSED.
            pass

    @property
    def pending(self) -> int:
        return self._outbox.unfinished_tasks

    def _sender_loop(self) -> None:
        while True:
            item = self._outbox.get()
            try:
                if item is _STOP or self.state is ConnectionState.CLOSED:
                    return
                self._send(item)
                self.delivered += 1
            except Exception as e:
                logger.warning("delivery to %s failed: %s", self.conn_id, e)
                if self._on_failure is not None:
                    self._on_failure(self, f"send failed: {e}")
                return
            finally:
                self._outbox.task_done()


class EventBroadcaster:
    """Connection registry plus non-blocking fan-out of DomainEvents."""

    def __init__(self, *, max_queue: int = 256) -> None:
        self.max_queue = max_queue
        self._lock = threading.Lock()
        self._connections: dict[str, Connection] = {}

    # -------------------- connection lifecycle --------------------

    def connect(self, conn_id: str, send: Sender) -> Connection:
        """Register a connection, replacing any older one with the same id."""
        conn = Connection(conn_id, send, max_queue=self.max_queue)
        with self._lock:
            old = self._connections.get(conn_id)
            self._connections[conn_id] = conn
        if old is not None:
            old.close("replaced")
        conn.open(on_failure=self._drop)
        logger.info("station %s connected", conn_id)
        return conn

    def disconnect(self, conn_id: str, reason: str = "left") -> bool:
        with self._lock:
            conn = self._connections.pop(conn_id, None)
        if conn is None:
            return False
        conn.close(reason)
        logger.info("station %s disconnected (%s)", conn_id, reason)
        return True

    def _drop(self, conn: Connection, reason: str) -> None:
        with self._lock:
            if self._connections.get(conn.conn_id) is conn:
                del self._connections[conn.conn_id]
        conn.close(reason)
        logger.warning("dropped station %s: %s", conn.conn_id, reason)

    def touch(self, conn_id: str) -> bool:
        """Record a heartbeat. False when the id is not registered."""
        with self._lock:
            conn = self._connections.get(conn_id)
        if conn is None:
            return False
        conn.last_seen = time.time()
        return True

    def drop_stale(self, max_age: float, *, now: float | None = None) -> list[str]:
        """Drop connections that have not been seen for `max_age` seconds."""
        now = time.time() if now is None else now
        with self._lock:
            stale = [c for c in self._connections.values() if now - c.last_seen > max_age]
        for conn in stale:
            self._drop(conn, "stale")
        return [c.conn_id for c in stale]

    def get(self, conn_id: str) -> Connection | None:
        with self._lock:
            return self._connections.get(conn_id)

    def connection_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._connections)

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)

    # -------------------- fan-out --------------------

    def publish(self, event: DomainEvent) -> int:
        """Hand `event` to every open connection. Returns how many accepted it."""
        message = event.to_message()
        with self._lock:
            targets = list(self._connections.values())
        accepted = 0
        for conn in targets:
            if conn.offer(message):
                accepted += 1
            elif conn.state is ConnectionState.OPEN:
                self._drop(conn, "outbox full")
        return accepted

    def wait_idle(self, timeout: float = 5.0) -> bool:
        """Block until every outbox is drained (used at shutdown and in tests)."""
        deadline = time.time() + timeout
        while time.time() < deadline:
            with self._lock:
                busy = [c for c in self._connections.values() if c.pending]
            if not busy:
                return True
            time.sleep(0.01)
        return False

    def close_all(self) -> None:
        with self._lock:
            conns = list(self._connections.values())
            self._connections.clear()
        for conn in conns:
            conn.close("shutdown")
