"""Server-Sent Events fan-out for execution events.

Each HTTP client following an execution owns an SSEConnection with its own
queue. The SSEManager maps execution ids to connections and copies every
event published on the EventBus into the matching queues. Clients attached
to GLOBAL_STREAM see the events of all executions.
"""

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from queue import Empty, Queue
from typing import Any, Dict, List, Optional, Set

from conveyor.utils.helpers import new_id, utc_now_iso

logger = logging.getLogger(__name__)

# Stream key for clients following every execution
GLOBAL_STREAM = "*"

# Upper bound for a single blocking read, so callers can send keepalives
MAX_READ_WAIT_SECONDS = 15.0


@dataclass(eq=False)
class SSEConnection:
    """Queue of pending messages for one client of one stream."""

    execution_id: str
    client_id: str
    queue: Queue = field(default_factory=Queue)
    connected_at: str = field(default_factory=utc_now_iso)
    last_activity: str = field(default_factory=utc_now_iso)

    @property
    def key(self) -> tuple:
        return (self.execution_id, self.client_id)

    def __hash__(self):
        return hash(self.key)

    def __eq__(self, other):
        return isinstance(other, SSEConnection) and self.key == other.key

    def send_event(self, event_type: str, data: Dict[str, Any]) -> None:
        self.queue.put({
            "event": event_type,
            "data": data,
            "timestamp": utc_now_iso(),
        })
        self.last_activity = utc_now_iso()

    def get_events(self, timeout: float = 30.0) -> List[Dict[str, Any]]:
        """
        Block for the next message, then take whatever else is already queued.

        Args:
            timeout: Seconds to wait for the first message (capped at MAX_READ_WAIT_SECONDS)

        Returns:
            Messages in arrival order; empty if nothing arrived in time
        """
        try:
            first = self.queue.get(timeout=min(timeout, MAX_READ_WAIT_SECONDS))
        except Empty:
            return []

        events = [first]
        while True:
            try:
                events.append(self.queue.get_nowait())
            except Empty:
                return events


class SSEManager:
    """
    Registry of SSE connections, keyed by execution id.

    Usage:
        manager = SSEManager()
        event_bus = EventBus(sse_manager=manager)

        connection = manager.connect(execution_id)
        for message in connection.get_events(timeout=15):
            ...
        manager.disconnect(execution_id, connection.client_id)
    """

    def __init__(self):
        self._connections: Dict[str, Set[SSEConnection]] = {}
        self._lock = threading.RLock()

    def connect(self, execution_id: str, client_id: Optional[str] = None) -> SSEConnection:
        """
        Attach a client to an execution stream (or GLOBAL_STREAM).

        The connection is greeted with a ``connected`` message.
        """
        connection = SSEConnection(
            execution_id=execution_id,
            client_id=client_id or f"client-{new_id()[:12]}",
        )

        with self._lock:
            self._connections.setdefault(execution_id, set()).add(connection)

        logger.info(f"SSE client {connection.client_id} following {execution_id}")
        connection.send_event("connected", {
            "executionId": execution_id,
            "clientId": connection.client_id,
        })
        return connection

    def disconnect(self, execution_id: str, client_id: str) -> None:
        with self._lock:
            remaining = {
                conn for conn in self._connections.get(execution_id, set())
                if conn.client_id != client_id
            }
            if remaining:
                self._connections[execution_id] = remaining
            else:
                self._connections.pop(execution_id, None)

        logger.info(f"SSE client {client_id} left {execution_id}")

    def broadcast(self, execution_id: str, event_type: str, data: Dict[str, Any]) -> int:
        """
        Queue a message for every client of one stream.

        Returns:
            Number of clients the message was queued for
        """
        with self._lock:
            connections = list(self._connections.get(execution_id, ()))

        delivered = 0
        for connection in connections:
            try:
                connection.send_event(event_type, data)
                delivered += 1
            except Exception as e:
                logger.error(f"Could not queue {event_type} for {connection.client_id}: {e}")

        if delivered:
            logger.debug(f"{event_type} queued for {delivered} client(s) of {execution_id}")
        return delivered

    def publish(self, event: Any) -> int:
        """
        Deliver a bus Event to its execution's clients and to global clients.

        Args:
            event: conveyor.events.Event

        Returns:
            Number of clients reached
        """
        data = dict(event.data)
        data.setdefault("executionId", event.execution_id)
        delivered = self.broadcast(event.execution_id, event.type.value, data)
        if event.execution_id != GLOBAL_STREAM:
            delivered += self.broadcast(GLOBAL_STREAM, event.type.value, data)
        return delivered

    def get_connections(self, execution_id: str) -> List[SSEConnection]:
        with self._lock:
            return list(self._connections.get(execution_id, ()))

    def get_connection_count(self, execution_id: str) -> int:
        with self._lock:
            return len(self._connections.get(execution_id, ()))

    def cleanup_stale_connections(self, max_age_seconds: float = 3600) -> int:
        """Drop connections opened more than max_age_seconds ago; returns how many."""
        now = time.time()
        removed = 0

        with self._lock:
            for execution_id, connections in list(self._connections.items()):
                stale = {
                    conn for conn in connections
                    if now - datetime.fromisoformat(conn.connected_at).timestamp() > max_age_seconds
                }
                if not stale:
                    continue
                removed += len(stale)
                connections -= stale
                if not connections:
                    del self._connections[execution_id]

        if removed:
            logger.info(f"Removed {removed} stale SSE connection(s)")
        return removed


def format_sse_message(event_type: str, data: Dict[str, Any]) -> str:
    """Render one message in the text/event-stream wire format."""
    return f"event: {event_type}\ndata: {json.dumps(data)}\n\n"


def format_keepalive() -> str:
    """SSE comment line that keeps idle proxies from closing the stream."""
    return f": keepalive {utc_now_iso()}\n\n"
