"""Server-Sent Events (SSE) manager for live run updates.

Provides:
- SSEConnection: one subscribed client, backed by a queue
- SSEManager: connections grouped by run, with thread-safe broadcast
"""

import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from queue import Empty, Queue
from typing import Any, Dict, List, Optional, Set

from gantry.utils.helpers import utcnow_iso

logger = logging.getLogger(__name__)

# Events after which a run stream has nothing more to say
TERMINAL_EVENTS = {"run_completed"}


@dataclass(eq=False)
class SSEConnection:
    """Individual SSE connection to a client."""

    run_id: str
    client_id: str
    queue: Queue = field(default_factory=Queue)
    connected_at: float = field(default_factory=time.time)
    last_activity: str = field(default_factory=utcnow_iso)

    def __hash__(self):
        return hash((self.run_id, self.client_id))

    def __eq__(self, other):
        if not isinstance(other, SSEConnection):
            return False
        return self.run_id == other.run_id and self.client_id == other.client_id

    def send_event(self, event_type: str, data: Dict[str, Any]) -> None:
        """Queue an event for delivery to this client."""
        self.queue.put({
            "event": event_type,
            "data": data,
            "timestamp": utcnow_iso(),
        })
        self.last_activity = utcnow_iso()

    def get_events(self, timeout: float = 15.0) -> List[Dict[str, Any]]:
        """
        Block for the next event, then drain whatever else is queued.

        Args:
            timeout: Maximum wait for the first event (seconds)

        Returns:
            List of events, empty when the wait timed out (send a keepalive)
        """
        events = []
        try:
            events.append(self.queue.get(timeout=timeout))
            while True:
                events.append(self.queue.get_nowait())
        except Empty:
            pass
        return events


class SSEManager:
    """
    Manages SSE connections and event broadcasting.

    Each run can have several connected clients. The event bus forwards
    every published event through ``broadcast``.
    """

    def __init__(self):
        # run_id -> set of SSEConnection objects
        self._connections: Dict[str, Set[SSEConnection]] = {}
        self._lock = threading.RLock()

    def connect(self, run_id: str, client_id: Optional[str] = None) -> SSEConnection:
        """
        Register a new SSE connection.

        Args:
            run_id: Run to subscribe to
            client_id: Optional client identifier (auto-generated if not provided)

        Returns:
            SSEConnection object
        """
        if client_id is None:
            client_id = f"client-{uuid.uuid4().hex[:8]}"

        connection = SSEConnection(run_id=run_id, client_id=client_id)

        with self._lock:
            self._connections.setdefault(run_id, set()).add(connection)

        logger.info(f"SSE connection established: run_id={run_id}, client_id={client_id}")

        connection.send_event("connected", {
            "run_id": run_id,
            "client_id": client_id,
        })
        return connection

    def disconnect(self, run_id: str, client_id: str) -> None:
        """Remove a client connection."""
        with self._lock:
            if run_id in self._connections:
                self._connections[run_id] = {
                    conn for conn in self._connections[run_id]
                    if conn.client_id != client_id
                }
                if not self._connections[run_id]:
                    del self._connections[run_id]

        logger.info(f"SSE connection closed: run_id={run_id}, client_id={client_id}")

    def broadcast(self, run_id: str, event_type: str, data: Dict[str, Any]) -> int:
        """
        Broadcast an event to all connections for a run.

        Returns:
            Number of connections that received the event
        """
        count = 0
        with self._lock:
            for connection in self._connections.get(run_id, set()):
                try:
                    connection.send_event(event_type, data)
                    count += 1
                except Exception as e:
                    logger.error(f"Failed to send event to {connection.client_id}: {e}")

        if count > 0:
            logger.debug(f"Broadcasted {event_type} to {count} client(s) for run {run_id}")
        return count

    def get_connection_count(self, run_id: str) -> int:
        with self._lock:
            return len(self._connections.get(run_id, set()))

    def cleanup_stale_connections(self, max_age_seconds: float = 3600) -> int:
        """
        Drop connections older than ``max_age_seconds``.

        Returns:
            Number of connections removed
        """
        removed = 0
        now = time.time()

        with self._lock:
            for run_id in list(self._connections.keys()):
                stale = {c for c in self._connections[run_id] if now - c.connected_at > max_age_seconds}
                if stale:
                    self._connections[run_id] -= stale
                    removed += len(stale)
                    if not self._connections[run_id]:
                        del self._connections[run_id]

        if removed > 0:
            logger.info(f"Cleaned up {removed} stale SSE connection(s)")
        return removed


def format_sse_message(event_type: str, data: Dict[str, Any]) -> str:
    """Format data as an SSE message."""
    return f"event: {event_type}\ndata: {json.dumps(data)}\n\n"


def format_keepalive() -> str:
    """Format an SSE keepalive comment."""
    return f": keepalive {datetime.utcnow().isoformat()}\n\n"
