"""
Fire-and-forget side effects: admin broadcasts and the audit log.

Neither of these may fail a request. Broadcast delivery is best effort and
audit writes swallow (and log) their own errors.
"""

import asyncio
import itertools
import json
import logging
import queue
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

ORDER_CREATED = "order_created"
UNAUTHORIZED_ACCESS = "unauthorized_access"
PAYMENT_CONFIRMED = "payment_confirmed"
PAYMENT_FAILED = "payment_failed"

Event = Tuple[str, Dict[str, Any], int]


def format_sse(event: str, data: Dict[str, Any], event_id: int) -> str:
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\nid: {event_id}\n\n"


class Broadcaster:
    """In-process fan-out of events to connected admin streams."""

    def __init__(self, max_pending: int = 100):
        self.max_pending = max_pending
        self._clients: Dict[str, "queue.Queue[Event]"] = {}
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

    def subscribe(self) -> Tuple[str, "queue.Queue[Event]"]:
        client_id = uuid.uuid4().hex
        q: "queue.Queue[Event]" = queue.Queue(maxsize=self.max_pending)
        with self._lock:
            self._clients[client_id] = q
        return client_id, q

    def unsubscribe(self, client_id: str) -> None:
        with self._lock:
            self._clients.pop(client_id, None)

    @property
    def client_count(self) -> int:
        with self._lock:
            return len(self._clients)

    def broadcast(self, event: str, data: Dict[str, Any]) -> int:
        """Queue an event for every client; clients that fell behind are dropped."""
        with self._lock:
            event_id = next(self._ids)
            stale = []
            for client_id, q in self._clients.items():
                try:
                    q.put_nowait((event, data, event_id))
                except queue.Full:
                    logger.warning("Dropping slow event stream client %s", client_id)
                    stale.append(client_id)
            for client_id in stale:
                del self._clients[client_id]
        return event_id


broadcaster = Broadcaster()


def log_event(
    store: Any,
    kind: str,
    *,
    result: str,
    user_id: Optional[str] = None,
    user_email: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    resource: Optional[str] = None,
    action: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> None:
    """Record an audit event. Never raises."""
    entry = {
        "eventType": kind,
        "userId": user_id,
        "userEmail": user_email,
        "ipAddress": ip_address,
        "userAgent": user_agent,
        "resource": resource,
        "action": action,
        "result": result,
        "details": details or {},
        "timestamp": datetime.now(timezone.utc),
    }
    try:
        store.create_document("audit_log", entry)
    except Exception as exc:
        logger.warning("Unable to record audit log %s: %s", kind, exc)


async def stream_events(
    broadcaster: Broadcaster,
    client_id: str,
    events: "queue.Queue[Event]",
    heartbeat_seconds: float = 15,
    poll_seconds: float = 0.25,
):
    """Yield SSE frames for one subscriber until the client goes away.

    The queue is polled without blocking so an idle stream holds no worker
    thread; a comment frame is sent after heartbeat_seconds of silence.
    """
    try:
        yield ": connected\n\n"
        idle = 0.0
        while True:
            try:
                event, data, event_id = events.get_nowait()
            except queue.Empty:
                if idle >= heartbeat_seconds:
                    idle = 0.0
                    yield ": heartbeat\n\n"
                await asyncio.sleep(poll_seconds)
                idle += poll_seconds
                continue
            idle = 0.0
            yield format_sse(event, data, event_id)
    finally:
        broadcaster.unsubscribe(client_id)
