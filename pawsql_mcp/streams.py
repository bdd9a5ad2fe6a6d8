from __future__ import annotations

import asyncio
import json
import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol, Tuple

from pawsql_mcp.audit import AuditLog
from pawsql_mcp.sessions import Session, utcnow

logger = logging.getLogger(__name__)

CONNECT_MESSAGE = "Connected to PawSQL MCP Server"


class TransportClosed(Exception):
    """Write to a stream that is closed, full or broken."""


class Transport(Protocol):
    def write(self, event: str, data: Any) -> None: ...

    def close(self) -> None: ...


def format_event(event: str, data: Any) -> str:
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


class QueueTransport:
    """Bounded, thread-safe SSE outbox.

    Any thread may `write`; the HTTP response drains the queue through
    `events()`. A full queue means the client stopped reading, which is
    treated the same as a broken pipe.
    """

    _CLOSE = object()

    def __init__(self, maxsize: int = 256, *, poll_interval: float = 0.5):
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=maxsize)
        self._closed = threading.Event()
        self._poll_interval = poll_interval
        self.on_close: Optional[Callable[["QueueTransport"], None]] = None

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def write(self, event: str, data: Any) -> None:
        if self._closed.is_set():
            raise TransportClosed("stream is closed")
        try:
            self._queue.put_nowait((event, data))
        except queue.Full as e:
            raise TransportClosed("stream outbox is full") from e

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        try:
            self._queue.put_nowait(self._CLOSE)
        except queue.Full:
            # Reader is stalled; it will notice the closed flag on its next poll.
            pass

    def drain(self) -> List[Tuple[str, Any]]:
        """Pending events without blocking (tests and shutdown)."""
        items = []
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return items
            if item is not self._CLOSE:
                items.append(item)

    async def events(self, request: Any = None) -> AsyncIterator[str]:
        try:
            while True:
                if request is not None and await request.is_disconnected():
                    logger.info("SSE client disconnected")
                    break
                try:
                    item = self._queue.get_nowait()
                except queue.Empty:
                    if self._closed.is_set():
                        break
                    await asyncio.sleep(self._poll_interval)
                    continue
                if item is self._CLOSE:
                    break
                event, data = item
                yield format_event(event, data)
        finally:
            self._closed.set()
            callback = self.on_close
            if callback is not None:
                callback(self)


@dataclass(eq=False)
class StreamConnection:
    session: Session
    transport: Transport
    created_at: datetime = field(default_factory=utcnow)

    @property
    def session_id(self) -> str:
        return self.session.session_id


class StreamRegistry:
    """At most one open push connection per session id (last writer wins)."""

    def __init__(
        self,
        audit: AuditLog,
        *,
        transport_factory: Callable[[], Transport] = QueueTransport,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._audit = audit
        self._transport_factory = transport_factory
        self._clock = clock
        self._lock = threading.Lock()
        self._connections: Dict[str, StreamConnection] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def open(self, session: Session, transport: Optional[Transport] = None) -> StreamConnection:
        conn = StreamConnection(
            session=session,
            transport=transport if transport is not None else self._transport_factory(),
            created_at=self._clock(),
        )
        with self._lock:
            previous = self._connections.get(session.session_id)
            self._connections[session.session_id] = conn

        if previous is not None:
            logger.info("Replacing stream for session %s", session.session_id)
            self._shutdown(previous, "replaced")

        if isinstance(conn.transport, QueueTransport):
            conn.transport.on_close = lambda _t: self.close(session.session_id, "client disconnected", conn)

        self._audit.log_stream_event(session, "CONNECT")
        self.send(
            session.session_id,
            "connect",
            {
                "message": CONNECT_MESSAGE,
                "email": session.email,
                "edition": session.edition,
                "sessionId": session.session_id,
            },
        )
        return conn

    def send(self, session_id: str, event_name: str, payload: Any) -> bool:
        conn = self._connections.get(session_id)
        if conn is None:
            logger.debug("No open stream for session %s, dropping %s", session_id, event_name)
            return False
        try:
            conn.transport.write(event_name, payload)
        except Exception as e:
            logger.warning("Stream write failed for session %s (%s): %s", session_id, event_name, e)
            self.close(session_id, f"write failed: {e}", conn)
            return False
        return True

    def close(self, session_id: str, reason: str, connection: Optional[StreamConnection] = None) -> bool:
        with self._lock:
            current = self._connections.get(session_id)
            if current is None or (connection is not None and current is not connection):
                return False
            del self._connections[session_id]
        logger.info("Closed stream for session %s: %s", session_id, reason)
        self._shutdown(current, reason)
        return True

    def _shutdown(self, conn: StreamConnection, reason: str) -> None:
        try:
            conn.transport.close()
        except Exception:
            logger.warning("Error closing stream for session %s", conn.session_id, exc_info=True)
        self._audit.log_stream_event(conn.session, f"CLOSE:{reason}")

    def probe(self) -> int:
        """Send a heartbeat to every stream; returns how many were reaped."""
        with self._lock:
            ids = list(self._connections)
        now = self._clock().isoformat()
        removed = sum(1 for sid in ids if not self.send(sid, "heartbeat", {"timestamp": now}))
        if removed:
            logger.info("Stream probe removed %d dead connections, %d open", removed, len(self._connections))
        return removed

    def session_for(self, session_id: str) -> Optional[Session]:
        conn = self._connections.get(session_id)
        return conn.session if conn is not None else None

    def is_open(self, session_id: str) -> bool:
        return session_id in self._connections

    def close_all(self, reason: str = "shutdown") -> None:
        with self._lock:
            conns = list(self._connections.values())
            self._connections.clear()
        for conn in conns:
            self._shutdown(conn, reason)
