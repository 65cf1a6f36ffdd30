"""
Real-time fan-out of domain events to connected sessions.

The broadcaster owns a session registry that is injected at construction,
so the in-memory registry used by a single process can be replaced by one
backed by a shared pub/sub channel without touching the callers.
"""

import asyncio
import threading
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol

from fastapi.encoders import jsonable_encoder

from shared.core import get_logger
from storefront.domain.errors import BroadcastFailure

logger = get_logger(__name__)


class Session(Protocol):
    session_id: str
    user_id: int
    role: str

    def deliver(self, message: Dict[str, Any]) -> None:
        ...


class ConnectedSession:
    """A live WebSocket connection as seen by the broadcaster.

    ``deliver`` may be called from any thread. Messages are queued onto the
    connection's event loop and written out by ``pump``.
    """

    def __init__(self, user_id: int, role: str, user_name: str, loop: asyncio.AbstractEventLoop):
        self.session_id = uuid.uuid4().hex
        self.user_id = user_id
        self.role = role
        self.user_name = user_name
        self.connected_at = datetime.utcnow()
        self.loop = loop
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def deliver(self, message: Dict[str, Any]) -> None:
        if self.closed or self.loop.is_closed():
            raise BroadcastFailure(f"session {self.session_id} is closed")
        self.loop.call_soon_threadsafe(self.queue.put_nowait, message)

    async def pump(self, websocket) -> None:
        while True:
            message = await self.queue.get()
            await websocket.send_json(message)

    def close(self) -> None:
        self.closed = True


class SessionRegistry(Protocol):
    def add(self, session: Session) -> None:
        ...

    def remove(self, session_id: str) -> Optional[Session]:
        ...

    def sessions(self) -> List[Session]:
        ...

    def count(self) -> int:
        ...


class InMemorySessionRegistry:
    """Process-local registry keyed by session id."""

    def __init__(self):
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()

    def add(self, session: Session) -> None:
        with self._lock:
            self._sessions[session.session_id] = session

    def remove(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.pop(session_id, None)

    def sessions(self) -> List[Session]:
        with self._lock:
            return list(self._sessions.values())

    def count(self) -> int:
        with self._lock:
            return len(self._sessions)


class EventBroadcaster:
    """At-most-once, best-effort delivery of events to sessions."""

    def __init__(self, registry: SessionRegistry):
        self.registry = registry
        self.events_published = 0
        self.delivery_failures = 0

    @staticmethod
    def envelope(event_kind: str, payload: Any) -> Dict[str, Any]:
        return jsonable_encoder({
            "event": event_kind,
            "data": payload,
            "timestamp": datetime.utcnow().isoformat() + "Z",
        })

    def publish(
        self,
        event_kind: str,
        payload: Any,
        *,
        user_id: Optional[int] = None,
        role: Optional[str] = None,
    ) -> int:
        """Send ``payload`` to every matching session and return the delivery count.

        ``user_id`` restricts delivery to that user's sessions, ``role`` to
        sessions with that role. A session that cannot accept the event is
        logged and skipped; nothing is raised to the caller.
        """
        message = self.envelope(event_kind, payload)
        delivered = 0
        for session in self._targets(user_id, role):
            try:
                session.deliver(message)
                delivered += 1
            except Exception as e:
                self.delivery_failures += 1
                logger.warning(
                    f"Broadcast of {event_kind} to session {session.session_id} failed: {e}",
                    extra={'extra_fields': {'event': event_kind, 'session_id': session.session_id}}
                )
        self.events_published += 1
        logger.debug(
            f"Published {event_kind}",
            extra={'extra_fields': {'event': event_kind, 'delivered': delivered}}
        )
        return delivered

    def online_users(self, role: Optional[str] = None) -> int:
        return len({s.user_id for s in self._targets(None, role)})

    def _targets(self, user_id: Optional[int], role: Optional[str]) -> Iterable[Session]:
        for session in self.registry.sessions():
            if user_id is not None and session.user_id != user_id:
                continue
            if role is not None and session.role != role:
                continue
            yield session
