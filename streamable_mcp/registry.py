import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING
from uuid import uuid4

import anyio

from .errors import MissingSessionId, UnknownSession

if TYPE_CHECKING:
    from .transport import SessionTransport

__all__ = ["Session", "SessionRegistry", "TransportFactory"]

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True, kw_only=True)
class Session:
    """One logical client connection, possibly spanning many HTTP requests."""

    id: str
    created_at: datetime = field(default_factory=_utcnow)
    last_activity_at: datetime = field(default_factory=_utcnow)

    def touch(self) -> None:
        self.last_activity_at = _utcnow()

    def idle_for(self, now: datetime | None = None) -> float:
        """Seconds since the last activity."""
        return ((now or _utcnow()) - self.last_activity_at).total_seconds()


TransportFactory = Callable[[Session], "SessionTransport"]


class SessionRegistry:
    """Maps session ids to live transports.

    Entries are inserted under a lock so that two initialize requests can never
    end up sharing an id, and removed synchronously when their transport closes.
    """

    __slots__ = ("_lock", "_transport_factory", "_transports")

    def __init__(self, transport_factory: TransportFactory) -> None:
        self._transport_factory = transport_factory
        self._transports: dict[str, SessionTransport] = {}
        self._lock = anyio.Lock()

    def __len__(self) -> int:
        return len(self._transports)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._transports

    def session_ids(self) -> Iterator[str]:
        return iter(list(self._transports))

    async def create(self) -> tuple[str, "SessionTransport"]:
        """Allocate a new session and register its transport."""
        async with self._lock:
            session_id = uuid4().hex
            while session_id in self._transports:
                session_id = uuid4().hex

            transport = self._transport_factory(Session(id=session_id))
            transport.add_close_callback(self.remove)
            self._transports[session_id] = transport

        logger.info("Session created: %s (active sessions: %d)", session_id, len(self._transports))
        return session_id, transport

    def get(self, session_id: str) -> "SessionTransport | None":
        return self._transports.get(session_id)

    def resolve(self, session_id: str | None) -> "SessionTransport":
        """Return the transport bound to ``session_id``.

        Raises:
            MissingSessionId: If no session id was supplied.
            UnknownSession: If the id is not (or no longer) registered.
        """
        if not session_id:
            raise MissingSessionId()

        transport = self._transports.get(session_id)
        if transport is None:
            raise UnknownSession()
        return transport

    def remove(self, session_id: str) -> None:
        """Drop the entry and close its transport. Removing an absent id is a no-op."""
        transport = self._transports.pop(session_id, None)
        if transport is None:
            return

        logger.info("Session removed: %s (active sessions: %d)", session_id, len(self._transports))
        transport.close()

    def close_all(self) -> None:
        for session_id in list(self._transports):
            self.remove(session_id)

    def evict_idle(self, max_idle: float) -> list[str]:
        """Close sessions without activity for more than ``max_idle`` seconds."""
        now = _utcnow()
        evicted = [
            session_id
            for session_id, transport in list(self._transports.items())
            if not transport.busy and transport.session.idle_for(now) > max_idle
        ]
        for session_id in evicted:
            logger.info("Evicting idle session: %s", session_id)
            self.remove(session_id)
        return evicted
