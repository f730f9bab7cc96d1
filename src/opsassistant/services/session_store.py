import asyncio
import logging
import time
import uuid
from collections import OrderedDict
from typing import Callable, Dict, List, Tuple

from ..errors import SessionNotFound
from ..models import Message, Session
from ..settings import get_settings

logger = logging.getLogger(__name__)


class SessionStore:
    """In-memory chat histories keyed by session id.

    History is append-only. Each session has its own ``asyncio.Lock`` so turns
    on one session are serialized in arrival order while other sessions run
    freely. Idle sessions expire after ``ttl_seconds`` and the least recently
    used ones are dropped beyond ``max_sessions``; a session whose lock is held
    is never evicted.
    """

    def __init__(
        self,
        ttl_seconds: int = 86400,
        max_sessions: int = 10000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._max_sessions = max_sessions
        self._clock = clock
        self._sessions: "OrderedDict[str, Session]" = OrderedDict()
        self._locks: Dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def _touch(self, session: Session) -> None:
        session.last_access = self._clock()
        self._sessions.move_to_end(session.session_id)

    def _is_busy(self, session_id: str) -> bool:
        lock = self._locks.get(session_id)
        return lock is not None and lock.locked()

    def _drop(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
        self._locks.pop(session_id, None)

    def evict(self) -> int:
        """Drop idle and overflow sessions. Returns how many were removed."""
        now = self._clock()
        removed = 0
        if self._ttl > 0:
            for session_id, session in list(self._sessions.items()):
                if now - session.last_access >= self._ttl and not self._is_busy(session_id):
                    self._drop(session_id)
                    removed += 1
        overflow = len(self._sessions) - self._max_sessions
        if overflow > 0:
            for session_id in list(self._sessions):
                if overflow <= 0:
                    break
                if self._is_busy(session_id):
                    continue
                self._drop(session_id)
                overflow -= 1
                removed += 1
        if removed:
            logger.info("Evicted %d chat sessions (%d left)", removed, len(self._sessions))
        return removed

    def get_or_create(self, session_id: str | None = None) -> Tuple[str, List[Message]]:
        """Return (session_id, history copy), creating the session if needed.

        Args:
            session_id: Caller supplied id, or None to generate a new uuid4.

        Returns:
            Tuple[str, List[Message]]: The resolved id and a snapshot of its history.
        """
        self.evict()
        sid = session_id or str(uuid.uuid4())
        session = self._sessions.get(sid)
        if session is None:
            session = Session(session_id=sid, last_access=self._clock())
            self._sessions[sid] = session
            logger.debug("Created chat session %s", sid)
        self._touch(session)
        return sid, list(session.messages)

    def append(self, session_id: str, message: Message) -> int:
        """Append message to the session history and return the new length."""
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(f"Unknown session: {session_id}")
        session.messages.append(message)
        self._touch(session)
        return len(session.messages)

    def get(self, session_id: str) -> List[Message]:
        """Return a copy of the session history."""
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(f"Unknown session: {session_id}")
        return list(session.messages)

    def lock(self, session_id: str) -> asyncio.Lock:
        """Per-session lock; waiters are woken in arrival order."""
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock


def get_session_store() -> SessionStore:
    """Build a SessionStore from settings."""
    settings = get_settings()
    return SessionStore(
        ttl_seconds=settings.session_ttl_seconds,
        max_sessions=settings.max_sessions,
    )
