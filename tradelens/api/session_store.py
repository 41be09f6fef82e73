"""In-memory session store holding each session's records with sliding expiry."""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class Session:
    """Records uploaded for one session."""

    session_id: str
    records: list[dict[str, Any]]
    created_at: float = field(default_factory=time.time)
    last_accessed_at: float = field(default_factory=time.time)


class SessionStore:
    """Session -> records map. Access extends a session's lifetime by ttl_seconds."""

    def __init__(
        self,
        ttl_seconds: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def put(self, session_id: str, records: list[dict[str, Any]]) -> Session:
        """Store or replace a session's records."""
        now = self._clock()
        session = Session(session_id, list(records), created_at=now, last_accessed_at=now)
        with self._lock:
            self._sessions[session_id] = session
        logger.info("Stored %d records for session %s", len(records), session_id)
        return session

    def get(self, session_id: str) -> Optional[Session]:
        """Get session by id, extending its expiry. None when missing or expired."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            now = self._clock()
            if now - session.last_accessed_at >= self.ttl_seconds:
                return None
            session.last_accessed_at = now
            return session

    def delete(self, session_id: str) -> bool:
        """Remove session. Returns True if it existed."""
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def purge_expired(self) -> list[str]:
        """Remove expired sessions and return their ids."""
        now = self._clock()
        with self._lock:
            expired = [
                sid
                for sid, s in self._sessions.items()
                if now - s.last_accessed_at >= self.ttl_seconds
            ]
            for sid in expired:
                del self._sessions[sid]
        if expired:
            logger.info("Purged %d expired sessions", len(expired))
        return expired
