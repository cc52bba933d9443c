"""Session management for the expense service.

Sessions live in memory only. They are lost when the server restarts,
requiring users to log in with Splitwise again.
"""

from __future__ import annotations

import logging
import secrets
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccessCredential:
    """OAuth1 access token pair granted by Splitwise."""

    token: str
    secret: str = field(repr=False)


@dataclass(frozen=True)
class Session:
    """An authenticated user and the credential used on their behalf."""

    user_id: str
    session_id: str
    credential: AccessCredential
    created_at: float = field(default_factory=time.time)


def new_session_id() -> str:
    """Return a fresh, unguessable session identifier."""
    return secrets.token_urlsafe(24)


class SessionStore:
    """Thread-safe mapping of user id to their current session.

    Entries expire ``ttl`` seconds after creation. Expired entries are
    dropped when looked up, or in bulk by :meth:`purge_expired`.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.time) -> None:
        self._ttl = ttl
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def put(self, session: Session) -> None:
        """Store a session, replacing any previous one for the same user."""
        with self._lock:
            self._sessions[session.user_id] = session

    def create(self, user_id: str, credential: AccessCredential) -> Session:
        """Mint a new session for ``user_id`` and store it.

        Args:
            user_id: Splitwise user id.
            credential: Access credential obtained from the token exchange.

        Returns:
            The stored session.
        """
        session = Session(
            user_id=user_id,
            session_id=new_session_id(),
            credential=credential,
            created_at=self._clock(),
        )
        self.put(session)
        logger.info("Created session for user %s", user_id)
        return session

    def get(self, user_id: str) -> Session | None:
        """Look up the live session for ``user_id``.

        Returns:
            The session, or None if there is none or it has expired.
        """
        with self._lock:
            session = self._sessions.get(user_id)
            if session is None:
                return None
            if self._is_expired(session, self._clock()):
                del self._sessions[user_id]
                logger.info("Session for user %s expired", user_id)
                return None
            return session

    def delete(self, user_id: str) -> None:
        """Forget the session for ``user_id`` if there is one."""
        with self._lock:
            self._sessions.pop(user_id, None)

    def purge_expired(self) -> int:
        """Drop every expired session.

        Returns:
            Number of sessions removed.
        """
        now = self._clock()
        with self._lock:
            expired = [
                user_id
                for user_id, session in self._sessions.items()
                if self._is_expired(session, now)
            ]
            for user_id in expired:
                del self._sessions[user_id]
        return len(expired)

    def _is_expired(self, session: Session, now: float) -> bool:
        return now - session.created_at > self._ttl
