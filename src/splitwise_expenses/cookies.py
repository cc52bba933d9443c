"""Signed client cookie binding a user to their current session."""

from __future__ import annotations

import logging
import secrets
from typing import Any

from itsdangerous import BadData, URLSafeSerializer

from .sessions import Session, SessionStore

logger = logging.getLogger(__name__)

COOKIE_NAME = "clientMap"
# Advisory only: the server checks the session id, not the cookie age.
COOKIE_MAX_AGE = 300


class CookieCodec:
    """Issue and verify ``clientMap`` cookie values.

    The value is signed, not encrypted. It stays valid only while the
    session id it carries is still the current one for its user, so a
    cookie from before a re-login is rejected.
    """

    def __init__(self, sessions: SessionStore, secret_key: str | None = None) -> None:
        self._sessions = sessions
        self._serializer = URLSafeSerializer(
            secret_key or secrets.token_hex(32), salt=COOKIE_NAME
        )

    def issue(self, user_id: str, session_id: str) -> str:
        """Encode and sign a cookie value for the given session."""
        return self._serializer.dumps({"username": user_id, "sessionid": session_id})

    def verify(self, token: str | None) -> Session | None:
        """Resolve a cookie value to the session it belongs to.

        Args:
            token: Raw cookie value, or None if the client sent none.

        Returns:
            The matching session, or None if the cookie is missing, forged,
            refers to an unknown user or carries a stale session id.
        """
        if not token:
            return None

        try:
            value: Any = self._serializer.loads(token)
        except BadData as e:
            logger.info("Rejected cookie: %s", e)
            return None

        if not isinstance(value, dict):
            logger.info("Rejected cookie: unexpected payload")
            return None
        user_id = value.get("username")
        session_id = value.get("sessionid")
        if not isinstance(user_id, str) or not isinstance(session_id, str):
            logger.info("Rejected cookie: missing fields")
            return None

        session = self._sessions.get(user_id)
        if session is None:
            logger.info("Rejected cookie: no session for user %s", user_id)
            return None
        if not secrets.compare_digest(session.session_id.encode(), session_id.encode()):
            logger.info("Rejected cookie: stale session for user %s", user_id)
            return None
        return session
