"""OAuth 1.0a three-legged login against Splitwise."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import httpx
from authlib.integrations.httpx_client import OAuth1Client, OAuthError

from .client import SplitwiseClient
from .config import Configuration
from .errors import ProtocolError, UpstreamAPIError, UpstreamAuthError
from .sessions import AccessCredential, Session, SessionStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingExchange:
    """Request token secret waiting for the user to approve access."""

    secret: str = field(repr=False)
    created_at: float


class TokenExchange:
    """Runs the request-token -> authorize -> access-token handshake.

    Request token secrets are kept per request token, so several users
    can be mid-login at the same time. Extra keyword arguments are passed
    to every httpx client the exchange opens, both for the handshake and
    for the API clients it hands out.
    """

    def __init__(
        self,
        config: Configuration,
        sessions: SessionStore,
        clock: Callable[[], float] = time.time,
        **client_kwargs: Any,
    ) -> None:
        self.config = config
        self.sessions = sessions
        self._clock = clock
        self._client_kwargs = client_kwargs
        self._pending: dict[str, PendingExchange] = {}
        self._lock = threading.Lock()

    def begin_authorization(self) -> str:
        """Obtain a request token and return the URL the user must visit.

        Raises:
            UpstreamAuthError: If the request token cannot be obtained.
        """
        with self._oauth_client(redirect_uri=self.config.callback_url) as client:
            try:
                request_token = client.fetch_request_token(self.config.request_token_url)
            except (OAuthError, httpx.HTTPError, ValueError) as e:
                raise UpstreamAuthError(f"request token rejected: {e}") from e

            token = request_token.get("oauth_token")
            secret = request_token.get("oauth_token_secret")
            if not token or not secret:
                raise UpstreamAuthError("request token response is missing oauth_token")
            authorization_url = client.create_authorization_url(
                self.config.authorize_url, request_token=token
            )

        with self._lock:
            self._purge_pending_locked()
            self._pending[token] = PendingExchange(secret=secret, created_at=self._clock())
            pending = len(self._pending)
        logger.info("Started authorization, %d pending", pending)
        return authorization_url

    def complete_authorization(self, params: Mapping[str, str]) -> Session:
        """Finish the handshake from the callback query parameters.

        Args:
            params: Query parameters of the callback request.

        Returns:
            The new session for the authenticated user.

        Raises:
            ProtocolError: If the callback is malformed or does not match a
                pending authorization.
            UpstreamAuthError: If the access token exchange or the user
                lookup fails.
        """
        token = params.get("oauth_token")
        verifier = params.get("oauth_verifier")
        if not token or not verifier:
            raise ProtocolError("callback is missing oauth_token or oauth_verifier")

        pending = self._take_pending(token)
        if pending is None:
            raise ProtocolError("callback does not match a pending authorization")

        with self._oauth_client(token=token, token_secret=pending.secret) as client:
            try:
                access = client.fetch_access_token(
                    self.config.access_token_url, verifier=verifier
                )
            except (OAuthError, httpx.HTTPError, ValueError) as e:
                raise UpstreamAuthError(f"access token exchange rejected: {e}") from e

        access_token = access.get("oauth_token")
        access_secret = access.get("oauth_token_secret")
        if not access_token or not access_secret:
            raise UpstreamAuthError("access token response is missing oauth_token")
        credential = AccessCredential(token=access_token, secret=access_secret)

        try:
            with self.open_client(credential) as api:
                user = api.get_current_user()
        except UpstreamAPIError as e:
            raise UpstreamAuthError(f"could not resolve current user: {e}") from e

        return self.sessions.create(str(user.id), credential)

    def open_client(self, credential: AccessCredential) -> SplitwiseClient:
        """Return an API client authorized with ``credential``."""
        return SplitwiseClient.from_config(self.config, credential, **self._client_kwargs)

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def _take_pending(self, token: str) -> PendingExchange | None:
        with self._lock:
            pending = self._pending.pop(token, None)
        if pending is None:
            return None
        if self._clock() - pending.created_at > self.config.pending_ttl:
            logger.info("Pending authorization expired")
            return None
        return pending

    def _purge_pending_locked(self) -> None:
        now = self._clock()
        expired = [
            token
            for token, pending in self._pending.items()
            if now - pending.created_at > self.config.pending_ttl
        ]
        for token in expired:
            del self._pending[token]

    def _oauth_client(self, **kwargs: Any) -> OAuth1Client:
        kwargs = {**self._client_kwargs, **kwargs}
        if self.config.http_timeout is not None:
            kwargs.setdefault("timeout", self.config.http_timeout)
        return OAuth1Client(
            self.config.consumer_key, self.config.consumer_secret, **kwargs
        )
