"""HTTP server exposing Splitwise login and cached expense data."""

from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from collections.abc import Sequence
from functools import partial
from typing import Any
from urllib.parse import urlencode

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response

from .auth import TokenExchange
from .cache import ExpenseCache, ExpenseLine
from .config import Configuration, configure_logging, load_config
from .cookies import COOKIE_MAX_AGE, COOKIE_NAME, CookieCodec
from .errors import ConfigError, ProtocolError, UpstreamAPIError, UpstreamAuthError
from .sessions import Session, SessionStore

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "splitwiseconfig.json"
DEFAULT_LOG_PATH = "splitwiseAPIServer.log"


def _expenses_response(lines: list[ExpenseLine]) -> JSONResponse:
    return JSONResponse([line.model_dump(by_alias=True) for line in lines])


def create_app(config: Configuration, **client_kwargs: Any) -> FastAPI:
    """Build the FastAPI application and its in-memory state.

    Args:
        config: Parsed service configuration.
        **client_kwargs: Extra httpx client options for upstream calls.

    Returns:
        The application. Sessions, pending logins and the cache live on
        ``app.state`` for the lifetime of the process.
    """
    sessions = SessionStore(ttl=config.session_ttl)
    exchange = TokenExchange(config, sessions, **client_kwargs)
    cookies = CookieCodec(sessions, config.cookie_secret)
    cache = ExpenseCache(config.data_path, ttl=config.cache_ttl)

    app = FastAPI(title="splitwise-expenses")
    app.state.config = config
    app.state.sessions = sessions
    app.state.exchange = exchange
    app.state.cookies = cookies
    app.state.cache = cache

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.monotonic()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "%s %s failed (%.1f ms)",
                request.method,
                request.url.path,
                (time.monotonic() - start) * 1000,
            )
            raise
        logger.info(
            "%s %s -> %d (%.1f ms)",
            request.method,
            request.url.path,
            response.status_code,
            (time.monotonic() - start) * 1000,
        )
        return response

    def serve_expenses(user_id: str, session: Session | None) -> Response:
        try:
            cache.path_for(user_id)
        except ProtocolError as e:
            logger.info("Bad expense request: %s", e)
            return Response(status_code=400)

        open_client = None
        if session is not None:
            open_client = partial(exchange.open_client, session.credential)

        try:
            lines = cache.load(user_id, open_client)
        except ProtocolError as e:
            logger.info("Denied expense request: %s", e)
            return Response(status_code=401)
        except UpstreamAPIError as e:
            logger.error("Cache regeneration for user %s failed: %s", user_id, e)
            try:
                lines = cache.read(user_id)
            except OSError:
                return Response(status_code=502)
        except OSError as e:
            logger.error("Cache file for user %s unusable: %s", user_id, e)
            return Response(status_code=500)
        return _expenses_response(lines)

    @app.get("/")
    def index() -> Response:
        """Start a login by redirecting the browser to Splitwise."""
        sessions.purge_expired()
        try:
            authorization_url = exchange.begin_authorization()
        except UpstreamAuthError as e:
            logger.error("Could not start authorization: %s", e)
            return Response(status_code=502)
        return RedirectResponse(authorization_url, status_code=302)

    @app.get("/expenses")
    def complete_auth(request: Request) -> Response:
        """OAuth callback: create the session, set the cookie, hand off to the viewer."""
        try:
            session = exchange.complete_authorization(request.query_params)
        except ProtocolError as e:
            logger.warning("Rejected authorization callback: %s", e)
            return Response(status_code=400)
        except UpstreamAuthError as e:
            logger.error("Authorization failed: %s", e)
            return Response(status_code=502)

        viewer_url = f"{config.downstream_viewer_url}?{urlencode({'file': session.user_id})}"
        response = RedirectResponse(viewer_url, status_code=302)
        response.set_cookie(
            COOKIE_NAME,
            cookies.issue(session.user_id, session.session_id),
            max_age=COOKIE_MAX_AGE,
            path="/",
            httponly=True,
            samesite="lax",
        )
        return response

    @app.get("/getStoredJson")
    def get_stored_json(request: Request) -> Response:
        """Cached expenses of the user identified by the session cookie."""
        session = cookies.verify(request.cookies.get(COOKIE_NAME))
        if session is None:
            return Response(status_code=401)
        return serve_expenses(session.user_id, session)

    @app.get("/getStoredJsonFile")
    def get_stored_json_file(file: str = "") -> Response:
        """Cached expenses of the user named in ``?file=``.

        No cookie is checked; the caller is trusted to name the right
        user. This is the entry point for the co-located viewer.
        """
        session = sessions.get(file) if file else None
        return serve_expenses(file, session)

    return app


def main(argv: Sequence[str] | None = None) -> None:
    """Main entry point for the expense server."""
    load_dotenv(override=True)

    parser = argparse.ArgumentParser(description="Serve cached Splitwise expenses.")
    parser.add_argument(
        "--config",
        default=os.getenv("SPLITWISE_CONFIG", DEFAULT_CONFIG_PATH),
        help="config file path (default: %(default)s)",
    )
    parser.add_argument(
        "--log",
        default=os.getenv("SPLITWISE_LOG", DEFAULT_LOG_PATH),
        help="log file path (default: %(default)s)",
    )
    args = parser.parse_args(argv)

    configure_logging(args.log)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        logger.error("%s", e)
        print(f"error reading config file - Exiting: {e}", file=sys.stderr)
        sys.exit(1)

    uvicorn.run(create_app(config), host=config.host, port=config.port)


if __name__ == "__main__":
    main()
