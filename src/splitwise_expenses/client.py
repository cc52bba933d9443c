"""Typed Splitwise REST client.

Requests are signed with OAuth1 by authlib's httpx integration. Responses
are decoded into pydantic models so that a payload missing a required
field fails loudly instead of producing half-filled rows.
"""

from __future__ import annotations

import logging
import time
from typing import Annotated, Any, TypeVar

import httpx
from authlib.integrations.httpx_client import OAuth1Client
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError

from .config import DEFAULT_API_BASE_URL, Configuration
from .errors import UpstreamAPIError
from .sessions import AccessCredential

logger = logging.getLogger(__name__)

DEFAULT_OWED_SHARE = "0.0"


def _as_text(v: Any) -> Any:
    if v is None:
        return ""
    if isinstance(v, (int, float)) and not isinstance(v, bool):
        return str(v)
    return v


def _as_share(v: Any) -> Any:
    if v is None or v == "":
        return DEFAULT_OWED_SHARE
    return _as_text(v)


Text = Annotated[str, BeforeValidator(_as_text)]
Share = Annotated[str, BeforeValidator(_as_share)]


class _Model(BaseModel):
    model_config = ConfigDict(extra="ignore")


class User(_Model):
    id: int
    first_name: Text = ""
    last_name: Text = ""


class Group(_Model):
    id: int
    name: Text = ""


class Category(_Model):
    id: int | None = None
    name: Text = ""


class Participant(_Model):
    """Name of a user taking part in an expense."""

    id: int | None = None
    first_name: Text = ""


class ExpenseShare(_Model):
    user: Participant = Field(default_factory=Participant)
    owed_share: Share = DEFAULT_OWED_SHARE


class Expense(_Model):
    id: int | None = None
    date: Text = ""
    description: Text = ""
    cost: Text = ""
    category: Annotated[
        Category, BeforeValidator(lambda v: {} if v is None else v)
    ] = Field(default_factory=Category)
    users: list[ExpenseShare] = Field(default_factory=list)


class _CurrentUserEnvelope(_Model):
    user: User


class _GroupsEnvelope(_Model):
    groups: list[Group] = Field(default_factory=list)


class _ExpensesEnvelope(_Model):
    expenses: list[Expense] = Field(default_factory=list)


M = TypeVar("M", bound=BaseModel)


class SplitwiseClient:
    """Minimal Splitwise API client acting on behalf of one user."""

    def __init__(
        self,
        consumer_key: str,
        consumer_secret: str,
        credential: AccessCredential,
        base_url: str = DEFAULT_API_BASE_URL,
        **client_kwargs: Any,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._http = OAuth1Client(
            consumer_key,
            consumer_secret,
            token=credential.token,
            token_secret=credential.secret,
            **client_kwargs,
        )

    @classmethod
    def from_config(
        cls, config: Configuration, credential: AccessCredential, **client_kwargs: Any
    ) -> SplitwiseClient:
        """Build a client from the service configuration."""
        if config.http_timeout is not None:
            client_kwargs.setdefault("timeout", config.http_timeout)
        return cls(
            config.consumer_key,
            config.consumer_secret,
            credential,
            base_url=config.api_base_url,
            **client_kwargs,
        )

    def __enter__(self) -> SplitwiseClient:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        self._http.close()

    def get_current_user(self) -> User:
        """Return the user the credential belongs to."""
        return self._get("get_current_user", _CurrentUserEnvelope).user

    def get_groups(self) -> list[Group]:
        """Return every group the user is a member of."""
        return self._get("get_groups", _GroupsEnvelope).groups

    def get_expenses(self, group_id: int) -> list[Expense]:
        """Return all expenses of a group.

        Args:
            group_id: Splitwise group id.

        Returns:
            The group's expenses, unpaginated (``limit=0``).
        """
        params = {"group_id": str(group_id), "limit": "0"}
        return self._get("get_expenses", _ExpensesEnvelope, params=params).expenses

    def _get(
        self, endpoint: str, envelope: type[M], params: dict[str, str] | None = None
    ) -> M:
        url = f"{self.base_url}/{endpoint}"
        start = time.monotonic()
        try:
            response = self._http.get(url, params=params)
        except httpx.HTTPError as e:
            raise UpstreamAPIError(f"GET {endpoint} failed: {e}") from e

        logger.debug(
            "GET %s params=%s -> %s (%.1f ms)",
            endpoint,
            params,
            response.status_code,
            (time.monotonic() - start) * 1000,
        )
        if response.is_error:
            raise UpstreamAPIError(f"GET {endpoint} returned {response.status_code}")

        try:
            return envelope.model_validate_json(response.content)
        except ValidationError as e:
            raise UpstreamAPIError(f"unexpected payload from {endpoint}: {e}") from e
