"""Pytest fixtures for splitwise-expenses tests."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import httpx
import pytest

from splitwise_expenses.client import Expense, Group, User
from splitwise_expenses.config import Configuration
from splitwise_expenses.errors import UpstreamAPIError
from splitwise_expenses.sessions import AccessCredential, SessionStore

API_BASE_URL = "https://api.test/api/v3.0"

GROUPS_PAYLOAD = {
    "groups": [
        {"id": 1, "name": "Flat, Shared", "members": []},
        {"id": 2, "name": "Trip"},
    ]
}

EXPENSES_PAYLOAD = {
    1: {
        "expenses": [
            {
                "id": 10,
                "date": "2024-01-05T12:00:00Z",
                "description": "Groceries, weekly",
                "cost": "1,250.00",
                "category": {"id": 12, "name": "Food, drink"},
                "users": [
                    {"user": {"id": 100, "first_name": "Ann"}, "owed_share": "625.00"},
                    {"user": {"id": 101, "first_name": "Bob"}, "owed_share": "625.00"},
                ],
            }
        ]
    },
    2: {
        "expenses": [
            {
                "id": 20,
                "date": "2024-02-01T09:00:00Z",
                "description": "Train",
                "cost": "40.0",
                "category": None,
                "users": [
                    {"user": {"id": 100, "first_name": "Ann"}, "owed_share": None},
                ],
            }
        ]
    },
}

EXPECTED_ROWS = [
    ("Flat Shared", "2024-01-05T12:00:00Z", "Groceries weekly", "Food drink", "1250.00", "Ann", "625.00"),
    ("Flat Shared", "2024-01-05T12:00:00Z", "Groceries weekly", "Food drink", "1250.00", "Bob", "625.00"),
    ("Trip", "2024-02-01T09:00:00Z", "Train", "", "40.0", "Ann", "0.0"),
]


class FakeSplitwise:
    """Stand-in for SplitwiseClient serving canned groups and expenses."""

    def __init__(self, fail_on_group: int | None = None) -> None:
        self.fail_on_group = fail_on_group
        self.calls: list[str] = []
        self.closed = False

    def __enter__(self) -> FakeSplitwise:
        return self

    def __exit__(self, *exc_info) -> None:
        self.closed = True

    def get_current_user(self) -> User:
        self.calls.append("get_current_user")
        return User(id=4242, first_name="Ann")

    def get_groups(self) -> list[Group]:
        self.calls.append("get_groups")
        return [Group.model_validate(g) for g in GROUPS_PAYLOAD["groups"]]

    def get_expenses(self, group_id: int) -> list[Expense]:
        self.calls.append(f"get_expenses:{group_id}")
        if group_id == self.fail_on_group:
            raise UpstreamAPIError("GET get_expenses returned 500")
        return [Expense.model_validate(e) for e in EXPENSES_PAYLOAD[group_id]["expenses"]]


@pytest.fixture
def config_data(tmp_path):
    """Return raw config file contents pointing at a temporary data dir."""
    return {
        "RequestTokenURL": "https://auth.test/oauth/request_token",
        "AuthorizeURL": "https://auth.test/oauth/authorize",
        "AccessTokenURL": "https://auth.test/oauth/access_token",
        "ConsumerKey": "test_consumer_key",
        "ConsumerSecret": "test_consumer_secret",
        "CallbackURL": "http://localhost:9093/expenses",
        "DataPath": str(tmp_path / "data"),
        "ShinyPort": "3838",
        "ApiBaseURL": API_BASE_URL,
        "CookieSecret": "test_cookie_secret",
    }


@pytest.fixture
def config(config_data):
    return Configuration.model_validate(config_data)


@pytest.fixture
def credential():
    return AccessCredential(token="access_token_123", secret="access_secret_456")


@pytest.fixture
def sessions():
    return SessionStore(ttl=3600)


@pytest.fixture
def fake_api():
    return FakeSplitwise()


def context_mock() -> MagicMock:
    """Return a MagicMock usable as its own context manager."""
    instance = MagicMock()
    instance.__enter__.return_value = instance
    return instance


@pytest.fixture
def mock_oauth_client():
    """Mock authlib's OAuth1Client used for the token exchange."""
    with patch("splitwise_expenses.auth.OAuth1Client") as mock_client:
        instance = context_mock()

        instance.fetch_request_token.side_effect = [
            {"oauth_token": f"request_token_{n}", "oauth_token_secret": f"request_secret_{n}"}
            for n in range(1, 6)
        ]
        instance.create_authorization_url.side_effect = (
            lambda url, request_token: f"{url}?oauth_token={request_token}"
        )
        instance.fetch_access_token.return_value = {
            "oauth_token": "access_token_123",
            "oauth_token_secret": "access_secret_456",
        }

        mock_client.return_value = instance
        yield mock_client


@pytest.fixture
def mock_api_client(fake_api):
    """Make every SplitwiseClient built by the service the fake API."""
    with patch("splitwise_expenses.auth.SplitwiseClient") as mock_client:
        mock_client.from_config.return_value = fake_api
        yield mock_client


class FakeSplitwiseServer:
    """httpx.MockTransport handler for the OAuth1 endpoints and get_current_user.

    Responses are keyed by the last path segment and can be replaced per
    test. Every request is recorded so tests can inspect what authlib sent.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.responses: dict[str, tuple[int, str]] = {
            "request_token": (
                200,
                "oauth_token=live_request_token&oauth_token_secret=live_request_secret"
                "&oauth_callback_confirmed=true",
            ),
            "access_token": (
                200,
                "oauth_token=live_access_token&oauth_token_secret=live_access_secret",
            ),
            "get_current_user": (200, '{"user": {"id": 4242, "first_name": "Ann"}}'),
        }

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        endpoint = request.url.path.rsplit("/", 1)[-1]
        if endpoint not in self.responses:
            return httpx.Response(404)
        status, body = self.responses[endpoint]
        return httpx.Response(status, text=body)

    def authorization_for(self, endpoint: str) -> str:
        """Return the Authorization header of the last call to ``endpoint``."""
        for request in reversed(self.requests):
            if request.url.path.endswith("/" + endpoint):
                return request.headers["Authorization"]
        raise AssertionError(f"no request to {endpoint}")


@pytest.fixture
def upstream():
    return FakeSplitwiseServer()


@pytest.fixture
def upstream_transport(upstream):
    return httpx.MockTransport(upstream)
