"""Configuration loading for the expense service.

The service is configured from a JSON file whose keys follow the names
used by the Splitwise app registration page (``ConsumerKey``,
``AuthorizeURL`` ...). Everything beyond the OAuth endpoints and the data
directory is optional.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigError

DEFAULT_API_BASE_URL = "https://secure.splitwise.com/api/v3.0"
LOG_FORMAT = "TRACE: %(asctime)s %(filename)s:%(lineno)d %(message)s"


class Configuration(BaseModel):
    """Service settings read from the JSON config file."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    access_token_url: str = Field(alias="AccessTokenURL")
    authorize_url: str = Field(alias="AuthorizeURL")
    request_token_url: str = Field(alias="RequestTokenURL")
    consumer_key: str = Field(alias="ConsumerKey")
    consumer_secret: str = Field(alias="ConsumerSecret")
    callback_url: str = Field(alias="CallbackURL")
    data_path: Path = Field(alias="DataPath")
    shiny_port: str = Field("3838", alias="ShinyPort")

    api_base_url: str = Field(DEFAULT_API_BASE_URL, alias="ApiBaseURL")
    viewer_url: str | None = Field(None, alias="ViewerURL")
    cookie_secret: str | None = Field(None, alias="CookieSecret")
    cache_ttl: float = Field(500.0, gt=0, alias="CacheTTL")
    session_ttl: float = Field(86400.0, gt=0, alias="SessionTTL")
    pending_ttl: float = Field(600.0, gt=0, alias="PendingTTL")
    http_timeout: float | None = Field(None, alias="HttpTimeout")
    host: str = Field("0.0.0.0", alias="Host")
    port: int = Field(9093, alias="Port")

    @field_validator("shiny_port", mode="before")
    @classmethod
    def _port_as_string(cls, v: Any) -> Any:
        if isinstance(v, int):
            return str(v)
        return v

    @property
    def downstream_viewer_url(self) -> str:
        """Base URL the callback redirects to once the user is logged in."""
        if self.viewer_url:
            return self.viewer_url
        return f"http://localhost:{self.shiny_port}"


def load_config(path: str | Path) -> Configuration:
    """Read and validate the JSON configuration file.

    Args:
        path: Location of the config file.

    Returns:
        The parsed configuration.

    Raises:
        ConfigError: If the file cannot be read or does not validate.
    """
    try:
        raw = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"error reading config file {path}: {e}") from e

    try:
        return Configuration.model_validate_json(raw)
    except ValidationError as e:
        raise ConfigError(f"error parsing config file {path}: {e}") from e


def configure_logging(log_path: str | Path | None, level: int = logging.INFO) -> None:
    """Send the package logs to ``log_path`` (appending), or stderr when None.

    Replaces any handler installed by an earlier call.
    """
    if log_path:
        handler: logging.Handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
    else:
        handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root = logging.getLogger("splitwise_expenses")
    for previous in list(root.handlers):
        root.removeHandler(previous)
        previous.close()
    root.setLevel(level)
    root.addHandler(handler)
