"""Error types raised by the expense service."""

from __future__ import annotations


class SplitwiseError(Exception):
    """Base class for all service errors."""


class ConfigError(SplitwiseError):
    """The configuration file could not be read or parsed."""


class UpstreamAuthError(SplitwiseError):
    """The authorization server rejected the request or was unreachable."""


class UpstreamAPIError(SplitwiseError):
    """A Splitwise API call failed or returned an unusable payload."""


class ProtocolError(SplitwiseError):
    """A callback, cookie or request parameter was malformed or unexpected."""
