"""
Custom exception hierarchy for the Slack search core.

Fetch capabilities raise these; the poll scheduler and the search service
catch them and classify them into the three caller-facing error classes
(authentication, transient, malformed).
"""

from enum import Enum
from typing import Optional


class FetchErrorKind(str, Enum):
    """Error classes distinguished for the presentation layer."""

    AUTHENTICATION = "authentication"
    TRANSIENT = "transient"
    MALFORMED = "malformed"


class SlackSearchError(Exception):
    """Base exception for all application errors."""

    def __init__(self, detail: str, error_code: Optional[str] = None):
        super().__init__(detail)
        self.detail = detail
        self.error_code = error_code or self.__class__.__name__


# Authentication Exceptions


class AuthenticationError(SlackSearchError):
    """Raised when Slack rejects the configured credentials."""

    def __init__(
        self, detail: str = "Authentication failed", error_code: Optional[str] = None
    ):
        super().__init__(detail, error_code=error_code or "AUTH_ERROR")


# Transport Exceptions


class TransientFetchError(SlackSearchError):
    """Raised for network failures, timeouts and 5xx answers."""

    def __init__(self, detail: str, error_code: Optional[str] = None):
        super().__init__(detail, error_code=error_code or "TRANSIENT_ERROR")


class RateLimitedError(TransientFetchError):
    """Raised when Slack answers HTTP 429 or ``ratelimited``."""

    def __init__(self, method: str, retry_after: Optional[float] = None):
        detail = f"Slack rate limit hit for {method}"
        if retry_after is not None:
            detail += f" (retry after {retry_after:g}s)"
        super().__init__(detail, error_code="RATE_LIMITED")
        self.method = method
        self.retry_after = retry_after


# Response Exceptions


class MalformedResponseError(SlackSearchError):
    """Raised when a response cannot be decoded or has an unexpected shape."""

    def __init__(self, method: str, detail: str):
        super().__init__(
            f"Malformed response from {method}: {detail}",
            error_code="MALFORMED_RESPONSE",
        )
        self.method = method


class SlackAPIError(SlackSearchError):
    """Raised for any other ``ok: false`` answer from the Web API."""

    def __init__(self, method: str, error: str):
        super().__init__(f"{method} failed: {error}", error_code="SLACK_API_ERROR")
        self.method = method
        self.error = error


# Data Exceptions


class InvalidTimestampError(ValueError):
    """Raised when a message timestamp is not a decimal string."""

    def __init__(self, value: object):
        super().__init__(f"Invalid Slack timestamp: {value!r}")
        self.value = value


def classify_error(exc: BaseException) -> FetchErrorKind:
    """Map an exception raised by a fetch capability onto its error class.

    Anything not recognised as an authentication or shape problem is treated
    as transient and retried on the next tick.
    """
    if isinstance(exc, AuthenticationError):
        return FetchErrorKind.AUTHENTICATION
    if isinstance(exc, MalformedResponseError):
        return FetchErrorKind.MALFORMED
    return FetchErrorKind.TRANSIENT
