"""Closed error taxonomy shared by the remote client, store and repository."""
from typing import Optional


class DataError(Exception):
    """
    Base class for every failure surfaced to callers.

    The message is safe to show to a user. The underlying cause is kept
    for logging only.

    Args:
        message: Human-readable description
        cause: Original exception, if any
    """

    default_message = "An unexpected error occurred"

    def __init__(self, message: Optional[str] = None, cause: Optional[BaseException] = None):
        self.message = message or self.default_message
        self.cause = cause
        super().__init__(self.message)

    def __eq__(self, other) -> bool:
        return type(self) is type(other) and self.message == other.message

    def __hash__(self) -> int:
        return hash((type(self), self.message))

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


class NetworkError(DataError):
    """Connection failure, timeout or name-resolution failure."""

    default_message = "Network connection failed. Check your internet connection."


class ApiError(DataError):
    """Non-2xx HTTP response from the remote API."""

    status_code: Optional[int] = None

    def __init__(
        self,
        message: Optional[str] = None,
        cause: Optional[BaseException] = None,
        status_code: Optional[int] = None
    ):
        super().__init__(message, cause)
        if status_code is not None:
            self.status_code = status_code


class BadRequest(ApiError):
    default_message = "Invalid request parameters"
    status_code = 400


class Unauthorized(ApiError):
    default_message = "Authentication required"
    status_code = 401


class NotFound(ApiError):
    default_message = "Resource not found"
    status_code = 404


class RateLimitExceeded(ApiError):
    default_message = "Too many requests. Please try again later."
    status_code = 429


class ServerError(ApiError):
    default_message = "Server error. Please try again later."
    status_code = 500


class UnknownApiError(ApiError):
    default_message = "Unexpected response from the server"


class ParseError(DataError):
    """A 2xx response whose body did not have the expected shape."""

    default_message = "Unexpected response format"


class UnknownError(DataError):
    """Anything not covered by the other kinds."""


# Kinds for which serving cached data is preferable to failing.
TRANSIENT_ERRORS = (NetworkError, ServerError)
