"""Maps raw transport, HTTP and deserialization failures to DataError kinds."""
import logging
from typing import Optional

import requests

from processor.errors import (
    ApiError,
    BadRequest,
    DataError,
    NetworkError,
    NotFound,
    ParseError,
    RateLimitExceeded,
    ServerError,
    Unauthorized,
    UnknownApiError,
    UnknownError,
)

logger = logging.getLogger(__name__)

_STATUS_ERRORS = {
    400: BadRequest,
    401: Unauthorized,
    404: NotFound,
    429: RateLimitExceeded,
}


def classify_status(status_code: int, cause: Optional[BaseException] = None) -> ApiError:
    """
    Map a non-2xx HTTP status to an ApiError kind.

    Args:
        status_code: HTTP status code
        cause: Original exception kept for diagnostics

    Returns:
        ApiError subclass instance
    """
    error_class = _STATUS_ERRORS.get(status_code)
    if error_class is not None:
        return error_class(cause=cause)
    if 500 <= status_code <= 599:
        return ServerError(cause=cause, status_code=status_code)
    return UnknownApiError(
        f"Unexpected response from the server (HTTP {status_code})",
        cause=cause,
        status_code=status_code
    )


def classify(failure: BaseException) -> DataError:
    """
    Map a raw failure to exactly one DataError kind.

    Args:
        failure: Exception raised while calling or decoding the remote API

    Returns:
        DataError instance with the failure attached as cause
    """
    if isinstance(failure, DataError):
        return failure

    if isinstance(failure, requests.Timeout):
        error = NetworkError("Request timed out. Check your internet connection.", cause=failure)
    elif isinstance(failure, requests.ConnectionError):
        error = NetworkError(cause=failure)
    elif isinstance(failure, requests.HTTPError) and failure.response is not None:
        error = classify_status(failure.response.status_code, cause=failure)
    elif isinstance(failure, (ValueError, KeyError, TypeError)):
        # Includes JSON decode errors from response.json()
        error = ParseError(cause=failure)
    else:
        error = UnknownError(cause=failure)

    logger.debug(
        f"Classified {type(failure).__name__} as {type(error).__name__}",
        extra={'error_type': type(failure).__name__}
    )
    return error
