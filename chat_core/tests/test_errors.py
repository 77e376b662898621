import asyncio

import pytest

from chat_core.chat.errors import ErrorKind, classify_error, error_message
from chat_core.domain.exceptions import (
    ApiError,
    AuthError,
    BusinessError,
    EmptyResponseError,
    NetworkError,
    RateLimitError,
    RequestTimeoutError,
)


@pytest.mark.parametrize(
    "exc, kind",
    [
        (asyncio.TimeoutError(), ErrorKind.TIMEOUT),
        (RequestTimeoutError(code="TIMEOUT", message="slow", http_status=408), ErrorKind.TIMEOUT),
        (RateLimitError(code="RATE_LIMIT", message="x", http_status=429), ErrorKind.RATE_LIMITED),
        (AuthError(code="AUTH_FAILED", message="x", http_status=401), ErrorKind.AUTH_FAILURE),
        (EmptyResponseError(code="EMPTY_RESPONSE", message="x"), ErrorKind.EMPTY_RESPONSE),
        (NetworkError(code="NETWORK_ERROR", message="x"), ErrorKind.NETWORK_FAILURE),
        (ConnectionResetError(), ErrorKind.NETWORK_FAILURE),
        (ApiError(code="API_ERROR", message="x", http_status=429), ErrorKind.RATE_LIMITED),
        (ApiError(code="API_ERROR", message="x", http_status=403), ErrorKind.AUTH_FAILURE),
        (RuntimeError("Too Many Requests"), ErrorKind.RATE_LIMITED),
        (RuntimeError("Failed to fetch"), ErrorKind.NETWORK_FAILURE),
        (RuntimeError("operation timed out"), ErrorKind.TIMEOUT),
        (BusinessError(code="X", message="boom"), ErrorKind.UNKNOWN),
        (ValueError("weird"), ErrorKind.UNKNOWN),
    ],
)
def test_classify_error(exc, kind):
    assert classify_error(exc) is kind


def test_every_kind_has_message():
    for kind in ErrorKind:
        assert error_message(kind)
    assert error_message(ErrorKind.TIMEOUT) == "Sorry, the request took too long to complete. Please try again."
