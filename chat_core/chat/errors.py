"""流式补全失败的分类。

补全客户端抛出的异常在流水线边界被捕获，按粗粒度类别归类后
转换为固定的 assistant 文本，原始异常类型不会暴露给 UI。
"""

import asyncio
from enum import Enum
from typing import Dict

from chat_core.domain.exceptions import (
    AuthError,
    BusinessError,
    EmptyResponseError,
    NetworkError,
    RateLimitError,
    RequestTimeoutError,
)


class ErrorKind(str, Enum):
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    AUTH_FAILURE = "auth_failure"
    NETWORK_FAILURE = "network_failure"
    EMPTY_RESPONSE = "empty_response"
    UNKNOWN = "unknown"


ERROR_MESSAGES: Dict[ErrorKind, str] = {
    ErrorKind.TIMEOUT: "Sorry, the request took too long to complete. Please try again.",
    ErrorKind.RATE_LIMITED: "Rate limit exceeded. Please wait a moment and try again.",
    ErrorKind.AUTH_FAILURE: "Authentication failed. Please sign in again.",
    ErrorKind.NETWORK_FAILURE: "Network error. Please check your internet connection and try again.",
    ErrorKind.EMPTY_RESPONSE: "The AI service returned an empty response. Please try again.",
    ErrorKind.UNKNOWN: "Something went wrong while processing your message. Please try again.",
}

# 按顺序匹配，先命中者生效
_KEYWORDS = (
    (ErrorKind.TIMEOUT, ("timed out", "timeout", "took too long")),
    (ErrorKind.RATE_LIMITED, ("rate limit", "too many requests", "429")),
    (ErrorKind.AUTH_FAILURE, ("unauthorized", "forbidden", "authentication", "api key", "401", "403")),
    (ErrorKind.NETWORK_FAILURE, ("network", "connection", "failed to fetch", "unreachable", "dns")),
    (ErrorKind.EMPTY_RESPONSE, ("empty response",)),
)


def classify_error(exc: BaseException) -> ErrorKind:
    """把任意异常归类为 ErrorKind：先看类型，再看 HTTP 状态码，最后看错误文本关键字。"""

    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, RequestTimeoutError)):
        return ErrorKind.TIMEOUT
    if isinstance(exc, RateLimitError):
        return ErrorKind.RATE_LIMITED
    if isinstance(exc, AuthError):
        return ErrorKind.AUTH_FAILURE
    if isinstance(exc, EmptyResponseError):
        return ErrorKind.EMPTY_RESPONSE
    if isinstance(exc, (NetworkError, ConnectionError)):
        return ErrorKind.NETWORK_FAILURE

    status = getattr(exc, "http_status", None) or getattr(exc, "status_code", None)
    if isinstance(exc, BusinessError) and status == 400:
        # BusinessError 的默认状态码，不代表真实响应
        status = None
    if status == 429:
        return ErrorKind.RATE_LIMITED
    if status in (401, 403):
        return ErrorKind.AUTH_FAILURE
    if status == 408:
        return ErrorKind.TIMEOUT

    text = str(exc).lower()
    for kind, words in _KEYWORDS:
        if any(word in text for word in words):
            return kind
    return ErrorKind.UNKNOWN


def error_message(kind: ErrorKind) -> str:
    return ERROR_MESSAGES[kind]
