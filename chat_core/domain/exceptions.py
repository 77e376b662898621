"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于编排器在流水线边界统一捕获、分类并转换成用户可读的助手消息。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 conversation_id、model 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class NetworkError(BusinessError):
    """网络层错误，例如连接失败、DNS 失败、连接被重置等。"""


class RequestTimeoutError(NetworkError):
    """传输层超时（连接/读取超时）。"""


class ApiError(BusinessError):
    """第三方 API 返回非 2xx 错误时抛出。"""


class RateLimitError(BusinessError):
    """Provider 限流错误（HTTP 429）。"""


class AuthError(BusinessError):
    """认证失败：缺少密钥或 Provider 返回 401/403。"""


class EmptyResponseError(BusinessError):
    """调用成功但返回的文本为空。"""


class ValidationError(BusinessError):
    """参数或配置校验失败。"""
