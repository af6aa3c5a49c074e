"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在管理器或 UI 层做统一捕获、上报与重试判断。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 trace_id、backend 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class NetworkError(BusinessError):
    """网络层错误，例如连接失败、超时等。可重试。"""


class ApiError(BusinessError):
    """后端返回非 2xx/429 错误时抛出，5xx 可重试。"""


class RateLimitError(BusinessError):
    """后端限流错误，由重试执行器负责退避。"""


class ValidationError(BusinessError):
    """参数、配置或鉴权校验失败，不可重试。"""


class DecodingError(BusinessError):
    """后端响应无法解析，不可重试。"""


class StoreError(BusinessError):
    """会话存储读写失败。"""


class LifecycleError(BusinessError):
    """消息状态迁移不合法。"""

    def __init__(self, message: str, **extra):
        super().__init__(code="INVALID_TRANSITION", message=message, **extra)


class PreconditionError(BusinessError):
    """发送前置条件不满足，此时不应产生任何副作用。"""


class NoActiveConversationError(PreconditionError):
    def __init__(self, message: str = "No active conversation selected"):
        super().__init__(code="NO_ACTIVE_CONVERSATION", message=message)


class NotConnectedError(PreconditionError):
    def __init__(self, message: str = "Chat backend is offline"):
        super().__init__(code="NOT_CONNECTED", message=message, http_status=503)


class EmptyMessageError(PreconditionError):
    def __init__(self, message: str = "Message content is empty"):
        super().__init__(code="EMPTY_MESSAGE", message=message)
