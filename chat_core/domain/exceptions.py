"""统一业务异常模型。

所有跨模块抛出的错误都继承自 ChatError，便于调用方统一捕获：

- TransportError: 网络/IO 失败，核心层不做重试，直接抛给调用方。
- ParsingError: UTF-8、JSON 载荷或持久化历史无法解析。
- BackendError: 服务端返回了结构化的 error 对象。
- ValidationError: 参数或配置校验失败（如缺少 API Key）。
"""

from typing import Optional


class ChatError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "PARSING_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 trace_id、payload 片段等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class TransportError(ChatError):
    """网络层错误，例如连接失败、超时、流读取中断等。"""

    def __init__(self, message: str, code: str = "NETWORK_ERROR", **extra):
        super().__init__(code=code, message=message, http_status=503, **extra)


class ParsingError(ChatError):
    """无法解析的输入：非法 UTF-8、非法 JSON、损坏的历史文件。"""

    def __init__(self, message: str, code: str = "PARSING_ERROR", **extra):
        super().__init__(code=code, message=message, **extra)


class BackendError(ChatError):
    """服务端返回的结构化错误（{"error": {"message", "type"}}）。"""

    def __init__(
        self,
        message: str,
        error_type: Optional[str] = None,
        http_status: int = 400,
        **extra,
    ):
        self.error_type = error_type
        super().__init__(code="BACKEND_ERROR", message=message, http_status=http_status, **extra)


class ValidationError(ChatError):
    """参数或配置校验失败。"""

    def __init__(self, message: str, code: str = "VALIDATION_ERROR", **extra):
        super().__init__(code=code, message=message, **extra)
