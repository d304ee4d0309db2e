"""传输层抽象接口。

客户端不直接依赖具体 HTTP 库，而是依赖此协议：

- post_json(payload): 非流式调用，返回 (HTTP 状态码, 解码后的 JSON)。
- stream(payload): 流式调用，返回原始字节片段的异步迭代器，
  片段边界由网络决定，不保证与事件边界对齐。

测试里可以用内存实现替换，生产环境使用 HttpTransport。
"""

from typing import Any, AsyncIterator, Dict, Protocol, Tuple


class Transport(Protocol):
    """chat/completions 传输协议。"""

    async def post_json(self, url: str, payload: Dict[str, Any]) -> Tuple[int, Any]:
        ...

    def stream(self, url: str, payload: Dict[str, Any]) -> AsyncIterator[bytes]:
        """打开流式请求，逐个产出字节片段。

        HTTP 状态码 >= 400 时不产出任何片段（流为空）。
        网络错误以 TransportError 抛出。
        """

        ...
