"""流式响应事件。

解码器把 SSE 字节流转成以下事件序列：

- BeginResponse: 某个候选回答开始，携带角色。
- Content: 某个候选回答的文本增量。
- CloseResponse: 某个候选回答结束。
- Done: 整个流结束（[DONE]），每个流恰好一次。
- StreamError: 解析/网络错误，作为序列元素交给调用方决定是否继续。

response_index 对应请求 n > 1 时的并行候选序号。
"""

from dataclasses import dataclass
from typing import Union

from chat_core.domain.exceptions import ChatError
from chat_core.domain.models import Role


@dataclass(frozen=True)
class BeginResponse:
    role: Role
    response_index: int


@dataclass(frozen=True)
class Content:
    delta: str
    response_index: int


@dataclass(frozen=True)
class CloseResponse:
    response_index: int


@dataclass(frozen=True)
class Done:
    pass


@dataclass(frozen=True)
class StreamError:
    """流中的错误元素，error 为 ParsingError 或 TransportError。"""

    error: ChatError


ResponseEvent = Union[BeginResponse, Content, CloseResponse, Done, StreamError]
