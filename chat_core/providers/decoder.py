"""SSE 流式响应解码器。

传输层交来的字节片段可能在任意位置被网络切开：一个事件可能分散在多个片段里，
一个片段也可能包含多个事件，甚至在多字节 UTF-8 字符或 "\\n\\n" 中间断开。

ResponseDecoder 只保存两样状态：
1. 未完成的 UTF-8 字节（由增量解码器持有）。
2. 尚未收到结束符的文本（carry-over），原样保留，下个片段到达时拼在前面。

因此按任意方式切分同一段字节流，得到的事件序列都相同。
非法输入不会抛异常，而是以 StreamError 事件的形式出现在序列中。
"""

import codecs
import json
import logging
from typing import Any, AsyncIterable, AsyncIterator, Iterator, List, Optional

from chat_core.domain.events import (
    BeginResponse,
    CloseResponse,
    Content,
    Done,
    ResponseEvent,
    StreamError,
)
from chat_core.domain.exceptions import ParsingError, TransportError
from chat_core.domain.models import parse_role
from chat_core.infrastructure.logging.logger import log_event


DATA_PREFIX = "data:"
EVENT_TERMINATOR = "\n\n"
DONE_SENTINEL = "[DONE]"
# 日志里最多保留的载荷长度
PREVIEW_CHARS = 200


def split_inclusive(text: str, sep: str) -> Iterator[str]:
    """按 sep 切分，sep 保留在前一段末尾；最后一段可能不以 sep 结尾。"""

    start = 0
    while start < len(text):
        end = text.find(sep, start)
        if end == -1:
            yield text[start:]
            return
        end += len(sep)
        yield text[start:end]
        start = end


class ResponseDecoder:
    """把字节片段增量地解码为 ResponseEvent。"""

    def __init__(self) -> None:
        self._unparsed = ""
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="strict")

    @property
    def unparsed(self) -> str:
        """当前 carry-over 缓冲区内容。"""

        return self._unparsed

    def feed(self, fragment: bytes) -> List[ResponseEvent]:
        """处理一个片段，返回其中所有完整事件（按出现顺序）。"""

        try:
            text = self._utf8.decode(fragment)
        except UnicodeDecodeError as exc:
            # 丢弃本片段，carry-over 保持不变
            self._utf8.reset()
            return [self._error(f"Invalid UTF-8 in stream fragment: {exc}")]
        if not text:
            return []

        content = self._unparsed + text
        self._unparsed = ""
        events: List[ResponseEvent] = []
        for piece in split_inclusive(content, EVENT_TERMINATOR):
            if not piece.endswith(EVENT_TERMINATOR):
                self._unparsed = piece
                break
            events.extend(self._decode_event(piece[: -len(EVENT_TERMINATOR)]))
        return events

    def finish(self) -> List[ResponseEvent]:
        """流结束时调用：残留的未完成事件作为错误报告，并清空状态。"""

        leftover = self._unparsed
        pending_bytes = self._utf8.getstate()[0]
        self._unparsed = ""
        self._utf8.reset()
        if pending_bytes:
            return [self._error("Stream ended inside a multi-byte UTF-8 character")]
        if leftover.strip():
            return [self._error("Stream ended with an incomplete event", payload=leftover[:PREVIEW_CHARS])]
        return []

    def _decode_event(self, block: str) -> List[ResponseEvent]:
        """解码一个完整事件块（已去掉结束符）。

        只认 data 行；注释、event:/id: 行以及没有前缀的内容（例如
        流式请求失败时服务端返回的错误 JSON）一律忽略。
        """

        data_lines = []
        for line in block.split("\n"):
            if not line.startswith(DATA_PREFIX):
                continue
            value = line[len(DATA_PREFIX):]
            if value.startswith(" "):
                value = value[1:]
            data_lines.append(value)
        if not data_lines:
            return []
        payload = "\n".join(data_lines)
        if not payload.strip():
            return []
        if payload.strip() == DONE_SENTINEL:
            return [Done()]
        return self._decode_payload(payload)

    def _decode_payload(self, payload: str) -> List[ResponseEvent]:
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as exc:
            return [self._error(f"Invalid inbound streaming payload: {exc}", payload=payload[:PREVIEW_CHARS])]
        if not isinstance(data, dict) or not isinstance(data.get("choices"), list):
            return [self._error("Streaming payload has no choices array", payload=payload[:PREVIEW_CHARS])]

        events: List[ResponseEvent] = []
        for choice in data["choices"]:
            try:
                events.extend(self._decode_choice(choice))
            except ParsingError as exc:
                log_event(logging.WARNING, "Malformed stream choice", error=exc.message)
                events.append(StreamError(exc))
        return events

    @staticmethod
    def _decode_choice(choice: Any) -> List[ResponseEvent]:
        """按 delta 的形状选择事件类型：role → Begin，content → Content，其余 → Close。

        role 和非空 content 同时出现时依次产出 Begin 与 Content。
        """

        if not isinstance(choice, dict):
            raise ParsingError("Streaming choice must be an object")
        index = choice.get("index", 0)
        if not isinstance(index, int) or isinstance(index, bool):
            raise ParsingError(f"Streaming choice index must be an integer, got {index!r}")
        delta = choice.get("delta") or {}
        if not isinstance(delta, dict):
            raise ParsingError("Streaming choice delta must be an object")
        content = delta.get("content")
        if delta.get("role") is not None:
            events: List[ResponseEvent] = [BeginResponse(role=parse_role(delta["role"]), response_index=index)]
            if isinstance(content, str) and content:
                events.append(Content(delta=content, response_index=index))
            return events
        if isinstance(content, str):
            return [Content(delta=content, response_index=index)]
        return [CloseResponse(response_index=index)]

    @staticmethod
    def _error(message: str, **extra) -> StreamError:
        log_event(logging.WARNING, "Stream decode error", error=message, **extra)
        return StreamError(ParsingError(message, **extra))


async def decode_stream(
    fragments: AsyncIterable[bytes],
    decoder: Optional[ResponseDecoder] = None,
) -> AsyncIterator[ResponseEvent]:
    """把字节片段的异步迭代器转成事件的异步迭代器。

    - 遇到第一个 Done 后停止，并关闭底层数据源。
    - 数据源正常结束但没有 Done 时，报告残留的未完成事件。
    - 数据源抛出 TransportError 时，产出最后一个 StreamError 后结束。
    - 调用方提前 aclose() 时同样会关闭底层数据源。
    """

    decoder = decoder or ResponseDecoder()
    source = fragments.__aiter__()
    try:
        try:
            async for fragment in source:
                for event in decoder.feed(fragment):
                    yield event
                    if isinstance(event, Done):
                        return
        except TransportError as exc:
            yield StreamError(exc)
            return
        for event in decoder.finish():
            yield event
    finally:
        aclose = getattr(source, "aclose", None)
        if aclose is not None:
            await aclose()
