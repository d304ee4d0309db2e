"""会话引擎。

Conversation 持有一段只追加的消息历史，并提供三种发送方式：

- send: 非流式。
- send_streaming: 流式，返回事件序列。
- send_with_functions: 附带函数描述，必要时自动执行函数并回传结果。

一轮对话（用户消息 + 回复）只在成功后整体追加，失败时历史保持不变；
追加在 asyncio.Lock 内完成，并发发送时各轮消息不会交错。
"""

import asyncio
import logging
import time
from typing import TYPE_CHECKING, AsyncIterator, List, Optional, Sequence, Tuple, Union

from chat_core.config.settings import settings
from chat_core.domain.events import Done, ResponseEvent
from chat_core.domain.exceptions import ValidationError
from chat_core.domain.models import ChatMessage, CompletionResponse
from chat_core.engine.accumulator import ResponseAccumulator
from chat_core.functions.definitions import FunctionDescriptor
from chat_core.functions.executor import FunctionHandler, FunctionRegistry
from chat_core.infrastructure.logging.logger import log_event

if TYPE_CHECKING:
    from pathlib import Path

    from chat_core.infrastructure.storage.history_store import PathLike
    from chat_core.providers.chatgpt_client import ChatGPT


class Conversation:
    """一段带历史的对话。

    - history: 只读视图；只能通过发送操作追加。
    - auto_invoke: 模型请求调用已注册函数时是否自动执行并回传。
    - always_send_functions: 为 True 时 send() 也附带已注册函数。
    """

    def __init__(
        self,
        client: "ChatGPT",
        history: Sequence[ChatMessage],
        functions: Optional[FunctionRegistry] = None,
    ):
        self._client = client
        self._history: List[ChatMessage] = list(history)
        self._functions = functions or FunctionRegistry()
        self._lock = asyncio.Lock()
        self.auto_invoke = True
        self.always_send_functions = False

    @property
    def client(self) -> "ChatGPT":
        return self._client

    @property
    def history(self) -> Tuple[ChatMessage, ...]:
        return tuple(self._history)

    @property
    def last_message(self) -> Optional[ChatMessage]:
        return self._history[-1] if self._history else None

    def add_function(self, descriptor: FunctionDescriptor, handler: FunctionHandler) -> None:
        """注册一个可供模型调用的函数。"""

        self._functions.register(descriptor, handler)

    async def send(self, message: str) -> CompletionResponse:
        """发送一条用户消息，成功后把用户消息和第一条候选回答追加进历史。"""

        if self.always_send_functions and len(self._functions):
            return await self.send_with_functions(message)

        user = ChatMessage(role="user", content=message)
        start_time = time.time()
        response = await self._client.send_history(self._snapshot(user))
        await self._append(user, response.message())
        self._log("Completed conversation turn", start_time, mode="send")
        return response

    async def send_streaming(self, message: str) -> AsyncIterator[ResponseEvent]:
        """发送一条用户消息并以事件序列返回回复。

        引擎自己累积第 0 个候选的内容，到达 Done 时（在把 Done 交给调用方之前）
        追加用户消息与完整回复。序列中出现过错误、提前停止消费、
        或服务端报错导致序列为空时，历史不变。
        """

        user = ChatMessage(role="user", content=message)
        start_time = time.time()
        accumulator = ResponseAccumulator()
        events = self._client.send_history_streaming(self._snapshot(user))
        try:
            async for event in events:
                accumulator.apply(event)
                if isinstance(event, Done):
                    if accumulator.failed:
                        log_event(logging.WARNING, "Streamed turn discarded", errors=len(accumulator.errors))
                    else:
                        await self._append(user, accumulator.message(0))
                        self._log("Completed conversation turn", start_time, mode="stream")
                yield event
        finally:
            # 调用方提前停止时立即释放底层连接
            aclose = getattr(events, "aclose", None)
            if aclose is not None:
                await aclose()

    async def send_with_functions(
        self,
        message: str,
        functions: Optional[Sequence[Union[FunctionDescriptor, dict]]] = None,
    ) -> CompletionResponse:
        """附带函数描述发送消息。

        functions 为空时使用已注册的函数。回复里的 function_call 保存在
        助手消息上；若该函数已注册且 auto_invoke 打开，则执行函数、
        追加 role=function 的结果消息并再次请求，最多 max_function_rounds 轮。
        """

        descriptors = list(functions) if functions is not None else self._functions.descriptors()
        if not descriptors:
            raise ValidationError("send_with_functions requires at least one function descriptor")

        start_time = time.time()
        pending: List[ChatMessage] = [ChatMessage(role="user", content=message)]
        max_rounds = settings.max_function_rounds
        for round_num in range(1, max_rounds + 1):
            response = await self._client.send_history_functions(self._history + pending, descriptors)
            reply = response.message()
            pending.append(reply)
            call = reply.function_call
            if call is None or not self.auto_invoke or call.name not in self._functions:
                break
            if round_num == max_rounds:
                log_event(logging.WARNING, "Function round limit reached", max_rounds=max_rounds, function=call.name)
                break
            result = await self._functions.invoke(call)
            pending.append(result.to_message())

        await self._append(*pending)
        self._log("Completed conversation turn", start_time, mode="functions", appended=len(pending))
        return response

    # ---- 持久化 ----

    def save_history_json(self, path: "PathLike") -> "Path":
        """把历史保存为 JSON，可用 ChatGPT.restore_conversation_json 恢复。"""

        return self._client.store.save_json(path, self._history)

    def save_history_binary(self, path: "PathLike") -> "Path":
        """把历史保存为紧凑二进制，可用 ChatGPT.restore_conversation_binary 恢复。"""

        return self._client.store.save_binary(path, self._history)

    # ---- 内部实现 ----

    def _snapshot(self, pending: ChatMessage) -> List[ChatMessage]:
        return self._history + [pending]

    async def _append(self, *messages: ChatMessage) -> None:
        async with self._lock:
            self._history.extend(messages)

    def _log(self, message: str, start_time: float, **fields) -> None:
        log_event(
            logging.INFO,
            message,
            history_length=len(self._history),
            elapsed_seconds=round(time.time() - start_time, 2),
            **fields,
        )
