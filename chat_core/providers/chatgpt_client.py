"""chat/completions 客户端。

本模块负责：

1. 根据 ModelConfiguration 和消息列表组装 CompletionRequest。
2. 通过 Transport 发送请求（非流式 / 流式）。
3. 把响应 JSON 解析为 CompletionResponse，或把服务端 error 对象转成 BackendError。
4. 流式响应交给 ResponseDecoder，产出 ResponseEvent 序列。

会话（带历史）的逻辑在 chat_core.engine.conversation，这里只负责单次调用，
同时作为创建/恢复会话的工厂。
"""

import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Union

from chat_core.config.model_config import ModelConfiguration
from chat_core.config.settings import settings
from chat_core.domain.events import ResponseEvent
from chat_core.domain.exceptions import BackendError, ParsingError, ValidationError
from chat_core.domain.models import ChatMessage, CompletionRequest, CompletionResponse, ServerError
from chat_core.engine.conversation import Conversation
from chat_core.functions.definitions import FunctionDescriptor
from chat_core.infrastructure.logging.logger import log_event
from chat_core.infrastructure.storage.history_store import HistoryStore, PathLike
from chat_core.providers.base import Transport
from chat_core.providers.decoder import decode_stream
from chat_core.providers.http_transport import HttpTransport


FunctionSpec = Union[FunctionDescriptor, Dict[str, Any]]


class ChatGPT:
    """chat/completions API 客户端。

    - config: 本客户端共享的不可变模型配置。
    - transport: 传输实现，默认 HttpTransport（httpx）。
    - store: 历史持久化存储，默认落在 settings.storage_root。
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        config: Optional[ModelConfiguration] = None,
        *,
        proxy: Optional[str] = None,
        transport: Optional[Transport] = None,
        store: Optional[HistoryStore] = None,
    ):
        self.config = config or ModelConfiguration.from_settings(settings)
        if transport is None:
            transport = HttpTransport(
                api_key or settings.openai_api_key,
                timeout=self.config.timeout,
                proxy=proxy or settings.proxy,
            )
        self._transport = transport
        self.store = store or HistoryStore()

    # ---- 会话工厂 ----

    def new_conversation(self) -> Conversation:
        """使用默认 system 消息开始新会话。"""

        return self.new_conversation_directed(settings.default_direction_message)

    def new_conversation_directed(self, direction_message: str) -> Conversation:
        """使用指定的 system 消息开始新会话。"""

        return Conversation(self, [ChatMessage(role="system", content=direction_message)])

    def restore_conversation_json(self, path: PathLike) -> Conversation:
        """从 JSON 历史文件恢复会话（对应 Conversation.save_history_json）。"""

        return Conversation(self, self.store.load_json(path))

    def restore_conversation_binary(self, path: PathLike) -> Conversation:
        """从二进制历史文件恢复会话（对应 Conversation.save_history_binary）。"""

        return Conversation(self, self.store.load_binary(path))

    # ---- 带完整历史的调用 ----

    async def send_history(self, history: Sequence[ChatMessage]) -> CompletionResponse:
        """把整段历史发给 API，返回非流式结果。"""

        return await self._complete(self.build_request(history))

    def send_history_streaming(self, history: Sequence[ChatMessage]) -> AsyncIterator[ResponseEvent]:
        """把整段历史发给 API，以事件序列返回。

        请求在开始迭代时才真正发出。服务端返回错误状态时**序列为空**。
        """

        request = self.build_request(history, stream=True)
        self._log_request(request)
        return decode_stream(self._transport.stream(self.config.api_url, request.to_payload()))

    async def send_history_functions(
        self,
        history: Sequence[ChatMessage],
        functions: Sequence[FunctionSpec],
    ) -> CompletionResponse:
        """带函数描述发送整段历史，模型可以在回复中请求函数调用。"""

        return await self._complete(self.build_request(history, functions=self._bake_functions(functions)))

    # ---- 不保留历史的单条调用 ----

    async def send_message(self, message: str) -> CompletionResponse:
        return await self.send_history([ChatMessage(role="user", content=message)])

    def send_message_streaming(self, message: str) -> AsyncIterator[ResponseEvent]:
        return self.send_history_streaming([ChatMessage(role="user", content=message)])

    async def send_message_functions(
        self,
        message: str,
        functions: Sequence[FunctionSpec],
    ) -> CompletionResponse:
        """发送单条消息并附带函数描述。

        函数描述会按 token 计费，函数数量与描述长度需要适当控制。
        """

        return await self.send_history_functions([ChatMessage(role="user", content=message)], functions)

    # ---- 内部实现 ----

    def build_request(
        self,
        history: Sequence[ChatMessage],
        stream: bool = False,
        functions: Optional[List[Dict[str, Any]]] = None,
    ) -> CompletionRequest:
        """将消息列表与模型配置组装为 CompletionRequest。"""

        cfg = self.config
        return CompletionRequest(
            model=cfg.engine,
            messages=list(history),
            stream=stream,
            temperature=cfg.temperature,
            top_p=cfg.top_p,
            max_tokens=cfg.max_tokens,
            frequency_penalty=cfg.frequency_penalty,
            presence_penalty=cfg.presence_penalty,
            reply_count=cfg.reply_count,
            functions=functions or [],
        )

    @staticmethod
    def _bake_functions(functions: Sequence[FunctionSpec]) -> List[Dict[str, Any]]:
        """FunctionDescriptor 转为 JSON schema 描述，已是 dict 的原样使用。"""

        if not functions:
            raise ValidationError("At least one function descriptor is required")
        return [f.to_payload() if isinstance(f, FunctionDescriptor) else dict(f) for f in functions]

    async def _complete(self, request: CompletionRequest) -> CompletionResponse:
        self._log_request(request)
        status, data = await self._transport.post_json(self.config.api_url, request.to_payload())
        result = self._parse_response(status, data)
        if isinstance(result, ServerError):
            log_event(
                logging.WARNING,
                "Backend returned error",
                http_status=status,
                error_type=result.error_type,
                error=result.message,
            )
            raise BackendError(result.message, error_type=result.error_type, http_status=status)
        log_event(
            logging.INFO,
            "Completion received",
            model=result.model,
            choices=len(result.message_choices),
            total_tokens=result.usage.total_tokens,
        )
        return result

    @staticmethod
    def _parse_response(status: int, data: Any) -> Union[CompletionResponse, ServerError]:
        """把原始响应 JSON 解析为 CompletionResponse 或 ServerError。"""

        if isinstance(data, dict) and isinstance(data.get("error"), dict):
            err = data["error"]
            return ServerError(
                message=str(err.get("message") or "Unknown backend error"),
                error_type=err.get("type"),
            )
        if status >= 400:
            return ServerError(message=f"HTTP {status}", error_type=None)
        if not isinstance(data, dict):
            raise ParsingError("Completion response must be a JSON object")
        return CompletionResponse.from_payload(data)

    def _log_request(self, request: CompletionRequest) -> None:
        log_event(
            logging.INFO,
            "Calling completion API",
            model=request.model,
            message_count=len(request.messages),
            stream=request.stream,
            functions=len(request.functions),
            reply_count=request.reply_count,
        )
