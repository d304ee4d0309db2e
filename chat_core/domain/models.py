"""统一的消息、请求与结果数据模型。

本模块定义了客户端内部共享的标准数据结构：

- ChatMessage: 一条对话消息（system/user/assistant/function）。
- CompletionRequest: 发给 chat/completions 端点的完整请求。
- CompletionResponse: 非流式调用解析后的统一结果。

HTTP 层只依赖这些模型，并负责在 API JSON 和这些模型之间做转换。
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Sequence, cast

from chat_core.domain.exceptions import ParsingError


# 消息角色，与 API 的 role 字段一一对应
Role = Literal["system", "user", "assistant", "function"]
ROLES: Sequence[str] = ("system", "user", "assistant", "function")


def parse_role(raw: Any) -> Role:
    """校验并返回合法的 role，未知值抛 ParsingError。"""

    if raw not in ROLES:
        raise ParsingError(f"Unknown message role: {raw!r}")
    return cast(Role, raw)


@dataclass(frozen=True)
class FunctionCall:
    """模型请求调用的函数。

    arguments 保留模型返回的原始 JSON 文本，由函数注册表负责校验。
    """

    name: str
    arguments: str


@dataclass(frozen=True)
class ChatMessage:
    """一条对话消息，既可用于请求，也可用于响应。

    追加进历史后不可再修改。
    """

    role: Role
    content: str
    function_call: Optional[FunctionCall] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.function_call is None:
            return payload
        if self.role == "function":
            # 函数结果消息只需带上函数名
            payload["name"] = self.function_call.name
        else:
            payload["function_call"] = {
                "name": self.function_call.name,
                "arguments": self.function_call.arguments,
            }
        return payload

    @classmethod
    def from_payload(cls, data: Any) -> "ChatMessage":
        """把 API/持久化中的 message JSON 转成 ChatMessage。

        函数调用回复里 content 为 null，这里统一成空串。
        """

        if not isinstance(data, dict):
            raise ParsingError(f"Message must be an object, got {type(data).__name__}")
        function_call = None
        raw_call = data.get("function_call")
        if raw_call:
            if not isinstance(raw_call, dict):
                raise ParsingError("function_call must be an object")
            arguments = raw_call.get("arguments")
            if not isinstance(arguments, str):
                arguments = "" if arguments is None else str(arguments)
            function_call = FunctionCall(name=str(raw_call.get("name") or ""), arguments=arguments)
        content = data.get("content")
        if content is not None and not isinstance(content, str):
            raise ParsingError("Message content must be a string")
        return cls(
            role=parse_role(data.get("role")),
            content=content or "",
            function_call=function_call,
        )


@dataclass
class CompletionRequest:
    """一次完整的 chat/completions 请求。"""

    model: str
    messages: List[ChatMessage]
    stream: bool = False
    temperature: float = 0.5
    top_p: float = 1.0
    max_tokens: Optional[int] = None
    frequency_penalty: float = 0.0
    presence_penalty: float = 0.0
    reply_count: int = 1
    # 已序列化好的函数描述（JSON schema 形式）
    functions: List[Dict[str, Any]] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": [m.to_payload() for m in self.messages],
            "stream": self.stream,
            "temperature": self.temperature,
            "top_p": self.top_p,
            "frequency_penalty": self.frequency_penalty,
            "presence_penalty": self.presence_penalty,
            "n": self.reply_count,
        }
        if self.max_tokens is not None:
            payload["max_tokens"] = self.max_tokens
        if self.functions:
            payload["functions"] = list(self.functions)
        return payload


@dataclass
class TokenUsage:
    """服务端返回的 token 统计信息。"""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass
class MessageChoice:
    """单个候选回答。"""

    message: ChatMessage
    finish_reason: Optional[str]
    index: int


@dataclass
class CompletionResponse:
    """一次非流式调用的最终结果。

    - message_id: 服务端分配的响应 id。
    - created_timestamp: 响应创建时间（unix 秒）。
    - model: 实际使用的模型。
    - usage: token 使用统计。
    - message_choices: 一个或多个候选回答（reply_count > 1 时有多条）。
    """

    model: str
    usage: TokenUsage
    message_choices: List[MessageChoice]
    message_id: Optional[str] = None
    created_timestamp: Optional[int] = None

    def message(self) -> ChatMessage:
        """返回第一条候选回答。"""

        if not self.message_choices:
            raise ParsingError("Completion response contains no choices")
        return self.message_choices[0].message

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "CompletionResponse":
        choices_raw = data.get("choices")
        if not isinstance(choices_raw, list):
            raise ParsingError("Completion response is missing a choices array")
        choices: List[MessageChoice] = []
        for i, ch in enumerate(choices_raw):
            if not isinstance(ch, dict):
                raise ParsingError("Completion choice must be an object")
            index = ch.get("index", i)
            if not isinstance(index, int) or isinstance(index, bool):
                raise ParsingError(f"Completion choice index must be an integer, got {index!r}")
            choices.append(
                MessageChoice(
                    message=ChatMessage.from_payload(ch.get("message") or {}),
                    finish_reason=ch.get("finish_reason"),
                    index=index,
                )
            )
        usage_raw = data.get("usage") or {}
        if not isinstance(usage_raw, dict):
            raise ParsingError("Completion usage must be an object")
        usage = TokenUsage(
            prompt_tokens=usage_raw.get("prompt_tokens", 0),
            completion_tokens=usage_raw.get("completion_tokens", 0),
            total_tokens=usage_raw.get("total_tokens", 0),
        )
        return cls(
            model=str(data.get("model") or ""),
            usage=usage,
            message_choices=choices,
            message_id=data.get("id"),
            created_timestamp=data.get("created"),
        )


@dataclass
class ServerError:
    """服务端返回的 error 对象。"""

    message: str
    error_type: Optional[str] = None
