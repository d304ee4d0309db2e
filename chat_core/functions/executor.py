import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Tuple, Union

import pydantic

from chat_core.domain.exceptions import ParsingError, ValidationError
from chat_core.domain.models import FunctionCall
from chat_core.infrastructure.logging.logger import log_event
from .definitions import FunctionDescriptor, FunctionResult


FunctionHandler = Callable[[Any], Union[Any, Awaitable[Any]]]


class FunctionRegistry:
    """函数名 → (描述, 处理函数) 的注册表。

    处理函数接收校验后的参数（pydantic 模型实例或 dict），
    可以是普通函数也可以是协程函数；返回值非字符串时按 JSON 序列化。
    """

    def __init__(self) -> None:
        self._entries: Dict[str, Tuple[FunctionDescriptor, FunctionHandler]] = {}

    def register(self, descriptor: FunctionDescriptor, handler: FunctionHandler) -> None:
        if not descriptor.name:
            raise ValidationError("Function name must not be empty")
        self._entries[descriptor.name] = (descriptor, handler)

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def descriptors(self) -> List[FunctionDescriptor]:
        return [descriptor for descriptor, _ in self._entries.values()]

    async def invoke(self, call: FunctionCall) -> FunctionResult:
        entry = self._entries.get(call.name)
        if entry is None:
            raise ValidationError(code="FUNCTION_NOT_REGISTERED", message=f"Function not registered: {call.name}")
        descriptor, handler = entry
        args = self._parse_arguments(descriptor, call.arguments)
        result = handler(args)
        if inspect.isawaitable(result):
            result = await result
        content = result if isinstance(result, str) else json.dumps(result, ensure_ascii=False, default=str)
        log_event(logging.INFO, "Invoked function", function=call.name, result_chars=len(content))
        return FunctionResult(call=call, content=content)

    @staticmethod
    def _parse_arguments(descriptor: FunctionDescriptor, raw: str) -> Any:
        """解析模型给出的 arguments JSON 文本。

        有 pydantic 模型时做完整校验，否则只要求是 JSON 对象。
        """

        text = raw.strip() or "{}"
        model = descriptor.argument_model
        if model is not None:
            try:
                return model.model_validate_json(text)
            except pydantic.ValidationError as exc:
                raise ParsingError(f"Invalid arguments for {descriptor.name}: {exc}")
        try:
            args = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ParsingError(f"Invalid arguments for {descriptor.name}: {exc}")
        if not isinstance(args, dict):
            raise ParsingError(f"Arguments for {descriptor.name} must be a JSON object")
        return args
