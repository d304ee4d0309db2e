"""函数调用的数据结构定义。

这些 dataclass 描述了“函数调用”的 schema，既用于：
- 将可用函数列表暴露给模型（FunctionDescriptor）。
- 在会话中保存函数执行结果（FunctionResult）。

参数 schema 可以直接给 JSON schema 字典，也可以给一个 pydantic 模型类，
后者会通过 model_json_schema() 生成 schema，并在调用时用来校验参数。
"""

from dataclasses import dataclass
from typing import Any, Dict, Type, Union

from pydantic import BaseModel

from chat_core.domain.models import ChatMessage, FunctionCall


@dataclass
class FunctionDescriptor:
    """一个可供模型调用的函数定义。"""

    name: str
    description: str
    parameters: Union[Type[BaseModel], Dict[str, Any]]

    @property
    def argument_model(self) -> Union[Type[BaseModel], None]:
        if isinstance(self.parameters, type) and issubclass(self.parameters, BaseModel):
            return self.parameters
        return None

    def schema(self) -> Dict[str, Any]:
        model = self.argument_model
        if model is not None:
            return model.model_json_schema()
        return dict(self.parameters)  # type: ignore[arg-type]

    def to_payload(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.schema(),
        }


@dataclass
class FunctionResult:
    """函数执行结果的封装（文本形式）。"""

    call: FunctionCall
    content: str

    def to_message(self) -> ChatMessage:
        """转成 role=function 的消息，function_call 记录它回应的那次调用。"""

        return ChatMessage(role="function", content=self.content, function_call=self.call)
